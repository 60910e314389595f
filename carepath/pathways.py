"""Care pathway templates, versioning and per-episode pathway references."""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import exists, func, or_, select
from sqlalchemy.orm import Session

from carepath.db.models import (
    CarePathway,
    EpisodePathway,
    EpisodeStatus,
    PathwayStatus,
    PatientEpisode,
    Pool,
)
from carepath.errors import NotFoundError, ValidationError
from carepath.settings import get_scheduling_settings

logger = structlog.get_logger(__name__)

_POOLS = {pool.value for pool in Pool}


@dataclass(frozen=True)
class PathwayStep:
    """One validated entry of a pathway's ``steps_json``."""

    step_code: str
    pool: str
    duration_minutes: int
    default_days_offset: int
    requires_precommit: bool = False
    slack_days: Optional[int] = None


@dataclass(frozen=True)
class PathwayRef:
    """A pathway attached to an episode, in application order.

    ``episode_pathway_id`` is ``None`` when the episode only carries the
    scalar ``care_pathway_id``; such episodes have exactly one reference.
    """

    pathway: CarePathway
    ordinal: int
    episode_pathway_id: Optional[int] = None


class StepCatalogIssue(ValidationError):
    default_code = "INVALID_STEP_CATALOG"


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool):
        raise TypeError("boolean is not an integer")
    if isinstance(value, float) and not value.is_integer():
        raise TypeError("fractional value")
    return int(value)


def parse_pathway_steps(raw: Any, *, pathway_id: Optional[int] = None) -> List[PathwayStep]:
    """Validate ``raw`` step definitions and apply defaults.

    Raises :class:`StepCatalogIssue` describing the first malformed entry.
    """

    settings = get_scheduling_settings()
    if not isinstance(raw, list):
        raise StepCatalogIssue(
            "Pathway steps must be a list", details={"pathwayId": pathway_id}
        )
    steps: List[PathwayStep] = []
    for index, entry in enumerate(raw):
        details = {"pathwayId": pathway_id, "index": index}
        if not isinstance(entry, Mapping):
            raise StepCatalogIssue("Pathway step must be an object", details=details)
        code = entry.get("step_code")
        if not isinstance(code, str) or not code.strip():
            raise StepCatalogIssue("Pathway step is missing step_code", details=details)
        pool = entry.get("pool") or Pool.WORK.value
        if pool not in _POOLS:
            raise StepCatalogIssue(
                f"Unknown pool {pool!r} for step {code}", details={**details, "stepCode": code}
            )
        try:
            duration = _as_int(entry.get("duration_minutes"), 30)
            offset = _as_int(entry.get("default_days_offset"), settings.default_days_offset)
            slack = _as_int(entry.get("slack_days"), None)
        except (TypeError, ValueError):
            raise StepCatalogIssue(
                f"Non-integer timing value for step {code}", details={**details, "stepCode": code}
            )
        if duration is None or duration <= 0:
            raise StepCatalogIssue(
                f"duration_minutes must be positive for step {code}",
                details={**details, "stepCode": code},
            )
        if offset is None or offset < 0 or (slack is not None and slack < 0):
            raise StepCatalogIssue(
                f"Negative day offset for step {code}", details={**details, "stepCode": code}
            )
        precommit = entry.get("requires_precommit")
        if precommit is None:
            precommit = False
        elif not isinstance(precommit, bool):
            raise StepCatalogIssue(
                f"requires_precommit must be a boolean for step {code}",
                details={**details, "stepCode": code},
            )
        steps.append(
            PathwayStep(
                step_code=code.strip(),
                pool=pool,
                duration_minutes=duration,
                default_days_offset=offset,
                requires_precommit=precommit,
                slack_days=slack,
            )
        )
    return steps


def steps_hash(steps: Iterable[PathwayStep]) -> str:
    """Return a stable digest of the ordered step definitions."""

    payload = [asdict(step) for step in steps]
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def get_pathway(session: Session, pathway_id: int) -> CarePathway:
    pathway = session.get(CarePathway, pathway_id)
    if pathway is None:
        raise NotFoundError("Care pathway not found", code="PATHWAY_NOT_FOUND")
    return pathway


def pathway_refs(session: Session, episode: PatientEpisode) -> List[PathwayRef]:
    """Return the ordered pathway references of ``episode``."""

    rows = session.execute(
        select(EpisodePathway, CarePathway)
        .join(CarePathway, CarePathway.id == EpisodePathway.care_pathway_id)
        .where(EpisodePathway.episode_id == episode.id)
        .order_by(EpisodePathway.ordinal, EpisodePathway.id)
    ).all()
    if rows:
        return [
            PathwayRef(pathway=pathway, ordinal=link.ordinal, episode_pathway_id=link.id)
            for link, pathway in rows
        ]
    if episode.care_pathway_id is not None:
        pathway = session.get(CarePathway, episode.care_pathway_id)
        if pathway is not None:
            return [PathwayRef(pathway=pathway, ordinal=0)]
    return []


def combined_steps(refs: Sequence[PathwayRef]) -> List[PathwayStep]:
    steps: List[PathwayStep] = []
    for ref in refs:
        steps.extend(parse_pathway_steps(ref.pathway.steps_json, pathway_id=ref.pathway.id))
    return steps


def window_slack_days(refs: Sequence[PathwayRef]) -> Optional[int]:
    """Return the first pathway-defined slack, if any reference sets one."""

    for ref in refs:
        if ref.pathway.window_slack_days is not None:
            return ref.pathway.window_slack_days
    return None


def is_referenced_by_open_episode(session: Session, pathway_id: int) -> bool:
    linked = exists().where(
        EpisodePathway.care_pathway_id == pathway_id,
        EpisodePathway.episode_id == PatientEpisode.id,
    )
    stmt = select(func.count(PatientEpisode.id)).where(
        PatientEpisode.status == EpisodeStatus.OPEN,
        or_(PatientEpisode.care_pathway_id == pathway_id, linked),
    )
    return (session.execute(stmt).scalar_one() or 0) > 0


def create_pathway(
    session: Session,
    *,
    name: str,
    steps: List[Mapping[str, Any]],
    reason: Optional[str] = None,
    window_slack_days: Optional[int] = None,
) -> CarePathway:
    parse_pathway_steps(steps)
    pathway = CarePathway(
        family_key=uuid.uuid4().hex,
        version=1,
        name=name,
        reason=reason,
        steps_json=[dict(step) for step in steps],
        window_slack_days=window_slack_days,
        status=PathwayStatus.ACTIVE,
    )
    session.add(pathway)
    session.flush()
    logger.info("care_pathway_created", pathway_id=pathway.id, steps=len(steps))
    return pathway


def update_pathway(
    session: Session,
    pathway_id: int,
    *,
    name: Optional[str] = None,
    steps: Optional[List[Mapping[str, Any]]] = None,
    reason: Optional[str] = None,
    window_slack_days: Optional[int] = None,
) -> CarePathway:
    """Edit a pathway, forking a new version when an open episode uses it."""

    current = session.execute(
        select(CarePathway).where(CarePathway.id == pathway_id).with_for_update()
    ).scalar_one_or_none()
    if current is None:
        raise NotFoundError("Care pathway not found", code="PATHWAY_NOT_FOUND")
    if current.status != PathwayStatus.ACTIVE:
        raise ValidationError(
            "Only the active version of a pathway can be edited",
            code="PATHWAY_SUPERSEDED",
            details={"pathwayId": pathway_id},
        )
    if steps is not None:
        parse_pathway_steps(steps)

    new_steps = [dict(step) for step in steps] if steps is not None else list(current.steps_json or [])
    new_name = name if name is not None else current.name
    new_reason = reason if reason is not None else current.reason
    new_slack = window_slack_days if window_slack_days is not None else current.window_slack_days

    if is_referenced_by_open_episode(session, pathway_id):
        current.status = PathwayStatus.SUPERSEDED
        target = CarePathway(
            family_key=current.family_key,
            version=current.version + 1,
            name=new_name,
            reason=new_reason,
            steps_json=new_steps,
            window_slack_days=new_slack,
            status=PathwayStatus.ACTIVE,
        )
        session.add(target)
        session.flush()
        logger.info(
            "care_pathway_versioned",
            family_key=current.family_key,
            previous_id=current.id,
            pathway_id=target.id,
            version=target.version,
        )
    else:
        current.name = new_name
        current.reason = new_reason
        current.steps_json = new_steps
        current.window_slack_days = new_slack
        session.flush()
        target = current
        logger.info("care_pathway_updated", pathway_id=current.id)

    return target


def list_pathways(session: Session, *, include_superseded: bool = False) -> List[CarePathway]:
    stmt = select(CarePathway).order_by(CarePathway.name, CarePathway.version)
    if not include_superseded:
        stmt = stmt.where(CarePathway.status == PathwayStatus.ACTIVE)
    return list(session.execute(stmt).scalars())


def suggest_pathways(session: Session, episode: PatientEpisode) -> List[int]:
    """Return active pathway ids whose ``reason`` matches the episode's."""

    if not episode.reason:
        return []
    stmt = (
        select(CarePathway.id)
        .where(
            CarePathway.status == PathwayStatus.ACTIVE,
            func.lower(CarePathway.reason) == episode.reason.lower(),
        )
        .order_by(CarePathway.id)
    )
    return list(session.execute(stmt).scalars())


def serialize_pathway(pathway: CarePathway) -> Dict[str, Any]:
    return {
        "id": pathway.id,
        "familyKey": pathway.family_key,
        "version": pathway.version,
        "name": pathway.name,
        "reason": pathway.reason,
        "status": PathwayStatus(pathway.status).value,
        "windowSlackDays": pathway.window_slack_days,
        "steps": list(pathway.steps_json or []),
    }


__all__ = [
    "PathwayStep",
    "PathwayRef",
    "StepCatalogIssue",
    "parse_pathway_steps",
    "steps_hash",
    "get_pathway",
    "pathway_refs",
    "combined_steps",
    "window_slack_days",
    "is_referenced_by_open_episode",
    "create_pathway",
    "update_pathway",
    "list_pathways",
    "suggest_pathways",
    "serialize_pathway",
]
