"""Next-step engine.

Resolves the next clinically required step of an episode, and the scheduling
window for it, from the episode's pathway references and its materialised
``episode_steps``.  Callers always receive a tagged value: :class:`Ready`
carrying a :class:`StepProjection`, or :class:`Blocked` with a stable code
and a human-readable reason.  Nothing here writes to the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from carepath.db.models import (
    Appointment,
    AppointmentStatus,
    EpisodeBlock,
    EpisodeStatus,
    EpisodeStep,
    PatientEpisode,
    Pool,
    StepStatus,
)
from carepath.locking import get_episode
from carepath.pathways import (
    PathwayRef,
    PathwayStep,
    StepCatalogIssue,
    combined_steps,
    pathway_refs,
    suggest_pathways,
    window_slack_days,
)
from carepath.settings import get_scheduling_settings
from carepath.step_catalog import LABELS, StepCatalogCache
from carepath.time_utils import add_days, ensure_utc, isoformat, utc_now

logger = structlog.get_logger(__name__)

NO_CARE_PATHWAY = "NO_CARE_PATHWAY"
INVALID_STEP_CATALOG = "INVALID_STEP_CATALOG"
EPISODE_BLOCKED = "EPISODE_BLOCKED"
EPISODE_NOT_OPEN = "EPISODE_NOT_OPEN"
PATHWAY_COMPLETE = "PATHWAY_COMPLETE"

_OPEN_STATUSES = (StepStatus.PENDING, StepStatus.SCHEDULED)


@dataclass(frozen=True)
class StepProjection:
    step_code: str
    pool: str
    duration_minutes: int
    earliest_date: datetime
    latest_date: datetime
    seq: int
    status: str = StepStatus.PENDING.value
    requires_precommit: bool = False
    step_id: Optional[int] = None
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepCode": self.step_code,
            "label": self.label or self.step_code,
            "pool": self.pool,
            "durationMinutes": self.duration_minutes,
            "earliestDate": isoformat(self.earliest_date),
            "latestDate": isoformat(self.latest_date),
            "seq": self.seq,
            "status": self.status,
            "requiresPrecommit": self.requires_precommit,
            "stepId": self.step_id,
        }


@dataclass(frozen=True)
class Ready:
    projection: StepProjection

    def to_dict(self) -> Dict[str, Any]:
        payload = self.projection.to_dict()
        payload["stepStatus"] = payload.pop("status")
        payload["status"] = "ready"
        return payload


@dataclass(frozen=True)
class Blocked:
    code: str
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": "blocked", "code": self.code, "reason": self.reason}
        if self.details:
            payload["details"] = self.details
        return payload


NextStepResult = Union[Ready, Blocked]


@dataclass(frozen=True)
class _PlannedStep:
    seq: int
    step_code: str
    pool: str
    duration_minutes: int
    default_days_offset: int
    requires_precommit: bool
    slack_days: Optional[int]
    status: StepStatus
    completed_at: Optional[datetime]
    step_id: Optional[int] = None


@dataclass(frozen=True)
class _Plan:
    steps: List[_PlannedStep]
    pathway_slack_days: Optional[int]


# ---------------------------------------------------------------------------
# Plan construction
# ---------------------------------------------------------------------------


def _active_block_keys(session: Session, episode_id: int, now: datetime) -> List[str]:
    rows = session.execute(
        select(EpisodeBlock.key).where(
            EpisodeBlock.episode_id == episode_id,
            or_(EpisodeBlock.expires_at.is_(None), EpisodeBlock.expires_at > now),
        )
    ).scalars()
    return sorted(set(rows))


def _materialised_plan(steps: Sequence[EpisodeStep]) -> List[_PlannedStep]:
    return [
        _PlannedStep(
            seq=step.seq,
            step_code=step.step_code,
            pool=Pool(step.pool).value,
            duration_minutes=step.duration_minutes,
            default_days_offset=step.default_days_offset,
            requires_precommit=bool(step.requires_precommit),
            slack_days=step.slack_days,
            status=StepStatus(step.status),
            completed_at=step.completed_at,
            step_id=step.id,
        )
        for step in sorted(steps, key=lambda item: (item.seq, item.id))
    ]


def _template_plan(
    session: Session, episode: PatientEpisode, templates: Sequence[PathwayStep]
) -> List[_PlannedStep]:
    """Derive progress from completed appointments when no steps are materialised."""

    completed = list(
        session.execute(
            select(Appointment.start_time)
            .where(
                Appointment.episode_id == episode.id,
                Appointment.appointment_status == AppointmentStatus.COMPLETED,
            )
            .order_by(Appointment.start_time)
        ).scalars()
    )
    plan: List[_PlannedStep] = []
    for index, template in enumerate(templates):
        done = index < len(completed)
        plan.append(
            _PlannedStep(
                seq=index,
                step_code=template.step_code,
                pool=template.pool,
                duration_minutes=template.duration_minutes,
                default_days_offset=template.default_days_offset,
                requires_precommit=template.requires_precommit,
                slack_days=template.slack_days,
                status=StepStatus.COMPLETED if done else StepStatus.PENDING,
                completed_at=completed[index] if done else None,
            )
        )
    return plan


def _build_plan(
    session: Session, episode: PatientEpisode, now: datetime
) -> Union[_Plan, Blocked]:
    if episode.status != EpisodeStatus.OPEN:
        return Blocked(
            EPISODE_NOT_OPEN,
            f"Episode is {EpisodeStatus(episode.status).value}",
            {"episodeId": episode.id},
        )

    block_keys = _active_block_keys(session, episode.id, now)
    if block_keys:
        return Blocked(EPISODE_BLOCKED, "Episode has active scheduling blocks", {"keys": block_keys})

    refs: List[PathwayRef] = pathway_refs(session, episode)
    materialised = list(
        session.execute(select(EpisodeStep).where(EpisodeStep.episode_id == episode.id)).scalars()
    )

    if not refs and not materialised:
        return Blocked(
            NO_CARE_PATHWAY,
            "No care pathway assigned",
            {"suggestedPathwayIds": suggest_pathways(session, episode)},
        )

    if materialised:
        steps = _materialised_plan(materialised)
    else:
        try:
            templates = combined_steps(refs)
        except StepCatalogIssue as exc:
            logger.warning("step_catalog_invalid", episode_id=episode.id, **exc.details)
            return Blocked(INVALID_STEP_CATALOG, exc.message, exc.details)
        if not templates:
            return Blocked(
                INVALID_STEP_CATALOG,
                "Care pathway has no steps",
                {"pathwayIds": [ref.pathway.id for ref in refs]},
            )
        steps = _template_plan(session, episode, templates)

    return _Plan(steps=steps, pathway_slack_days=window_slack_days(refs))


# ---------------------------------------------------------------------------
# Window computation
# ---------------------------------------------------------------------------


def _slack_for(step: _PlannedStep, plan: _Plan) -> int:
    if step.slack_days is not None:
        return step.slack_days
    if plan.pathway_slack_days is not None:
        return plan.pathway_slack_days
    return get_scheduling_settings().default_window_slack_days


def _prior_completion(plan: _Plan, seq: int, episode: PatientEpisode) -> datetime:
    completions = [
        ensure_utc(step.completed_at)
        for step in plan.steps
        if step.seq < seq and step.status == StepStatus.COMPLETED and step.completed_at is not None
    ]
    if completions:
        return max(completions)
    return ensure_utc(episode.opened_at)


def _project(
    step: _PlannedStep,
    anchor: datetime,
    plan: _Plan,
    now: datetime,
    labels: Optional[Dict[str, str]],
) -> StepProjection:
    earliest = max(now, add_days(anchor, step.default_days_offset))
    latest = add_days(earliest, _slack_for(step, plan))
    return StepProjection(
        step_code=step.step_code,
        pool=step.pool,
        duration_minutes=step.duration_minutes,
        earliest_date=earliest,
        latest_date=latest,
        seq=step.seq,
        status=step.status.value,
        requires_precommit=step.requires_precommit,
        step_id=step.step_id,
        label=(labels or {}).get(step.step_code),
    )


def _labels(session: Session, catalog: Optional[StepCatalogCache]) -> Optional[Dict[str, str]]:
    if catalog is None:
        return None
    return catalog.get(LABELS, session)


def _resolve(
    session: Session,
    episode_id: int,
    now: Optional[datetime],
    catalog: Optional[StepCatalogCache],
) -> Union[List[StepProjection], Blocked]:
    now = ensure_utc(now) if now is not None else utc_now()
    episode = get_episode(session, episode_id)
    plan = _build_plan(session, episode, now)
    if isinstance(plan, Blocked):
        return plan

    open_steps = [step for step in plan.steps if step.status in _OPEN_STATUSES]
    if not open_steps:
        return Blocked(PATHWAY_COMPLETE, "All pathway steps are completed or skipped")

    labels = _labels(session, catalog)
    projections: List[StepProjection] = []
    anchor = _prior_completion(plan, open_steps[0].seq, episode)
    for step in open_steps:
        projection = _project(step, anchor, plan, now, labels)
        projections.append(projection)
        anchor = projection.earliest_date
    return projections


def next_required_step(
    session: Session,
    episode_id: int,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[StepCatalogCache] = None,
) -> NextStepResult:
    """Return the first pending or scheduled step of the episode with its window."""

    result = _resolve(session, episode_id, now, catalog)
    if isinstance(result, Blocked):
        return result
    return Ready(result[0])


def all_pending_steps(
    session: Session,
    episode_id: int,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[StepCatalogCache] = None,
) -> Union[List[StepProjection], Blocked]:
    """Return every open step with cumulative windows.

    Each window after the first is anchored on the previous step's earliest
    date, so the list reads as a provisional schedule for the remainder of
    the episode.
    """

    return _resolve(session, episode_id, now, catalog)


__all__ = [
    "NO_CARE_PATHWAY",
    "INVALID_STEP_CATALOG",
    "EPISODE_BLOCKED",
    "EPISODE_NOT_OPEN",
    "PATHWAY_COMPLETE",
    "StepProjection",
    "Ready",
    "Blocked",
    "NextStepResult",
    "next_required_step",
    "all_pending_steps",
]
