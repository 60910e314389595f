"""Episode lifecycle: opening, closing, pathway assignment, stage and blocks."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from carepath.db.models import (
    CarePathway,
    EpisodeBlock,
    EpisodePathway,
    EpisodeStatus,
    EpisodeStep,
    Patient,
    PathwayStatus,
    PatientEpisode,
    StageEvent,
    User,
)
from carepath.errors import ConflictError, NotFoundError, ValidationError
from carepath.intents import (
    EPISODE_CLOSED,
    PATHWAY_CHANGED,
    PROVIDER_CHANGED,
    STAGE_CHANGED,
    invalidate_intents,
)
from carepath.locking import get_episode, lock_episode
from carepath.pathways import get_pathway, pathway_refs
from carepath.time_utils import ensure_utc, isoformat, utc_now

logger = structlog.get_logger(__name__)


def _require_patient(session: Session, patient_id: int) -> Patient:
    patient = session.get(Patient, patient_id)
    if patient is None:
        raise NotFoundError("Patient not found", code="PATIENT_NOT_FOUND")
    return patient


def _require_provider(session: Session, provider_id: int) -> User:
    provider = session.get(User, provider_id)
    if provider is None or not provider.active:
        raise NotFoundError("Provider not found", code="PROVIDER_NOT_FOUND")
    return provider


def _active_pathway(session: Session, pathway_id: int) -> CarePathway:
    pathway = get_pathway(session, pathway_id)
    if PathwayStatus(pathway.status) != PathwayStatus.ACTIVE:
        raise ConflictError(
            "Care pathway has been superseded",
            code="PATHWAY_SUPERSEDED",
            details={"pathwayId": pathway_id},
        )
    return pathway


def _link_pathway(session: Session, episode: PatientEpisode, pathway: CarePathway) -> EpisodePathway:
    next_ordinal = session.execute(
        select(func.coalesce(func.max(EpisodePathway.ordinal) + 1, 0)).where(
            EpisodePathway.episode_id == episode.id
        )
    ).scalar_one()
    link = EpisodePathway(episode_id=episode.id, care_pathway_id=pathway.id, ordinal=next_ordinal)
    session.add(link)
    session.flush()
    if episode.care_pathway_id is None:
        episode.care_pathway_id = pathway.id
    return link


def open_episode(
    session: Session,
    *,
    patient_id: int,
    reason: Optional[str] = None,
    provider_id: Optional[int] = None,
    care_pathway_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> PatientEpisode:
    """Open a new episode, force-closing any episode the patient still has open."""

    now = ensure_utc(now) if now is not None else utc_now()
    _require_patient(session, patient_id)
    if provider_id is not None:
        _require_provider(session, provider_id)

    previous = session.execute(
        select(PatientEpisode)
        .where(PatientEpisode.patient_id == patient_id, PatientEpisode.status == EpisodeStatus.OPEN)
        .order_by(PatientEpisode.id)
        .with_for_update()
    ).scalars()
    for episode in previous:
        episode.status = EpisodeStatus.CLOSED
        episode.closed_at = now
        invalidate_intents(session, episode.id, EPISODE_CLOSED, now=now)
        logger.info("episode_force_closed", episode_id=episode.id, patient_id=patient_id)

    episode = PatientEpisode(
        patient_id=patient_id,
        reason=reason,
        assigned_provider_id=provider_id,
        status=EpisodeStatus.OPEN,
        opened_at=now,
    )
    session.add(episode)
    session.flush()
    if care_pathway_id is not None:
        _link_pathway(session, episode, _active_pathway(session, care_pathway_id))
    logger.info("episode_opened", episode_id=episode.id, patient_id=patient_id)
    return episode


def close_episode(
    session: Session, episode_id: int, *, status: str = EpisodeStatus.CLOSED.value, now: Optional[datetime] = None
) -> PatientEpisode:
    """Close (or pause) an episode and expire its open intents."""

    now = ensure_utc(now) if now is not None else utc_now()
    target = EpisodeStatus(status)
    if target == EpisodeStatus.OPEN:
        raise ValidationError("Use a closing status", code="INVALID_EPISODE_STATUS")
    episode = lock_episode(session, episode_id)
    if EpisodeStatus(episode.status) == EpisodeStatus.CLOSED:
        return episode
    episode.status = target
    if target == EpisodeStatus.CLOSED:
        episode.closed_at = now
    invalidate_intents(session, episode_id, EPISODE_CLOSED, now=now)
    session.flush()
    logger.info("episode_closed", episode_id=episode_id, status=target.value)
    return episode


def assign_pathway(
    session: Session, episode_id: int, care_pathway_id: int, *, now: Optional[datetime] = None
) -> EpisodePathway:
    """Append a pathway reference to the episode.

    An episode that so far only carried the scalar ``care_pathway_id`` has
    that pathway linked first, and its already materialised steps are
    attached to the new link.
    """

    episode = lock_episode(session, episode_id)
    if EpisodeStatus(episode.status) != EpisodeStatus.OPEN:
        raise ValidationError(
            "Pathways can only be assigned to open episodes",
            code="EPISODE_NOT_OPEN",
            details={"episodeId": episode_id},
        )
    pathway = _active_pathway(session, care_pathway_id)

    refs = pathway_refs(session, episode)
    if refs and refs[0].episode_pathway_id is None:
        legacy = _link_pathway(session, episode, refs[0].pathway)
        session.execute(
            update(EpisodeStep)
            .where(EpisodeStep.episode_id == episode_id, EpisodeStep.source_episode_pathway_id.is_(None))
            .values(source_episode_pathway_id=legacy.id)
            .execution_options(synchronize_session="fetch")
        )

    if any(ref.pathway.id == pathway.id for ref in pathway_refs(session, episode)):
        raise ConflictError(
            "Pathway already assigned to the episode",
            code="PATHWAY_ALREADY_ASSIGNED",
            details={"episodeId": episode_id, "pathwayId": pathway.id},
        )

    link = _link_pathway(session, episode, pathway)
    invalidate_intents(session, episode_id, PATHWAY_CHANGED, now=now)
    logger.info("episode_pathway_assigned", episode_id=episode_id, pathway_id=pathway.id, ordinal=link.ordinal)
    return link


def record_stage_event(
    session: Session,
    episode_id: int,
    stage_code: str,
    *,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> StageEvent:
    if not stage_code or not stage_code.strip():
        raise ValidationError("stage_code is required", code="INVALID_STAGE")
    now = ensure_utc(now) if now is not None else utc_now()
    lock_episode(session, episode_id)
    event = StageEvent(episode_id=episode_id, stage_code=stage_code.strip(), user_id=user_id, at=now)
    session.add(event)
    invalidate_intents(session, episode_id, STAGE_CHANGED, now=now)
    session.flush()
    logger.info("episode_stage_recorded", episode_id=episode_id, stage_code=event.stage_code)
    return event


def reassign_provider(
    session: Session, episode_id: int, provider_id: int, *, now: Optional[datetime] = None
) -> PatientEpisode:
    episode = lock_episode(session, episode_id)
    _require_provider(session, provider_id)
    if episode.assigned_provider_id == provider_id:
        return episode
    episode.assigned_provider_id = provider_id
    invalidate_intents(session, episode_id, PROVIDER_CHANGED, now=now)
    session.flush()
    logger.info("episode_provider_reassigned", episode_id=episode_id, provider_id=provider_id)
    return episode


def add_block(
    session: Session,
    episode_id: int,
    key: str,
    *,
    note: Optional[str] = None,
    expires_in_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> EpisodeBlock:
    """Park the episode; the next-step engine reports it blocked until expiry."""

    if not key or not key.strip():
        raise ValidationError("Block key is required", code="INVALID_BLOCK")
    now = ensure_utc(now) if now is not None else utc_now()
    lock_episode(session, episode_id)
    block = EpisodeBlock(
        episode_id=episode_id,
        key=key.strip(),
        note=note,
        created_at=now,
        expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    session.add(block)
    session.flush()
    logger.info("episode_block_added", episode_id=episode_id, key=block.key)
    return block


def latest_stage(session: Session, episode_id: int) -> Optional[StageEvent]:
    return session.execute(
        select(StageEvent)
        .where(StageEvent.episode_id == episode_id)
        .order_by(StageEvent.at.desc(), StageEvent.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def serialize_episode(session: Session, episode: PatientEpisode) -> Dict[str, Any]:
    stage = latest_stage(session, episode.id)
    pathways: List[Dict[str, Any]] = [
        {
            "episodePathwayId": ref.episode_pathway_id,
            "pathwayId": ref.pathway.id,
            "name": ref.pathway.name,
            "version": ref.pathway.version,
            "ordinal": ref.ordinal,
        }
        for ref in pathway_refs(session, episode)
    ]
    return {
        "id": episode.id,
        "patientId": episode.patient_id,
        "status": EpisodeStatus(episode.status).value,
        "reason": episode.reason,
        "assignedProviderId": episode.assigned_provider_id,
        "carePathwayId": episode.care_pathway_id,
        "pathways": pathways,
        "stage": {"code": stage.stage_code, "at": isoformat(stage.at)} if stage else None,
        "openedAt": isoformat(episode.opened_at),
        "closedAt": isoformat(episode.closed_at),
    }


def load_episode(session: Session, episode_id: int) -> PatientEpisode:
    return get_episode(session, episode_id)


__all__ = [
    "open_episode",
    "close_episode",
    "assign_pathway",
    "record_stage_event",
    "reassign_provider",
    "add_block",
    "latest_stage",
    "serialize_episode",
    "load_episode",
]
