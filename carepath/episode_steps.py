"""Materialised episode steps: generation, manual transitions, deletion, reordering."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from carepath.db.models import (
    Appointment,
    EpisodeStatus,
    EpisodeStep,
    EpisodeStepAudit,
    Pool,
    StepStatus,
)
from carepath.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from carepath.intents import STEPS_CHANGED, expire_step_intents, invalidate_intents
from carepath.locking import lock_episode
from carepath.pathways import PathwayRef, parse_pathway_steps, pathway_refs
from carepath.time_utils import isoformat, utc_now

logger = structlog.get_logger(__name__)

_MANUAL_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.SKIPPED}),
    StepStatus.SCHEDULED: frozenset({StepStatus.SKIPPED}),
    StepStatus.SKIPPED: frozenset({StepStatus.PENDING}),
    StepStatus.COMPLETED: frozenset(),
}
_DELETABLE = (StepStatus.PENDING, StepStatus.SKIPPED)


@dataclass
class GenerationResult:
    steps: List[EpisodeStep]
    generated: bool
    created: int = 0


def list_steps(session: Session, episode_id: int) -> List[EpisodeStep]:
    stmt = (
        select(EpisodeStep)
        .where(EpisodeStep.episode_id == episode_id)
        .order_by(EpisodeStep.seq, EpisodeStep.id)
    )
    return list(session.execute(stmt).scalars())


def _audit(
    session: Session,
    step: EpisodeStep,
    action: str,
    user_id: Optional[int],
    details: Optional[Dict[str, Any]] = None,
) -> None:
    session.add(
        EpisodeStepAudit(
            episode_id=step.episode_id,
            step_id=step.id,
            step_code=step.step_code,
            action=action,
            user_id=user_id,
            details=details,
        )
    )


def _has_steps_for(session: Session, episode_id: int, ref: PathwayRef) -> bool:
    stmt = select(func.count(EpisodeStep.id)).where(EpisodeStep.episode_id == episode_id)
    if ref.episode_pathway_id is None:
        stmt = stmt.where(EpisodeStep.source_episode_pathway_id.is_(None))
    else:
        stmt = stmt.where(EpisodeStep.source_episode_pathway_id == ref.episode_pathway_id)
    return (session.execute(stmt).scalar_one() or 0) > 0


def generate_steps(
    session: Session,
    episode_id: int,
    *,
    episode_pathway_id: Optional[int] = None,
) -> GenerationResult:
    """Materialise pathway steps for the episode.

    Generation is idempotent per pathway reference: a reference that already
    has steps is skipped, and the result reports ``generated=False`` when
    nothing was inserted.  New steps are appended after the current highest
    ``seq``.
    """

    episode = lock_episode(session, episode_id)
    if EpisodeStatus(episode.status) != EpisodeStatus.OPEN:
        raise ValidationError(
            "Steps can only be generated for open episodes",
            code="EPISODE_NOT_OPEN",
            details={"episodeId": episode_id},
        )

    refs = pathway_refs(session, episode)
    if not refs:
        raise ConflictError(
            "No care pathway assigned", code="NO_CARE_PATHWAY", details={"episodeId": episode_id}
        )
    if episode_pathway_id is not None:
        refs = [ref for ref in refs if ref.episode_pathway_id == episode_pathway_id]
        if not refs:
            raise NotFoundError("Episode pathway not found", code="EPISODE_PATHWAY_NOT_FOUND")

    next_seq = session.execute(
        select(func.coalesce(func.max(EpisodeStep.seq) + 1, 0)).where(
            EpisodeStep.episode_id == episode_id
        )
    ).scalar_one()

    created = 0
    for ref in refs:
        if _has_steps_for(session, episode_id, ref):
            continue
        templates = parse_pathway_steps(ref.pathway.steps_json, pathway_id=ref.pathway.id)
        if not templates:
            raise ValidationError(
                "Care pathway has no steps",
                code="INVALID_STEP_CATALOG",
                details={"pathwayId": ref.pathway.id},
            )
        for index, template in enumerate(templates):
            session.add(
                EpisodeStep(
                    episode_id=episode_id,
                    source_episode_pathway_id=ref.episode_pathway_id,
                    step_code=template.step_code,
                    pathway_order_index=index,
                    seq=next_seq,
                    pool=Pool(template.pool),
                    duration_minutes=template.duration_minutes,
                    default_days_offset=template.default_days_offset,
                    slack_days=template.slack_days,
                    requires_precommit=template.requires_precommit,
                    status=StepStatus.PENDING,
                )
            )
            next_seq += 1
            created += 1

    session.flush()
    if created:
        logger.info("episode_steps_generated", episode_id=episode_id, created=created)
    return GenerationResult(steps=list_steps(session, episode_id), generated=created > 0, created=created)


def _locked_step(session: Session, episode_id: int, step_id: int) -> EpisodeStep:
    lock_episode(session, episode_id)
    step = session.execute(
        select(EpisodeStep)
        .where(EpisodeStep.id == step_id, EpisodeStep.episode_id == episode_id)
        .with_for_update()
    ).scalar_one_or_none()
    if step is None:
        raise NotFoundError("Episode step not found", code="STEP_NOT_FOUND")
    return step


def transition_step(
    session: Session,
    episode_id: int,
    step_id: int,
    target: str,
    *,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> EpisodeStep:
    """Apply a manual status change (skip or re-activate)."""

    step = _locked_step(session, episode_id, step_id)
    current = StepStatus(step.status)
    try:
        wanted = StepStatus(target)
    except ValueError:
        raise ValidationError(f"Unknown step status {target!r}", code="INVALID_STEP_STATUS")
    if wanted == current:
        return step
    if wanted not in _MANUAL_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Step cannot move from {current.value} to {wanted.value}",
            details={"stepId": step_id, "from": current.value, "to": wanted.value},
        )

    step.status = wanted
    if wanted == StepStatus.SKIPPED:
        step.completed_at = now or utc_now()
        expire_step_intents(session, episode_id, step.step_code, step.seq, now=now)
    else:
        step.completed_at = None
        step.appointment_id = None
    _audit(session, step, f"status:{current.value}->{wanted.value}", user_id)
    session.flush()
    logger.info(
        "episode_step_transitioned",
        episode_id=episode_id,
        step_id=step_id,
        from_status=current.value,
        to_status=wanted.value,
    )
    return step


def _resequence(session: Session, episode_id: int) -> List[EpisodeStep]:
    steps = list_steps(session, episode_id)
    for position, step in enumerate(steps):
        step.seq = position
    session.flush()
    return steps


def delete_step(
    session: Session, episode_id: int, step_id: int, *, user_id: Optional[int] = None
) -> List[EpisodeStep]:
    """Delete a pending or skipped step and re-pack the remaining ``seq`` values."""

    step = _locked_step(session, episode_id, step_id)
    status = StepStatus(step.status)
    if status not in _DELETABLE:
        raise InvalidTransitionError(
            f"Only pending or skipped steps can be deleted (step is {status.value})",
            code="STEP_NOT_DELETABLE",
            details={"stepId": step_id, "status": status.value},
        )
    _audit(session, step, "delete", user_id, {"seq": step.seq, "status": status.value})
    session.delete(step)
    session.flush()
    remaining = _resequence(session, episode_id)
    invalidate_intents(session, episode_id, STEPS_CHANGED)
    logger.info("episode_step_deleted", episode_id=episode_id, step_id=step_id, remaining=len(remaining))
    return remaining


def reorder_steps(
    session: Session, episode_id: int, step_ids: Sequence[int], *, user_id: Optional[int] = None
) -> List[EpisodeStep]:
    """Rewrite ``seq`` so steps follow ``step_ids``; every step must be listed once."""

    lock_episode(session, episode_id)
    steps = {step.id: step for step in list_steps(session, episode_id)}
    unknown = [step_id for step_id in step_ids if step_id not in steps]
    if unknown:
        raise ValidationError(
            "Unknown step ids", code="UNKNOWN_STEP_IDS", details={"stepIds": unknown}
        )
    if len(step_ids) != len(steps) or len(set(step_ids)) != len(step_ids):
        raise ValidationError(
            "Every step must be listed exactly once",
            code="INCOMPLETE_STEP_ORDER",
            details={"received": len(step_ids), "required": len(steps)},
        )
    for position, step_id in enumerate(step_ids):
        steps[step_id].seq = position
    session.flush()
    invalidate_intents(session, episode_id, STEPS_CHANGED)
    logger.info("episode_steps_reordered", episode_id=episode_id, user_id=user_id)
    return list_steps(session, episode_id)


# ---------------------------------------------------------------------------
# Booking hooks
# ---------------------------------------------------------------------------


def _step_for(session: Session, episode_id: int, step_code: str, step_seq: Optional[int]) -> Optional[EpisodeStep]:
    stmt = select(EpisodeStep).where(
        EpisodeStep.episode_id == episode_id, EpisodeStep.step_code == step_code
    )
    if step_seq is not None:
        stmt = stmt.where(EpisodeStep.seq == step_seq)
    stmt = stmt.order_by(EpisodeStep.seq).limit(1)
    return session.execute(stmt).scalar_one_or_none()


def mark_scheduled(session: Session, appointment: Appointment) -> Optional[EpisodeStep]:
    """Link a new booking to the pending step it fulfils."""

    if appointment.episode_id is None or not appointment.step_code:
        return None
    step = _step_for(session, appointment.episode_id, appointment.step_code, appointment.step_seq)
    if step is None or StepStatus(step.status) != StepStatus.PENDING:
        return None
    step.status = StepStatus.SCHEDULED
    step.appointment_id = appointment.id
    expire_step_intents(session, step.episode_id, step.step_code, step.seq)
    return step


def mark_completed(session: Session, appointment: Appointment) -> Optional[EpisodeStep]:
    step = _linked_step(session, appointment)
    if step is None or StepStatus(step.status) == StepStatus.COMPLETED:
        return step
    step.status = StepStatus.COMPLETED
    step.completed_at = appointment.start_time
    return step


def reopen(session: Session, appointment: Appointment) -> Optional[EpisodeStep]:
    """Return the fulfilled step to ``pending`` after a cancellation or no-show."""

    step = _linked_step(session, appointment)
    if step is None or StepStatus(step.status) != StepStatus.SCHEDULED:
        return step
    step.status = StepStatus.PENDING
    step.appointment_id = None
    return step


def _linked_step(session: Session, appointment: Appointment) -> Optional[EpisodeStep]:
    if appointment.episode_id is None:
        return None
    return session.execute(
        select(EpisodeStep).where(EpisodeStep.appointment_id == appointment.id)
    ).scalar_one_or_none()


def serialize_step(step: EpisodeStep) -> Dict[str, Any]:
    return {
        "id": step.id,
        "episodeId": step.episode_id,
        "stepCode": step.step_code,
        "seq": step.seq,
        "pathwayOrderIndex": step.pathway_order_index,
        "sourceEpisodePathwayId": step.source_episode_pathway_id,
        "pool": Pool(step.pool).value,
        "durationMinutes": step.duration_minutes,
        "defaultDaysOffset": step.default_days_offset,
        "requiresPrecommit": bool(step.requires_precommit),
        "status": StepStatus(step.status).value,
        "appointmentId": step.appointment_id,
        "completedAt": isoformat(step.completed_at),
    }


__all__ = [
    "GenerationResult",
    "list_steps",
    "generate_steps",
    "transition_step",
    "delete_step",
    "reorder_steps",
    "mark_scheduled",
    "mark_completed",
    "reopen",
    "serialize_step",
]
