"""Slot intents: soft reservations projected from pending steps, and their
conversion into hard appointments.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from carepath.auth import Caller
from carepath.db.models import (
    Appointment,
    EpisodeStatus,
    IntentState,
    Pool,
    SlotIntent,
    SlotState,
    StepStatus,
    TimeSlot,
)
from carepath.errors import ConflictError, NoFreeSlotError, OneHardNextViolation
from carepath.invariant import check_one_hard_next, record_override
from carepath.locking import get_episode, lock_episode, lock_intent, lock_slot, lock_step
from carepath.metrics import BOOKINGS_TOTAL, ONE_HARD_NEXT_REJECTIONS
from carepath.next_step import EPISODE_NOT_OPEN, Blocked, StepProjection, all_pending_steps
from carepath.pathways import StepCatalogIssue, combined_steps, pathway_refs, steps_hash
from carepath.risk import RiskAssessor, RiskSettings, RuleBasedRiskAssessor
from carepath.settings import get_scheduling_settings
from carepath.slots import find_candidate_slot, require_free, transition
from carepath.step_catalog import StepCatalogCache
from carepath.time_utils import ensure_utc, isoformat, utc_now

logger = structlog.get_logger(__name__)

EPISODE_CLOSED = "episode_closed"
PATHWAY_CHANGED = "pathway_changed"
PROVIDER_CHANGED = "provider_changed"
STAGE_CHANGED = "stage_changed"
STEPS_CHANGED = "steps_changed"
STEP_NOT_PENDING = "step_not_pending"

INVALIDATION_REASONS = frozenset(
    {EPISODE_CLOSED, PATHWAY_CHANGED, PROVIDER_CHANGED, STAGE_CHANGED, STEPS_CHANGED}
)


@dataclass
class ProjectionResult:
    intents: List[SlotIntent]
    expired: int = 0
    blocked: Optional[Blocked] = None


@dataclass
class ConversionResult:
    appointment: Appointment
    slot: TimeSlot
    intent: SlotIntent
    override_audit_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Invalidation and projection
# ---------------------------------------------------------------------------


def invalidate_intents(
    session: Session, episode_id: int, reason: str, *, now: Optional[datetime] = None
) -> int:
    """Expire every open intent of the episode, recording ``reason``."""

    if reason not in INVALIDATION_REASONS:
        raise ValueError(f"Unknown intent invalidation reason: {reason}")
    result = session.execute(
        update(SlotIntent)
        .where(SlotIntent.episode_id == episode_id, SlotIntent.state == IntentState.OPEN)
        .values(state=IntentState.EXPIRED, expired_reason=reason, updated_at=now or utc_now())
        .execution_options(synchronize_session="fetch")
    )
    count = result.rowcount or 0
    if count:
        logger.info("slot_intents_invalidated", episode_id=episode_id, reason=reason, count=count)
    return count


def expire_step_intents(
    session: Session,
    episode_id: int,
    step_code: str,
    step_seq: Optional[int],
    *,
    now: Optional[datetime] = None,
) -> int:
    """Expire the open intents of one step once it has left ``pending``."""

    stmt = select(SlotIntent).where(
        SlotIntent.episode_id == episode_id,
        SlotIntent.step_code == step_code,
        SlotIntent.step_seq == step_seq,
        SlotIntent.state == IntentState.OPEN,
    )
    count = 0
    for intent in session.execute(stmt).scalars():
        # the identity map may already hold a conversion of this row
        if IntentState(intent.state) != IntentState.OPEN:
            continue
        intent.state = IntentState.EXPIRED
        intent.expired_reason = STEP_NOT_PENDING
        intent.updated_at = now or utc_now()
        count += 1
    if count:
        logger.info(
            "slot_intents_invalidated",
            episode_id=episode_id,
            step_code=step_code,
            reason=STEP_NOT_PENDING,
            count=count,
        )
    return count


def _pathway_hash(session: Session, episode_id: int) -> Optional[str]:
    refs = pathway_refs(session, get_episode(session, episode_id))
    try:
        return steps_hash(combined_steps(refs))
    except StepCatalogIssue:
        return None


def project_intents(
    session: Session,
    episode_id: int,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[StepCatalogCache] = None,
) -> ProjectionResult:
    """Refresh the episode's open intents from its pending steps.

    Intents whose pathway hash no longer matches, or whose step is no longer
    pending, are expired.  One intent per pending step is then upserted on
    ``(episode_id, step_code, step_seq)``; converted intents are left alone.
    """

    now = ensure_utc(now) if now is not None else utc_now()
    settings = get_scheduling_settings()
    lock_episode(session, episode_id)

    projections = all_pending_steps(session, episode_id, now=now, catalog=catalog)
    if isinstance(projections, Blocked):
        expired = 0
        if projections.code == EPISODE_NOT_OPEN:
            expired = invalidate_intents(session, episode_id, EPISODE_CLOSED, now=now)
        return ProjectionResult(intents=[], expired=expired, blocked=projections)

    pending: List[StepProjection] = [
        projection for projection in projections if projection.status == StepStatus.PENDING.value
    ]
    wanted: Set[Tuple[str, int]] = {(p.step_code, p.seq) for p in pending}
    current_hash = _pathway_hash(session, episode_id)

    expired = 0
    open_intents = session.execute(
        select(SlotIntent).where(
            SlotIntent.episode_id == episode_id, SlotIntent.state == IntentState.OPEN
        )
    ).scalars()
    for intent in open_intents:
        if intent.steps_hash != current_hash:
            reason = PATHWAY_CHANGED
        elif (intent.step_code, intent.step_seq) not in wanted:
            reason = STEP_NOT_PENDING
        else:
            continue
        intent.state = IntentState.EXPIRED
        intent.expired_reason = reason
        expired += 1

    existing = {
        (intent.step_code, intent.step_seq): intent
        for intent in session.execute(
            select(SlotIntent).where(SlotIntent.episode_id == episode_id)
        ).scalars()
    }
    grace = timedelta(days=settings.intent_expiry_grace_days)
    refreshed: List[SlotIntent] = []
    for projection in pending:
        key = (projection.step_code, projection.seq)
        intent = existing.get(key)
        if intent is None:
            intent = SlotIntent(episode_id=episode_id, step_code=projection.step_code, step_seq=projection.seq)
            session.add(intent)
        elif IntentState(intent.state) == IntentState.CONVERTED:
            continue
        intent.pool = Pool(projection.pool)
        intent.duration_minutes = projection.duration_minutes
        intent.window_start = projection.earliest_date
        intent.window_end = projection.latest_date
        intent.requires_precommit = projection.requires_precommit
        intent.steps_hash = current_hash
        intent.expires_at = projection.latest_date + grace
        intent.state = IntentState.OPEN
        intent.expired_reason = None
        refreshed.append(intent)

    session.flush()
    logger.info(
        "slot_intents_projected",
        episode_id=episode_id,
        open=len(refreshed),
        expired=expired,
    )
    return ProjectionResult(intents=refreshed, expired=expired)


def list_intents(session: Session, episode_id: int, *, state: Optional[str] = None) -> List[SlotIntent]:
    stmt = (
        select(SlotIntent)
        .where(SlotIntent.episode_id == episode_id)
        .order_by(SlotIntent.step_seq, SlotIntent.id)
    )
    if state:
        stmt = stmt.where(SlotIntent.state == IntentState(state))
    return list(session.execute(stmt).scalars())


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def assess_risk_safely(
    assessor: RiskAssessor,
    session: Session,
    *,
    patient_id: int,
    start_time: datetime,
    caller_email: Optional[str],
    now: datetime,
) -> RiskSettings:
    """Run the risk collaborator; a failure books without a hold."""

    try:
        return assessor.assess(
            session, patient_id=patient_id, start_time=start_time, caller_email=caller_email, now=now
        )
    except Exception:
        logger.exception("no_show_risk_assessment_failed", patient_id=patient_id)
        return RiskSettings(no_show_risk=None, requires_confirmation=False, hold_expires_at=None)


def convert_intent(
    session: Session,
    intent_id: int,
    caller: Caller,
    *,
    time_slot_id: Optional[int] = None,
    requires_precommit: bool = False,
    risk_assessor: Optional[RiskAssessor] = None,
    now: Optional[datetime] = None,
) -> ConversionResult:
    """Turn an open intent into an appointment on a concrete free slot.

    Runs inside the caller's transaction and takes row locks in the fixed
    order intent, episode, episode step, slot.  Any raised error leaves the transaction to
    be rolled back by the caller, so a failed conversion never leaves the
    slot or the intent modified.
    """

    now = ensure_utc(now) if now is not None else utc_now()

    intent = lock_intent(session, intent_id)
    if IntentState(intent.state) != IntentState.OPEN:
        raise ConflictError(
            "Slot intent is no longer open",
            code="INTENT_NOT_OPEN",
            details={"intentId": intent_id, "state": IntentState(intent.state).value},
        )
    if intent.expires_at is not None and ensure_utc(intent.expires_at) <= now:
        raise ConflictError(
            "Slot intent has expired", code="INTENT_EXPIRED", details={"intentId": intent_id}
        )

    episode = lock_episode(session, intent.episode_id)
    if EpisodeStatus(episode.status) != EpisodeStatus.OPEN:
        raise ConflictError(
            "Episode is not open", code="EPISODE_NOT_OPEN", details={"episodeId": episode.id}
        )

    step = lock_step(session, episode.id, intent.step_code, intent.step_seq)
    if step is not None and StepStatus(step.status) != StepStatus.PENDING:
        BOOKINGS_TOTAL.labels(path="intent", outcome="step_not_pending").inc()
        raise ConflictError(
            "The step of this intent is no longer pending",
            code="STEP_NOT_PENDING",
            details={
                "intentId": intent_id,
                "stepId": step.id,
                "stepStatus": StepStatus(step.status).value,
            },
        )

    precommit = (
        requires_precommit
        or bool(intent.requires_precommit)
        or bool(step is not None and step.requires_precommit)
    )
    pool = Pool(intent.pool).value
    check = check_one_hard_next(
        session, episode.id, pool, requires_precommit=precommit, step_code=intent.step_code, now=now
    )
    if not check.allowed:
        ONE_HARD_NEXT_REJECTIONS.labels(path="intent").inc()
        BOOKINGS_TOTAL.labels(path="intent", outcome="one_hard_next").inc()
        raise OneHardNextViolation(
            check.reason or "Episode already has a future work appointment",
            details={
                "episodeId": episode.id,
                "blockingAppointmentIds": list(check.blocking_appointment_ids),
            },
        )

    if time_slot_id is not None:
        slot = lock_slot(session, time_slot_id)
        require_free(slot, now=now)
    else:
        slot = find_candidate_slot(
            session,
            pool=pool,
            duration_minutes=intent.duration_minutes,
            window_start=intent.window_start,
            window_end=intent.window_end,
            now=now,
        )
        if slot is None:
            BOOKINGS_TOTAL.labels(path="intent", outcome="no_slot").inc()
            raise NoFreeSlotError(
                "No free slot matches the intent window",
                details={
                    "intentId": intent_id,
                    "windowStart": isoformat(intent.window_start),
                    "windowEnd": isoformat(intent.window_end),
                },
            )

    risk = assess_risk_safely(
        risk_assessor or RuleBasedRiskAssessor(),
        session,
        patient_id=episode.patient_id,
        start_time=slot.start_time,
        caller_email=caller.email,
        now=now,
    )

    appointment = Appointment(
        patient_id=episode.patient_id,
        episode_id=episode.id,
        time_slot_id=slot.id,
        start_time=slot.start_time,
        duration_minutes=intent.duration_minutes,
        pool=Pool(pool),
        requires_precommit=check.requires_override,
        step_code=intent.step_code,
        step_seq=intent.step_seq,
        slot_intent_id=intent.id,
        created_via="worklist",
        created_by=caller.user_id,
        no_show_risk=risk.no_show_risk,
        requires_confirmation=risk.requires_confirmation,
        hold_expires_at=risk.hold_expires_at,
    )
    session.add(appointment)
    transition(slot, SlotState.BOOKED)
    session.flush()

    intent.state = IntentState.CONVERTED
    intent.converted_appointment_id = appointment.id

    from carepath.episode_steps import mark_scheduled

    mark_scheduled(session, appointment)

    audit_id = None
    if check.requires_override:
        audit = record_override(
            session,
            episode_id=episode.id,
            user_id=caller.user_id,
            override_reason=f"precommit: {intent.step_code}",
            appointment_id=appointment.id,
        )
        audit_id = audit.id

    session.flush()
    BOOKINGS_TOTAL.labels(path="intent", outcome="booked").inc()
    logger.info(
        "slot_intent_converted",
        intent_id=intent.id,
        appointment_id=appointment.id,
        slot_id=slot.id,
        episode_id=episode.id,
        precommit_override=check.requires_override,
    )
    return ConversionResult(appointment=appointment, slot=slot, intent=intent, override_audit_id=audit_id)


def serialize_intent(intent: SlotIntent) -> Dict[str, Any]:
    return {
        "id": intent.id,
        "episodeId": intent.episode_id,
        "stepCode": intent.step_code,
        "stepSeq": intent.step_seq,
        "pool": Pool(intent.pool).value,
        "durationMinutes": intent.duration_minutes,
        "windowStart": isoformat(intent.window_start),
        "windowEnd": isoformat(intent.window_end),
        "requiresPrecommit": bool(intent.requires_precommit),
        "state": IntentState(intent.state).value,
        "expiresAt": isoformat(intent.expires_at),
        "expiredReason": intent.expired_reason,
        "convertedAppointmentId": intent.converted_appointment_id,
    }


__all__ = [
    "EPISODE_CLOSED",
    "PATHWAY_CHANGED",
    "PROVIDER_CHANGED",
    "STAGE_CHANGED",
    "STEPS_CHANGED",
    "INVALIDATION_REASONS",
    "ProjectionResult",
    "ConversionResult",
    "invalidate_intents",
    "project_intents",
    "list_intents",
    "assess_risk_safely",
    "convert_intent",
    "serialize_intent",
]
