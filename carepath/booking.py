"""Booking paths outside intent conversion: direct and pending bookings,
cancellation, outcomes and hold expiry.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from carepath.auth import Caller
from carepath.db.models import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusEvent,
    ApprovalStatus,
    EpisodeStatus,
    Patient,
    PatientEpisode,
    Pool,
    SlotState,
    StepStatus,
    TimeSlot,
)
from carepath.episode_steps import mark_completed, mark_scheduled, reopen
from carepath.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OneHardNextViolation,
    PermissionDeniedError,
    ValidationError,
)
from carepath.intents import assess_risk_safely
from carepath.invariant import check_one_hard_next, record_override
from carepath.locking import lock_appointment, lock_episode, lock_slot
from carepath.metrics import BOOKINGS_TOTAL, HOLDS_EXPIRED, ONE_HARD_NEXT_REJECTIONS
from carepath.next_step import Ready, next_required_step
from carepath.pathways import pathway_refs
from carepath.risk import RiskAssessor, RuleBasedRiskAssessor
from carepath.settings import get_scheduling_settings
from carepath.slots import release_slots, require_free, transition
from carepath.time_utils import ensure_utc, isoformat, utc_now

logger = structlog.get_logger(__name__)

HOLD_EXPIRED_NOTE = "hold_expired"

_CANCELLED_BY = {
    "doctor": AppointmentStatus.CANCELLED_BY_DOCTOR,
    "patient": AppointmentStatus.CANCELLED_BY_PATIENT,
}
_OUTCOMES = {
    "completed": AppointmentStatus.COMPLETED,
    "no_show": AppointmentStatus.NO_SHOW,
}


@dataclass
class BookingResult:
    appointment: Appointment
    override_audit_id: Optional[int] = None


def _status_value(status: Optional[AppointmentStatus]) -> Optional[str]:
    return AppointmentStatus(status).value if status is not None else None


def record_status_event(
    session: Session,
    appointment: Appointment,
    old_status: Optional[AppointmentStatus],
    new_status: Optional[AppointmentStatus],
    *,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AppointmentStatusEvent:
    event = AppointmentStatusEvent(
        appointment_id=appointment.id,
        old_status=_status_value(old_status),
        new_status=_status_value(new_status),
        user_id=user_id,
        at=now or utc_now(),
    )
    session.add(event)
    return event


def _open_episode_for(session: Session, episode_id: int, patient_id: int) -> PatientEpisode:
    episode = lock_episode(session, episode_id)
    if EpisodeStatus(episode.status) != EpisodeStatus.OPEN:
        raise ConflictError(
            "Episode is not open", code="EPISODE_NOT_OPEN", details={"episodeId": episode_id}
        )
    if episode.patient_id != patient_id:
        raise ValidationError(
            "Episode belongs to a different patient",
            code="PATIENT_MISMATCH",
            details={"episodeId": episode_id, "patientId": patient_id},
        )
    return episode


def _default_step(
    session: Session, episode: PatientEpisode, pool: Pool, now: datetime
) -> Optional[Ready]:
    result = next_required_step(session, episode.id, now=now)
    if (
        isinstance(result, Ready)
        and result.projection.pool == pool.value
        and result.projection.status == StepStatus.PENDING.value
    ):
        return result
    return None


def book_appointment(
    session: Session,
    caller: Caller,
    *,
    patient_id: int,
    time_slot_id: int,
    episode_id: Optional[int] = None,
    pool: str = Pool.WORK.value,
    duration_minutes: Optional[int] = None,
    step_code: Optional[str] = None,
    step_seq: Optional[int] = None,
    override_reason: Optional[str] = None,
    risk_assessor: Optional[RiskAssessor] = None,
    now: Optional[datetime] = None,
) -> BookingResult:
    """Book an explicitly chosen slot for a patient.

    Locks the episode, then the slot.  A one-hard-next violation can be
    overridden with a written reason; the booking is then stored as
    precommit and the reason is audited.
    """

    now = ensure_utc(now) if now is not None else utc_now()
    settings = get_scheduling_settings()
    pool_value = Pool(pool)

    if session.get(Patient, patient_id) is None:
        raise NotFoundError("Patient not found", code="PATIENT_NOT_FOUND")

    reason = (override_reason or "").strip() or None
    if reason is not None and len(reason) < settings.override_reason_min_length:
        raise ValidationError(
            f"Override reason must be at least {settings.override_reason_min_length} characters",
            code="OVERRIDE_REASON_TOO_SHORT",
        )

    episode = _open_episode_for(session, episode_id, patient_id) if episode_id is not None else None
    slot = lock_slot(session, time_slot_id)
    require_free(slot, now=now)

    if not caller.is_admin and caller.user_id not in (
        episode.assigned_provider_id if episode is not None else None,
        slot.user_id,
    ):
        raise PermissionDeniedError(
            "Only the assigned provider can book for this episode",
            code="ASSIGNED_PROVIDER_ONLY",
        )

    if episode is not None and pool_value == Pool.WORK and not pathway_refs(session, episode):
        raise ConflictError(
            "No care pathway assigned", code="NO_CARE_PATHWAY", details={"episodeId": episode.id}
        )

    check = check_one_hard_next(
        session,
        episode.id if episode is not None else None,
        pool_value.value,
        requires_precommit=reason is not None,
        step_code=step_code,
        now=now,
    )
    if not check.allowed:
        ONE_HARD_NEXT_REJECTIONS.labels(path="direct").inc()
        BOOKINGS_TOTAL.labels(path="direct", outcome="one_hard_next").inc()
        raise OneHardNextViolation(
            check.reason or "Episode already has a future work appointment",
            details={
                "episodeId": episode.id if episode is not None else None,
                "blockingAppointmentIds": list(check.blocking_appointment_ids),
                "overrideAllowed": True,
            },
        )

    if episode is not None and step_code is None:
        ready = _default_step(session, episode, pool_value, now)
        if ready is not None:
            step_code, step_seq = ready.projection.step_code, ready.projection.seq
            if duration_minutes is None:
                duration_minutes = ready.projection.duration_minutes

    risk = assess_risk_safely(
        risk_assessor or RuleBasedRiskAssessor(),
        session,
        patient_id=patient_id,
        start_time=slot.start_time,
        caller_email=caller.email,
        now=now,
    )

    appointment = Appointment(
        patient_id=patient_id,
        episode_id=episode.id if episode is not None else None,
        time_slot_id=slot.id,
        start_time=slot.start_time,
        duration_minutes=duration_minutes or slot.duration_minutes or 30,
        pool=pool_value,
        requires_precommit=check.requires_override,
        step_code=step_code,
        step_seq=step_seq,
        created_via="direct",
        created_by=caller.user_id,
        no_show_risk=risk.no_show_risk,
        requires_confirmation=risk.requires_confirmation,
        hold_expires_at=risk.hold_expires_at,
    )
    session.add(appointment)
    transition(slot, SlotState.BOOKED)
    session.flush()
    mark_scheduled(session, appointment)

    audit_id = None
    if check.requires_override and episode is not None:
        audit = record_override(
            session,
            episode_id=episode.id,
            user_id=caller.user_id,
            override_reason=reason,
            appointment_id=appointment.id,
            kind="direct",
        )
        audit_id = audit.id

    session.flush()
    BOOKINGS_TOTAL.labels(path="direct", outcome="booked").inc()
    logger.info(
        "appointment_booked",
        appointment_id=appointment.id,
        slot_id=slot.id,
        episode_id=appointment.episode_id,
        override=check.requires_override,
    )
    return BookingResult(appointment=appointment, override_audit_id=audit_id)


def _lock_slots_in_order(session: Session, slot_ids: Sequence[int]) -> Dict[int, TimeSlot]:
    return {slot_id: lock_slot(session, slot_id) for slot_id in sorted(set(slot_ids))}


def create_pending_appointment(
    session: Session,
    caller: Caller,
    *,
    patient_id: int,
    time_slot_id: int,
    alternative_time_slot_ids: Sequence[int] = (),
    episode_id: Optional[int] = None,
    pool: str = Pool.WORK.value,
    duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """Offer a slot to the patient, keeping alternatives held for rejections."""

    now = ensure_utc(now) if now is not None else utc_now()
    pool_value = Pool(pool)
    alternatives = list(alternative_time_slot_ids)
    all_ids = [time_slot_id] + alternatives
    if len(set(all_ids)) != len(all_ids):
        raise ValidationError(
            "Alternative slots must be distinct from each other and from the offered slot",
            code="DUPLICATE_SLOT_IDS",
        )
    if session.get(Patient, patient_id) is None:
        raise NotFoundError("Patient not found", code="PATIENT_NOT_FOUND")

    episode = _open_episode_for(session, episode_id, patient_id) if episode_id is not None else None
    slots = _lock_slots_in_order(session, all_ids)
    for slot_id in all_ids:
        require_free(slots[slot_id], now=now)

    if episode is not None:
        check = check_one_hard_next(session, episode.id, pool_value.value, now=now)
        if not check.allowed:
            ONE_HARD_NEXT_REJECTIONS.labels(path="pending").inc()
            raise OneHardNextViolation(
                check.reason or "Episode already has a future work appointment",
                details={
                    "episodeId": episode.id,
                    "blockingAppointmentIds": list(check.blocking_appointment_ids),
                },
            )

    primary = slots[time_slot_id]
    transition(primary, SlotState.OFFERED)
    for slot_id in alternatives:
        transition(slots[slot_id], SlotState.HELD)

    appointment = Appointment(
        patient_id=patient_id,
        episode_id=episode.id if episode is not None else None,
        time_slot_id=primary.id,
        start_time=primary.start_time,
        duration_minutes=duration_minutes or primary.duration_minutes or 30,
        pool=pool_value,
        approval_status=ApprovalStatus.PENDING,
        approval_token=secrets.token_hex(32),
        alternative_time_slot_ids=alternatives,
        current_alternative_index=None,
        created_via="pending",
        created_by=caller.user_id,
    )
    session.add(appointment)
    session.flush()
    BOOKINGS_TOTAL.labels(path="pending", outcome="offered").inc()
    logger.info(
        "pending_appointment_created",
        appointment_id=appointment.id,
        slot_id=primary.id,
        alternatives=len(alternatives),
    )
    return appointment


def _lock_for_update(session: Session, appointment_id: int) -> Appointment:
    existing = session.get(Appointment, appointment_id)
    if existing is None:
        raise NotFoundError("Appointment not found", code="APPOINTMENT_NOT_FOUND")
    if existing.episode_id is not None:
        lock_episode(session, existing.episode_id)
    return lock_appointment(session, appointment_id)


def _require_active(appointment: Appointment) -> None:
    if appointment.appointment_status is not None:
        raise InvalidTransitionError(
            "Appointment is no longer active",
            code="APPOINTMENT_NOT_ACTIVE",
            details={
                "appointmentId": appointment.id,
                "status": AppointmentStatus(appointment.appointment_status).value,
            },
        )


def _reserved_slot_ids(appointment: Appointment) -> List[int]:
    ids = [appointment.time_slot_id] if appointment.time_slot_id is not None else []
    if appointment.approval_status is not None and ApprovalStatus(appointment.approval_status) == ApprovalStatus.PENDING:
        ids.extend(appointment.alternative_time_slot_ids or [])
    return ids


def cancel_appointment(
    session: Session,
    appointment_id: int,
    *,
    by: str,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """Cancel an active appointment, freeing its slot and reopening its step."""

    if by not in _CANCELLED_BY:
        raise ValidationError("Cancellation must be by 'doctor' or 'patient'", code="INVALID_CANCELLATION")
    now = ensure_utc(now) if now is not None else utc_now()
    appointment = _lock_for_update(session, appointment_id)
    _require_active(appointment)

    new_status = _CANCELLED_BY[by]
    appointment.appointment_status = new_status
    released = release_slots(session, _reserved_slot_ids(appointment))
    reopen(session, appointment)
    record_status_event(session, appointment, None, new_status, user_id=user_id, now=now)
    session.flush()
    logger.info(
        "appointment_cancelled",
        appointment_id=appointment_id,
        by=by,
        released_slots=released,
    )
    return appointment


def record_outcome(
    session: Session,
    appointment_id: int,
    outcome: str,
    *,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Appointment:
    """Record that an appointment took place or that the patient did not show."""

    if outcome not in _OUTCOMES:
        raise ValidationError("Outcome must be 'completed' or 'no_show'", code="INVALID_OUTCOME")
    appointment = _lock_for_update(session, appointment_id)
    _require_active(appointment)

    new_status = _OUTCOMES[outcome]
    appointment.appointment_status = new_status
    if notes:
        appointment.completion_notes = notes
    if new_status == AppointmentStatus.COMPLETED:
        mark_completed(session, appointment)
    else:
        reopen(session, appointment)
    record_status_event(session, appointment, None, new_status, user_id=user_id, now=now)
    session.flush()
    logger.info("appointment_outcome_recorded", appointment_id=appointment_id, outcome=outcome)
    return appointment


def expire_holds(session: Session, *, now: Optional[datetime] = None) -> List[int]:
    """Cancel risky bookings nobody confirmed before their hold ran out."""

    now = ensure_utc(now) if now is not None else utc_now()
    candidates = session.execute(
        select(Appointment.id)
        .where(
            Appointment.requires_confirmation.is_(True),
            Appointment.hold_expires_at.is_not(None),
            Appointment.hold_expires_at <= now,
            Appointment.appointment_status.is_(None),
        )
        .order_by(Appointment.id)
    ).scalars().all()

    expired: List[int] = []
    for appointment_id in candidates:
        appointment = _lock_for_update(session, appointment_id)
        if appointment.appointment_status is not None:
            continue
        appointment.appointment_status = AppointmentStatus.CANCELLED_BY_DOCTOR
        appointment.completion_notes = HOLD_EXPIRED_NOTE
        release_slots(session, _reserved_slot_ids(appointment))
        reopen(session, appointment)
        record_status_event(
            session, appointment, None, AppointmentStatus.CANCELLED_BY_DOCTOR, now=now
        )
        expired.append(appointment_id)

    session.flush()
    if expired:
        HOLDS_EXPIRED.inc(len(expired))
        logger.info("appointment_holds_expired", count=len(expired), appointment_ids=expired)
    return expired


def serialize_appointment(appointment: Appointment) -> Dict[str, Any]:
    return {
        "id": appointment.id,
        "patientId": appointment.patient_id,
        "episodeId": appointment.episode_id,
        "timeSlotId": appointment.time_slot_id,
        "startTime": isoformat(appointment.start_time),
        "durationMinutes": appointment.duration_minutes,
        "pool": Pool(appointment.pool).value,
        "appointmentStatus": _status_value(appointment.appointment_status),
        "approvalStatus": (
            ApprovalStatus(appointment.approval_status).value
            if appointment.approval_status is not None
            else None
        ),
        "alternativeTimeSlotIds": list(appointment.alternative_time_slot_ids or []),
        "currentAlternativeIndex": appointment.current_alternative_index,
        "requiresPrecommit": bool(appointment.requires_precommit),
        "requiresConfirmation": bool(appointment.requires_confirmation),
        "noShowRisk": appointment.no_show_risk,
        "holdExpiresAt": isoformat(appointment.hold_expires_at),
        "stepCode": appointment.step_code,
        "stepSeq": appointment.step_seq,
        "slotIntentId": appointment.slot_intent_id,
        "createdVia": appointment.created_via,
    }


__all__ = [
    "HOLD_EXPIRED_NOTE",
    "BookingResult",
    "record_status_event",
    "book_appointment",
    "create_pending_appointment",
    "cancel_appointment",
    "record_outcome",
    "expire_holds",
    "serialize_appointment",
]
