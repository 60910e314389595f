"""Patient approval of offered appointments, with alternative-slot fallback."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from carepath.booking import record_status_event
from carepath.db.models import Appointment, AppointmentStatus, ApprovalStatus, SlotState, TimeSlot
from carepath.episode_steps import mark_scheduled, reopen
from carepath.errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from carepath.locking import lock_appointment, lock_episode, lock_slot_if_exists
from carepath.slots import release_slots, transition
from carepath.time_utils import ensure_utc, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class RejectionResult:
    appointment: Appointment
    has_more_alternatives: bool
    offered_slot_id: Optional[int] = None


def _lock_pending(session: Session, appointment_id: int, token: str) -> Appointment:
    existing = session.get(Appointment, appointment_id)
    if existing is None:
        raise NotFoundError("Appointment not found", code="APPOINTMENT_NOT_FOUND")
    if existing.episode_id is not None:
        lock_episode(session, existing.episode_id)
    appointment = lock_appointment(session, appointment_id)

    if not appointment.approval_token or not secrets.compare_digest(appointment.approval_token, token or ""):
        raise PermissionDeniedError("Invalid approval token", code="INVALID_APPROVAL_TOKEN")
    if (
        appointment.approval_status is None
        or ApprovalStatus(appointment.approval_status) != ApprovalStatus.PENDING
        or appointment.appointment_status is not None
    ):
        raise InvalidTransitionError(
            "Appointment is not awaiting approval",
            code="APPOINTMENT_NOT_PENDING",
            details={"appointmentId": appointment_id},
        )
    return appointment


def _lock_reserved_slots(session: Session, appointment: Appointment) -> Dict[int, TimeSlot]:
    slot_ids = list(appointment.alternative_time_slot_ids or [])
    if appointment.time_slot_id is not None:
        slot_ids.append(appointment.time_slot_id)
    slots: Dict[int, TimeSlot] = {}
    for slot_id in sorted(set(slot_ids)):
        slot = lock_slot_if_exists(session, slot_id)
        if slot is not None:
            slots[slot_id] = slot
    return slots


def approve_appointment(
    session: Session, appointment_id: int, token: str, *, now: Optional[datetime] = None
) -> Appointment:
    """Finalise the offered slot and release every unused alternative."""

    now = ensure_utc(now) if now is not None else utc_now()
    appointment = _lock_pending(session, appointment_id, token)
    if ensure_utc(appointment.start_time) <= now:
        raise ValidationError(
            "The offered time has already passed",
            code="APPOINTMENT_IN_PAST",
            details={"appointmentId": appointment_id},
        )

    slots = _lock_reserved_slots(session, appointment)
    current = slots.get(appointment.time_slot_id)
    if current is None:
        raise NotFoundError("Offered time slot no longer exists", code="SLOT_NOT_FOUND")
    transition(current, SlotState.BOOKED)
    unused = [slot_id for slot_id in slots if slot_id != appointment.time_slot_id]
    released = release_slots(session, unused)

    appointment.approval_status = ApprovalStatus.APPROVED
    appointment.approved_at = now
    mark_scheduled(session, appointment)
    session.flush()
    logger.info(
        "appointment_approved",
        appointment_id=appointment_id,
        slot_id=current.id,
        released_slots=released,
    )
    return appointment


def reject_appointment(
    session: Session, appointment_id: int, token: str, *, now: Optional[datetime] = None
) -> RejectionResult:
    """Decline the current offer.

    The next alternative that is still reserved (or free) and in the future
    becomes the new offer and the appointment stays pending.  When none is
    left the appointment is rejected and every reserved slot is freed.  An
    offer whose time has already passed can no longer be declined.
    """

    now = ensure_utc(now) if now is not None else utc_now()
    appointment = _lock_pending(session, appointment_id, token)
    if ensure_utc(appointment.start_time) <= now:
        raise ValidationError(
            "The offered time has already passed",
            code="APPOINTMENT_IN_PAST",
            details={"appointmentId": appointment_id},
        )
    slots = _lock_reserved_slots(session, appointment)
    alternatives: List[int] = list(appointment.alternative_time_slot_ids or [])

    previous_slot_id = appointment.time_slot_id
    if previous_slot_id is not None:
        release_slots(session, [previous_slot_id])

    start = 0 if appointment.current_alternative_index is None else appointment.current_alternative_index + 1
    for index in range(start, len(alternatives)):
        slot = slots.get(alternatives[index])
        if slot is None or SlotState(slot.state) not in (SlotState.HELD, SlotState.FREE):
            continue
        if ensure_utc(slot.start_time) <= now:
            continue
        transition(slot, SlotState.OFFERED)
        appointment.time_slot_id = slot.id
        appointment.start_time = slot.start_time
        appointment.current_alternative_index = index
        session.flush()
        logger.info(
            "appointment_alternative_offered",
            appointment_id=appointment_id,
            previous_slot_id=previous_slot_id,
            slot_id=slot.id,
            alternative_index=index,
        )
        return RejectionResult(appointment=appointment, has_more_alternatives=True, offered_slot_id=slot.id)

    release_slots(session, alternatives)
    appointment.approval_status = ApprovalStatus.REJECTED
    appointment.appointment_status = AppointmentStatus.CANCELLED_BY_PATIENT
    reopen(session, appointment)
    record_status_event(session, appointment, None, AppointmentStatus.CANCELLED_BY_PATIENT, now=now)
    session.flush()
    logger.info("appointment_rejected", appointment_id=appointment_id, previous_slot_id=previous_slot_id)
    return RejectionResult(appointment=appointment, has_more_alternatives=False)


__all__ = ["RejectionResult", "approve_appointment", "reject_appointment"]
