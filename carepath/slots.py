"""Time-slot store: slot state machine and candidate search."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from carepath.db.models import Pool, SlotState, TimeSlot
from carepath.errors import InvalidTransitionError, SlotUnavailableError, ValidationError
from carepath.locking import lock_slot
from carepath.time_utils import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

_TRANSITIONS: Dict[SlotState, FrozenSet[SlotState]] = {
    SlotState.FREE: frozenset({SlotState.HELD, SlotState.OFFERED, SlotState.BOOKED, SlotState.BLOCKED}),
    SlotState.HELD: frozenset({SlotState.FREE, SlotState.OFFERED, SlotState.BOOKED, SlotState.BLOCKED}),
    SlotState.OFFERED: frozenset({SlotState.FREE, SlotState.BOOKED, SlotState.BLOCKED}),
    SlotState.BOOKED: frozenset({SlotState.FREE, SlotState.BLOCKED}),
    SlotState.BLOCKED: frozenset({SlotState.FREE}),
}


def can_transition(current: SlotState, target: SlotState) -> bool:
    return target == current or target in _TRANSITIONS[SlotState(current)]


def transition(slot: TimeSlot, target: SlotState) -> TimeSlot:
    """Move ``slot`` to ``target`` or raise :class:`InvalidTransitionError`."""

    current = SlotState(slot.state)
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Slot cannot move from {current.value} to {target.value}",
            code="INVALID_SLOT_TRANSITION",
            details={"slotId": slot.id, "from": current.value, "to": target.value},
        )
    slot.state = target
    return slot


def require_free(slot: TimeSlot, *, now: Optional[datetime] = None) -> TimeSlot:
    """Validate that a locked slot can be consumed by a booking."""

    now = now or utc_now()
    if SlotState(slot.state) != SlotState.FREE:
        raise SlotUnavailableError(
            "Time slot is no longer free",
            details={"slotId": slot.id, "state": SlotState(slot.state).value},
        )
    if ensure_utc(slot.start_time) <= now:
        raise SlotUnavailableError(
            "Only future time slots can be booked",
            code="SLOT_IN_PAST",
            details={"slotId": slot.id},
        )
    return slot


def find_candidate_slot(
    session: Session,
    *,
    pool: str,
    duration_minutes: int,
    window_start: datetime,
    window_end: datetime,
    now: Optional[datetime] = None,
    provider_id: Optional[int] = None,
) -> Optional[TimeSlot]:
    """Lock and return the earliest free slot matching the request.

    Rows locked by concurrent searches are skipped rather than waited on, so
    parallel conversions race for distinct slots instead of queueing.
    """

    now = now or utc_now()
    lower = max(ensure_utc(window_start), now)
    stmt = (
        select(TimeSlot)
        .where(
            TimeSlot.state == SlotState.FREE,
            or_(TimeSlot.slot_purpose == Pool(pool), TimeSlot.slot_purpose.is_(None)),
            or_(TimeSlot.duration_minutes >= duration_minutes, TimeSlot.duration_minutes.is_(None)),
            TimeSlot.start_time >= lower,
            TimeSlot.start_time <= ensure_utc(window_end),
        )
        .order_by(TimeSlot.start_time, TimeSlot.id)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    if provider_id is not None:
        stmt = stmt.where(TimeSlot.user_id == provider_id)
    return session.execute(stmt).scalar_one_or_none()


def create_slot(
    session: Session,
    *,
    provider_id: int,
    start_time: datetime,
    duration_minutes: Optional[int] = 30,
    slot_purpose: Optional[str] = None,
) -> TimeSlot:
    if duration_minutes is not None and duration_minutes <= 0:
        raise ValidationError("duration_minutes must be positive", details={"durationMinutes": duration_minutes})
    slot = TimeSlot(
        user_id=provider_id,
        start_time=ensure_utc(start_time),
        duration_minutes=duration_minutes,
        slot_purpose=Pool(slot_purpose) if slot_purpose else None,
        state=SlotState.FREE,
    )
    session.add(slot)
    session.flush()
    logger.info("time_slot_created", slot_id=slot.id, provider_id=provider_id)
    return slot


def block_slot(session: Session, slot_id: int) -> TimeSlot:
    """Mark a slot as conflicting with the provider's external calendar."""

    slot = lock_slot(session, slot_id)
    transition(slot, SlotState.BLOCKED)
    logger.info("time_slot_blocked", slot_id=slot_id)
    return slot


def unblock_slot(session: Session, slot_id: int) -> TimeSlot:
    slot = lock_slot(session, slot_id)
    if SlotState(slot.state) != SlotState.BLOCKED:
        raise InvalidTransitionError(
            "Only blocked slots can be unblocked",
            code="INVALID_SLOT_TRANSITION",
            details={"slotId": slot_id, "state": SlotState(slot.state).value},
        )
    transition(slot, SlotState.FREE)
    logger.info("time_slot_unblocked", slot_id=slot_id)
    return slot


def release_slots(session: Session, slot_ids: Iterable[int]) -> List[int]:
    """Return non-blocked slots to ``free``; blocked slots keep their state.

    Locks are taken in id order.
    """

    released: List[int] = []
    for slot_id in sorted(set(slot_ids)):
        slot = session.execute(
            select(TimeSlot).where(TimeSlot.id == slot_id).with_for_update()
        ).scalar_one_or_none()
        if slot is None or SlotState(slot.state) in (SlotState.FREE, SlotState.BLOCKED):
            continue
        transition(slot, SlotState.FREE)
        released.append(slot_id)
    return released


def serialize_slot(slot: TimeSlot) -> Dict[str, object]:
    return {
        "id": slot.id,
        "providerId": slot.user_id,
        "startTime": ensure_utc(slot.start_time).isoformat(),
        "durationMinutes": slot.duration_minutes,
        "state": SlotState(slot.state).value,
        "slotPurpose": Pool(slot.slot_purpose).value if slot.slot_purpose else None,
    }


__all__ = [
    "can_transition",
    "transition",
    "require_free",
    "find_candidate_slot",
    "create_slot",
    "block_slot",
    "unblock_slot",
    "release_slots",
    "serialize_slot",
]
