"""Row-lock helpers shared by every mutating path.

Lock acquisition order is fixed: slot intent, then episode, then episode step,
then an existing appointment, then time slots.  A path that needs several
of these rows must take them in that order; new mutation paths must follow it
too or they can deadlock against conversion.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from carepath.db.models import Appointment, EpisodeStep, PatientEpisode, SlotIntent, TimeSlot
from carepath.errors import NotFoundError


def lock_intent(session: Session, intent_id: int) -> SlotIntent:
    intent = session.execute(
        select(SlotIntent).where(SlotIntent.id == intent_id).with_for_update()
    ).scalar_one_or_none()
    if intent is None:
        raise NotFoundError("Slot intent not found", code="INTENT_NOT_FOUND")
    return intent


def lock_episode(session: Session, episode_id: int) -> PatientEpisode:
    episode = session.execute(
        select(PatientEpisode).where(PatientEpisode.id == episode_id).with_for_update()
    ).scalar_one_or_none()
    if episode is None:
        raise NotFoundError("Episode not found", code="EPISODE_NOT_FOUND")
    return episode


def lock_step(
    session: Session, episode_id: int, step_code: str, step_seq: Optional[int]
) -> Optional[EpisodeStep]:
    """Lock the materialised step an intent or booking refers to, if there is one."""

    return session.execute(
        select(EpisodeStep)
        .where(
            EpisodeStep.episode_id == episode_id,
            EpisodeStep.step_code == step_code,
            EpisodeStep.seq == step_seq,
        )
        .with_for_update()
    ).scalar_one_or_none()


def lock_slot(session: Session, slot_id: int) -> TimeSlot:
    slot = session.execute(
        select(TimeSlot).where(TimeSlot.id == slot_id).with_for_update()
    ).scalar_one_or_none()
    if slot is None:
        raise NotFoundError("Time slot not found", code="SLOT_NOT_FOUND")
    return slot


def lock_slot_if_exists(session: Session, slot_id: Optional[int]) -> Optional[TimeSlot]:
    if slot_id is None:
        return None
    return session.execute(
        select(TimeSlot).where(TimeSlot.id == slot_id).with_for_update()
    ).scalar_one_or_none()


def lock_appointment(session: Session, appointment_id: int) -> Appointment:
    appointment = session.execute(
        select(Appointment).where(Appointment.id == appointment_id).with_for_update()
    ).scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment not found", code="APPOINTMENT_NOT_FOUND")
    return appointment


def get_episode(session: Session, episode_id: int) -> PatientEpisode:
    episode = session.get(PatientEpisode, episode_id)
    if episode is None:
        raise NotFoundError("Episode not found", code="EPISODE_NOT_FOUND")
    return episode


__all__ = [
    "lock_intent",
    "lock_episode",
    "lock_step",
    "lock_slot",
    "lock_slot_if_exists",
    "lock_appointment",
    "get_episode",
]
