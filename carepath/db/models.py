"""SQLAlchemy models for the treatment-scheduling core."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Optional, Type

import sqlalchemy as sa
from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

from carepath.time_utils import ensure_utc


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops offsets on storage, so values are normalised on the way in
    and re-tagged with UTC on the way out.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)


def _enum(enum_cls: Type[enum.Enum], name: str) -> sa.Enum:
    return sa.Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class Pool(str, enum.Enum):
    """Scheduling category shared by steps, slots and appointments."""

    CONSULT = "consult"
    WORK = "work"
    CONTROL = "control"


class EpisodeStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    PAUSED = "paused"


class StepStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class SlotState(str, enum.Enum):
    """Slot lifecycle states; only ``FREE`` slots can be consumed."""

    FREE = "free"
    HELD = "held"
    OFFERED = "offered"
    BOOKED = "booked"
    BLOCKED = "blocked"


class IntentState(str, enum.Enum):
    OPEN = "open"
    CONVERTED = "converted"
    EXPIRED = "expired"


class AppointmentStatus(str, enum.Enum):
    """Terminal outcomes; a ``NULL`` status means the appointment is active."""

    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED_BY_DOCTOR = "cancelled_by_doctor"
    CANCELLED_BY_PATIENT = "cancelled_by_patient"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PathwayStatus(str, enum.Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class ForecastStatus(str, enum.Enum):
    READY = "ready"
    BLOCKED = "blocked"


class User(Base):
    __tablename__ = "users"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    email = sa.Column(String, nullable=False, unique=True, index=True)
    name = sa.Column(String, nullable=True)
    role = sa.Column(String, nullable=False)
    active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)


class Patient(Base):
    __tablename__ = "patients"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=True)
    email = sa.Column(String, nullable=True)
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)


class CarePathway(Base):
    __tablename__ = "care_pathways"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    family_key = sa.Column(String, nullable=False, index=True)
    version = sa.Column(Integer, nullable=False, default=1)
    name = sa.Column(String, nullable=False)
    reason = sa.Column(String, nullable=True, index=True)
    steps_json = sa.Column(sa.JSON, nullable=False, default=list)
    window_slack_days = sa.Column(Integer, nullable=True)
    status = sa.Column(_enum(PathwayStatus, "pathway_status"), nullable=False, default=PathwayStatus.ACTIVE)
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("family_key", "version", name="uq_care_pathways_family_version"),
    )


class CarePathwayAnalytics(Base):
    __tablename__ = "care_pathway_analytics"

    care_pathway_id = sa.Column(Integer, ForeignKey("care_pathways.id"), primary_key=True)
    median_visits = sa.Column(Float, nullable=True)
    p80_visits = sa.Column(Float, nullable=True)
    median_cadence_days = sa.Column(Float, nullable=True)
    recorded_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)


class StepCatalogEntry(Base):
    __tablename__ = "step_catalog"

    step_code = sa.Column(String, primary_key=True)
    label = sa.Column(String, nullable=False)
    updated_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class PatientEpisode(Base):
    __tablename__ = "patient_episodes"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    status = sa.Column(_enum(EpisodeStatus, "episode_status"), nullable=False, default=EpisodeStatus.OPEN)
    reason = sa.Column(String, nullable=True)
    care_pathway_id = sa.Column(Integer, ForeignKey("care_pathways.id"), nullable=True)
    assigned_provider_id = sa.Column(Integer, ForeignKey("users.id"), nullable=True)
    opened_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)
    closed_at = sa.Column(UTCDateTime, nullable=True)

    pathways = relationship(
        "EpisodePathway",
        order_by="EpisodePathway.ordinal",
        back_populates="episode",
    )

    __table_args__ = (
        sa.Index("idx_patient_episodes_patient_status", "patient_id", "status"),
        sa.Index("idx_patient_episodes_provider", "assigned_provider_id"),
    )


class EpisodePathway(Base):
    __tablename__ = "episode_pathways"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    episode_id = sa.Column(Integer, ForeignKey("patient_episodes.id"), nullable=False)
    care_pathway_id = sa.Column(Integer, ForeignKey("care_pathways.id"), nullable=False)
    ordinal = sa.Column(Integer, nullable=False, default=0)
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)

    episode = relationship("PatientEpisode", back_populates="pathways")
    care_pathway = relationship("CarePathway")

    __table_args__ = (
        sa.UniqueConstraint("episode_id", "care_pathway_id", name="uq_episode_pathways_episode_pathway"),
    )


class EpisodeStep(Base):
    __tablename__ = "episode_steps"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    episode_id = sa.Column(Integer, ForeignKey("patient_episodes.id"), nullable=False)
    source_episode_pathway_id = sa.Column(Integer, ForeignKey("episode_pathways.id"), nullable=True)
    step_code = sa.Column(String, nullable=False)
    pathway_order_index = sa.Column(Integer, nullable=False, default=0)
    seq = sa.Column(Integer, nullable=False, default=0)
    pool = sa.Column(_enum(Pool, "pool"), nullable=False, default=Pool.WORK)
    duration_minutes = sa.Column(Integer, nullable=False, default=30)
    default_days_offset = sa.Column(Integer, nullable=False, default=14)
    slack_days = sa.Column(Integer, nullable=True)
    requires_precommit = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    status = sa.Column(_enum(StepStatus, "step_status"), nullable=False, default=StepStatus.PENDING)
    appointment_id = sa.Column(Integer, ForeignKey("appointments.id"), nullable=True)
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)
    completed_at = sa.Column(UTCDateTime, nullable=True)

    __table_args__ = (
        sa.Index("idx_episode_steps_episode_seq", "episode_id", "seq"),
    )


class EpisodeStepAudit(Base):
    __tablename__ = "episode_step_audit"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    episode_id = sa.Column(Integer, nullable=False, index=True)
    step_id = sa.Column(Integer, nullable=False)
    step_code = sa.Column(String, nullable=False)
    action = sa.Column(String, nullable=False)
    user_id = sa.Column(Integer, nullable=True)
    details = sa.Column(sa.JSON, nullable=True)
    at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)


class EpisodeBlock(Base):
    __tablename__ = "episode_blocks"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    episode_id = sa.Column(Integer, ForeignKey("patient_episodes.id"), nullable=False, index=True)
    key = sa.Column(String, nullable=False)
    note = sa.Column(Text, nullable=True)
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)
    expires_at = sa.Column(UTCDateTime, nullable=True)


class StageEvent(Base):
    __tablename__ = "stage_events"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    episode_id = sa.Column(Integer, ForeignKey("patient_episodes.id"), nullable=False)
    stage_code = sa.Column(String, nullable=False)
    user_id = sa.Column(Integer, nullable=True)
    at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        sa.Index("idx_stage_events_episode_at", "episode_id", "at"),
    )


class TimeSlot(Base):
    __tablename__ = "available_time_slots"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    user_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    start_time = sa.Column(UTCDateTime, nullable=False)
    duration_minutes = sa.Column(Integer, nullable=True)
    state = sa.Column(_enum(SlotState, "slot_state"), nullable=False, default=SlotState.FREE)
    slot_purpose = sa.Column(_enum(Pool, "slot_purpose"), nullable=True)
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.Index("idx_time_slots_state_start", "state", "start_time"),
        sa.Index("idx_time_slots_user_start", "user_id", "start_time"),
    )


class SlotIntent(Base):
    __tablename__ = "slot_intents"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    episode_id = sa.Column(Integer, ForeignKey("patient_episodes.id"), nullable=False)
    step_code = sa.Column(String, nullable=False)
    step_seq = sa.Column(Integer, nullable=False)
    pool = sa.Column(_enum(Pool, "intent_pool"), nullable=False, default=Pool.WORK)
    duration_minutes = sa.Column(Integer, nullable=False, default=30)
    window_start = sa.Column(UTCDateTime, nullable=False)
    window_end = sa.Column(UTCDateTime, nullable=False)
    requires_precommit = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    state = sa.Column(_enum(IntentState, "intent_state"), nullable=False, default=IntentState.OPEN)
    steps_hash = sa.Column(String, nullable=True)
    expires_at = sa.Column(UTCDateTime, nullable=True)
    expired_reason = sa.Column(String, nullable=True)
    converted_appointment_id = sa.Column(Integer, ForeignKey("appointments.id"), nullable=True)
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("episode_id", "step_code", "step_seq", name="uq_slot_intents_episode_step"),
        sa.Index("idx_slot_intents_state", "state"),
    )


class Appointment(Base):
    __tablename__ = "appointments"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    episode_id = sa.Column(Integer, ForeignKey("patient_episodes.id"), nullable=True)
    time_slot_id = sa.Column(Integer, ForeignKey("available_time_slots.id"), nullable=True)
    start_time = sa.Column(UTCDateTime, nullable=False)
    duration_minutes = sa.Column(Integer, nullable=False, default=30)
    pool = sa.Column(_enum(Pool, "appointment_pool"), nullable=False, default=Pool.WORK)
    appointment_status = sa.Column(_enum(AppointmentStatus, "appointment_status"), nullable=True)
    approval_status = sa.Column(_enum(ApprovalStatus, "approval_status"), nullable=True)
    approval_token = sa.Column(String, nullable=True, unique=True)
    approved_at = sa.Column(UTCDateTime, nullable=True)
    alternative_time_slot_ids = sa.Column(sa.JSON, nullable=True)
    current_alternative_index = sa.Column(Integer, nullable=True)
    hold_expires_at = sa.Column(UTCDateTime, nullable=True)
    requires_confirmation = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    no_show_risk = sa.Column(Float, nullable=True)
    requires_precommit = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    step_code = sa.Column(String, nullable=True)
    step_seq = sa.Column(Integer, nullable=True)
    slot_intent_id = sa.Column(Integer, nullable=True)
    created_via = sa.Column(String, nullable=True)
    created_by = sa.Column(Integer, nullable=True)
    completion_notes = sa.Column(Text, nullable=True)
    created_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.Index("idx_appointments_episode_pool_start", "episode_id", "pool", "start_time"),
        sa.Index("idx_appointments_slot", "time_slot_id"),
        sa.Index("idx_appointments_hold", "hold_expires_at"),
    )


class AppointmentStatusEvent(Base):
    __tablename__ = "appointment_status_events"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    appointment_id = sa.Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    old_status = sa.Column(String, nullable=True)
    new_status = sa.Column(String, nullable=True)
    user_id = sa.Column(Integer, nullable=True)
    at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)


class SchedulingOverrideAudit(Base):
    """Append-only record of one-hard-next bypasses."""

    __tablename__ = "scheduling_override_audit"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    episode_id = sa.Column(Integer, ForeignKey("patient_episodes.id"), nullable=False, index=True)
    appointment_id = sa.Column(Integer, nullable=True)
    user_id = sa.Column(Integer, nullable=True)
    override_reason = sa.Column(Text, nullable=False)
    at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)


class EpisodeForecastCache(Base):
    __tablename__ = "episode_forecast_cache"

    episode_id = sa.Column(Integer, ForeignKey("patient_episodes.id"), primary_key=True)
    completion_end_p50 = sa.Column(UTCDateTime, nullable=True)
    completion_end_p80 = sa.Column(UTCDateTime, nullable=True)
    remaining_visits_p50 = sa.Column(Integer, nullable=True)
    remaining_visits_p80 = sa.Column(Integer, nullable=True)
    next_step = sa.Column(String, nullable=True)
    status = sa.Column(String, nullable=False)
    blocked_code = sa.Column(String, nullable=True)
    inputs_hash = sa.Column(String, nullable=False)
    computed_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow)


class NoShowRiskConfig(Base):
    __tablename__ = "no_show_risk_config"

    key = sa.Column(String, primary_key=True)
    value = sa.Column(Float, nullable=False)
    updated_at = sa.Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


__all__ = [
    "Base",
    "UTCDateTime",
    "Pool",
    "EpisodeStatus",
    "StepStatus",
    "SlotState",
    "IntentState",
    "AppointmentStatus",
    "ApprovalStatus",
    "PathwayStatus",
    "ForecastStatus",
    "User",
    "Patient",
    "CarePathway",
    "CarePathwayAnalytics",
    "StepCatalogEntry",
    "PatientEpisode",
    "EpisodePathway",
    "EpisodeStep",
    "EpisodeStepAudit",
    "EpisodeBlock",
    "StageEvent",
    "TimeSlot",
    "SlotIntent",
    "Appointment",
    "AppointmentStatusEvent",
    "SchedulingOverrideAudit",
    "EpisodeForecastCache",
    "NoShowRiskConfig",
]
