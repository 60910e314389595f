"""Read-only advisory aggregates: per-provider busyness and the intake
recommendation derived from it.

Nothing here takes locks; the figures tolerate slightly stale data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from carepath.auth import CLINICAL_ROLES
from carepath.db.models import (
    Appointment,
    AppointmentStatus,
    EpisodeForecastCache,
    EpisodeStatus,
    ForecastStatus,
    IntentState,
    PatientEpisode,
    SlotIntent,
    SlotState,
    StageEvent,
    TimeSlot,
    User,
)
from carepath.time_utils import ceil_days_until, ensure_utc, isoformat, optional_utc, utc_now

logger = structlog.get_logger(__name__)

MIN_HORIZON_DAYS = 7
MAX_HORIZON_DAYS = 28
INTAKE_HORIZON_DAYS = 30
DEFAULT_SLOT_MINUTES = 30
PIPELINE_MINUTES_PER_EPISODE = 30
COMPONENT_CAP = 1.5
POLICY_VERSION = 1
WIP_STAGE_CODES = tuple(f"STAGE_{index}" for index in range(1, 7))

GO = "GO"
CAUTION = "CAUTION"
STOP = "STOP"


@dataclass
class ProviderWorkload:
    user_id: int
    name: str
    available_minutes: int = 0
    booked_minutes: int = 0
    held_minutes: int = 0
    wip_count: int = 0
    worklist_count: int = 0
    utilization: float = 0.0
    hold_pressure: float = 0.0
    pipeline: float = 0.0
    busyness_score: int = 0
    level: str = "low"
    flags: List[str] = field(default_factory=list)

    def to_dict(self, include_details: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "userId": self.user_id,
            "name": self.name,
            "busynessScore": self.busyness_score,
            "level": self.level,
        }
        if include_details:
            payload.update(
                {
                    "utilizationPct": _round_half_up(self.utilization * 100),
                    "heldPct": _round_half_up(self.hold_pressure * 100),
                    "pipelinePct": _round_half_up(self.pipeline * 100),
                    "availableMinutes": self.available_minutes,
                    "bookedMinutes": self.booked_minutes,
                    "heldMinutes": self.held_minutes,
                    "wipCount": self.wip_count,
                    "worklistCount": self.worklist_count,
                    "flags": list(self.flags),
                }
            )
        return payload


def clamp_horizon(horizon_days: Optional[int]) -> int:
    if horizon_days is None:
        return MIN_HORIZON_DAYS
    return min(MAX_HORIZON_DAYS, max(MIN_HORIZON_DAYS, int(horizon_days)))


def level_for(score: int, available_minutes: int) -> str:
    if available_minutes <= 0:
        return "unavailable"
    if score <= 40:
        return "low"
    if score <= 70:
        return "medium"
    if score <= 90:
        return "high"
    return "critical"


def busyness_score(utilization: float, hold_pressure: float, pipeline: float) -> int:
    raw = 0.7 * utilization + 0.1 * hold_pressure + 0.2 * pipeline
    return _round_half_up(100 * min(raw, COMPONENT_CAP) / COMPONENT_CAP)


def _round_half_up(value: float) -> int:
    # halves round up; float noise is trimmed first
    return int(math.floor(round(value, 6) + 0.5))


def _ratio(minutes: int, available: int) -> float:
    if available <= 0:
        return 0.0
    return min(COMPONENT_CAP, max(0.0, minutes / available))


def _latest_stage_subquery():
    ranked = select(
        StageEvent.episode_id.label("episode_id"),
        StageEvent.stage_code.label("stage_code"),
        func.row_number()
        .over(partition_by=StageEvent.episode_id, order_by=(StageEvent.at.desc(), StageEvent.id.desc()))
        .label("rank"),
    ).subquery()
    return (
        select(ranked.c.episode_id, ranked.c.stage_code)
        .where(ranked.c.rank == 1)
        .subquery()
    )


def _wip_clause(latest_stage):
    return and_(
        PatientEpisode.status == EpisodeStatus.OPEN,
        or_(latest_stage.c.stage_code.is_(None), latest_stage.c.stage_code.in_(WIP_STAGE_CODES)),
    )


def _providers(session: Session) -> List[User]:
    return list(
        session.execute(
            select(User)
            .where(
                User.active.is_(True),
                User.role.in_(CLINICAL_ROLES),
                User.name.is_not(None),
                User.name != "",
            )
            .order_by(User.name, User.id)
        ).scalars()
    )


def _minutes_by_provider(session: Session, provider_ids: Iterable[int], now: datetime, end: datetime):
    ids = list(provider_ids)
    duration = func.coalesce(TimeSlot.duration_minutes, DEFAULT_SLOT_MINUTES)
    available = dict(
        session.execute(
            select(TimeSlot.user_id, func.sum(duration))
            .where(
                TimeSlot.user_id.in_(ids),
                TimeSlot.start_time > now,
                TimeSlot.start_time <= end,
                TimeSlot.state != SlotState.BLOCKED,
            )
            .group_by(TimeSlot.user_id)
        ).all()
    )

    active = or_(
        Appointment.appointment_status.is_(None),
        Appointment.appointment_status == AppointmentStatus.COMPLETED,
    )
    in_horizon = and_(
        TimeSlot.user_id.in_(ids),
        Appointment.start_time > now,
        Appointment.start_time <= end,
    )
    appointment_minutes = func.coalesce(Appointment.duration_minutes, DEFAULT_SLOT_MINUTES)
    booked = dict(
        session.execute(
            select(TimeSlot.user_id, func.sum(appointment_minutes))
            .select_from(Appointment)
            .join(TimeSlot, TimeSlot.id == Appointment.time_slot_id)
            .where(in_horizon, active)
            .group_by(TimeSlot.user_id)
        ).all()
    )
    held = dict(
        session.execute(
            select(TimeSlot.user_id, func.sum(appointment_minutes))
            .select_from(Appointment)
            .join(TimeSlot, TimeSlot.id == Appointment.time_slot_id)
            .where(
                in_horizon,
                Appointment.appointment_status.is_(None),
                Appointment.hold_expires_at.is_not(None),
                Appointment.hold_expires_at > now,
            )
            .group_by(TimeSlot.user_id)
        ).all()
    )
    return available, booked, held


def _pipeline_counts(session: Session, provider_ids: Iterable[int]):
    ids = list(provider_ids)
    latest_stage = _latest_stage_subquery()
    wip = dict(
        session.execute(
            select(PatientEpisode.assigned_provider_id, func.count(PatientEpisode.id))
            .outerjoin(latest_stage, latest_stage.c.episode_id == PatientEpisode.id)
            .where(PatientEpisode.assigned_provider_id.in_(ids), _wip_clause(latest_stage))
            .group_by(PatientEpisode.assigned_provider_id)
        ).all()
    )
    worklist = dict(
        session.execute(
            select(PatientEpisode.assigned_provider_id, func.count(func.distinct(PatientEpisode.id)))
            .join(SlotIntent, SlotIntent.episode_id == PatientEpisode.id)
            .where(
                PatientEpisode.assigned_provider_id.in_(ids),
                PatientEpisode.status == EpisodeStatus.OPEN,
                SlotIntent.state == IntentState.OPEN,
            )
            .group_by(PatientEpisode.assigned_provider_id)
        ).all()
    )
    return wip, worklist


def _score_providers(session: Session, now: datetime, end: datetime) -> List[ProviderWorkload]:
    providers = _providers(session)
    ids = [provider.id for provider in providers]
    if not ids:
        return []
    available, booked, held = _minutes_by_provider(session, ids, now, end)
    wip, worklist = _pipeline_counts(session, ids)

    results: List[ProviderWorkload] = []
    for provider in providers:
        entry = ProviderWorkload(
            user_id=provider.id,
            name=provider.name or provider.email,
            available_minutes=int(available.get(provider.id) or 0),
            booked_minutes=int(booked.get(provider.id) or 0),
            held_minutes=int(held.get(provider.id) or 0),
            wip_count=int(wip.get(provider.id) or 0),
            worklist_count=int(worklist.get(provider.id) or 0),
        )
        entry.utilization = _ratio(entry.booked_minutes, entry.available_minutes)
        entry.hold_pressure = _ratio(entry.held_minutes, entry.available_minutes)
        pending = entry.wip_count + entry.worklist_count
        entry.pipeline = _ratio(pending * PIPELINE_MINUTES_PER_EPISODE, entry.available_minutes)
        entry.busyness_score = busyness_score(entry.utilization, entry.hold_pressure, entry.pipeline)
        entry.level = level_for(entry.busyness_score, entry.available_minutes)
        if entry.busyness_score >= 90:
            entry.flags.append("near_critical_if_new_starts")
        if entry.available_minutes == 0 and pending > 0:
            entry.flags.append("unavailable")
        results.append(entry)

    return results


def provider_workload(
    session: Session, *, horizon_days: Optional[int] = None, now: Optional[datetime] = None
) -> List[ProviderWorkload]:
    """Score how busy every clinical provider is over the coming horizon."""

    now = ensure_utc(now) if now is not None else utc_now()
    horizon = clamp_horizon(horizon_days)
    results = _score_providers(session, now, now + timedelta(days=horizon))
    logger.debug("provider_workload_computed", providers=len(results), horizon_days=horizon)
    return results


def recommend(busyness: int, near_critical: bool, lag_days: Optional[int]) -> Dict[str, Any]:
    """Map the intake inputs to ``GO``, ``CAUTION`` or ``STOP`` with reasons."""

    reasons: List[str] = []
    long_lag = lag_days is not None and lag_days > 28
    medium_lag = lag_days is not None and 14 < lag_days <= 28

    if busyness >= 90 or near_critical or long_lag:
        if busyness >= 90:
            reasons.append(f"BUSYNESS_{busyness}")
        if near_critical:
            reasons.append("NEAR_CRITICAL_IF_NEW_STARTS")
        if long_lag:
            reasons.append(f"WIP_P80_END_+{lag_days}D")
        return {"recommendation": STOP, "reasons": reasons}
    if 75 <= busyness <= 89 or medium_lag:
        if 75 <= busyness <= 89:
            reasons.append(f"BUSYNESS_{busyness}")
        if medium_lag:
            reasons.append(f"WIP_P80_END_+{lag_days}D")
        return {"recommendation": CAUTION, "reasons": reasons}
    return {"recommendation": GO, "reasons": ["OK"]}


def intake_recommendation(session: Session, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Advise whether new patients should be started right now."""

    now = ensure_utc(now) if now is not None else utc_now()
    workloads = _score_providers(session, now, now + timedelta(days=INTAKE_HORIZON_DAYS))
    busyness = max((entry.busyness_score for entry in workloads), default=0)
    near_critical = any(
        entry.busyness_score >= 90
        or (entry.available_minutes == 0 and entry.wip_count + entry.worklist_count > 0)
        for entry in workloads
    )

    latest_stage = _latest_stage_subquery()
    wip_count = session.execute(
        select(func.count(PatientEpisode.id))
        .outerjoin(latest_stage, latest_stage.c.episode_id == PatientEpisode.id)
        .where(_wip_clause(latest_stage))
    ).scalar_one()
    p80_max = optional_utc(
        session.execute(
            select(func.max(EpisodeForecastCache.completion_end_p80))
            .join(PatientEpisode, PatientEpisode.id == EpisodeForecastCache.episode_id)
            .outerjoin(latest_stage, latest_stage.c.episode_id == PatientEpisode.id)
            .where(_wip_clause(latest_stage), EpisodeForecastCache.status == ForecastStatus.READY.value)
        ).scalar_one_or_none()
    )
    lag_days = ceil_days_until(p80_max, now) if p80_max is not None else None

    decision = recommend(busyness, near_critical, lag_days)
    logger.info(
        "intake_recommendation_computed",
        recommendation=decision["recommendation"],
        busyness=busyness,
        lag_days=lag_days,
    )
    return {
        "recommendation": decision["recommendation"],
        "reasons": decision["reasons"],
        "explain": {
            "busynessScore": busyness,
            "nearCriticalIfNewStarts": near_critical,
            "source": "MAX_OVER_DOCTORS",
            "wipCount": wip_count,
            "wipCompletionP80Max": isoformat(p80_max),
            "wipP80DaysFromNow": lag_days,
        },
        "meta": {
            "serverNow": isoformat(now),
            "fetchedAt": isoformat(utc_now()),
            "policyVersion": POLICY_VERSION,
        },
    }


__all__ = [
    "ProviderWorkload",
    "clamp_horizon",
    "level_for",
    "busyness_score",
    "provider_workload",
    "recommend",
    "intake_recommendation",
    "GO",
    "CAUTION",
    "STOP",
]
