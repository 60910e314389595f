"""One-hard-next enforcement, override audit and reconciliation queries.

An episode may hold at most one future, active ``work`` appointment that is
not flagged ``requires_precommit``.  :func:`check_one_hard_next` enforces the
rule on the booking path; :func:`find_one_hard_next_violations` re-derives
violations cluster-wide from the same predicate, so the two must always
agree.
"""

from __future__ import annotations

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from carepath.db.models import (
    Appointment,
    AppointmentStatus,
    EpisodePathway,
    EpisodeStatus,
    IntentState,
    PatientEpisode,
    Pool,
    SchedulingOverrideAudit,
    SlotIntent,
    SlotState,
    TimeSlot,
)
from carepath.locking import get_episode
from carepath.metrics import OVERRIDE_AUDITS
from carepath.next_step import Ready, next_required_step
from carepath.time_utils import ensure_utc, isoformat, utc_now

logger = structlog.get_logger(__name__)

ONE_HARD_NEXT_VIOLATION = "ONE_HARD_NEXT_VIOLATION"
INTENT_OPEN_EPISODE_CLOSED = "INTENT_OPEN_EPISODE_CLOSED"
APPOINTMENT_NO_SLOT = "APPOINTMENT_NO_SLOT"

OVERRIDE_RATE_ALERT = 0.2
OVERRIDE_RATE_WINDOW_DAYS = 30


@dataclass(frozen=True)
class OneHardNextCheck:
    """Outcome of the one-hard-next rule for a prospective booking.

    ``requires_override`` is set when the booking is allowed only because it
    is flagged precommit; the caller must then write an override audit row.
    """

    allowed: bool
    reason: Optional[str] = None
    requires_override: bool = False
    blocking_appointment_ids: Tuple[int, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason:
            payload["reason"] = self.reason
        return payload


def _active_clause():
    return or_(
        Appointment.appointment_status.is_(None),
        Appointment.appointment_status == AppointmentStatus.COMPLETED,
    )


def _unresolved_hard_work_clause(now: datetime):
    return and_(
        Appointment.pool == Pool.WORK,
        Appointment.start_time > now,
        _active_clause(),
        Appointment.requires_precommit.is_(False),
    )


def future_hard_work_appointments(
    session: Session, episode_id: int, *, now: Optional[datetime] = None
) -> List[Appointment]:
    now = ensure_utc(now) if now is not None else utc_now()
    stmt = (
        select(Appointment)
        .where(Appointment.episode_id == episode_id, _unresolved_hard_work_clause(now))
        .order_by(Appointment.start_time)
    )
    return list(session.execute(stmt).scalars())


def check_one_hard_next(
    session: Session,
    episode_id: Optional[int],
    pool: str,
    *,
    requires_precommit: bool = False,
    step_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OneHardNextCheck:
    """Decide whether one more ``pool`` booking may be added to the episode.

    The caller is expected to hold the episode row lock so the count cannot
    change before the appointment is inserted.
    """

    if episode_id is None or Pool(pool) != Pool.WORK:
        return OneHardNextCheck(allowed=True)

    existing = future_hard_work_appointments(session, episode_id, now=now)
    if not existing:
        return OneHardNextCheck(allowed=True)

    ids = tuple(appointment.id for appointment in existing)
    first = existing[0]
    reason = (
        f"Episode already has a future work appointment on {isoformat(first.start_time)}"
        f" (appointment {first.id})"
    )
    if requires_precommit:
        logger.info(
            "one_hard_next_precommit_bypass",
            episode_id=episode_id,
            step_code=step_code,
            blocking=list(ids),
        )
        return OneHardNextCheck(
            allowed=True, reason=reason, requires_override=True, blocking_appointment_ids=ids
        )
    return OneHardNextCheck(allowed=False, reason=reason, blocking_appointment_ids=ids)


def record_override(
    session: Session,
    *,
    episode_id: int,
    user_id: Optional[int],
    override_reason: str,
    appointment_id: Optional[int] = None,
    kind: str = "precommit",
) -> SchedulingOverrideAudit:
    """Append an override audit row.  Rows are never updated or deleted."""

    row = SchedulingOverrideAudit(
        episode_id=episode_id,
        appointment_id=appointment_id,
        user_id=user_id,
        override_reason=override_reason,
    )
    session.add(row)
    session.flush()
    OVERRIDE_AUDITS.labels(kind=kind).inc()
    logger.info(
        "one_hard_next_override_recorded",
        episode_id=episode_id,
        appointment_id=appointment_id,
        user_id=user_id,
        kind=kind,
    )
    return row


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def find_one_hard_next_violations(
    session: Session, *, now: Optional[datetime] = None, episode_id: Optional[int] = None
) -> List[Dict[str, Any]]:
    """Episodes with more than one future unresolved non-precommit work booking."""

    now = ensure_utc(now) if now is not None else utc_now()
    stmt = (
        select(Appointment.episode_id, func.count(Appointment.id))
        .where(Appointment.episode_id.is_not(None), _unresolved_hard_work_clause(now))
        .group_by(Appointment.episode_id)
        .having(func.count(Appointment.id) > 1)
        .order_by(Appointment.episode_id)
    )
    if episode_id is not None:
        stmt = stmt.where(Appointment.episode_id == episode_id)
    return [
        {"episodeId": row_episode_id, "count": count}
        for row_episode_id, count in session.execute(stmt).all()
    ]


def scheduling_integrity(
    session: Session, episode_id: int, *, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Per-episode consistency report."""

    now = ensure_utc(now) if now is not None else utc_now()
    episode = get_episode(session, episode_id)
    violations: List[Dict[str, Any]] = []

    for row in find_one_hard_next_violations(session, now=now, episode_id=episode_id):
        violations.append(
            {
                "kind": ONE_HARD_NEXT_VIOLATION,
                "count": row["count"],
                "appointmentIds": [
                    appointment.id
                    for appointment in future_hard_work_appointments(session, episode_id, now=now)
                ],
            }
        )

    if EpisodeStatus(episode.status) == EpisodeStatus.CLOSED:
        open_intents = list(
            session.execute(
                select(SlotIntent.id).where(
                    SlotIntent.episode_id == episode_id, SlotIntent.state == IntentState.OPEN
                )
            ).scalars()
        )
        if open_intents:
            violations.append({"kind": INTENT_OPEN_EPISODE_CLOSED, "intentIds": open_intents})

    orphaned = list(
        session.execute(
            select(Appointment.id)
            .outerjoin(TimeSlot, TimeSlot.id == Appointment.time_slot_id)
            .where(
                Appointment.episode_id == episode_id,
                Appointment.appointment_status.is_(None),
                TimeSlot.id.is_(None),
            )
        ).scalars()
    )
    if orphaned:
        violations.append({"kind": APPOINTMENT_NO_SLOT, "appointmentIds": orphaned})

    return {"episodeId": episode_id, "ok": not violations, "violations": violations}


def _episode_pathway_ids(session: Session, episode_ids: List[int]) -> Dict[int, Optional[int]]:
    if not episode_ids:
        return {}
    mapping: Dict[int, Optional[int]] = {}
    for episode_id, pathway_id in session.execute(
        select(PatientEpisode.id, PatientEpisode.care_pathway_id).where(
            PatientEpisode.id.in_(episode_ids)
        )
    ).all():
        mapping[episode_id] = pathway_id
    for episode_id, pathway_id in session.execute(
        select(EpisodePathway.episode_id, EpisodePathway.care_pathway_id)
        .where(EpisodePathway.episode_id.in_(episode_ids))
        .order_by(EpisodePathway.episode_id, EpisodePathway.ordinal.desc())
    ).all():
        mapping[episode_id] = pathway_id
    return mapping


def _override_rates(session: Session, now: datetime) -> List[Dict[str, Any]]:
    since = now - timedelta(days=OVERRIDE_RATE_WINDOW_DAYS)
    bookings = session.execute(
        select(Appointment.episode_id, func.count(Appointment.id))
        .where(
            Appointment.episode_id.is_not(None),
            Appointment.pool == Pool.WORK,
            Appointment.created_at >= since,
        )
        .group_by(Appointment.episode_id)
    ).all()
    overrides = session.execute(
        select(SchedulingOverrideAudit.episode_id, func.count(SchedulingOverrideAudit.id))
        .where(SchedulingOverrideAudit.at >= since)
        .group_by(SchedulingOverrideAudit.episode_id)
    ).all()
    episode_ids = sorted({row[0] for row in bookings} | {row[0] for row in overrides})
    pathway_of = _episode_pathway_ids(session, episode_ids)

    totals: Dict[Optional[int], List[int]] = defaultdict(lambda: [0, 0])
    for episode_id, count in bookings:
        totals[pathway_of.get(episode_id)][0] += count
    for episode_id, count in overrides:
        totals[pathway_of.get(episode_id)][1] += count

    rates: List[Dict[str, Any]] = []
    for pathway_id, (booked, overridden) in sorted(totals.items(), key=lambda item: item[0] or 0):
        rate = overridden / booked if booked else 0.0
        entry: Dict[str, Any] = {
            "carePathwayId": pathway_id,
            "bookings": booked,
            "overrides": overridden,
            "rate": round(rate, 4),
        }
        if rate > OVERRIDE_RATE_ALERT:
            entry["action"] = {
                "severity": "info",
                "message": "Override rate above 20%; review the pathway's precommit flags",
            }
        rates.append(entry)
    return rates


def collect_tripwires(session: Session, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Cluster-wide advisory checks.  Read-only and lock-free."""

    now = ensure_utc(now) if now is not None else utc_now()

    violations = find_one_hard_next_violations(session, now=now)

    held_past_expiry = list(
        session.execute(
            select(Appointment.id)
            .where(
                Appointment.hold_expires_at.is_not(None),
                Appointment.hold_expires_at <= now,
                Appointment.appointment_status.is_(None),
            )
            .order_by(Appointment.id)
        ).scalars()
    )

    blocked_slots = session.execute(
        select(func.count(TimeSlot.id)).where(
            TimeSlot.state == SlotState.BLOCKED, TimeSlot.start_time > now
        )
    ).scalar_one()

    open_episodes = list(
        session.execute(
            select(PatientEpisode).where(PatientEpisode.status == EpisodeStatus.OPEN)
        ).scalars()
    )
    booked_episodes = set(
        session.execute(
            select(Appointment.episode_id)
            .where(
                Appointment.episode_id.is_not(None),
                Appointment.pool == Pool.WORK,
                Appointment.start_time > now,
                _active_clause(),
            )
            .distinct()
        ).scalars()
    )
    wip_without_hard_next: List[int] = []
    for episode in open_episodes:
        if episode.id in booked_episodes:
            continue
        result = next_required_step(session, episode.id, now=now)
        if isinstance(result, Ready) and result.projection.pool == Pool.WORK.value:
            wip_without_hard_next.append(episode.id)

    ages = [(now - ensure_utc(episode.opened_at)).total_seconds() / 86400 for episode in open_episodes]
    median_wip_age = round(statistics.median(ages), 1) if ages else None

    return {
        "generatedAt": isoformat(now),
        "oneHardNextViolations": violations,
        "heldPastExpiry": {"count": len(held_past_expiry), "appointmentIds": held_past_expiry},
        "blockedSlots": blocked_slots,
        "wipWithoutHardNext": {"count": len(wip_without_hard_next), "episodeIds": wip_without_hard_next},
        "overrideRateByPathway": _override_rates(session, now),
        "medianWipAgeDays": median_wip_age,
    }


__all__ = [
    "ONE_HARD_NEXT_VIOLATION",
    "INTENT_OPEN_EPISODE_CLOSED",
    "APPOINTMENT_NO_SLOT",
    "OneHardNextCheck",
    "future_hard_work_appointments",
    "check_one_hard_next",
    "record_override",
    "find_one_hard_next_violations",
    "scheduling_integrity",
    "collect_tripwires",
]
