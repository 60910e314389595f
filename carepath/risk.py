"""No-show risk assessment used by the booking transaction."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from carepath.db.models import Appointment, AppointmentStatus, NoShowRiskConfig
from carepath.time_utils import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_COEFFICIENTS: Dict[str, float] = {
    "base": 0.05,
    "prior_no_show": 0.15,
    "repeat_no_show": 0.10,
    "long_lead_time": 0.05,
    "early_morning": 0.05,
    "max_risk": 0.95,
    "confirmation_threshold": 0.2,
    "short_hold_threshold": 0.35,
    "short_hold_hours": 24,
    "long_hold_hours": 48,
    "lead_time_days": 21,
}


@dataclass(frozen=True)
class RiskSettings:
    no_show_risk: Optional[float]
    requires_confirmation: bool
    hold_expires_at: Optional[datetime]


class RiskAssessor(Protocol):
    def assess(
        self,
        session: Session,
        *,
        patient_id: int,
        start_time: datetime,
        caller_email: Optional[str],
        now: Optional[datetime] = None,
    ) -> RiskSettings:
        ...


def load_coefficients(session: Session) -> Dict[str, float]:
    coefficients = dict(DEFAULT_COEFFICIENTS)
    for key, value in session.execute(select(NoShowRiskConfig.key, NoShowRiskConfig.value)).all():
        if key in coefficients:
            coefficients[key] = float(value)
    return coefficients


class RuleBasedRiskAssessor:
    """Additive rule model over the patient's recent attendance.

    Bookings below the confirmation threshold carry no hold.  Risky
    bookings are held for confirmation; the riskiest get the shorter hold so
    the slot returns to the pool sooner if nobody confirms.
    """

    def assess(
        self,
        session: Session,
        *,
        patient_id: int,
        start_time: datetime,
        caller_email: Optional[str],
        now: Optional[datetime] = None,
    ) -> RiskSettings:
        now = ensure_utc(now) if now is not None else utc_now()
        start_time = ensure_utc(start_time)
        c = load_coefficients(session)

        no_shows = session.execute(
            select(func.count(Appointment.id)).where(
                Appointment.patient_id == patient_id,
                Appointment.appointment_status == AppointmentStatus.NO_SHOW,
                Appointment.start_time >= now - timedelta(days=365),
            )
        ).scalar_one()

        risk = c["base"]
        if no_shows >= 1:
            risk += c["prior_no_show"]
        if no_shows >= 2:
            risk += c["repeat_no_show"]
        if (start_time - now).total_seconds() > c["lead_time_days"] * 86400:
            risk += c["long_lead_time"]
        if 7 <= start_time.hour <= 9:
            risk += c["early_morning"]
        risk = round(min(max(risk, 0.0), c["max_risk"]), 4)

        requires_confirmation = risk >= c["confirmation_threshold"]
        hold_expires_at = None
        if requires_confirmation:
            hours = c["short_hold_hours"] if risk >= c["short_hold_threshold"] else c["long_hold_hours"]
            hold_expires_at = now + timedelta(hours=hours)

        logger.debug(
            "no_show_risk_assessed",
            patient_id=patient_id,
            risk=risk,
            prior_no_shows=no_shows,
            caller=caller_email,
        )
        return RiskSettings(
            no_show_risk=risk,
            requires_confirmation=requires_confirmation,
            hold_expires_at=hold_expires_at,
        )


__all__ = [
    "DEFAULT_COEFFICIENTS",
    "RiskSettings",
    "RiskAssessor",
    "RuleBasedRiskAssessor",
    "load_coefficients",
]
