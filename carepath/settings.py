"""Scheduling policy configuration resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


@dataclass(frozen=True)
class SchedulingSettings:
    """Tunable defaults for the scheduling core.

    Pathway-level values (``window_slack_days`` on a pathway, ``slack_days``
    or ``default_days_offset`` on a step) take precedence over these.
    """

    default_days_offset: int = 14
    default_window_slack_days: int = 14
    intent_expiry_grace_days: int = 30
    forecast_batch_limit: int = 100
    default_cadence_days: int = 14
    override_reason_min_length: int = 10
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0
    log_level: str = "INFO"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_scheduling_settings() -> SchedulingSettings:
    """Return the active scheduling settings derived from the environment."""

    return SchedulingSettings(
        default_days_offset=_int_env("CAREPATH_DEFAULT_DAYS_OFFSET", 14),
        default_window_slack_days=_int_env("CAREPATH_WINDOW_SLACK_DAYS", 14),
        intent_expiry_grace_days=_int_env("CAREPATH_INTENT_EXPIRY_GRACE_DAYS", 30),
        forecast_batch_limit=_int_env("CAREPATH_FORECAST_BATCH_LIMIT", 100),
        default_cadence_days=_int_env("CAREPATH_DEFAULT_CADENCE_DAYS", 14),
        override_reason_min_length=_int_env("CAREPATH_OVERRIDE_REASON_MIN_LENGTH", 10),
        jwt_secret=os.getenv("CAREPATH_JWT_SECRET") or os.getenv("JWT_SECRET") or "change-me",
        jwt_algorithm=os.getenv("CAREPATH_JWT_ALGORITHM", "HS256"),
        notification_webhook_url=os.getenv("CAREPATH_NOTIFICATION_WEBHOOK_URL") or None,
        notification_timeout_seconds=_float_env("CAREPATH_NOTIFICATION_TIMEOUT", 5.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


__all__ = ["SchedulingSettings", "get_scheduling_settings"]
