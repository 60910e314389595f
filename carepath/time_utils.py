"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def optional_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return ensure_utc(dt)


def add_days(dt: datetime, days: float) -> datetime:
    return ensure_utc(dt) + timedelta(days=days)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    """Serialise ``dt`` as an ISO 8601 string with an explicit UTC offset."""

    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; a trailing ``Z`` and naive values are read as UTC."""

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def ceil_days_until(target: datetime, now: datetime) -> int:
    """Return the whole number of days from ``now`` until ``target`` (rounded up)."""

    delta = ensure_utc(target) - ensure_utc(now)
    return math.ceil(delta.total_seconds() / 86400)


__all__ = [
    "utc_now",
    "ensure_utc",
    "optional_utc",
    "add_days",
    "isoformat",
    "parse_iso",
    "ceil_days_until",
]
