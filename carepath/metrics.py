"""Prometheus counters for the scheduling core."""

from __future__ import annotations

from prometheus_client import Counter


BOOKINGS_TOTAL = Counter(
    "carepath_bookings_total",
    "Booking attempts by entry path and outcome",
    ("path", "outcome"),
)

ONE_HARD_NEXT_REJECTIONS = Counter(
    "carepath_one_hard_next_rejections_total",
    "Bookings rejected because the episode already has a hard work booking",
    ("path",),
)

OVERRIDE_AUDITS = Counter(
    "carepath_override_audits_total",
    "One-hard-next bypasses written to the override audit trail",
    ("kind",),
)

FORECAST_CACHE = Counter(
    "carepath_forecast_cache_total",
    "Forecast cache lookups",
    ("result",),
)

NOTIFICATION_FAILURES = Counter(
    "carepath_notification_failures_total",
    "Best-effort notification dispatches that failed",
    ("event",),
)

HOLDS_EXPIRED = Counter(
    "carepath_holds_expired_total",
    "Appointments released by the hold-expiry sweep",
)


__all__ = [
    "BOOKINGS_TOTAL",
    "ONE_HARD_NEXT_REJECTIONS",
    "OVERRIDE_AUDITS",
    "FORECAST_CACHE",
    "NOTIFICATION_FAILURES",
    "HOLDS_EXPIRED",
]
