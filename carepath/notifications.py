"""Best-effort outbound notifications sent after a scheduling change commits."""

from __future__ import annotations

import os
from typing import Any, Dict, Optional, Set
from urllib.parse import urlparse

import requests
import structlog

from carepath.metrics import NOTIFICATION_FAILURES
from carepath.settings import get_scheduling_settings

logger = structlog.get_logger(__name__)

APPOINTMENT_BOOKED = "appointment.booked"
APPOINTMENT_CANCELLED = "appointment.cancelled"
APPOINTMENT_APPROVED = "appointment.approved"
APPOINTMENT_REJECTED = "appointment.rejected"
ALTERNATIVE_OFFERED = "appointment.alternative_offered"


def _allowed_hosts(webhook_url: Optional[str]) -> Set[str]:
    hosts = {"localhost", "127.0.0.1"}
    raw = os.getenv("CAREPATH_ALLOWED_EGRESS_HOSTS")
    if raw:
        hosts.update(host.strip().lower() for host in raw.split(",") if host.strip())
    if webhook_url:
        parsed = urlparse(webhook_url)
        if parsed.hostname:
            hosts.add(parsed.hostname.lower())
    return hosts


class NotificationDispatcher:
    """Post scheduling events to a webhook.

    Delivery failures are logged and counted, never raised: the booking is
    already committed when a notification goes out.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        timeout: float = 5.0,
        http: Any = requests,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._http = http
        self._allowed = _allowed_hosts(webhook_url)

    def _verify_host(self, url: str) -> None:
        host = (urlparse(url).hostname or "").lower()
        if host not in self._allowed:
            raise RuntimeError(f"Egress to host '{host}' is not permitted")

    def dispatch(self, event: str, payload: Dict[str, Any]) -> bool:
        if not self.webhook_url:
            logger.info("notification_skipped", notification_event=event, reason="no_webhook")
            return False
        try:
            self._verify_host(self.webhook_url)
            response = self._http.post(
                self.webhook_url,
                json={"event": event, "payload": payload},
                timeout=self.timeout,
                verify=True,
            )
            response.raise_for_status()
        except Exception:
            NOTIFICATION_FAILURES.labels(event=event).inc()
            logger.exception("notification_dispatch_failed", notification_event=event)
            return False
        logger.info("notification_dispatched", notification_event=event)
        return True


def get_notifier() -> NotificationDispatcher:
    settings = get_scheduling_settings()
    return NotificationDispatcher(
        settings.notification_webhook_url, timeout=settings.notification_timeout_seconds
    )


__all__ = [
    "APPOINTMENT_BOOKED",
    "APPOINTMENT_CANCELLED",
    "APPOINTMENT_APPROVED",
    "APPOINTMENT_REJECTED",
    "ALTERNATIVE_OFFERED",
    "NotificationDispatcher",
    "get_notifier",
]
