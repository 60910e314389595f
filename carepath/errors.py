"""Domain errors raised by the scheduling core.

Every error carries a stable machine-readable ``code`` that clients map to
their own handling (override modal, inline banner, toast).  The HTTP layer
turns these into the standard error envelope using ``status_code``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base class for scheduling failures surfaced to callers."""

    status_code = 400
    default_code = "SCHEDULING_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_detail(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(SchedulingError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(SchedulingError):
    status_code = 409
    default_code = "CONFLICT"


class OneHardNextViolation(ConflictError):
    default_code = "ONE_HARD_NEXT_VIOLATION"


class SlotUnavailableError(SchedulingError):
    """Raised when the chosen slot cannot be consumed."""

    status_code = 400
    default_code = "SLOT_ALREADY_BOOKED"


class NoFreeSlotError(NotFoundError):
    default_code = "SLOT_ALREADY_BOOKED"


class InvalidTransitionError(SchedulingError):
    default_code = "INVALID_TRANSITION"


class ValidationError(SchedulingError):
    default_code = "VALIDATION_ERROR"


class PermissionDeniedError(SchedulingError):
    status_code = 403
    default_code = "FORBIDDEN"


__all__ = [
    "SchedulingError",
    "NotFoundError",
    "ConflictError",
    "OneHardNextViolation",
    "SlotUnavailableError",
    "NoFreeSlotError",
    "InvalidTransitionError",
    "ValidationError",
    "PermissionDeniedError",
]
