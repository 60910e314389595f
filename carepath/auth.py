"""Caller identity resolution for the scheduling API.

Tokens are issued by the clinic's identity service; this module only
verifies them and exposes the ``{user_id, email, role}`` triple the core
needs for authorisation and audit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from carepath.settings import get_scheduling_settings
from carepath.time_utils import utc_now

logger = structlog.get_logger(__name__)

ROLE_ADMIN = "admin"
ROLE_SURGEON = "sebészorvos"
ROLE_PROSTHODONTIST = "fogpótlástanász"
CLINICAL_ROLES = (ROLE_ADMIN, ROLE_SURGEON, ROLE_PROSTHODONTIST)

security = HTTPBearer()


@dataclass(frozen=True)
class Caller:
    """Authenticated caller as seen by the scheduling core."""

    user_id: Optional[int]
    email: Optional[str]
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def create_access_token(
    user_id: int, email: str, role: str, expires_in: timedelta = timedelta(minutes=15)
) -> str:
    """Return a signed token for ``user_id``; used by tooling and tests."""

    settings = get_scheduling_settings()
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "exp": utc_now() + expires_in,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _caller_from_claims(data: Dict[str, Any]) -> Caller:
    raw_sub = data.get("sub")
    try:
        user_id = int(raw_sub) if raw_sub is not None else None
    except (TypeError, ValueError):
        user_id = None
    return Caller(user_id=user_id, email=data.get("email"), role=str(data.get("role") or ""))


def get_current_caller(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Caller:
    """Decode the provided JWT into a :class:`Caller`."""

    settings = get_scheduling_settings()
    try:
        data = jwt.decode(
            credentials.credentials, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return _caller_from_claims(data)


def require_roles(*roles: str):
    """Dependency factory ensuring the current caller is in an allowed role.

    ``admin`` is always allowed so administrators can perform any clinical
    action.
    """

    allowed = {ROLE_ADMIN, *roles}

    def checker(caller: Caller = Depends(get_current_caller)) -> Caller:
        if caller.role not in allowed:
            logger.warning("authorization_denied", role=caller.role, user_id=caller.user_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient privileges",
            )
        return caller

    return checker


require_clinician = require_roles(ROLE_SURGEON, ROLE_PROSTHODONTIST)
require_admin = require_roles()


__all__ = [
    "ROLE_ADMIN",
    "ROLE_SURGEON",
    "ROLE_PROSTHODONTIST",
    "CLINICAL_ROLES",
    "Caller",
    "create_access_token",
    "get_current_caller",
    "require_roles",
    "require_clinician",
    "require_admin",
]
