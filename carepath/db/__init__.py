"""Database helpers for carepath."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base
from .session import (
    configure_engine,
    get_engine,
    get_session,
    get_session_factory,
    initialise_schema,
    session_scope,
    transaction,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "configure_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "initialise_schema",
    "session_scope",
    "transaction",
]
