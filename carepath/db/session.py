"""Engine and session management for the scheduling service.

The engine is created lazily from :func:`get_database_settings` so importing
the package never touches the filesystem.  Tests and embedding applications
can swap in their own engine with :func:`configure_engine`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_database_settings
from .models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _create_engine() -> Engine:
    settings = get_database_settings()
    engine = create_engine(settings.url, future=True, **settings.engine_options())
    logger.info("database_engine_created", dialect=engine.dialect.name)
    return engine


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""

    global _engine
    if _engine is None:
        _engine = _create_engine()
    return _engine


def configure_engine(engine: Optional[Engine]) -> None:
    """Bind the module to ``engine`` (``None`` resets to the configured default)."""

    global _engine
    global _session_factory
    _engine = engine
    _session_factory = None


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(), autoflush=False, autocommit=False, expire_on_commit=False, future=True
        )
    return _session_factory


def initialise_schema(engine: Optional[Engine] = None) -> None:
    """Create all tables for development databases.  Production uses alembic."""

    Base.metadata.create_all(bind=engine or get_engine())


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session."""

    session: Session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Commit ``session`` when the block succeeds, roll back and re-raise otherwise."""

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "get_engine",
    "configure_engine",
    "get_session_factory",
    "initialise_schema",
    "get_session",
    "transaction",
    "session_scope",
]
