"""Step catalog lookups with an explicit, injectable cache.

The catalog maps ``step_code`` values used in pathway templates to display
labels.  Reads are frequent (every projection) and writes rare, so results
are cached per key until the TTL elapses or a committed write calls
:meth:`StepCatalogCache.invalidate`.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from carepath.db.models import CarePathway, PathwayStatus, StepCatalogEntry

logger = structlog.get_logger(__name__)

LABELS = "labels"
UNMAPPED = "unmapped"


def _load_labels(session: Session) -> Dict[str, str]:
    rows = session.execute(select(StepCatalogEntry.step_code, StepCatalogEntry.label)).all()
    return {code: label for code, label in rows}


def _load_unmapped(session: Session) -> List[str]:
    labels = _load_labels(session)
    pathways = session.execute(
        select(CarePathway.steps_json).where(CarePathway.status == PathwayStatus.ACTIVE)
    ).scalars()
    codes = set()
    for steps in pathways:
        for step in steps or []:
            code = step.get("step_code") if isinstance(step, dict) else None
            if code and code not in labels:
                codes.add(code)
    return sorted(codes)


_LOADERS: Dict[str, Callable[[Session], Any]] = {
    LABELS: _load_labels,
    UNMAPPED: _load_unmapped,
}


class StepCatalogCache:
    """Per-key memo of catalog lookups.

    Parameters
    ----------
    ttl_seconds:
        Maximum age of a cached value.  Once a write to ``step_catalog`` or
        ``care_pathways`` commits, the writer calls :meth:`invalidate`
        (or :meth:`invalidate_all`) regardless of the TTL.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, session: Session) -> Any:
        loader = _LOADERS.get(key)
        if loader is None:
            raise KeyError(f"Unknown step catalog key: {key}")
        now = self._clock()
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and now - cached[0] < self._ttl:
                return cached[1]
        value = loader(session)
        with self._lock:
            self._entries[key] = (now, value)
        return value

    def peek(self, key: str) -> Optional[Any]:
        with self._lock:
            cached = self._entries.get(key)
        return cached[1] if cached else None

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
        logger.debug("step_catalog_invalidated", key=key)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug("step_catalog_invalidated", key="*")

    def label_for(self, step_code: str, session: Session) -> str:
        return self.get(LABELS, session).get(step_code, step_code)


def upsert_label(session: Session, step_code: str, label: str) -> StepCatalogEntry:
    """Insert or relabel a step code.  Callers invalidate their cache after commit."""

    entry = session.get(StepCatalogEntry, step_code)
    if entry is None:
        entry = StepCatalogEntry(step_code=step_code, label=label)
        session.add(entry)
    else:
        entry.label = label
    session.flush()
    return entry


__all__ = ["LABELS", "UNMAPPED", "StepCatalogCache", "upsert_label"]
