"""Episode completion forecasts, memoised per episode by a content hash of
their inputs.
"""

from __future__ import annotations

import hashlib
import json
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from carepath.db.models import (
    Appointment,
    AppointmentStatus,
    CarePathway,
    CarePathwayAnalytics,
    EpisodeBlock,
    EpisodeForecastCache,
    EpisodePathway,
    EpisodeStatus,
    EpisodeStep,
    ForecastStatus,
    PatientEpisode,
    Pool,
    StageEvent,
    StepStatus,
)
from carepath.metrics import FORECAST_CACHE
from carepath.next_step import Blocked, next_required_step
from carepath.pathways import StepCatalogIssue, parse_pathway_steps, steps_hash
from carepath.settings import get_scheduling_settings
from carepath.time_utils import ensure_utc, isoformat, optional_utc, utc_now

logger = structlog.get_logger(__name__)

HEURISTIC_FALLBACK_VISITS = 4
CACHED = "cached"


@dataclass
class ForecastResult:
    episode_id: int
    status: str
    inputs_hash: str
    remaining_visits_p50: Optional[int] = None
    remaining_visits_p80: Optional[int] = None
    completion_window_start: Optional[datetime] = None
    completion_window_end: Optional[datetime] = None
    step_code: Optional[str] = None
    blocked_code: Optional[str] = None
    assumptions: List[str] = field(default_factory=list)
    computed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "episodeId": self.episode_id,
            "status": self.status,
            "remainingVisitsP50": self.remaining_visits_p50,
            "remainingVisitsP80": self.remaining_visits_p80,
            "completionWindowStart": isoformat(self.completion_window_start),
            "completionWindowEnd": isoformat(self.completion_window_end),
            "stepCode": self.step_code,
            "blockedCode": self.blocked_code,
            "assumptions": list(self.assumptions),
            "inputsHash": self.inputs_hash,
            "computedAt": isoformat(self.computed_at),
        }

    def cache_row(self) -> Dict[str, Any]:
        return {
            "episode_id": self.episode_id,
            "completion_end_p50": self.completion_window_start,
            "completion_end_p80": self.completion_window_end,
            "remaining_visits_p50": self.remaining_visits_p50,
            "remaining_visits_p80": self.remaining_visits_p80,
            "next_step": self.step_code,
            "status": self.status,
            "blocked_code": self.blocked_code,
            "inputs_hash": self.inputs_hash,
            "computed_at": self.computed_at,
        }

    @classmethod
    def from_cache(cls, row: EpisodeForecastCache) -> "ForecastResult":
        return cls(
            episode_id=row.episode_id,
            status=row.status,
            inputs_hash=row.inputs_hash,
            remaining_visits_p50=row.remaining_visits_p50,
            remaining_visits_p80=row.remaining_visits_p80,
            completion_window_start=optional_utc(row.completion_end_p50),
            completion_window_end=optional_utc(row.completion_end_p80),
            step_code=row.next_step,
            blocked_code=row.blocked_code,
            assumptions=[CACHED],
            computed_at=optional_utc(row.computed_at),
        )


# ---------------------------------------------------------------------------
# Inputs hash
# ---------------------------------------------------------------------------


def _canonical_hash(document: Dict[str, Any]) -> str:
    payload = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _pathways_by_episode(
    session: Session, episodes: Sequence[PatientEpisode]
) -> Dict[int, List[CarePathway]]:
    ids = [episode.id for episode in episodes]
    linked: Dict[int, List[CarePathway]] = defaultdict(list)
    rows = session.execute(
        select(EpisodePathway.episode_id, CarePathway)
        .join(CarePathway, CarePathway.id == EpisodePathway.care_pathway_id)
        .where(EpisodePathway.episode_id.in_(ids))
        .order_by(EpisodePathway.episode_id, EpisodePathway.ordinal, EpisodePathway.id)
    ).all()
    for episode_id, pathway in rows:
        linked[episode_id].append(pathway)

    legacy_ids = {
        episode.care_pathway_id
        for episode in episodes
        if episode.id not in linked and episode.care_pathway_id is not None
    }
    if legacy_ids:
        legacy = {
            pathway.id: pathway
            for pathway in session.execute(
                select(CarePathway).where(CarePathway.id.in_(legacy_ids))
            ).scalars()
        }
        for episode in episodes:
            if episode.id not in linked and episode.care_pathway_id in legacy:
                linked[episode.id].append(legacy[episode.care_pathway_id])
    return linked


def _pathway_steps_hash(pathways: Sequence[CarePathway]) -> Optional[str]:
    steps = []
    try:
        for pathway in pathways:
            steps.extend(parse_pathway_steps(pathway.steps_json, pathway_id=pathway.id))
    except StepCatalogIssue:
        return None
    return steps_hash(steps)


def compute_inputs_hash_batch(
    session: Session, episode_ids: Iterable[int], *, now: Optional[datetime] = None
) -> Dict[int, str]:
    """Hash the forecast inputs of many episodes with one query per input kind.

    Unknown episode ids are left out of the result.
    """

    now = ensure_utc(now) if now is not None else utc_now()
    ids = sorted(set(episode_ids))
    if not ids:
        return {}
    episodes = list(
        session.execute(select(PatientEpisode).where(PatientEpisode.id.in_(ids))).scalars()
    )
    if not episodes:
        return {}
    ids = [episode.id for episode in episodes]
    pathways = _pathways_by_episode(session, episodes)

    stages: Dict[int, Dict[str, Any]] = {}
    for event in session.execute(
        select(StageEvent).where(StageEvent.episode_id.in_(ids)).order_by(StageEvent.at, StageEvent.id)
    ).scalars():
        stages[event.episode_id] = {"code": event.stage_code, "at": isoformat(event.at)}

    appointments: Dict[int, Dict[str, Any]] = {
        episode_id: {"completedCount": 0, "futureActiveCount": 0, "lastCompletedAt": None, "nextBookedAt": None}
        for episode_id in ids
    }
    for episode_id, status, start_time in session.execute(
        select(Appointment.episode_id, Appointment.appointment_status, Appointment.start_time).where(
            Appointment.episode_id.in_(ids)
        )
    ).all():
        bucket = appointments[episode_id]
        start = ensure_utc(start_time)
        if status == AppointmentStatus.COMPLETED:
            bucket["completedCount"] += 1
            if bucket["lastCompletedAt"] is None or start.isoformat() > bucket["lastCompletedAt"]:
                bucket["lastCompletedAt"] = start.isoformat()
        elif status is None and start > now:
            bucket["futureActiveCount"] += 1
            if bucket["nextBookedAt"] is None or start.isoformat() < bucket["nextBookedAt"]:
                bucket["nextBookedAt"] = start.isoformat()

    step_counts: Dict[int, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    open_order: Dict[int, List[str]] = defaultdict(list)
    for episode_id, step_code, status in session.execute(
        select(EpisodeStep.episode_id, EpisodeStep.step_code, EpisodeStep.status)
        .where(EpisodeStep.episode_id.in_(ids))
        .order_by(EpisodeStep.episode_id, EpisodeStep.seq, EpisodeStep.id)
    ).all():
        step_counts[episode_id][StepStatus(status).value] += 1
        if status in (StepStatus.PENDING, StepStatus.SCHEDULED):
            open_order[episode_id].append(step_code)

    blocks: Dict[int, List[str]] = defaultdict(list)
    for episode_id, key in session.execute(
        select(EpisodeBlock.episode_id, EpisodeBlock.key).where(
            EpisodeBlock.episode_id.in_(ids),
            or_(EpisodeBlock.expires_at.is_(None), EpisodeBlock.expires_at > now),
        )
    ).all():
        blocks[episode_id].append(key)

    primary_ids = {items[0].id for items in pathways.values() if items}
    analytics = {
        row.care_pathway_id: row
        for row in session.execute(
            select(CarePathwayAnalytics).where(CarePathwayAnalytics.care_pathway_id.in_(primary_ids))
        ).scalars()
    } if primary_ids else {}

    hashes: Dict[int, str] = {}
    for episode in episodes:
        episode_pathways = pathways.get(episode.id, [])
        stats = analytics.get(episode_pathways[0].id) if episode_pathways else None
        document = {
            "episodeId": episode.id,
            "status": EpisodeStatus(episode.status).value,
            "pathways": [{"id": pathway.id, "version": pathway.version} for pathway in episode_pathways],
            "pathwayStepsHash": _pathway_steps_hash(episode_pathways),
            "stage": stages.get(episode.id),
            "appointments": appointments[episode.id],
            "steps": dict(sorted(step_counts.get(episode.id, {}).items())),
            "openStepOrder": open_order.get(episode.id, []),
            "blocks": sorted(set(blocks.get(episode.id, []))),
            "analytics": (
                {
                    "median": stats.median_visits,
                    "p80": stats.p80_visits,
                    "cadence": stats.median_cadence_days,
                    "recordedAt": isoformat(stats.recorded_at),
                }
                if stats is not None
                else None
            ),
        }
        hashes[episode.id] = _canonical_hash(document)
    return hashes


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------


def _remaining_work_steps(session: Session, episode_id: int, pathways: Sequence[CarePathway]) -> int:
    materialised = session.execute(
        select(EpisodeStep.pool, EpisodeStep.status).where(EpisodeStep.episode_id == episode_id)
    ).all()
    if materialised:
        return sum(
            1
            for pool, status in materialised
            if Pool(pool) == Pool.WORK and StepStatus(status) in (StepStatus.PENDING, StepStatus.SCHEDULED)
        )
    count = 0
    for pathway in pathways:
        try:
            steps = parse_pathway_steps(pathway.steps_json, pathway_id=pathway.id)
        except StepCatalogIssue:
            continue
        count += sum(1 for step in steps if step.pool == Pool.WORK.value)
    return count


def compute_episode_forecast(
    session: Session,
    episode_id: int,
    *,
    now: Optional[datetime] = None,
    inputs_hash: Optional[str] = None,
) -> ForecastResult:
    """Estimate remaining visits and the completion window for one episode."""

    now = ensure_utc(now) if now is not None else utc_now()
    settings = get_scheduling_settings()
    if inputs_hash is None:
        inputs_hash = compute_inputs_hash_batch(session, [episode_id], now=now)[episode_id]

    upcoming = next_required_step(session, episode_id, now=now)
    if isinstance(upcoming, Blocked):
        return ForecastResult(
            episode_id=episode_id,
            status=ForecastStatus.BLOCKED.value,
            inputs_hash=inputs_hash,
            blocked_code=upcoming.code,
            assumptions=[],
            computed_at=now,
        )

    projection = upcoming.projection
    episode = session.get(PatientEpisode, episode_id)
    pathways = _pathways_by_episode(session, [episode]).get(episode_id, [])
    stats = session.get(CarePathwayAnalytics, pathways[0].id) if pathways else None

    assumptions: List[str] = []
    if stats is not None and stats.median_visits is not None:
        p50 = max(1, math.ceil(stats.median_visits))
        p80 = max(p50, math.ceil(stats.p80_visits if stats.p80_visits is not None else stats.median_visits))
        assumptions.append("pathway_analytics")
        cadence = stats.median_cadence_days
    else:
        work = _remaining_work_steps(session, episode_id, pathways) or HEURISTIC_FALLBACK_VISITS
        p50 = max(1, math.ceil(0.6 * work))
        p80 = max(p50, math.ceil(0.9 * work))
        assumptions.append("remaining_work_steps")
        cadence = None
    if not cadence:
        cadence = settings.default_cadence_days
        assumptions.append("default_cadence")

    return ForecastResult(
        episode_id=episode_id,
        status=ForecastStatus.READY.value,
        inputs_hash=inputs_hash,
        remaining_visits_p50=p50,
        remaining_visits_p80=p80,
        completion_window_start=projection.earliest_date + timedelta(days=p50 * cadence),
        completion_window_end=projection.latest_date + timedelta(days=p80 * cadence),
        step_code=projection.step_code,
        assumptions=assumptions,
        computed_at=now,
    )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def _bulk_upsert(session: Session, rows: List[Dict[str, Any]]) -> None:
    if not rows:
        return
    dialect = session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert(EpisodeForecastCache).values(rows)
    updatable = [column.name for column in EpisodeForecastCache.__table__.columns if column.name != "episode_id"]
    stmt = stmt.on_conflict_do_update(
        index_elements=[EpisodeForecastCache.episode_id],
        set_={name: stmt.excluded[name] for name in updatable},
    )
    session.execute(stmt)


def forecast_batch(
    session: Session, episode_ids: Sequence[int], *, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Serve forecasts for up to ``forecast_batch_limit`` episodes.

    Cached rows whose ``inputs_hash`` still matches are served as they are;
    the rest are recomputed and written back in a single upsert.
    """

    now = ensure_utc(now) if now is not None else utc_now()
    limit = get_scheduling_settings().forecast_batch_limit

    unique: List[int] = []
    for episode_id in episode_ids:
        if episode_id not in unique:
            unique.append(episode_id)
    selected = unique[:limit]

    hashes = compute_inputs_hash_batch(session, selected, now=now)
    cached = {
        row.episode_id: row
        for row in session.execute(
            select(EpisodeForecastCache)
            .where(EpisodeForecastCache.episode_id.in_(list(hashes)))
            .execution_options(populate_existing=True)
        ).scalars()
    } if hashes else {}

    forecasts: Dict[str, Any] = {}
    recomputed: List[Dict[str, Any]] = []
    for episode_id in selected:
        if episode_id not in hashes:
            continue
        row = cached.get(episode_id)
        if row is not None and row.inputs_hash == hashes[episode_id]:
            result = ForecastResult.from_cache(row)
            FORECAST_CACHE.labels(result="hit").inc()
        else:
            result = compute_episode_forecast(session, episode_id, now=now, inputs_hash=hashes[episode_id])
            recomputed.append(result.cache_row())
            FORECAST_CACHE.labels(result="miss").inc()
        forecasts[str(episode_id)] = result.to_dict()

    _bulk_upsert(session, recomputed)
    logger.info(
        "forecast_batch_served",
        requested=len(unique),
        returned=len(forecasts),
        recomputed=len(recomputed),
    )
    return {
        "forecasts": forecasts,
        "meta": {
            "serverNow": isoformat(now),
            "fetchedAt": isoformat(utc_now()),
            "episodeCountRequested": len(unique),
            "episodeCountReturned": len(forecasts),
            "limit": limit,
            "limitApplied": len(unique) > limit,
        },
    }


__all__ = [
    "ForecastResult",
    "compute_inputs_hash_batch",
    "compute_episode_forecast",
    "forecast_batch",
]
