"""Recovery endpoints: scores, daily metrics, baselines, and manual sync."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import RecoveryServices, Services
from src.models.base import ErrorDetail
from src.models.recovery import (
    BaselineRead,
    DailyMetricsRead,
    LatestScoreRead,
    SyncRunRead,
    SyncStateRead,
    VigorScoreRead,
)

router = APIRouter(prefix="/recovery", tags=["recovery"])

_DEFAULT_RANGE_DAYS = 30


def _resolve_range(
    services: RecoveryServices, start: date | None, end: date | None
) -> tuple[date, date]:
    """Closed [start, end] range, defaulting to the last 30 days ending today."""
    end = end or services.orchestrator.today()
    start = start or end - timedelta(days=_DEFAULT_RANGE_DAYS - 1)
    if end < start:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return start, end


# ---------- Scores ----------

@router.get("/scores", response_model=list[VigorScoreRead])
async def list_scores(
    services: Services,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
) -> Any:
    start, end = _resolve_range(services, start, end)
    scores = await services.store.get_scores(start, end + timedelta(days=1))
    return [VigorScoreRead.from_score(s) for s in scores]


@router.get("/scores/latest", response_model=LatestScoreRead, responses={404: {"model": ErrorDetail}})
async def latest_score(services: Services) -> Any:
    snapshot = services.publisher.latest
    if snapshot is not None:
        return LatestScoreRead.from_snapshot(snapshot)
    score = await services.store.latest_score()
    if score is None:
        raise HTTPException(status_code=404, detail="No score computed yet")
    return LatestScoreRead.from_score(score)


@router.get("/scores/{day}", response_model=VigorScoreRead, responses={404: {"model": ErrorDetail}})
async def get_score(day: date, services: Services) -> Any:
    score = await services.store.get_score(day)
    if score is None:
        raise HTTPException(status_code=404, detail="Score not found")
    return VigorScoreRead.from_score(score)


# ---------- Metrics / baselines ----------

@router.get("/metrics", response_model=list[DailyMetricsRead])
async def list_metrics(
    services: Services,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
) -> Any:
    start, end = _resolve_range(services, start, end)
    records = await services.store.get_range(start, end + timedelta(days=1))
    return [DailyMetricsRead.from_metrics(m) for m in records]


@router.get("/baseline/{day}", response_model=BaselineRead)
async def get_baseline(day: date, services: Services) -> Any:
    baseline = await services.baseline.baseline_for(day)
    return BaselineRead.build(day, services.baseline.window(day), baseline)


# ---------- Sync ----------

@router.get("/sync", response_model=SyncStateRead)
async def sync_status(services: Services) -> Any:
    return SyncStateRead.from_state(await services.orchestrator.sync_state())


@router.post("/sync", response_model=SyncRunRead, responses={503: {"model": ErrorDetail}})
async def trigger_sync(
    services: Services,
    full: bool = Query(default=False, description="Discard backfill progress and re-import history"),
) -> Any:
    """Run a sync now.  SyncError subclasses surface as 503 with a retryable flag."""
    timeout = services.settings.sync_timeout_seconds
    if full:
        result = await services.orchestrator.force_full_sync(timeout=timeout)
    else:
        result = await services.orchestrator.run(timeout=timeout)
    return SyncRunRead.from_result(result)
