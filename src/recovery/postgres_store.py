"""Postgres-backed metrics store (asyncpg).

Tables:
    vigor_daily_metrics — one row per local day (PRIMARY KEY day)
    vigor_scores        — one row per scored day (PRIMARY KEY day)
    vigor_sync_state    — a single JSONB document (id = 1)

Every write is an ``INSERT ... ON CONFLICT DO UPDATE`` so re-applying the
same day is idempotent.  Apply ``SCHEMA_SQL`` once (``ensure_schema``)
before first use.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import date
from typing import Any

import asyncpg

from src.recovery.base import DailyMetrics, MetricTag, SleepStages, utc_now
from src.recovery.errors import StoreError
from src.recovery.store import MetricsStore, build_upsert_query, check_range
from src.recovery.sync.state import SyncState
from src.recovery.vigor_score import VigorScore
from src.services.database import get_connection

logger = logging.getLogger("vigor.recovery.store.postgres")

METRICS_TABLE = "vigor_daily_metrics"
SCORES_TABLE = "vigor_scores"
SYNC_STATE_TABLE = "vigor_sync_state"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {METRICS_TABLE} (
    day                     DATE PRIMARY KEY,
    sleep_hours             DOUBLE PRECISION,
    sleep_stages            JSONB,
    hrv_sdnn_ms             DOUBLE PRECISION,
    hrv_rmssd_ms            DOUBLE PRECISION,
    resting_hr_bpm          DOUBLE PRECISION,
    wrist_temp_deviation_c  DOUBLE PRECISION,
    skin_temp_c             DOUBLE PRECISION,
    sources                 JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    last_updated            TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS {SCORES_TABLE} (
    day              DATE PRIMARY KEY,
    composite        DOUBLE PRECISION NOT NULL,
    sub_scores       JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    raw_inputs       JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    missing_metrics  TEXT[] NOT NULL DEFAULT '{{}}',
    hrv_baseline     DOUBLE PRECISION,
    rhr_baseline     DOUBLE PRECISION,
    category         TEXT NOT NULL,
    last_updated     TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS {SYNC_STATE_TABLE} (
    id            SMALLINT PRIMARY KEY CHECK (id = 1),
    state         JSONB NOT NULL,
    last_updated  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

METRIC_COLUMNS = [
    "day",
    "sleep_hours",
    "sleep_stages",
    "hrv_sdnn_ms",
    "hrv_rmssd_ms",
    "resting_hr_bpm",
    "wrist_temp_deviation_c",
    "skin_temp_c",
    "sources",
    "last_updated",
]

SCORE_COLUMNS = [
    "day",
    "composite",
    "sub_scores",
    "raw_inputs",
    "missing_metrics",
    "hrv_baseline",
    "rhr_baseline",
    "category",
    "last_updated",
]

UPSERT_METRICS_SQL = build_upsert_query(METRICS_TABLE, METRIC_COLUMNS, ["day"])
UPSERT_SCORE_SQL = build_upsert_query(SCORES_TABLE, SCORE_COLUMNS, ["day"])
UPSERT_SYNC_STATE_SQL = build_upsert_query(
    SYNC_STATE_TABLE, ["id", "state", "last_updated"], ["id"]
)


def _json_or_none(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def metrics_to_row(metrics: DailyMetrics) -> list[Any]:
    """Positional parameters for ``UPSERT_METRICS_SQL``."""
    return [
        metrics.day,
        metrics.sleep_hours,
        _json_or_none(metrics.sleep_stages.to_json() if metrics.sleep_stages else None),
        metrics.hrv_sdnn_ms,
        metrics.hrv_rmssd_ms,
        metrics.resting_hr_bpm,
        metrics.wrist_temp_deviation_c,
        metrics.skin_temp_c,
        json.dumps(metrics.sources),
        metrics.last_updated,
    ]


def row_to_metrics(row: asyncpg.Record | dict) -> DailyMetrics:
    return DailyMetrics(
        day=row["day"],
        sleep_hours=row["sleep_hours"],
        sleep_stages=SleepStages.from_json(_loads(row["sleep_stages"])),
        hrv_sdnn_ms=row["hrv_sdnn_ms"],
        hrv_rmssd_ms=row["hrv_rmssd_ms"],
        resting_hr_bpm=row["resting_hr_bpm"],
        wrist_temp_deviation_c=row["wrist_temp_deviation_c"],
        skin_temp_c=row["skin_temp_c"],
        sources=_loads(row["sources"]) or {},
        last_updated=row["last_updated"],
    )


def score_to_row(score: VigorScore) -> list[Any]:
    """Positional parameters for ``UPSERT_SCORE_SQL``."""
    data = score.to_json()
    return [
        score.day,
        score.composite,
        json.dumps(data["sub_scores"]),
        json.dumps(data["raw_inputs"]),
        data["missing_metrics"],
        score.hrv_baseline,
        score.rhr_baseline,
        score.category,
        utc_now(),
    ]


def row_to_score(row: asyncpg.Record | dict) -> VigorScore:
    return VigorScore(
        day=row["day"],
        composite=row["composite"],
        sub_scores={MetricTag(k): float(v) for k, v in (_loads(row["sub_scores"]) or {}).items()},
        raw_inputs=_loads(row["raw_inputs"]) or {},
        missing_metrics=frozenset(MetricTag(m) for m in row["missing_metrics"] or []),
        hrv_baseline=row["hrv_baseline"],
        rhr_baseline=row["rhr_baseline"],
        category=row["category"],
    )


class PostgresMetricsStore(MetricsStore):
    """Metrics store over an asyncpg pool.

    Usage::

        pool = await init_pool(settings)
        store = PostgresMetricsStore(pool)
        await store.ensure_schema()
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        super().__init__()
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with get_connection(self._pool) as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Vigor schema ensured")

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        try:
            async with get_connection(self._pool) as conn:
                return await conn.fetch(query, *args)
        except asyncpg.PostgresError as exc:
            raise StoreError(f"Query failed: {exc}") from exc

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        try:
            async with get_connection(self._pool) as conn:
                return await conn.fetchrow(query, *args)
        except asyncpg.PostgresError as exc:
            raise StoreError(f"Query failed: {exc}") from exc

    async def _execute(self, query: str, *args: Any) -> str:
        try:
            async with get_connection(self._pool) as conn:
                return await conn.execute(query, *args)
        except asyncpg.PostgresError as exc:
            raise StoreError(f"Write failed: {exc}") from exc

    # ── Metrics ──

    async def get(self, day: date) -> DailyMetrics | None:
        row = await self._fetchrow(f"SELECT * FROM {METRICS_TABLE} WHERE day = $1", day)
        return row_to_metrics(row) if row else None

    async def get_range(self, start: date, end: date) -> list[DailyMetrics]:
        check_range(start, end)
        rows = await self._fetch(
            f"SELECT * FROM {METRICS_TABLE} WHERE day >= $1 AND day < $2 ORDER BY day",
            start, end,
        )
        return [row_to_metrics(r) for r in rows]

    async def upsert(self, metrics: DailyMetrics) -> DailyMetrics:
        stored = replace(metrics, last_updated=utc_now())
        await self._execute(UPSERT_METRICS_SQL, *metrics_to_row(stored))
        logger.debug("Upserted metrics for %s", stored.day)
        return stored

    # ── Scores ──

    async def get_score(self, day: date) -> VigorScore | None:
        row = await self._fetchrow(f"SELECT * FROM {SCORES_TABLE} WHERE day = $1", day)
        return row_to_score(row) if row else None

    async def get_scores(self, start: date, end: date) -> list[VigorScore]:
        check_range(start, end)
        rows = await self._fetch(
            f"SELECT * FROM {SCORES_TABLE} WHERE day >= $1 AND day < $2 ORDER BY day",
            start, end,
        )
        return [row_to_score(r) for r in rows]

    async def upsert_score(self, score: VigorScore) -> None:
        await self._execute(UPSERT_SCORE_SQL, *score_to_row(score))

    async def latest_score(self) -> VigorScore | None:
        row = await self._fetchrow(f"SELECT * FROM {SCORES_TABLE} ORDER BY day DESC LIMIT 1")
        return row_to_score(row) if row else None

    # ── Sync state ──

    async def load_sync_state(self) -> SyncState:
        row = await self._fetchrow(f"SELECT state FROM {SYNC_STATE_TABLE} WHERE id = 1")
        return SyncState.from_json(_loads(row["state"]) if row else None)

    async def save_sync_state(self, state: SyncState) -> None:
        await self._execute(UPSERT_SYNC_STATE_SQL, 1, json.dumps(state.to_json()), utc_now())
