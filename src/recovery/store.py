"""Daily metrics and score store.

One ``DailyMetrics`` record and at most one ``VigorScore`` per local
calendar day.  Upserts are keyed by day, so re-applying the same payload
leaves the stored values unchanged apart from ``last_updated``.

``InMemoryMetricsStore`` backs tests and single-process deployments;
``PostgresMetricsStore`` (see ``postgres_store``) persists to Postgres.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator

from src.recovery.base import DailyMetrics, utc_now
from src.recovery.errors import InvalidRangeError
from src.recovery.sync.state import SyncState
from src.recovery.vigor_score import VigorScore

logger = logging.getLogger("vigor.recovery.store")


def check_range(start: date, end: date) -> None:
    if end < start:
        raise InvalidRangeError(f"Date range is reversed: {start} > {end}")


class MetricsStore(ABC):
    """Durable per-day metrics, scores and sync state.

    Range reads cover the half-open interval [start, end) in ascending day
    order.  Writers that must not interleave on a day take ``day_lock``.
    """

    def __init__(self) -> None:
        self._day_locks: dict[date, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def day_lock(self, day: date) -> AsyncIterator[None]:
        """Serialize upsert + rescore for a single day within this process."""
        async with self._day_locks[day]:
            yield

    # ── Metrics ──

    @abstractmethod
    async def get(self, day: date) -> DailyMetrics | None:
        ...

    @abstractmethod
    async def get_range(self, start: date, end: date) -> list[DailyMetrics]:
        ...

    @abstractmethod
    async def upsert(self, metrics: DailyMetrics) -> DailyMetrics:
        """Insert or fully overwrite the record for ``metrics.day``.

        Every metric field is replaced, including with None.  Returns the
        stored record.
        """

    # ── Scores ──

    @abstractmethod
    async def get_score(self, day: date) -> VigorScore | None:
        ...

    @abstractmethod
    async def get_scores(self, start: date, end: date) -> list[VigorScore]:
        ...

    @abstractmethod
    async def upsert_score(self, score: VigorScore) -> None:
        ...

    async def latest_score(self) -> VigorScore | None:
        """Most recent stored score by day, if any."""
        return None

    # ── Sync state ──

    @abstractmethod
    async def load_sync_state(self) -> SyncState:
        ...

    @abstractmethod
    async def save_sync_state(self, state: SyncState) -> None:
        ...


class InMemoryMetricsStore(MetricsStore):
    """Dict-backed store.  Reads and writes copy, so callers never share state."""

    def __init__(self) -> None:
        super().__init__()
        self._metrics: dict[date, DailyMetrics] = {}
        self._scores: dict[date, VigorScore] = {}
        self._sync_state: dict = {}

    def __len__(self) -> int:
        return len(self._metrics)

    async def get(self, day: date) -> DailyMetrics | None:
        record = self._metrics.get(day)
        return copy.deepcopy(record) if record is not None else None

    async def get_range(self, start: date, end: date) -> list[DailyMetrics]:
        check_range(start, end)
        return [
            copy.deepcopy(self._metrics[d])
            for d in sorted(self._metrics)
            if start <= d < end
        ]

    async def upsert(self, metrics: DailyMetrics) -> DailyMetrics:
        stored = copy.deepcopy(metrics)
        stored.last_updated = utc_now()
        existed = metrics.day in self._metrics
        self._metrics[metrics.day] = stored
        logger.debug("%s metrics for %s", "Updated" if existed else "Inserted", metrics.day)
        return copy.deepcopy(stored)

    async def get_score(self, day: date) -> VigorScore | None:
        score = self._scores.get(day)
        return copy.deepcopy(score) if score is not None else None

    async def get_scores(self, start: date, end: date) -> list[VigorScore]:
        check_range(start, end)
        return [
            copy.deepcopy(self._scores[d])
            for d in sorted(self._scores)
            if start <= d < end
        ]

    async def upsert_score(self, score: VigorScore) -> None:
        self._scores[score.day] = copy.deepcopy(score)

    async def latest_score(self) -> VigorScore | None:
        if not self._scores:
            return None
        return copy.deepcopy(self._scores[max(self._scores)])

    async def load_sync_state(self) -> SyncState:
        return SyncState.from_json(self._sync_state)

    async def save_sync_state(self, state: SyncState) -> None:
        self._sync_state = state.to_json()


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    touch_column: str | None = "last_updated",
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    On conflict every non-key column is overwritten with the incoming value
    and ``touch_column`` (if any) is set to NOW().

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        touch_column:     Timestamp column bumped on every write.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in update_columns if col != touch_column
        )
        if touch_column:
            update_set += f", {touch_column} = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
