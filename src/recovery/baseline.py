"""Trailing personal baselines.

``baseline(metric, day)`` is the arithmetic mean of the stored values for
``metric`` over [day - window, day).  Days without a value are skipped; an
empty window yields None.  Nothing is cached: the store is mutable, so every
call re-reads it.
"""

from __future__ import annotations

import logging
import statistics
from datetime import date, timedelta
from enum import Enum

from src.recovery.base import Baseline, DailyMetrics
from src.recovery.config_loader import ScoringConfig, get_scoring_config
from src.recovery.store import MetricsStore

logger = logging.getLogger("vigor.recovery.baseline")


class BaselineMetric(str, Enum):
    """Stored fields a baseline can be computed for."""

    HRV = "hrv_sdnn_ms"
    RHR = "resting_hr_bpm"
    SKIN_TEMP = "skin_temp_c"


def mean_of(records: list[DailyMetrics], metric: BaselineMetric) -> float | None:
    values = [getattr(r, metric.value) for r in records]
    present = [float(v) for v in values if v is not None]
    if not present:
        return None
    return statistics.fmean(present)


class BaselineTracker:
    """Read-only baseline queries over the metrics store."""

    def __init__(self, store: MetricsStore, config: ScoringConfig | None = None) -> None:
        self._store = store
        self._window_days = (config or get_scoring_config()).baseline_window_days

    @property
    def window_days(self) -> int:
        return self._window_days

    def window(self, day: date) -> tuple[date, date]:
        """Half-open [start, end) range of days feeding ``day``'s baseline."""
        return day - timedelta(days=self._window_days), day

    async def baseline(self, metric: BaselineMetric, day: date) -> float | None:
        start, end = self.window(day)
        records = await self._store.get_range(start, end)
        return mean_of(records, metric)

    async def baseline_for(self, day: date) -> Baseline:
        """All baselines for ``day`` from a single range read."""
        start, end = self.window(day)
        records = await self._store.get_range(start, end)
        baseline = Baseline(
            hrv_avg=mean_of(records, BaselineMetric.HRV),
            rhr_avg=mean_of(records, BaselineMetric.RHR),
            skin_temp_avg=mean_of(records, BaselineMetric.SKIN_TEMP),
        )
        logger.debug(
            "Baseline for %s from %d stored days: hrv=%s rhr=%s",
            day, len(records), baseline.hrv_avg, baseline.rhr_avg,
        )
        return baseline
