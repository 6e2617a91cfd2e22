"""Multi-source fusion.

Collects ``DailyPayload`` lists from every registered provider and folds
them into one ``DailyMetrics`` per day.  Fusion is precedence-based, not
averaged: for each metric group the first provider (in configured
precedence order) that has a value supplies the whole group, and its
``SOURCE_ID`` is recorded in ``DailyMetrics.sources``.

Metric groups:
    sleep       — sleep_hours + sleep_stages
    hrv         — hrv_sdnn_ms + hrv_rmssd_ms
    rhr         — resting_hr_bpm
    temperature — wrist_temp_deviation_c + skin_temp_c
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Sequence

from src.recovery.base import DailyMetrics, DailyPayload, MetricTag
from src.recovery.config_loader import ScoringConfig, get_scoring_config
from src.recovery.errors import InvalidRangeError
from src.recovery.providers.base import DataProvider

logger = logging.getLogger("vigor.recovery.fusion")

# Metric group -> (payload field that decides presence, fields copied with it)
METRIC_GROUPS: dict[MetricTag, tuple[tuple[str, ...], tuple[str, ...]]] = {
    MetricTag.SLEEP: (("sleep_hours",), ("sleep_hours", "sleep_stages")),
    MetricTag.HRV: (("hrv_sdnn_ms",), ("hrv_sdnn_ms", "hrv_rmssd_ms")),
    MetricTag.RHR: (("resting_hr_bpm",), ("resting_hr_bpm",)),
    MetricTag.TEMPERATURE: (
        ("wrist_temp_deviation_c", "skin_temp_c"),
        ("wrist_temp_deviation_c", "skin_temp_c"),
    ),
}


@dataclass
class CollectedPayloads:
    """Everything the providers returned for one fetch range.

    Attributes:
        by_source: Provider SOURCE_ID -> payloads, in precedence order.
        days:      Every day that at least one provider reported on.
    """

    by_source: dict[str, list[DailyPayload]] = field(default_factory=dict)
    days: set[date] = field(default_factory=set)

    @property
    def latest_day(self) -> date | None:
        return max(self.days) if self.days else None


def fuse_payloads(day: date, ordered: Sequence[DailyPayload]) -> DailyMetrics:
    """Fold one day's payloads (highest precedence first) into DailyMetrics."""
    metrics = DailyMetrics(day=day)
    for tag, (presence_fields, copy_fields) in METRIC_GROUPS.items():
        for payload in ordered:
            if any(getattr(payload, f) is not None for f in presence_fields):
                for f in copy_fields:
                    setattr(metrics, f, getattr(payload, f))
                metrics.sources[tag.value] = payload.source
                break
    return metrics


class SourceFusion:
    """Fetch from all providers concurrently and fuse per day.

    Usage::

        fusion = SourceFusion([polar_provider, whoop_provider])
        collected = await fusion.collect(start, end)
        for metrics in fusion.fuse(collected):
            await store.upsert(metrics)
    """

    def __init__(
        self,
        providers: Sequence[DataProvider],
        config: ScoringConfig | None = None,
    ) -> None:
        self._config = config or get_scoring_config()
        # sorted() is stable, so providers of the same kind keep registration order
        self._providers = sorted(
            providers, key=lambda p: self._config.precedence_rank(p.KIND)
        )

    @property
    def providers(self) -> list[DataProvider]:
        return list(self._providers)

    async def collect(self, start: date, end: date) -> CollectedPayloads:
        """Fetch the closed range [start, end] from every provider.

        All fetches run to completion before anything is fused.  If any
        provider failed, the first failure (in precedence order) is raised
        afterwards.

        Raises:
            InvalidRangeError:  If ``end`` is before ``start``.
            ProviderFetchError: If any provider fetch failed.
        """
        if end < start:
            raise InvalidRangeError(f"Date range is reversed: {start} > {end}")

        results = await asyncio.gather(
            *(p.fetch_daily(start, end) for p in self._providers),
            return_exceptions=True,
        )

        collected = CollectedPayloads()
        failures: list[BaseException] = []
        for provider, result in zip(self._providers, results):
            if isinstance(result, BaseException):
                logger.warning("Provider %s failed: %s", provider.SOURCE_ID, result)
                failures.append(result)
                continue
            in_range = [p for p in result if start <= p.day <= end]
            collected.by_source[provider.SOURCE_ID] = in_range
            collected.days.update(p.day for p in in_range)
            logger.debug(
                "Provider %s returned %d day(s) for %s..%s",
                provider.SOURCE_ID, len(in_range), start, end,
            )

        if failures:
            raise failures[0]
        return collected

    def fuse(self, collected: CollectedPayloads) -> list[DailyMetrics]:
        """One DailyMetrics per reported day, ascending."""
        by_day: dict[date, list[DailyPayload]] = {}
        for provider in self._providers:
            for payload in collected.by_source.get(provider.SOURCE_ID, []):
                by_day.setdefault(payload.day, []).append(payload)
        return [fuse_payloads(day, by_day.get(day, [])) for day in sorted(collected.days)]

    async def fetch_and_fuse(self, start: date, end: date) -> list[DailyMetrics]:
        return self.fuse(await self.collect(start, end))
