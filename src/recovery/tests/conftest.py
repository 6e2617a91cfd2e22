"""Shared fixtures and fakes for recovery engine tests."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Sequence

import pytest

from src.recovery.base import (
    DailyMetrics,
    DailyPayload,
    RawHeartRateSample,
    RawIntervalSample,
    RawTemperatureSample,
    SleepWindow,
    SourceKind,
)
from src.recovery.config_loader import ScoringConfig, load_scoring_config
from src.recovery.errors import ProviderFetchError
from src.recovery.providers.base import DataProvider
from src.recovery.publisher import ScorePublisher
from src.recovery.source_fusion import SourceFusion
from src.recovery.store import InMemoryMetricsStore
from src.recovery.sync.orchestrator import SyncOrchestrator

TEST_DATE = date(2026, 2, 23)
# 10:00 UTC on TEST_DATE; the default clock for orchestrator tests
TEST_NOW = datetime(2026, 2, 23, 10, 0, tzinfo=timezone.utc)
UTC = timezone.utc


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def scoring_config() -> ScoringConfig:
    """Load the real scoring config for tests."""
    return load_scoring_config()


# ---------------------------------------------------------------------------
# Raw sample builders
# ---------------------------------------------------------------------------


def at(day: date, hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, second, tzinfo=UTC)


def interval_series(
    start: datetime,
    intervals_ms: Sequence[int],
    *,
    skin_contact: bool = True,
    motion_detected: bool = False,
) -> list[RawIntervalSample]:
    """Consecutive beats, each timestamped at the end of its interval."""
    samples: list[RawIntervalSample] = []
    ts = start
    for ms in intervals_ms:
        ts = ts + timedelta(milliseconds=ms)
        samples.append(
            RawIntervalSample(
                timestamp=ts,
                interval_ms=ms,
                skin_contact=skin_contact,
                motion_detected=motion_detected,
            )
        )
    return samples


def hr_series(start: datetime, bpms: Sequence[int], step_seconds: int = 60) -> list[RawHeartRateSample]:
    return [
        RawHeartRateSample(timestamp=start + timedelta(seconds=i * step_seconds), bpm=bpm)
        for i, bpm in enumerate(bpms)
    ]


def temp_series(start: datetime, values: Sequence[float], step_seconds: int = 300) -> list[RawTemperatureSample]:
    return [
        RawTemperatureSample(timestamp=start + timedelta(seconds=i * step_seconds), celsius=c)
        for i, c in enumerate(values)
    ]


def night(day: date, start_hour: int = 23, hours: float = 8.0) -> SleepWindow:
    """Sleep starting the evening before ``day`` at ``start_hour`` and lasting ``hours``."""
    start = at(day - timedelta(days=1), start_hour)
    return SleepWindow(start=start, end=start + timedelta(hours=hours))


def metrics_for(day: date, **values) -> DailyMetrics:
    return DailyMetrics(day=day, **values)


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


class FakeProvider(DataProvider):
    """In-memory provider returning canned payloads for any requested range."""

    def __init__(
        self,
        source_id: str,
        kind: SourceKind,
        payloads: Sequence[DailyPayload] = (),
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.SOURCE_ID = source_id
        self.DISPLAY_NAME = source_id.title()
        self.KIND = kind
        self.payloads = list(payloads)
        self.error = error
        self.delay = delay
        self.calls: list[tuple[date, date]] = []

    async def fetch_daily(self, start: date, end: date) -> list[DailyPayload]:
        self.calls.append((start, end))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [p for p in self.payloads if start <= p.day <= end]


def payload(day: date, source: str, **values) -> DailyPayload:
    return DailyPayload(day=day, source=source, **values)


def daily_history(source: str, end: date, days: int, **values) -> list[DailyPayload]:
    """``days`` identical payloads ending on ``end`` inclusive."""
    return [payload(end - timedelta(days=i), source, **values) for i in range(days - 1, -1, -1)]


def failing_provider(source_id: str = "broken") -> FakeProvider:
    return FakeProvider(
        source_id, SourceKind.CLOUD, error=ProviderFetchError(source_id, "connection refused")
    )


# ---------------------------------------------------------------------------
# Store / orchestrator fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryMetricsStore:
    return InMemoryMetricsStore()


@pytest.fixture
def publisher() -> ScorePublisher:
    return ScorePublisher()


def make_orchestrator(
    store: InMemoryMetricsStore,
    providers: Sequence[DataProvider],
    config: ScoringConfig,
    *,
    publisher: ScorePublisher | None = None,
    now: datetime = TEST_NOW,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        SourceFusion(providers, config),
        publisher=publisher,
        config=config,
        tz=UTC,
        clock=lambda: now,
    )
