"""Tests for background sync policy and the scheduler loop step."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from src.recovery.base import DailyMetrics, SourceKind
from src.recovery.config_loader import ScoringConfig, SyncConfig
from src.recovery.errors import DeviceBusyError, ProviderFetchError, StoreError, SyncTimeoutError
from src.recovery.store import InMemoryMetricsStore
from src.recovery.sync.scheduler import FailureKind, SyncPolicy, SyncScheduler, classify_failure
from src.recovery.sync.state import SyncState, SyncTrigger
from src.recovery.tests.conftest import (
    TEST_DATE,
    UTC,
    FakeProvider,
    at,
    failing_provider,
    make_orchestrator,
    payload,
)


@pytest.fixture
def policy() -> SyncPolicy:
    return SyncPolicy(SyncConfig(), tz=UTC)


class BrokenUpsertStore(InMemoryMetricsStore):
    async def upsert(self, metrics: DailyMetrics) -> DailyMetrics:
        raise StoreError("connection reset")


def _succeeded_at(ts: datetime) -> SyncState:
    state = SyncState(backfill_completed=True)
    state.record_success(ts, None)
    return state


class TestShouldSkip:
    def test_manual_never_skipped(self, policy: SyncPolicy) -> None:
        now = at(TEST_DATE, 10)
        assert not policy.should_skip(SyncTrigger.MANUAL, _succeeded_at(now), now)

    def test_hourly_skips_within_45_minutes(self, policy: SyncPolicy) -> None:
        now = at(TEST_DATE, 10)
        assert policy.should_skip(SyncTrigger.HOURLY, _succeeded_at(now - timedelta(minutes=30)), now)
        assert not policy.should_skip(SyncTrigger.HOURLY, _succeeded_at(now - timedelta(minutes=50)), now)
        assert not policy.should_skip(SyncTrigger.HOURLY, SyncState(), now)

    def test_morning_once_per_day(self, policy: SyncPolicy) -> None:
        state = _succeeded_at(at(TEST_DATE - timedelta(days=1), 20))
        state.last_morning_run_at = at(TEST_DATE, 6, 30)

        assert policy.should_skip(SyncTrigger.MORNING, state, at(TEST_DATE, 8))
        assert not policy.should_skip(SyncTrigger.MORNING, state, at(TEST_DATE + timedelta(days=1), 7))

    def test_morning_skips_after_recent_sync(self, policy: SyncPolicy) -> None:
        now = at(TEST_DATE, 7)
        assert policy.should_skip(SyncTrigger.MORNING, _succeeded_at(at(TEST_DATE, 2)), now)
        assert not policy.should_skip(
            SyncTrigger.MORNING, _succeeded_at(at(TEST_DATE - timedelta(days=1), 23)), now
        )


class TestFailuresAndRetry:
    def test_threshold_and_cooldown(self, policy: SyncPolicy) -> None:
        now = at(TEST_DATE, 12)
        state = SyncState()
        for _ in range(2):
            state.record_failure(now - timedelta(minutes=10), "boom")
        assert not policy.has_too_many_failures(state, now)

        state.record_failure(now - timedelta(minutes=10), "boom")
        assert policy.has_too_many_failures(state, now)
        assert not policy.has_too_many_failures(state, now + timedelta(hours=3))

    @pytest.mark.parametrize(
        "failures,minutes", [(1, 15), (2, 30), (3, 60), (4, 120), (5, 120), (10, 120)]
    )
    def test_backoff_caps_at_eight_times(self, policy: SyncPolicy, failures: int, minutes: int) -> None:
        assert policy.retry_delay(FailureKind.OTHER, failures) == timedelta(minutes=minutes)

    def test_fixed_delays(self, policy: SyncPolicy) -> None:
        assert policy.retry_delay(FailureKind.TIMEOUT, 4) == timedelta(minutes=5)
        assert policy.retry_delay(FailureKind.DEVICE_BUSY, 1) == timedelta(minutes=30)

    def test_classify_failure(self) -> None:
        assert classify_failure(SyncTimeoutError("slow")) is FailureKind.TIMEOUT
        assert classify_failure(DeviceBusyError("polar", "in workout")) is FailureKind.DEVICE_BUSY
        assert classify_failure(ProviderFetchError("whoop", "500")) is FailureKind.OTHER


class TestWindows:
    def test_active_hours(self, policy: SyncPolicy) -> None:
        assert not policy.is_active_hour(at(TEST_DATE, 5, 59))
        assert policy.is_active_hour(at(TEST_DATE, 6))
        assert policy.is_active_hour(at(TEST_DATE, 22, 59))
        assert not policy.is_active_hour(at(TEST_DATE, 23))

    def test_morning_window(self, policy: SyncPolicy) -> None:
        assert policy.is_morning_window(at(TEST_DATE, 8, 59))
        assert not policy.is_morning_window(at(TEST_DATE, 9))

    def test_next_hourly_run(self, policy: SyncPolicy) -> None:
        assert policy.next_hourly_run(at(TEST_DATE, 3)) == at(TEST_DATE, 6)
        assert policy.next_hourly_run(at(TEST_DATE, 14, 10)) == at(TEST_DATE, 15, 10)
        assert policy.next_hourly_run(at(TEST_DATE, 23, 30)) == at(TEST_DATE + timedelta(days=1), 6)


class TestSyncScheduler:
    def _scheduler(
        self,
        store: InMemoryMetricsStore,
        config: ScoringConfig,
        providers,
        now: datetime,
    ) -> SyncScheduler:
        orchestrator = make_orchestrator(store, providers, config, now=now)
        return SyncScheduler(orchestrator, SyncPolicy(config.sync, UTC), clock=lambda: now)

    @pytest.mark.asyncio
    async def test_trigger_runs_sync(
        self, store: InMemoryMetricsStore, scoring_config: ScoringConfig
    ) -> None:
        provider = FakeProvider("watch", SourceKind.WEARABLE, [payload(TEST_DATE, "watch", sleep_hours=7.0)])
        scheduler = self._scheduler(store, scoring_config, [provider], at(TEST_DATE, 12))

        result = await scheduler.trigger(SyncTrigger.HOURLY)
        assert result is not None and result.status == "completed"

        # Immediately again: within the hourly interval
        assert await scheduler.trigger(SyncTrigger.HOURLY) is None
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_background_paused_after_repeated_failures(
        self, store: InMemoryMetricsStore, scoring_config: ScoringConfig
    ) -> None:
        now = at(TEST_DATE, 12)
        state = SyncState()
        for _ in range(3):
            state.record_failure(now - timedelta(minutes=5), "boom")
        await store.save_sync_state(state)
        provider = FakeProvider("watch", SourceKind.WEARABLE)
        scheduler = self._scheduler(store, scoring_config, [provider], now)

        assert await scheduler.trigger(SyncTrigger.HOURLY) is None
        assert provider.calls == []

        # Manual syncs bypass the cooldown
        assert await scheduler.trigger(SyncTrigger.MANUAL) is not None

    @pytest.mark.asyncio
    async def test_run_once_returns_retry_delay_on_failure(
        self, store: InMemoryMetricsStore, scoring_config: ScoringConfig
    ) -> None:
        scheduler = self._scheduler(store, scoring_config, [failing_provider()], at(TEST_DATE, 12))

        delay = await scheduler.run_once()
        assert delay == timedelta(minutes=15)

        delay = await scheduler.run_once()
        assert delay == timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_run_once_schedules_next_hour(
        self, store: InMemoryMetricsStore, scoring_config: ScoringConfig
    ) -> None:
        provider = FakeProvider("watch", SourceKind.WEARABLE)
        scheduler = self._scheduler(store, scoring_config, [provider], at(TEST_DATE, 7))

        delay = await scheduler.run_once()

        assert delay == timedelta(hours=1)
        state = await store.load_sync_state()
        assert state.last_morning_run_at == at(TEST_DATE, 7)

    @pytest.mark.asyncio
    async def test_start_and_stop(
        self, store: InMemoryMetricsStore, scoring_config: ScoringConfig
    ) -> None:
        scheduler = self._scheduler(
            store, scoring_config, [FakeProvider("watch", SourceKind.WEARABLE)], at(TEST_DATE, 12)
        )
        scheduler.start()
        assert scheduler.running

        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_store_outage_keeps_loop_alive(self, scoring_config: ScoringConfig) -> None:
        store = BrokenUpsertStore()
        provider = FakeProvider("watch", SourceKind.WEARABLE, [payload(TEST_DATE, "watch", sleep_hours=7.0)])
        scheduler = self._scheduler(store, scoring_config, [provider], at(TEST_DATE, 12))

        assert await scheduler.run_once() == timedelta(minutes=15)

        scheduler.start()
        await asyncio.sleep(0.05)
        assert scheduler.running
        assert scheduler.next_run_at == at(TEST_DATE, 12) + timedelta(minutes=30)
        await scheduler.stop()
        assert not scheduler.running
