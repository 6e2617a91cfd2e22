"""Background sync scheduling.

``SyncPolicy`` decides *whether* and *when* to sync; it is pure and takes
the current time as an argument.  ``SyncScheduler`` runs the orchestrator
on an asyncio task according to that policy:

    - morning trigger  06:00–09:00 local, at most once per day
    - hourly trigger   every 60 min during active hours (06:00–23:00)
    - manual trigger   never skipped

Failures back off: timeouts retry after 5 min, a busy device after 30 min,
anything else after 15 min × 2^(n-1), capped at 8×.  After 3 consecutive
failures background triggers pause until a 2 h cooldown has passed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable

from src.recovery.base import as_local, utc_now
from src.recovery.config_loader import SyncConfig
from src.recovery.errors import DeviceBusyError, SyncError, SyncTimeoutError
from src.recovery.sync.orchestrator import SyncOrchestrator, SyncResult
from src.recovery.sync.state import SyncState, SyncTrigger

logger = logging.getLogger("vigor.recovery.sync.scheduler")

_MORNING_WINDOW_END_HOUR = 9


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    DEVICE_BUSY = "device_busy"
    OTHER = "other"


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, SyncTimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(exc, DeviceBusyError):
        return FailureKind.DEVICE_BUSY
    return FailureKind.OTHER


class SyncPolicy:
    """Skip / retry / next-run decisions for background syncs."""

    def __init__(self, config: SyncConfig | None = None, tz: tzinfo = timezone.utc) -> None:
        self._config = config or SyncConfig()
        self._tz = tz

    def should_skip(self, trigger: SyncTrigger, state: SyncState, now: datetime) -> bool:
        if trigger is SyncTrigger.MANUAL:
            return False

        since_success = now - state.last_success_at if state.last_success_at else None

        if trigger is SyncTrigger.HOURLY:
            return since_success is not None and since_success < timedelta(
                minutes=self._config.hourly_min_interval_minutes
            )

        # Morning: once per local day, and not right after another sync
        if state.last_morning_run_at is not None:
            if as_local(state.last_morning_run_at, self._tz).date() == as_local(now, self._tz).date():
                return True
        return since_success is not None and since_success < timedelta(
            hours=self._config.morning_min_interval_hours
        )

    def has_too_many_failures(self, state: SyncState, now: datetime) -> bool:
        """True while the failure threshold is reached and the cooldown has not elapsed."""
        if state.consecutive_failures < self._config.failure_threshold:
            return False
        if state.last_failure_at is None:
            return True
        return now - state.last_failure_at <= timedelta(hours=self._config.failure_cooldown_hours)

    def retry_delay(self, kind: FailureKind, failures: int) -> timedelta:
        if kind is FailureKind.TIMEOUT:
            return timedelta(minutes=self._config.timeout_retry_minutes)
        if kind is FailureKind.DEVICE_BUSY:
            return timedelta(minutes=self._config.busy_retry_minutes)
        multiplier = min(2 ** max(failures - 1, 0), self._config.retry_max_multiplier)
        return timedelta(minutes=self._config.retry_base_minutes * multiplier)

    def is_active_hour(self, now: datetime) -> bool:
        hour = as_local(now, self._tz).hour
        return self._config.active_start_hour <= hour < self._config.active_end_hour

    def is_morning_window(self, now: datetime) -> bool:
        hour = as_local(now, self._tz).hour
        return self._config.active_start_hour <= hour < _MORNING_WINDOW_END_HOUR

    def next_hourly_run(self, now: datetime) -> datetime:
        """An hour from now, or the next active-hours start when outside them."""
        local = as_local(now, self._tz)
        start = time(hour=self._config.active_start_hour)
        if local.hour < self._config.active_start_hour:
            return datetime.combine(local.date(), start, tzinfo=local.tzinfo)
        if local.hour >= self._config.active_end_hour:
            return datetime.combine(local.date() + timedelta(days=1), start, tzinfo=local.tzinfo)
        return local + timedelta(minutes=60)


class SyncScheduler:
    """Run the orchestrator periodically on a background task.

    Usage::

        scheduler = SyncScheduler(orchestrator, SyncPolicy(config.sync, tz))
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        policy: SyncPolicy,
        *,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._orchestrator = orchestrator
        self._policy = policy
        self._timeout = timeout_seconds
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._next_run_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def next_run_at(self) -> datetime | None:
        return self._next_run_at

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="vigor-sync-scheduler")
        logger.info("Sync scheduler started")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Sync scheduler stopped")

    async def trigger(self, trigger: SyncTrigger) -> SyncResult | None:
        """Run one sync if the policy allows it.  Returns None when skipped by policy.

        Raises whatever the orchestrator raises (SyncError subclasses, StoreError).
        """
        now = self._clock()
        state = await self._orchestrator.sync_state()
        if self._policy.should_skip(trigger, state, now):
            logger.debug("Skipping %s sync: ran recently", trigger.value)
            return None
        if trigger is not SyncTrigger.MANUAL and self._policy.has_too_many_failures(state, now):
            logger.info(
                "Skipping %s sync: %d consecutive failures, cooling down",
                trigger.value, state.consecutive_failures,
            )
            return None
        return await self._orchestrator.run(timeout=self._timeout, trigger=trigger)

    async def run_once(self) -> timedelta:
        """One scheduling step.  Returns the delay until the next step."""
        now = self._clock()
        trigger = SyncTrigger.MORNING if self._policy.is_morning_window(now) else SyncTrigger.HOURLY
        try:
            await self.trigger(trigger)
        except SyncError as exc:
            state = await self._orchestrator.sync_state()
            delay = self._policy.retry_delay(classify_failure(exc), state.consecutive_failures)
            logger.warning("Background sync failed (%s); retrying in %s", exc, delay)
            return delay
        except Exception:
            state = await self._orchestrator.sync_state()
            delay = self._policy.retry_delay(FailureKind.OTHER, state.consecutive_failures)
            logger.exception("Background sync crashed; retrying in %s", delay)
            return delay
        return self._policy.next_hourly_run(now) - now

    async def _loop(self) -> None:
        while not self._stop.is_set():
            delay = await self.run_once()
            self._next_run_at = self._clock() + delay
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(delay.total_seconds(), 0.0))
            except asyncio.TimeoutError:
                continue
