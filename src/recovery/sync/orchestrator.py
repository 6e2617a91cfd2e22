"""Sync orchestrator.

Pulls provider data into the metrics store and keeps scores current.

    IDLE ──run()──► INITIAL_BACKFILL  (no completed backfill: last N days)
         └────────► INCREMENTAL_SYNC  (from the watermark, inclusive, to today)
    any failure ──► FAILED  (watermark untouched; next run retries)

Each fused day is upserted and rescored under that day's lock, shielded
from cancellation, in ascending day order so every baseline only reads
days that are already final for this run.

Usage::

    orchestrator = SyncOrchestrator(store, SourceFusion(providers), publisher=publisher)
    result = await orchestrator.run(timeout=120)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable

from src.recovery.base import DailyMetrics, normalize_day, utc_now
from src.recovery.baseline import BaselineTracker
from src.recovery.config_loader import ScoringConfig, get_scoring_config
from src.recovery.errors import SyncError, SyncTimeoutError
from src.recovery.publisher import ScorePublisher
from src.recovery.source_fusion import SourceFusion
from src.recovery.store import MetricsStore
from src.recovery.sync.state import SyncState, SyncTrigger
from src.recovery.vigor_score import VigorScore, VigorScorer

logger = logging.getLogger("vigor.recovery.sync")


class SyncPhase(str, Enum):
    IDLE = "idle"
    INITIAL_BACKFILL = "initial_backfill"
    INCREMENTAL_SYNC = "incremental_sync"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncProgress:
    """Progress update passed to ``on_progress``.

    Attributes:
        phase:    Mode of the running sync.
        fraction: 0.0–1.0 completion estimate.
        message:  Short human-readable step description.
    """

    phase: SyncPhase
    fraction: float
    message: str


@dataclass
class SyncResult:
    """Outcome of one ``run()``.

    Attributes:
        status:       'completed' or 'skipped' (another run was in flight).
        mode:         Which sync mode ran (None when skipped).
        start:        First day requested from providers.
        end:          Last day requested from providers.
        days_synced:  Days upserted, ascending.
        days_scored:  Days (re)scored, ascending.
        watermark:    Watermark after the run.
        today_score:  Today's score if it was recomputed.
        started_at:   UTC start time.
        finished_at:  UTC end time.
    """

    status: str
    mode: SyncPhase | None = None
    start: date | None = None
    end: date | None = None
    days_synced: list[date] = field(default_factory=list)
    days_scored: list[date] = field(default_factory=list)
    watermark: date | None = None
    today_score: VigorScore | None = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


ProgressCallback = Callable[[SyncProgress], None]


class SyncOrchestrator:
    """Run backfill / incremental syncs against a metrics store.

    Only one run is in flight per orchestrator: a ``run()`` issued while
    another is active returns a skipped result immediately.
    """

    def __init__(
        self,
        store: MetricsStore,
        fusion: SourceFusion,
        *,
        scorer: VigorScorer | None = None,
        baseline: BaselineTracker | None = None,
        publisher: ScorePublisher | None = None,
        config: ScoringConfig | None = None,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or get_scoring_config()
        self._store = store
        self._fusion = fusion
        self._scorer = scorer or VigorScorer(self._config)
        self._baseline = baseline or BaselineTracker(store, self._config)
        self._publisher = publisher
        self._tz = tz
        self._clock = clock
        self._lock = asyncio.Lock()
        self._phase = SyncPhase.IDLE
        self._last_result: SyncResult | None = None
        self._inflight: asyncio.Task[VigorScore] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    def today(self) -> date:
        return normalize_day(self._clock(), self._tz)

    async def sync_state(self) -> SyncState:
        return await self._store.load_sync_state()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncResult:
        """Run one sync.

        Args:
            timeout:     Seconds before the run is abandoned.  Days already
                         written stay written; the watermark does not move.
            on_progress: Optional callback receiving SyncProgress updates.
            trigger:     What started the run (recorded for scheduling).

        Raises:
            SyncTimeoutError:   If ``timeout`` elapsed.
            ProviderFetchError: If a provider could not be fetched.
        """
        if self._lock.locked():
            logger.info("Sync already in progress; skipping %s trigger", trigger.value)
            return SyncResult(status="skipped", finished_at=utc_now())

        async with self._lock:
            state = await self._store.load_sync_state()
            mode = SyncPhase.INCREMENTAL_SYNC if state.backfill_completed else SyncPhase.INITIAL_BACKFILL
            self._phase = mode
            logger.info("Sync started: %s (trigger=%s)", mode.value, trigger.value)

            try:
                if timeout is not None:
                    result = await asyncio.wait_for(
                        self._run(mode, state, on_progress), timeout=timeout
                    )
                else:
                    result = await self._run(mode, state, on_progress)
            except asyncio.TimeoutError as exc:
                message = f"Sync timed out after {timeout}s"
                await self._drain_inflight()
                await self._record_failure(state, message)
                raise SyncTimeoutError(message) from exc
            except SyncError as exc:
                await self._drain_inflight()
                await self._record_failure(state, str(exc))
                raise
            except Exception as exc:
                await self._drain_inflight()
                await self._record_failure(state, f"{type(exc).__name__}: {exc}")
                raise

            now = self._clock()
            latest = result.days_synced[-1] if result.days_synced else None
            state.record_success(now, latest)
            if mode is SyncPhase.INITIAL_BACKFILL:
                state.backfill_completed = True
            if trigger is SyncTrigger.MORNING:
                state.last_morning_run_at = now
            await self._store.save_sync_state(state)

            result.watermark = state.watermark
            result.finished_at = utc_now()
            self._phase = SyncPhase.IDLE
            self._last_result = result
            logger.info(
                "Sync completed: %s %s..%s, %d day(s) synced, watermark=%s",
                mode.value, result.start, result.end, len(result.days_synced), state.watermark,
            )
            return result

    async def force_full_sync(
        self,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Forget backfill progress and re-import the full history window."""
        if self._lock.locked():
            logger.info("Sync already in progress; skipping forced full sync")
            return SyncResult(status="skipped", finished_at=utc_now())
        state = await self._store.load_sync_state()
        state.reset()
        await self._store.save_sync_state(state)
        logger.info("Backfill state cleared; running full sync")
        return await self.run(timeout=timeout, on_progress=on_progress)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def sync_range(self, mode: SyncPhase, state: SyncState) -> tuple[date, date]:
        """Closed range of days to request for ``mode``."""
        today = self.today()
        if mode is SyncPhase.INITIAL_BACKFILL:
            return today - timedelta(days=self._config.sync.history_days), today
        if state.watermark is None:
            return today - timedelta(days=1), today
        # Re-sync the watermark day: it may have been partial
        return min(state.watermark, today), today

    async def _run(
        self,
        mode: SyncPhase,
        state: SyncState,
        on_progress: ProgressCallback | None,
    ) -> SyncResult:
        start, end = self.sync_range(mode, state)
        result = SyncResult(status="completed", mode=mode, start=start, end=end)
        self._progress(on_progress, mode, 0.1, f"Fetching {start}..{end}")

        collected = await self._fusion.collect(start, end)
        fused = self._fusion.fuse(collected)
        self._progress(on_progress, mode, 0.5, f"Fused {len(fused)} day(s)")

        today = self.today()
        for index, metrics in enumerate(fused):
            # Cancellation leaves the day's write running; run() drains it
            self._inflight = asyncio.ensure_future(self._apply_day(metrics))
            score = await asyncio.shield(self._inflight)
            self._inflight = None
            result.days_synced.append(metrics.day)
            result.days_scored.append(metrics.day)
            if metrics.day == today:
                result.today_score = score
            self._progress(
                on_progress, mode, 0.5 + 0.45 * (index + 1) / len(fused), f"Scored {metrics.day}"
            )

        if result.today_score is not None and self._publisher is not None:
            await self._publisher.publish(result.today_score)

        self._progress(on_progress, mode, 1.0, "Done")
        return result

    async def _apply_day(self, metrics: DailyMetrics) -> VigorScore:
        async with self._store.day_lock(metrics.day):
            stored = await self._store.upsert(metrics)
            return await self._score_locked(stored)

    async def _drain_inflight(self) -> None:
        """Wait for a shielded day write that outlived its cancelled run."""
        task, self._inflight = self._inflight, None
        if task is None or task.done():
            return
        try:
            await task
        except Exception:
            logger.exception("Interrupted write failed for an in-flight day")

    async def rescore_day(self, day: date) -> VigorScore | None:
        """Recompute and store the score for ``day`` from stored metrics.

        Publishes the new score when ``day`` is today.
        """
        async with self._store.day_lock(day):
            metrics = await self._store.get(day)
            if metrics is None:
                return None
            score = await self._score_locked(metrics)
        if day == self.today() and self._publisher is not None:
            await self._publisher.publish(score)
        return score

    async def _score_locked(self, metrics: DailyMetrics) -> VigorScore:
        baseline = await self._baseline.baseline_for(metrics.day)
        score = self._scorer.score(metrics, baseline)
        await self._store.upsert_score(score)
        return score

    async def _record_failure(self, state: SyncState, message: str) -> None:
        self._phase = SyncPhase.FAILED
        state.record_failure(self._clock(), message)
        await self._store.save_sync_state(state)
        logger.warning(
            "Sync failed (%d consecutive): %s", state.consecutive_failures, message
        )

    @staticmethod
    def _progress(
        callback: ProgressCallback | None, phase: SyncPhase, fraction: float, message: str
    ) -> None:
        if callback is None:
            return
        try:
            callback(SyncProgress(phase=phase, fraction=min(1.0, fraction), message=message))
        except Exception:
            logger.exception("Sync progress callback failed")
