"""Persisted sync state.

Stored as a single JSON document by the metrics store so a restart resumes
incremental sync from the last watermark instead of re-running the backfill.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass
class SyncState:
    """Durable progress of the sync orchestrator.

    Attributes:
        backfill_completed:   The initial history import has finished.
        watermark:            Latest day covered by a successful sync.
        last_success_at:      UTC time of the last successful run.
        last_morning_run_at:  UTC time of the last successful morning-triggered run.
        consecutive_failures: Failed runs since the last success.
        last_failure_at:      UTC time of the most recent failure.
        last_error:           Message of the most recent failure.
    """

    backfill_completed: bool = False
    watermark: date | None = None
    last_success_at: datetime | None = None
    last_morning_run_at: datetime | None = None
    consecutive_failures: int = 0
    last_failure_at: datetime | None = None
    last_error: str | None = None

    def record_success(self, now: datetime, watermark: date | None) -> None:
        if watermark is not None and (self.watermark is None or watermark > self.watermark):
            self.watermark = watermark
        self.last_success_at = now
        self.consecutive_failures = 0
        self.last_error = None

    def record_failure(self, now: datetime, error: str) -> None:
        self.consecutive_failures += 1
        self.last_failure_at = now
        self.last_error = error

    def reset(self) -> None:
        """Forget backfill progress so the next run re-imports history."""
        self.backfill_completed = False
        self.watermark = None

    def to_json(self) -> dict:
        return {
            "backfill_completed": self.backfill_completed,
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_morning_run_at": (
                self.last_morning_run_at.isoformat() if self.last_morning_run_at else None
            ),
            "consecutive_failures": self.consecutive_failures,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_json(cls, data: dict | None) -> "SyncState":
        state = cls()
        if not data:
            return state
        state.backfill_completed = bool(data.get("backfill_completed", False))
        if watermark := data.get("watermark"):
            try:
                state.watermark = date.fromisoformat(watermark)
            except ValueError:
                pass
        state.last_success_at = _parse_datetime(data.get("last_success_at"))
        state.last_morning_run_at = _parse_datetime(data.get("last_morning_run_at"))
        state.consecutive_failures = int(data.get("consecutive_failures", 0))
        state.last_failure_at = _parse_datetime(data.get("last_failure_at"))
        state.last_error = data.get("last_error")
        return state


class SyncTrigger(str, Enum):
    """What started a sync run."""

    MANUAL = "manual"
    HOURLY = "hourly"
    MORNING = "morning"
