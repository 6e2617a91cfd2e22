"""Pydantic models for recovery data: daily metrics, baselines, scores, sync runs."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from src.models.base import VigorBase
from src.recovery.base import Baseline, DailyMetrics
from src.recovery.publisher import LatestScoreSnapshot
from src.recovery.sync.orchestrator import SyncResult
from src.recovery.sync.state import SyncState
from src.recovery.vigor_score import VigorScore


# ---------- Daily metrics ----------

class SleepStagesRead(VigorBase):
    light_hours: float = Field(ge=0)
    deep_hours: float = Field(ge=0)
    rem_hours: float = Field(ge=0)
    awake_hours: float = Field(ge=0)


class DailyMetricsRead(VigorBase):
    day: date
    sleep_hours: float | None = None
    sleep_stages: SleepStagesRead | None = None
    hrv_sdnn_ms: float | None = None
    hrv_rmssd_ms: float | None = None
    resting_hr_bpm: float | None = None
    wrist_temp_deviation_c: float | None = None
    skin_temp_c: float | None = None
    sources: dict[str, str] = Field(default_factory=dict)
    last_updated: datetime

    @classmethod
    def from_metrics(cls, metrics: DailyMetrics) -> "DailyMetricsRead":
        return cls.model_validate(metrics)


# ---------- Baseline ----------

class BaselineRead(VigorBase):
    day: date
    window_start: date
    window_end: date  # exclusive
    hrv_avg: float | None = None
    rhr_avg: float | None = None
    skin_temp_avg: float | None = None

    @classmethod
    def build(cls, day: date, window: tuple[date, date], baseline: Baseline) -> "BaselineRead":
        return cls(
            day=day,
            window_start=window[0],
            window_end=window[1],
            hrv_avg=baseline.hrv_avg,
            rhr_avg=baseline.rhr_avg,
            skin_temp_avg=baseline.skin_temp_avg,
        )


# ---------- Scores ----------

class VigorScoreRead(VigorBase):
    day: date
    composite: float = Field(ge=0, le=100)
    category: str
    sub_scores: dict[str, float] = Field(default_factory=dict)
    missing_metrics: list[str] = Field(default_factory=list)
    has_missing_data: bool = False
    raw_inputs: dict[str, float | None] = Field(default_factory=dict)
    hrv_baseline: float | None = None
    rhr_baseline: float | None = None

    @classmethod
    def from_score(cls, score: VigorScore) -> "VigorScoreRead":
        data = score.to_json()
        return cls(
            day=score.day,
            composite=round(score.composite, 2),
            category=score.category,
            sub_scores={k: round(v, 2) for k, v in data["sub_scores"].items()},
            missing_metrics=data["missing_metrics"],
            has_missing_data=score.has_missing_data,
            raw_inputs=data["raw_inputs"],
            hrv_baseline=score.hrv_baseline,
            rhr_baseline=score.rhr_baseline,
        )


class LatestScoreRead(VigorBase):
    day: date
    score: float
    category: str
    sub_scores: dict[str, float] = Field(default_factory=dict)
    missing_metrics: list[str] = Field(default_factory=list)
    has_missing_data: bool = False
    published_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: LatestScoreSnapshot) -> "LatestScoreRead":
        return cls(
            day=snapshot.day,
            score=round(snapshot.score, 2),
            category=snapshot.category,
            sub_scores=dict(snapshot.sub_scores),
            missing_metrics=list(snapshot.missing_metrics),
            has_missing_data=snapshot.has_missing_data,
            published_at=snapshot.published_at,
        )

    @classmethod
    def from_score(cls, score: VigorScore) -> "LatestScoreRead":
        return cls.from_snapshot(LatestScoreSnapshot.from_score(score)).model_copy(
            update={"published_at": None}
        )


# ---------- Sync ----------

class SyncStateRead(VigorBase):
    backfill_completed: bool
    watermark: date | None = None
    last_success_at: datetime | None = None
    consecutive_failures: int = 0
    last_failure_at: datetime | None = None
    last_error: str | None = None

    @classmethod
    def from_state(cls, state: SyncState) -> "SyncStateRead":
        return cls.model_validate(state)


class SyncRunRead(VigorBase):
    status: str
    mode: str | None = None
    start: date | None = None
    end: date | None = None
    days_synced: list[date] = Field(default_factory=list)
    watermark: date | None = None
    today_score: VigorScoreRead | None = None
    started_at: datetime
    finished_at: datetime | None = None

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncRunRead":
        return cls(
            status=result.status,
            mode=result.mode.value if result.mode else None,
            start=result.start,
            end=result.end,
            days_synced=result.days_synced,
            watermark=result.watermark,
            today_score=VigorScoreRead.from_score(result.today_score) if result.today_score else None,
            started_at=result.started_at,
            finished_at=result.finished_at,
        )
