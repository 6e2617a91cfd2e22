"""Vigor composite recovery score.

Scores a day 0–100 from its ``DailyMetrics`` and trailing ``Baseline``:

    - Sleep          (weight: 0.30)
    - HRV vs baseline (weight: 0.30)
    - Resting HR vs baseline (weight: 0.25)
    - Temperature deviation  (weight: 0.15)

A metric whose value (or required baseline) is absent is excluded and the
remaining weights are renormalized.  With nothing available the composite
is 0.  Scoring is a pure function of its inputs.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date

from src.recovery.base import (
    ALL_METRICS,
    Baseline,
    DailyMetrics,
    MetricTag,
    SleepStages,
)
from src.recovery.config_loader import ScoringConfig, SleepScoringConfig, get_scoring_config

logger = logging.getLogger("vigor.recovery.scorer")

# Sleep duration band (hours)
_OPTIMAL_SLEEP_MIN = 7.0
_OPTIMAL_SLEEP_MAX = 9.0


# ---------------------------------------------------------------------------
# Per-metric curves (all return 0.0–1.0)
# ---------------------------------------------------------------------------


def sleep_duration_score(hours: float) -> float:
    """1.0 inside [7, 9] h; linear penalty below, gentle floor of 0.7 above."""
    if _OPTIMAL_SLEEP_MIN <= hours <= _OPTIMAL_SLEEP_MAX:
        return 1.0
    if hours < _OPTIMAL_SLEEP_MIN:
        return max(0.0, 1.0 - (_OPTIMAL_SLEEP_MIN - hours) * 0.15)
    return max(0.7, 1.0 - (hours - _OPTIMAL_SLEEP_MAX) * 0.05)


def sleep_quality_score(stages: SleepStages) -> float:
    """Stage-composition score: deep% (target 15–25), REM% (20–25), efficiency bonus."""
    score = 0.0

    deep = stages.deep_pct
    if 15 <= deep <= 25:
        score += 0.4
    elif 10 <= deep < 15:
        score += 0.3
    elif 25 < deep <= 30:
        score += 0.35
    elif deep >= 5:
        score += 0.2
    else:
        score += 0.1

    rem = stages.rem_pct
    if 20 <= rem <= 25:
        score += 0.4
    elif 15 <= rem < 20:
        score += 0.3
    elif 25 < rem <= 30:
        score += 0.35
    elif rem >= 10:
        score += 0.2
    else:
        score += 0.1

    efficiency = stages.efficiency
    if efficiency >= 90:
        score += 0.2
    elif efficiency >= 85:
        score += 0.15
    elif efficiency >= 75:
        score += 0.1

    return min(1.0, score)


def hrv_score(current: float | None, baseline: float | None) -> float | None:
    """Ratio to baseline: 0.7 at parity, up to 1.0 above, steep drop below."""
    if current is None or baseline is None or baseline <= 0:
        return None
    ratio = current / baseline
    if ratio >= 1.0:
        return min(1.0, 0.7 + min(0.3, (ratio - 1.0) * 0.5))
    return max(0.0, 0.7 - (1.0 - ratio) * 1.5)


def rhr_score(current: float | None, baseline: float | None) -> float | None:
    """Deviation from baseline: 0.8 at parity, bonus below, 0.08/bpm penalty above."""
    if current is None or baseline is None or baseline <= 0:
        return None
    deviation = current - baseline
    if deviation <= 0:
        return min(1.0, 0.8 + min(0.2, abs(deviation) * 0.02))
    return max(0.0, 0.8 - deviation * 0.08)


def temperature_score(deviation: float | None) -> float | None:
    """Step curve on |deviation| °C, floored at 0.3 beyond 2 °C."""
    if deviation is None:
        return None
    dev = abs(deviation)
    if dev <= 0.5:
        return 1.0
    if dev <= 1.0:
        return 0.85
    if dev <= 1.5:
        return 0.7
    if dev <= 2.0:
        return 0.5
    return max(0.3, 0.5 - (dev - 2.0) * 0.1)


# ---------------------------------------------------------------------------
# Sleep strategies
# ---------------------------------------------------------------------------


class SleepScoringStrategy(ABC):
    name: str = "abstract"

    @abstractmethod
    def score(self, hours: float | None, stages: SleepStages | None) -> float | None:
        """Return a 0.0–1.0 sleep score, or None if sleep is absent."""


class DurationOnlySleepStrategy(SleepScoringStrategy):
    name = "duration_only"

    def score(self, hours: float | None, stages: SleepStages | None) -> float | None:
        if hours is None:
            return None
        return sleep_duration_score(hours)


class StageBlendSleepStrategy(SleepScoringStrategy):
    """Duration blended with stage quality; duration alone when stages are unknown."""

    name = "stage_blend"

    def __init__(self, duration_weight: float = 0.6, quality_weight: float = 0.4) -> None:
        self._duration_weight = duration_weight
        self._quality_weight = quality_weight

    def score(self, hours: float | None, stages: SleepStages | None) -> float | None:
        if hours is None:
            return None
        duration = sleep_duration_score(hours)
        if stages is None or stages.total_asleep_hours <= 0:
            return duration
        quality = sleep_quality_score(stages)
        total = self._duration_weight + self._quality_weight
        return (duration * self._duration_weight + quality * self._quality_weight) / total


def build_sleep_strategy(config: SleepScoringConfig) -> SleepScoringStrategy:
    if config.strategy == DurationOnlySleepStrategy.name:
        return DurationOnlySleepStrategy()
    return StageBlendSleepStrategy(config.duration_weight, config.quality_weight)


# ---------------------------------------------------------------------------
# Score record
# ---------------------------------------------------------------------------


@dataclass
class VigorScore:
    """The composite score for one day.

    Attributes:
        day:             Local calendar day scored.
        composite:       Final 0–100 score.
        sub_scores:      Metric -> 0–100 sub-score, only for included metrics.
        raw_inputs:      The DailyMetrics values the score was computed from.
        missing_metrics: Metrics excluded for lack of a value or baseline.
        hrv_baseline:    HRV baseline used (ms), for provenance.
        rhr_baseline:    Resting HR baseline used (bpm), for provenance.
        category:        'high', 'moderate' or 'low' band of the composite.
    """

    day: date
    composite: float
    sub_scores: dict[MetricTag, float] = field(default_factory=dict)
    raw_inputs: dict[str, float | None] = field(default_factory=dict)
    missing_metrics: frozenset[MetricTag] = field(default_factory=frozenset)
    hrv_baseline: float | None = None
    rhr_baseline: float | None = None
    category: str = "low"

    @property
    def has_missing_data(self) -> bool:
        return bool(self.missing_metrics)

    def sub_score(self, metric: MetricTag) -> float | None:
        return self.sub_scores.get(metric)

    def to_json(self) -> dict:
        return {
            "day": self.day.isoformat(),
            "composite": self.composite,
            "sub_scores": {m.value: v for m, v in self.sub_scores.items()},
            "raw_inputs": dict(self.raw_inputs),
            "missing_metrics": sorted(m.value for m in self.missing_metrics),
            "hrv_baseline": self.hrv_baseline,
            "rhr_baseline": self.rhr_baseline,
            "category": self.category,
        }

    @classmethod
    def from_json(cls, data: dict) -> "VigorScore":
        return cls(
            day=date.fromisoformat(data["day"]),
            composite=float(data["composite"]),
            sub_scores={MetricTag(k): float(v) for k, v in (data.get("sub_scores") or {}).items()},
            raw_inputs=dict(data.get("raw_inputs") or {}),
            missing_metrics=frozenset(MetricTag(m) for m in data.get("missing_metrics") or []),
            hrv_baseline=data.get("hrv_baseline"),
            rhr_baseline=data.get("rhr_baseline"),
            category=data.get("category", "low"),
        )


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


class VigorScorer:
    """Compute the Vigor composite from one day's metrics and its baseline.

    Usage::

        scorer = VigorScorer()
        score = scorer.score(metrics, baseline)
        print(score.composite, score.missing_metrics)
    """

    def __init__(
        self,
        config: ScoringConfig | None = None,
        sleep_strategy: SleepScoringStrategy | None = None,
    ) -> None:
        self._config = config or get_scoring_config()
        self._sleep_strategy = sleep_strategy or build_sleep_strategy(self._config.sleep_scoring)

    @property
    def sleep_strategy(self) -> SleepScoringStrategy:
        return self._sleep_strategy

    def category(self, composite: float) -> str:
        if composite >= self._config.high_threshold:
            return "high"
        if composite >= self._config.moderate_threshold:
            return "moderate"
        return "low"

    @staticmethod
    def temperature_deviation(metrics: DailyMetrics, baseline: Baseline) -> float | None:
        """Reported deviation, or absolute skin temperature against its own baseline."""
        if metrics.wrist_temp_deviation_c is not None:
            return metrics.wrist_temp_deviation_c
        if metrics.skin_temp_c is not None and baseline.skin_temp_avg is not None:
            return metrics.skin_temp_c - baseline.skin_temp_avg
        return None

    def score(self, metrics: DailyMetrics, baseline: Baseline) -> VigorScore:
        deviation = self.temperature_deviation(metrics, baseline)
        unit_scores: dict[MetricTag, float | None] = {
            MetricTag.SLEEP: self._sleep_strategy.score(metrics.sleep_hours, metrics.sleep_stages),
            MetricTag.HRV: hrv_score(metrics.hrv_sdnn_ms, baseline.hrv_avg),
            MetricTag.RHR: rhr_score(metrics.resting_hr_bpm, baseline.rhr_avg),
            MetricTag.TEMPERATURE: temperature_score(deviation),
        }
        included = {m: s for m, s in unit_scores.items() if s is not None}
        missing = frozenset(ALL_METRICS - included.keys())

        weight_sum = sum(self._config.weight(m) for m in included)
        if weight_sum > 0:
            weighted = sum(s * self._config.weight(m) for m, s in included.items())
            composite = weighted / weight_sum * 100.0
        else:
            composite = 0.0
        composite = max(0.0, min(100.0, composite))

        logger.debug(
            "Vigor score for %s: %.2f (missing=%s)",
            metrics.day, composite, sorted(m.value for m in missing),
        )

        return VigorScore(
            day=metrics.day,
            composite=composite,
            sub_scores={m: s * 100.0 for m, s in included.items()},
            raw_inputs={
                "sleep_hours": metrics.sleep_hours,
                "hrv_sdnn_ms": metrics.hrv_sdnn_ms,
                "resting_hr_bpm": metrics.resting_hr_bpm,
                "wrist_temp_deviation_c": deviation,
                "skin_temp_c": metrics.skin_temp_c,
            },
            missing_metrics=missing,
            hrv_baseline=baseline.hrv_avg,
            rhr_baseline=baseline.rhr_avg,
            category=self.category(composite),
        )
