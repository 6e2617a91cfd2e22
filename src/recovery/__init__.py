"""Vigor recovery readiness engine.

Turns raw physiological signals and provider summaries into a per-day
0–100 recovery score.

Subpackages:
    providers/ — Data providers (raw device streams, Whoop cloud API)
    sync/      — Sync orchestrator, persisted sync state, background scheduler

Core modules:
    base             — Canonical data models and day-key helpers
    signal_extractor — HRV / resting HR / temperature from raw samples
    source_fusion    — Precedence-based multi-source fusion
    baseline         — Trailing 30-day baselines
    vigor_score      — Composite scorer and sleep strategies
    store            — Metrics / score store interface and in-memory store
    postgres_store   — asyncpg-backed store
    publisher        — Latest-score publication to subscribers
    config_loader    — Load/validate/hot-reload scoring_config.yaml
"""

from src.recovery.base import (
    Baseline,
    DailyMetrics,
    DailyPayload,
    InsufficientData,
    MetricTag,
    SleepStages,
    SleepWindow,
    SourceKind,
)
from src.recovery.config_loader import ScoringConfig, get_scoring_config
from src.recovery.vigor_score import VigorScore, VigorScorer

__all__ = [
    "Baseline",
    "DailyMetrics",
    "DailyPayload",
    "InsufficientData",
    "MetricTag",
    "SleepStages",
    "SleepWindow",
    "SourceKind",
    "ScoringConfig",
    "get_scoring_config",
    "VigorScore",
    "VigorScorer",
]
