"""Load, validate, and hot-reload the Vigor scoring configuration.

The config lives in ``scoring_config.yaml`` alongside this module.  It is
loaded once and cached.  Call ``reload_scoring_config()`` to re-read it from
disk; components constructed afterwards see the new values, components that
were handed a config explicitly keep theirs.

Usage::

    from src.recovery.config_loader import get_scoring_config

    config = get_scoring_config()
    config.weight(MetricTag.HRV)            # 0.30
    config.extraction.min_valid_intervals   # 30
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.recovery.base import MetricTag, SourceKind

logger = logging.getLogger("vigor.recovery.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "scoring_config.yaml"

SLEEP_STRATEGIES = ("stage_blend", "duration_only")
RHR_STRATEGIES = ("sliding_time_window", "fixed_sample_window")


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class SleepScoringConfig:
    """Which sleep curve to use and how the stage blend is weighted."""

    strategy: str = "stage_blend"
    duration_weight: float = 0.6
    quality_weight: float = 0.4


@dataclass
class RestingHRConfig:
    """Resting heart rate windowing parameters."""

    strategy: str = "sliding_time_window"
    window_seconds: int = 300
    min_window_seconds: int = 180
    min_window_samples: int = 3
    fixed_window_samples: int = 5


@dataclass
class ExtractionConfig:
    """Validity thresholds for raw-signal extraction."""

    interval_min_ms: int = 300
    interval_max_ms: int = 2000
    min_valid_intervals: int = 30
    reliable_valid_ratio: float = 0.8
    min_hr_samples: int = 5
    plausible_rhr_min_bpm: float = 30.0
    plausible_rhr_max_bpm: float = 100.0
    nocturnal_start_hour: int = 0
    nocturnal_end_hour: int = 6
    skin_temp_min_c: float = 20.0
    skin_temp_max_c: float = 38.0
    skin_to_body_offset_c: float = 8.5
    rmssd_to_sdnn_factor: float = 1.5


@dataclass
class SyncConfig:
    """Backfill window and background scheduling policy."""

    history_days: int = 30
    hourly_min_interval_minutes: int = 45
    morning_min_interval_hours: int = 6
    failure_threshold: int = 3
    failure_cooldown_hours: int = 2
    retry_base_minutes: int = 15
    retry_max_multiplier: int = 8
    timeout_retry_minutes: int = 5
    busy_retry_minutes: int = 30
    active_start_hour: int = 6
    active_end_hour: int = 23


@dataclass
class ScoringConfig:
    """Complete, validated scoring configuration.

    Attributes:
        version:             Config schema version string.
        weights:             Metric tag -> composite weight.
        sleep_scoring:       Sleep strategy selection.
        resting_hr:          Resting HR strategy selection and windows.
        extraction:          Raw-signal validity thresholds.
        precedence:          Source kinds in descending precedence.
        baseline_window_days: Trailing window for baselines.
        sync:                Backfill / scheduling settings.
        high_threshold:      Composite >= this is 'high'.
        moderate_threshold:  Composite >= this is 'moderate'.
    """

    version: str = "1.0"
    weights: dict[MetricTag, float] = field(
        default_factory=lambda: {
            MetricTag.SLEEP: 0.30,
            MetricTag.HRV: 0.30,
            MetricTag.RHR: 0.25,
            MetricTag.TEMPERATURE: 0.15,
        }
    )
    sleep_scoring: SleepScoringConfig = field(default_factory=SleepScoringConfig)
    resting_hr: RestingHRConfig = field(default_factory=RestingHRConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    precedence: list[SourceKind] = field(
        default_factory=lambda: [SourceKind.SLEEP_PERIPHERAL, SourceKind.WEARABLE, SourceKind.CLOUD]
    )
    baseline_window_days: int = 30
    sync: SyncConfig = field(default_factory=SyncConfig)
    high_threshold: float = 67.0
    moderate_threshold: float = 34.0
    _raw: dict = field(default_factory=dict, repr=False)

    def weight(self, metric: MetricTag) -> float:
        return self.weights.get(metric, 0.0)

    @property
    def total_weight(self) -> float:
        return sum(self.weights.values())

    def precedence_rank(self, kind: SourceKind) -> int:
        """Lower rank wins.  Kinds missing from the list sort last."""
        try:
            return self.precedence.index(kind)
        except ValueError:
            return len(self.precedence)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when scoring_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Scoring config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _section(raw: dict, key: str, errors: list[str]) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        errors.append(f"'{key}' must be a mapping")
        return {}
    return value


def _build_dataclass(cls: type, raw: dict, section: str, errors: list[str]) -> Any:
    """Instantiate ``cls`` from ``raw``, coercing each known key to its default's type."""
    defaults = cls()
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if not hasattr(defaults, key):
            errors.append(f"Unknown key '{key}' in section '{section}'")
            continue
        target_type = type(getattr(defaults, key))
        try:
            kwargs[key] = target_type(value)
        except (TypeError, ValueError):
            errors.append(f"{section}.{key} must be {target_type.__name__}, got {value!r}")
    return cls(**kwargs)


def _validate_and_build(raw: dict) -> ScoringConfig:
    """Validate the raw YAML dict and construct a ScoringConfig.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Weights ──
    weights_raw = _section(raw, "weights", errors)
    if not weights_raw:
        errors.append("'weights' section is missing or empty")
    weights: dict[MetricTag, float] = {}
    for name, value in weights_raw.items():
        try:
            tag = MetricTag(name)
        except ValueError:
            errors.append(f"weights.{name} is not a known metric")
            continue
        try:
            w = float(value)
        except (TypeError, ValueError):
            errors.append(f"weights.{name} must be a number, got {value!r}")
            continue
        if not (0.0 <= w <= 1.0):
            errors.append(f"weights.{name} = {w} is out of range [0.0, 1.0]")
        weights[tag] = w

    total = sum(weights.values())
    if weights and not (0.95 <= total <= 1.05):
        logger.warning(
            "Metric weights sum to %.3f (expected ~1.0). "
            "Scores are renormalized over available metrics anyway.",
            total,
        )

    # ── Strategies / thresholds ──
    sleep_scoring = _build_dataclass(
        SleepScoringConfig, _section(raw, "sleep_scoring", errors), "sleep_scoring", errors
    )
    if sleep_scoring.strategy not in SLEEP_STRATEGIES:
        errors.append(
            f"sleep_scoring.strategy must be one of {SLEEP_STRATEGIES}, got {sleep_scoring.strategy!r}"
        )

    resting_hr = _build_dataclass(
        RestingHRConfig, _section(raw, "resting_hr", errors), "resting_hr", errors
    )
    if resting_hr.strategy not in RHR_STRATEGIES:
        errors.append(
            f"resting_hr.strategy must be one of {RHR_STRATEGIES}, got {resting_hr.strategy!r}"
        )
    if resting_hr.min_window_seconds > resting_hr.window_seconds:
        errors.append("resting_hr.min_window_seconds cannot exceed window_seconds")

    extraction = _build_dataclass(
        ExtractionConfig, _section(raw, "extraction", errors), "extraction", errors
    )
    if extraction.interval_min_ms >= extraction.interval_max_ms:
        errors.append("extraction.interval_min_ms must be below interval_max_ms")
    if not (0 <= extraction.nocturnal_start_hour < extraction.nocturnal_end_hour <= 24):
        errors.append("extraction nocturnal window must satisfy 0 <= start < end <= 24")

    # ── Fusion precedence ──
    fusion_raw = _section(raw, "fusion", errors)
    precedence: list[SourceKind] = []
    for kind in fusion_raw.get("precedence", [k.value for k in SourceKind]):
        try:
            precedence.append(SourceKind(kind))
        except ValueError:
            errors.append(f"fusion.precedence contains unknown source kind {kind!r}")
    if len(set(precedence)) != len(precedence):
        errors.append("fusion.precedence lists a source kind more than once")

    baseline_raw = _section(raw, "baseline", errors)
    baseline_window_days = int(baseline_raw.get("window_days", 30))
    if baseline_window_days < 1:
        errors.append("baseline.window_days must be at least 1")

    sync = _build_dataclass(SyncConfig, _section(raw, "sync", errors), "sync", errors)
    if sync.history_days < 1:
        errors.append("sync.history_days must be at least 1")

    categories_raw = _section(raw, "categories", errors)
    high = float(categories_raw.get("high", 67))
    moderate = float(categories_raw.get("moderate", 34))
    if not (0 <= moderate <= high <= 100):
        errors.append("categories must satisfy 0 <= moderate <= high <= 100")

    if errors:
        raise ConfigValidationError(
            f"scoring_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return ScoringConfig(
        version=version,
        weights=weights,
        sleep_scoring=sleep_scoring,
        resting_hr=resting_hr,
        extraction=extraction,
        precedence=precedence,
        baseline_window_days=baseline_window_days,
        sync=sync,
        high_threshold=high,
        moderate_threshold=moderate,
        _raw=raw,
    )


def load_scoring_config(path: Path | None = None) -> ScoringConfig:
    """Load and validate the scoring config from disk.

    Args:
        path: Override path to YAML. Uses the bundled scoring_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded scoring config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Cached instance with hot-reload support
# ---------------------------------------------------------------------------

_config: ScoringConfig | None = None
_config_lock = threading.Lock()


def get_scoring_config() -> ScoringConfig:
    """Return the cached ScoringConfig, loading it on first call.  Thread-safe."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_scoring_config()
    return _config


def reload_scoring_config(path: Path | None = None) -> ScoringConfig:
    """Reload the scoring config from disk and replace the cached instance.

    If validation fails the old config is retained and the error re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_scoring_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded scoring config: %s → %s", old_version, new_config.version)
    return new_config
