"""Canonical data models for the Vigor recovery engine.

Raw samples are ephemeral: they are produced by a device collaborator and
consumed immediately by the signal extractor.  ``DailyPayload`` is what a
provider hands back for one day, ``DailyMetrics`` is the persisted per-day
record, and ``Baseline`` is recomputed on demand from the stored history.
These types are shared by the extractor, fusion, store, scorer and sync
orchestrator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import TypeVar, Union

from src.recovery.errors import InvalidRangeError

logger = logging.getLogger("vigor.recovery")

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Metric tags
# ---------------------------------------------------------------------------


class MetricTag(str, Enum):
    """The four metrics that feed the composite score."""

    SLEEP = "sleep"
    HRV = "hrv"
    RHR = "rhr"
    TEMPERATURE = "temperature"


ALL_METRICS: frozenset[MetricTag] = frozenset(MetricTag)


class SourceKind(str, Enum):
    """Provider tiers used for multi-source precedence."""

    SLEEP_PERIPHERAL = "sleep_peripheral"
    WEARABLE = "wearable"
    CLOUD = "cloud"


class SampleType(str, Enum):
    """Raw sample streams a device can deliver."""

    INTERVAL = "interval"
    HEART_RATE = "heart_rate"
    TEMPERATURE = "temperature"


# ---------------------------------------------------------------------------
# Typed absence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InsufficientData:
    """Typed absence returned by extraction when a metric cannot be derived.

    Attributes:
        metric: Metric that could not be produced.
        reason: Human-readable explanation (logged, surfaced in debugging).
    """

    metric: MetricTag
    reason: str

    def __bool__(self) -> bool:
        return False


Extraction = Union[T, InsufficientData]


def is_present(value: object) -> bool:
    """Return True if an extraction result carries a real value."""
    return value is not None and not isinstance(value, InsufficientData)


# ---------------------------------------------------------------------------
# Day keys
# ---------------------------------------------------------------------------


def as_local(ts: datetime, tz: tzinfo) -> datetime:
    """Return ``ts`` expressed in ``tz``; naive datetimes are taken as already local."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=tz)
    return ts.astimezone(tz)


def normalize_day(ts: datetime | date, tz: tzinfo = timezone.utc) -> date:
    """Map a timestamp to its local calendar day (the store's day key)."""
    if isinstance(ts, datetime):
        return as_local(ts, tz).date()
    return ts


def local_midnight(day: date, tz: tzinfo) -> datetime:
    """Aware datetime for 00:00 local time on ``day``."""
    return datetime.combine(day, time.min, tzinfo=tz)


def iter_days(start: date, end: date) -> list[date]:
    """Every calendar day in the closed range [start, end]."""
    if end < start:
        raise InvalidRangeError(f"Date range is reversed: {start} > {end}")
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


# ---------------------------------------------------------------------------
# Raw samples (ephemeral)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawIntervalSample:
    """One beat-to-beat interval from a peripheral.

    Attributes:
        timestamp:       When the beat was recorded.
        interval_ms:     Interval to the previous beat in milliseconds.
        skin_contact:    Sensor reported skin contact.
        motion_detected: Sensor reported movement (interval unreliable).
    """

    timestamp: datetime
    interval_ms: int
    skin_contact: bool = True
    motion_detected: bool = False


@dataclass(frozen=True)
class RawHeartRateSample:
    timestamp: datetime
    bpm: int


@dataclass(frozen=True)
class RawTemperatureSample:
    timestamp: datetime
    celsius: float


# ---------------------------------------------------------------------------
# Sleep
# ---------------------------------------------------------------------------


# Provider stage label -> canonical stage bucket
_STAGE_BUCKETS: dict[str, str] = {
    "deep": "deep",
    "slow_wave": "deep",
    "rem": "rem",
    "light": "light",
    "core": "light",
    "asleep": "light",
    "unspecified": "light",
    "awake": "awake",
    "wake": "awake",
}


@dataclass(frozen=True)
class SleepPhase:
    """A sleep stage starting ``offset_seconds`` after the window start."""

    offset_seconds: int
    stage: str


@dataclass
class SleepStages:
    """Hours spent in each sleep stage for one night."""

    light_hours: float = 0.0
    deep_hours: float = 0.0
    rem_hours: float = 0.0
    awake_hours: float = 0.0

    @property
    def total_asleep_hours(self) -> float:
        return self.light_hours + self.deep_hours + self.rem_hours

    @property
    def deep_pct(self) -> float:
        total = self.total_asleep_hours
        return self.deep_hours / total * 100 if total > 0 else 0.0

    @property
    def rem_pct(self) -> float:
        total = self.total_asleep_hours
        return self.rem_hours / total * 100 if total > 0 else 0.0

    @property
    def efficiency(self) -> float:
        """Asleep time as a percentage of asleep + awake time."""
        asleep = self.total_asleep_hours
        in_bed = asleep + self.awake_hours
        return asleep / in_bed * 100 if in_bed > 0 else 0.0

    def to_json(self) -> dict:
        return {
            "light_hours": self.light_hours,
            "deep_hours": self.deep_hours,
            "rem_hours": self.rem_hours,
            "awake_hours": self.awake_hours,
        }

    @classmethod
    def from_json(cls, data: dict | None) -> "SleepStages | None":
        if not data:
            return None
        return cls(
            light_hours=float(data.get("light_hours", 0.0)),
            deep_hours=float(data.get("deep_hours", 0.0)),
            rem_hours=float(data.get("rem_hours", 0.0)),
            awake_hours=float(data.get("awake_hours", 0.0)),
        )


@dataclass(frozen=True)
class SleepWindow:
    """Precise sleep timing supplied by a device or provider.

    Attributes:
        start:  Sleep onset.
        end:    Final wake time.
        phases: Ordered stage transitions, each lasting until the next
                phase's offset (the last one lasts until ``end``).
    """

    start: datetime
    end: datetime
    phases: tuple[SleepPhase, ...] = ()

    def validate(self) -> None:
        """Raise InvalidRangeError unless start < end."""
        if self.start >= self.end:
            raise InvalidRangeError(
                f"Sleep window start {self.start.isoformat()} is not before end {self.end.isoformat()}"
            )

    @property
    def duration_hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600.0

    def stages(self) -> SleepStages | None:
        """Aggregate ``phases`` into per-stage hours; None when there are no phases."""
        if not self.phases:
            return None

        total_seconds = (self.end - self.start).total_seconds()
        ordered = sorted(self.phases, key=lambda p: p.offset_seconds)
        stages = SleepStages()
        in_bed_hours = 0.0

        for idx, phase in enumerate(ordered):
            phase_end = ordered[idx + 1].offset_seconds if idx + 1 < len(ordered) else total_seconds
            seconds = max(0.0, min(phase_end, total_seconds) - max(phase.offset_seconds, 0))
            hours = seconds / 3600.0
            label = phase.stage.lower()

            if label == "in_bed":
                in_bed_hours += hours
                continue
            bucket = _STAGE_BUCKETS.get(label)
            if bucket is None:
                logger.debug("Ignoring unknown sleep stage %r", phase.stage)
                continue
            setattr(stages, f"{bucket}_hours", getattr(stages, f"{bucket}_hours") + hours)

        # Older devices only report "in bed"; count it as unspecified sleep
        if stages.total_asleep_hours == 0 and in_bed_hours > 0:
            stages.light_hours = in_bed_hours

        return stages

    def asleep_hours(self) -> float:
        """Total sleep time: staged asleep time when phases exist, else the window length."""
        stages = self.stages()
        if stages is not None:
            return stages.total_asleep_hours
        return self.duration_hours


# ---------------------------------------------------------------------------
# Provider payloads and persisted records
# ---------------------------------------------------------------------------


@dataclass
class DailyPayload:
    """One provider's values for one calendar day.

    Any field may be None when the provider has nothing (or nothing valid)
    for that metric.  ``hrv_sdnn_ms`` is always SDNN: providers that only
    have RMSSD apply their documented conversion before filling it in.
    """

    day: date
    source: str
    sleep_hours: float | None = None
    sleep_stages: SleepStages | None = None
    hrv_sdnn_ms: float | None = None
    hrv_rmssd_ms: float | None = None
    resting_hr_bpm: float | None = None
    wrist_temp_deviation_c: float | None = None
    skin_temp_c: float | None = None

    @property
    def has_data(self) -> bool:
        return any(
            v is not None
            for v in (
                self.sleep_hours,
                self.hrv_sdnn_ms,
                self.resting_hr_bpm,
                self.wrist_temp_deviation_c,
                self.skin_temp_c,
            )
        )


@dataclass
class DailyMetrics:
    """Persisted per-day metrics; one record per local calendar day.

    Attributes:
        day:                    Local calendar day (the unique key).
        sleep_hours:            Total sleep for the night ending on ``day``.
        sleep_stages:           Stage breakdown for that night, if known.
        hrv_sdnn_ms:            HRV as SDNN (ms).
        hrv_rmssd_ms:           HRV as RMSSD (ms), companion metric.
        resting_hr_bpm:         Resting heart rate.
        wrist_temp_deviation_c: Wrist temperature deviation from baseline (°C).
        skin_temp_c:            Absolute mean nocturnal skin temperature (°C).
        sources:                Metric tag -> provider slug that supplied it.
        last_updated:           UTC time of the last upsert.
    """

    day: date
    sleep_hours: float | None = None
    sleep_stages: SleepStages | None = None
    hrv_sdnn_ms: float | None = None
    hrv_rmssd_ms: float | None = None
    resting_hr_bpm: float | None = None
    wrist_temp_deviation_c: float | None = None
    skin_temp_c: float | None = None
    sources: dict[str, str] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utc_now)

    @property
    def has_data(self) -> bool:
        return any(
            v is not None
            for v in (
                self.sleep_hours,
                self.hrv_sdnn_ms,
                self.resting_hr_bpm,
                self.wrist_temp_deviation_c,
                self.skin_temp_c,
            )
        )

    def same_values(self, other: "DailyMetrics") -> bool:
        """Compare every field except ``last_updated``."""
        return metric_fields(self) == metric_fields(other)


METRIC_FIELDS: tuple[str, ...] = (
    "sleep_hours",
    "sleep_stages",
    "hrv_sdnn_ms",
    "hrv_rmssd_ms",
    "resting_hr_bpm",
    "wrist_temp_deviation_c",
    "skin_temp_c",
    "sources",
)


def metric_fields(metrics: DailyMetrics) -> dict:
    return {name: getattr(metrics, name) for name in METRIC_FIELDS}


@dataclass(frozen=True)
class Baseline:
    """Trailing averages over the days strictly before the scored day.

    Not persisted: always recomputed from the store.
    """

    hrv_avg: float | None = None
    rhr_avg: float | None = None
    skin_temp_avg: float | None = None
