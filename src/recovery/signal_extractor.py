"""Signal extraction: raw sample streams -> per-day scalar metrics.

Every extractor follows the same window selection policy:

1. If a valid ``SleepWindow`` is supplied, keep samples in [start, end].
2. If that leaves nothing (or no window was given), fall back to the local
   nocturnal proxy window [00:00, 06:00) of the target day.
3. If that is empty too, the metric is ``InsufficientData``.  Samples are
   never synthesized and whole-day data is never used as a fallback.

Failures come back as ``InsufficientData`` values rather than exceptions so
that the scorer can treat them as missing metrics.
"""

from __future__ import annotations

import logging
import math
import statistics
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Sequence, TypeVar

from src.recovery.base import (
    DailyPayload,
    Extraction,
    InsufficientData,
    MetricTag,
    RawHeartRateSample,
    RawIntervalSample,
    RawTemperatureSample,
    SleepStages,
    SleepWindow,
    as_local,
    is_present,
    local_midnight,
)
from src.recovery.config_loader import (
    ExtractionConfig,
    RestingHRConfig,
    ScoringConfig,
    get_scoring_config,
)
from src.recovery.errors import InvalidRangeError

logger = logging.getLogger("vigor.recovery.extractor")

S = TypeVar("S", RawIntervalSample, RawHeartRateSample, RawTemperatureSample)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HRVReading:
    """HRV computed from one night of beat-to-beat intervals.

    Attributes:
        sdnn:          Population standard deviation of valid intervals (ms).
        rmssd:         RMS of successive differences (ms); None if < 2 valid.
        mean_rr:       Mean valid interval (ms).
        valid_count:   Intervals that passed the validity filter.
        total_count:   Intervals inside the selected window.
    """

    sdnn: float
    rmssd: float | None
    mean_rr: float
    valid_count: int
    total_count: int
    reliable_ratio: float = 0.8

    @property
    def valid_ratio(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.valid_count / self.total_count

    @property
    def is_reliable(self) -> bool:
        return self.valid_count >= 30 and self.valid_ratio >= self.reliable_ratio


@dataclass(frozen=True)
class RestingHRReading:
    """Lowest qualifying window mean found in the selected samples."""

    bpm: float
    window_start: datetime
    window_sample_count: int
    total_sample_count: int


@dataclass(frozen=True)
class TemperatureReading:
    """Mean skin temperature over the selected window.

    ``body_estimate_c`` adds the documented empirical wrist-to-core offset;
    it is an estimate, not a measurement.
    """

    skin_c: float
    body_estimate_c: float
    sample_count: int
    is_valid: bool


@dataclass
class RawDayBundle:
    """Everything a device delivered that may belong to one day.

    Samples outside the day's sleep / nocturnal window are fine here; the
    extractor selects what counts.
    """

    intervals: Sequence[RawIntervalSample] = ()
    heart_rate: Sequence[RawHeartRateSample] = ()
    temperature: Sequence[RawTemperatureSample] = ()
    sleep: SleepWindow | None = None


@dataclass
class DayExtraction:
    """Per-metric extraction results for one day."""

    day: date
    sleep_hours: Extraction[float]
    sleep_stages: SleepStages | None
    hrv: Extraction[HRVReading]
    resting_hr: Extraction[RestingHRReading]
    temperature: Extraction[TemperatureReading]
    notes: list[str] = field(default_factory=list)

    def to_payload(self, source: str) -> DailyPayload:
        """Flatten into a provider payload, dropping every absent metric."""
        payload = DailyPayload(day=self.day, source=source)
        if is_present(self.sleep_hours):
            payload.sleep_hours = self.sleep_hours
            payload.sleep_stages = self.sleep_stages
        if is_present(self.hrv):
            payload.hrv_sdnn_ms = self.hrv.sdnn
            payload.hrv_rmssd_ms = self.hrv.rmssd
        if is_present(self.resting_hr):
            payload.resting_hr_bpm = self.resting_hr.bpm
        if is_present(self.temperature):
            payload.skin_temp_c = self.temperature.skin_c
        return payload


# ---------------------------------------------------------------------------
# Pure statistics
# ---------------------------------------------------------------------------


def sdnn(intervals: Sequence[float]) -> float:
    """Population standard deviation of intervals (ms)."""
    if not intervals:
        return 0.0
    return statistics.pstdev(intervals)


def rmssd(intervals: Sequence[float]) -> float | None:
    """Root mean square of successive differences; None with fewer than 2 intervals."""
    if len(intervals) < 2:
        return None
    diffs = [intervals[i] - intervals[i - 1] for i in range(1, len(intervals))]
    return math.sqrt(statistics.fmean(d * d for d in diffs))


def rmssd_to_sdnn(rmssd_ms: float, factor: float = 1.5) -> float:
    """Empirical SDNN estimate for providers that only publish RMSSD."""
    return rmssd_ms * factor


# ---------------------------------------------------------------------------
# Window selection
# ---------------------------------------------------------------------------


def nocturnal_window(day: date, tz: tzinfo, start_hour: int = 0, end_hour: int = 6) -> tuple[datetime, datetime]:
    """Local [start_hour, end_hour) on ``day`` as aware datetimes."""
    midnight = local_midnight(day, tz)
    return midnight + timedelta(hours=start_hour), midnight + timedelta(hours=end_hour)


def select_window(
    samples: Sequence[S],
    day: date,
    sleep: SleepWindow | None,
    tz: tzinfo,
    config: ExtractionConfig,
) -> list[S]:
    """Return the samples that count as 'during sleep' for ``day``."""
    if sleep is not None:
        sleep_start, sleep_end = as_local(sleep.start, tz), as_local(sleep.end, tz)
        in_sleep = [s for s in samples if sleep_start <= as_local(s.timestamp, tz) <= sleep_end]
        if in_sleep:
            return in_sleep
        logger.debug("No samples inside sleep window for %s, using nocturnal window", day)

    start, end = nocturnal_window(day, tz, config.nocturnal_start_hour, config.nocturnal_end_hour)
    return [s for s in samples if start <= as_local(s.timestamp, tz) < end]


# ---------------------------------------------------------------------------
# Resting HR strategies
# ---------------------------------------------------------------------------


class RestingHRStrategy(ABC):
    """Finds the lowest plausible window mean in time-sorted HR samples."""

    def __init__(self, config: RestingHRConfig, extraction: ExtractionConfig) -> None:
        self._config = config
        self._extraction = extraction

    def _plausible(self, mean: float) -> bool:
        return self._extraction.plausible_rhr_min_bpm <= mean < self._extraction.plausible_rhr_max_bpm

    @abstractmethod
    def lowest_window(
        self, samples: Sequence[RawHeartRateSample]
    ) -> tuple[float, datetime, int] | None:
        """Return (mean_bpm, window_start, window_sample_count) or None."""


class SlidingTimeWindowStrategy(RestingHRStrategy):
    """Time-duration sliding window (5 minutes target, 3 minutes minimum)."""

    name = "sliding_time_window"

    def lowest_window(
        self, samples: Sequence[RawHeartRateSample]
    ) -> tuple[float, datetime, int] | None:
        target = timedelta(seconds=self._config.window_seconds)
        minimum = timedelta(seconds=self._config.min_window_seconds)
        best: tuple[float, datetime, int] | None = None

        start_idx = 0
        running = 0
        for end_idx, end_sample in enumerate(samples):
            running += end_sample.bpm
            while start_idx < end_idx and end_sample.timestamp - samples[start_idx].timestamp > target:
                running -= samples[start_idx].bpm
                start_idx += 1

            count = end_idx - start_idx + 1
            span = end_sample.timestamp - samples[start_idx].timestamp
            if span < minimum or count < self._config.min_window_samples:
                continue

            mean = running / count
            if self._plausible(mean) and (best is None or mean < best[0]):
                best = (mean, samples[start_idx].timestamp, count)

        return best


class FixedSampleWindowStrategy(RestingHRStrategy):
    """Fixed count of consecutive samples, regardless of their spacing."""

    name = "fixed_sample_window"

    def lowest_window(
        self, samples: Sequence[RawHeartRateSample]
    ) -> tuple[float, datetime, int] | None:
        size = self._config.fixed_window_samples
        if len(samples) < size:
            return None

        best: tuple[float, datetime, int] | None = None
        running = sum(s.bpm for s in samples[:size])
        for start_idx in range(len(samples) - size + 1):
            if start_idx > 0:
                running += samples[start_idx + size - 1].bpm - samples[start_idx - 1].bpm
            mean = running / size
            if self._plausible(mean) and (best is None or mean < best[0]):
                best = (mean, samples[start_idx].timestamp, size)
        return best


def build_resting_hr_strategy(config: ScoringConfig) -> RestingHRStrategy:
    if config.resting_hr.strategy == FixedSampleWindowStrategy.name:
        return FixedSampleWindowStrategy(config.resting_hr, config.extraction)
    return SlidingTimeWindowStrategy(config.resting_hr, config.extraction)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class SignalExtractor:
    """Convert raw device streams into per-day HRV, resting HR and temperature.

    Usage::

        extractor = SignalExtractor(tz=ZoneInfo("Europe/Berlin"))
        result = extractor.extract_hrv(intervals, day, sleep_window)
        if is_present(result):
            print(result.sdnn)
    """

    def __init__(
        self,
        config: ScoringConfig | None = None,
        tz: tzinfo = timezone.utc,
        resting_hr_strategy: RestingHRStrategy | None = None,
    ) -> None:
        self._config = config or get_scoring_config()
        self._tz = tz
        self._rhr_strategy = resting_hr_strategy or build_resting_hr_strategy(self._config)

    @property
    def tz(self) -> tzinfo:
        return self._tz

    @property
    def _ex(self) -> ExtractionConfig:
        return self._config.extraction

    def _is_valid_interval(self, sample: RawIntervalSample) -> bool:
        return (
            sample.skin_contact
            and not sample.motion_detected
            and self._ex.interval_min_ms <= sample.interval_ms <= self._ex.interval_max_ms
        )

    # -- HRV --------------------------------------------------------------

    def extract_hrv(
        self,
        intervals: Sequence[RawIntervalSample],
        day: date,
        sleep: SleepWindow | None = None,
    ) -> Extraction[HRVReading]:
        window = select_window(intervals, day, sleep, self._tz, self._ex)
        if not window:
            return InsufficientData(MetricTag.HRV, "No beat intervals in sleep or nocturnal window")

        ordered = sorted(window, key=lambda s: s.timestamp)
        valid = [float(s.interval_ms) for s in ordered if self._is_valid_interval(s)]

        if len(valid) < self._ex.min_valid_intervals:
            logger.info(
                "HRV for %s: %d valid intervals of %d (need %d)",
                day, len(valid), len(window), self._ex.min_valid_intervals,
            )
            return InsufficientData(
                MetricTag.HRV,
                f"Only {len(valid)} valid intervals (need {self._ex.min_valid_intervals})",
            )

        return HRVReading(
            sdnn=sdnn(valid),
            rmssd=rmssd(valid),
            mean_rr=statistics.fmean(valid),
            valid_count=len(valid),
            total_count=len(window),
            reliable_ratio=self._ex.reliable_valid_ratio,
        )

    # -- Resting HR -------------------------------------------------------

    def extract_resting_hr(
        self,
        samples: Sequence[RawHeartRateSample],
        day: date,
        sleep: SleepWindow | None = None,
    ) -> Extraction[RestingHRReading]:
        window = select_window(samples, day, sleep, self._tz, self._ex)
        if len(window) < self._ex.min_hr_samples:
            return InsufficientData(
                MetricTag.RHR,
                f"Only {len(window)} HR samples in window (need {self._ex.min_hr_samples})",
            )

        ordered = sorted(window, key=lambda s: s.timestamp)
        best = self._rhr_strategy.lowest_window(ordered)
        if best is None:
            return InsufficientData(MetricTag.RHR, "No window with a plausible resting heart rate")

        mean, window_start, count = best
        logger.debug(
            "Resting HR for %s: %.1f bpm from window at %s (%d samples)",
            day, mean, window_start, count,
        )
        return RestingHRReading(
            bpm=mean,
            window_start=window_start,
            window_sample_count=count,
            total_sample_count=len(ordered),
        )

    # -- Temperature ------------------------------------------------------

    def measure_temperature(
        self,
        samples: Sequence[RawTemperatureSample],
        day: date,
        sleep: SleepWindow | None = None,
    ) -> Extraction[TemperatureReading]:
        """Mean skin temperature over the window, flagged invalid when implausible."""
        window = select_window(samples, day, sleep, self._tz, self._ex)
        if not window:
            return InsufficientData(MetricTag.TEMPERATURE, "No temperature samples in window")

        skin = statistics.fmean(s.celsius for s in window)
        is_valid = self._ex.skin_temp_min_c <= skin <= self._ex.skin_temp_max_c
        if not is_valid:
            logger.info(
                "Skin temperature %.2f°C for %s outside [%.0f, %.0f]",
                skin, day, self._ex.skin_temp_min_c, self._ex.skin_temp_max_c,
            )
        return TemperatureReading(
            skin_c=skin,
            body_estimate_c=skin + self._ex.skin_to_body_offset_c,
            sample_count=len(window),
            is_valid=is_valid,
        )

    def extract_temperature(
        self,
        samples: Sequence[RawTemperatureSample],
        day: date,
        sleep: SleepWindow | None = None,
    ) -> Extraction[TemperatureReading]:
        reading = self.measure_temperature(samples, day, sleep)
        if is_present(reading) and not reading.is_valid:
            return InsufficientData(
                MetricTag.TEMPERATURE, f"Skin temperature {reading.skin_c:.2f}°C is implausible"
            )
        return reading

    # -- Whole day --------------------------------------------------------

    def extract_day(self, day: date, bundle: RawDayBundle) -> DayExtraction:
        """Run every extractor for ``day``.

        An invalid sleep window is rejected here: sleep becomes absent and
        the other metrics fall back to the nocturnal window.
        """
        notes: list[str] = []
        sleep = bundle.sleep
        sleep_hours: Extraction[float]
        stages: SleepStages | None = None

        if sleep is None:
            sleep_hours = InsufficientData(MetricTag.SLEEP, "No sleep window supplied")
        else:
            try:
                sleep.validate()
            except InvalidRangeError as exc:
                logger.warning("Rejecting sleep window for %s: %s", day, exc)
                notes.append(str(exc))
                sleep = None
                sleep_hours = InsufficientData(MetricTag.SLEEP, str(exc))
            else:
                stages = sleep.stages()
                hours = sleep.asleep_hours()
                if hours > 0:
                    sleep_hours = hours
                else:
                    sleep_hours = InsufficientData(MetricTag.SLEEP, "Sleep window has no asleep phases")

        extraction = DayExtraction(
            day=day,
            sleep_hours=sleep_hours,
            sleep_stages=stages,
            hrv=self.extract_hrv(bundle.intervals, day, sleep),
            resting_hr=self.extract_resting_hr(bundle.heart_rate, day, sleep),
            temperature=self.extract_temperature(bundle.temperature, day, sleep),
            notes=notes,
        )
        for result in (extraction.hrv, extraction.resting_hr, extraction.temperature):
            if isinstance(result, InsufficientData):
                notes.append(f"{result.metric.value}: {result.reason}")
        return extraction
