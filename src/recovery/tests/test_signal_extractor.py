"""Tests for raw-signal extraction: HRV, resting HR, temperature, whole-day bundles."""

from __future__ import annotations

import statistics
from datetime import timedelta

import pytest

from src.recovery.base import (
    InsufficientData,
    MetricTag,
    SleepPhase,
    SleepWindow,
    is_present,
)
from src.recovery.config_loader import RestingHRConfig, ScoringConfig
from src.recovery.signal_extractor import (
    FixedSampleWindowStrategy,
    HRVReading,
    RawDayBundle,
    SignalExtractor,
    SlidingTimeWindowStrategy,
    nocturnal_window,
    rmssd,
    rmssd_to_sdnn,
    sdnn,
)
from src.recovery.tests.conftest import (
    TEST_DATE,
    UTC,
    at,
    hr_series,
    interval_series,
    night,
    temp_series,
)


@pytest.fixture
def extractor(scoring_config: ScoringConfig) -> SignalExtractor:
    return SignalExtractor(scoring_config, tz=UTC)


# ---------------------------------------------------------------------------
# Pure statistics
# ---------------------------------------------------------------------------


class TestStatistics:
    def test_sdnn_is_population_std(self) -> None:
        values = [812.0, 790.0, 845.0, 901.0, 760.0, 833.0]
        assert sdnn(values) == pytest.approx(statistics.pstdev(values))

    def test_sdnn_of_constant_series_is_zero(self) -> None:
        assert sdnn([800.0] * 40) == 0.0

    def test_rmssd_alternating_series(self) -> None:
        assert rmssd([800.0, 850.0] * 20) == pytest.approx(50.0)

    def test_rmssd_needs_two_values(self) -> None:
        assert rmssd([800.0]) is None

    def test_rmssd_to_sdnn_uses_factor(self) -> None:
        assert rmssd_to_sdnn(40.0) == pytest.approx(60.0)
        assert rmssd_to_sdnn(40.0, factor=2.0) == pytest.approx(80.0)

    def test_nocturnal_window_bounds(self) -> None:
        start, end = nocturnal_window(TEST_DATE, UTC, 0, 6)
        assert start == at(TEST_DATE, 0)
        assert end == at(TEST_DATE, 6)


# ---------------------------------------------------------------------------
# HRV
# ---------------------------------------------------------------------------


class TestHRVExtraction:
    def test_sdnn_from_valid_intervals(self, extractor: SignalExtractor) -> None:
        samples = interval_series(at(TEST_DATE, 2), [800, 850] * 20)
        result = extractor.extract_hrv(samples, TEST_DATE, night(TEST_DATE))

        assert isinstance(result, HRVReading)
        assert result.sdnn == pytest.approx(25.0)
        assert result.rmssd == pytest.approx(50.0)
        assert result.mean_rr == pytest.approx(825.0)
        assert result.valid_count == 40
        assert result.is_reliable

    def test_invalid_intervals_are_filtered(self, extractor: SignalExtractor) -> None:
        good = interval_series(at(TEST_DATE, 2), [800, 850] * 20)
        out_of_range = interval_series(at(TEST_DATE, 3), [250, 2500, 2100])
        moving = interval_series(at(TEST_DATE, 4), [400] * 5, motion_detected=True)
        loose = interval_series(at(TEST_DATE, 4, 30), [1500] * 5, skin_contact=False)

        result = extractor.extract_hrv(good + out_of_range + moving + loose, TEST_DATE)

        assert is_present(result)
        assert result.sdnn == pytest.approx(sdnn([800.0, 850.0] * 20))
        assert result.valid_count == 40
        assert result.total_count == 53
        assert result.valid_ratio == pytest.approx(40 / 53)
        assert not result.is_reliable  # ratio below 0.8

    def test_boundary_intervals_are_valid(self, extractor: SignalExtractor) -> None:
        samples = interval_series(at(TEST_DATE, 2), [300, 2000] * 15)
        result = extractor.extract_hrv(samples, TEST_DATE)
        assert is_present(result)
        assert result.valid_count == 30

    def test_fewer_than_30_valid_is_insufficient(self, extractor: SignalExtractor) -> None:
        samples = interval_series(at(TEST_DATE, 2), [800] * 29)
        result = extractor.extract_hrv(samples, TEST_DATE)

        assert isinstance(result, InsufficientData)
        assert result.metric is MetricTag.HRV
        assert "29" in result.reason
        assert not result

    def test_daytime_samples_never_used(self, extractor: SignalExtractor) -> None:
        samples = interval_series(at(TEST_DATE, 14), [800, 850] * 30)
        result = extractor.extract_hrv(samples, TEST_DATE)
        assert isinstance(result, InsufficientData)

    def test_sleep_window_restricts_samples(self, extractor: SignalExtractor) -> None:
        in_sleep = interval_series(at(TEST_DATE - timedelta(days=1), 23, 30), [1000] * 40)
        nocturnal_only = interval_series(at(TEST_DATE, 5), [600, 700] * 20)
        sleep = SleepWindow(start=at(TEST_DATE - timedelta(days=1), 23), end=at(TEST_DATE, 0, 30))

        result = extractor.extract_hrv(in_sleep + nocturnal_only, TEST_DATE, sleep)

        assert is_present(result)
        assert result.sdnn == 0.0  # only the constant in-sleep beats

    def test_empty_sleep_window_falls_back_to_nocturnal(self, extractor: SignalExtractor) -> None:
        samples = interval_series(at(TEST_DATE, 3), [800, 850] * 20)
        sleep = SleepWindow(start=at(TEST_DATE, 8), end=at(TEST_DATE, 9))
        result = extractor.extract_hrv(samples, TEST_DATE, sleep)
        assert is_present(result)
        assert result.valid_count == 40


# ---------------------------------------------------------------------------
# Resting HR
# ---------------------------------------------------------------------------


class TestRestingHR:
    def test_single_spike_does_not_corrupt_minimum(self, extractor: SignalExtractor) -> None:
        # Ten minutes at 60 bpm, then one 120 bpm spike
        samples = hr_series(at(TEST_DATE, 2), [60] * 11 + [120])
        result = extractor.extract_resting_hr(samples, TEST_DATE)

        assert is_present(result)
        assert result.bpm == pytest.approx(60.0)
        assert result.window_start == at(TEST_DATE, 2)
        assert result.total_sample_count == 12

    def test_lowest_window_wins(self, extractor: SignalExtractor) -> None:
        bpms = [70] * 6 + [52, 50, 51, 50, 52, 53] + [68] * 6
        result = extractor.extract_resting_hr(hr_series(at(TEST_DATE, 1), bpms), TEST_DATE)
        assert is_present(result)
        assert 50.0 <= result.bpm < 53.0

    def test_unsorted_input_is_sorted(self, extractor: SignalExtractor) -> None:
        samples = hr_series(at(TEST_DATE, 2), [60] * 11 + [120])
        result = extractor.extract_resting_hr(list(reversed(samples)), TEST_DATE)
        assert result.bpm == pytest.approx(60.0)

    def test_fewer_than_five_samples_is_insufficient(self, extractor: SignalExtractor) -> None:
        result = extractor.extract_resting_hr(hr_series(at(TEST_DATE, 2), [55] * 4), TEST_DATE)
        assert isinstance(result, InsufficientData)
        assert result.metric is MetricTag.RHR

    def test_implausible_windows_are_rejected(self, extractor: SignalExtractor) -> None:
        samples = hr_series(at(TEST_DATE, 2), [110] * 10)
        result = extractor.extract_resting_hr(samples, TEST_DATE)
        assert isinstance(result, InsufficientData)

    def test_windows_shorter_than_three_minutes_ignored(self, scoring_config: ScoringConfig) -> None:
        strategy = SlidingTimeWindowStrategy(scoring_config.resting_hr, scoring_config.extraction)
        # Five samples 10 s apart: span 40 s, never a valid window
        samples = hr_series(at(TEST_DATE, 2), [50] * 5, step_seconds=10)
        assert strategy.lowest_window(samples) is None

    def test_fixed_sample_strategy(self, scoring_config: ScoringConfig) -> None:
        strategy = FixedSampleWindowStrategy(
            RestingHRConfig(strategy="fixed_sample_window", fixed_window_samples=5),
            scoring_config.extraction,
        )
        samples = hr_series(at(TEST_DATE, 2), [64, 62, 58, 57, 56, 55, 54, 70], step_seconds=5)
        mean, start, count = strategy.lowest_window(samples)
        # 58, 57, 56, 55, 54
        assert mean == pytest.approx(56.0)
        assert count == 5
        assert start == samples[2].timestamp

    def test_extractor_accepts_injected_strategy(self, scoring_config: ScoringConfig) -> None:
        fixed = FixedSampleWindowStrategy(scoring_config.resting_hr, scoring_config.extraction)
        extractor = SignalExtractor(scoring_config, tz=UTC, resting_hr_strategy=fixed)
        samples = hr_series(at(TEST_DATE, 2), [60] * 11 + [120])
        result = extractor.extract_resting_hr(samples, TEST_DATE)
        assert result.bpm == pytest.approx(60.0)
        assert result.window_sample_count == 5


# ---------------------------------------------------------------------------
# Temperature
# ---------------------------------------------------------------------------


class TestTemperature:
    def test_mean_and_body_estimate(self, extractor: SignalExtractor) -> None:
        samples = temp_series(at(TEST_DATE, 1), [33.0, 33.5, 34.0])
        result = extractor.extract_temperature(samples, TEST_DATE)

        assert is_present(result)
        assert result.skin_c == pytest.approx(33.5)
        assert result.body_estimate_c == pytest.approx(42.0)
        assert result.sample_count == 3
        assert result.is_valid

    def test_out_of_range_marked_invalid(self, extractor: SignalExtractor) -> None:
        samples = temp_series(at(TEST_DATE, 1), [41.0, 42.0])
        measured = extractor.measure_temperature(samples, TEST_DATE)
        assert is_present(measured)
        assert not measured.is_valid

        result = extractor.extract_temperature(samples, TEST_DATE)
        assert isinstance(result, InsufficientData)
        assert result.metric is MetricTag.TEMPERATURE

    def test_no_samples_is_insufficient(self, extractor: SignalExtractor) -> None:
        result = extractor.extract_temperature([], TEST_DATE)
        assert isinstance(result, InsufficientData)


# ---------------------------------------------------------------------------
# Whole day
# ---------------------------------------------------------------------------


class TestExtractDay:
    def _bundle(self, sleep: SleepWindow | None) -> RawDayBundle:
        return RawDayBundle(
            intervals=interval_series(at(TEST_DATE, 2), [800, 850] * 20),
            heart_rate=hr_series(at(TEST_DATE, 2), [55] * 10),
            temperature=temp_series(at(TEST_DATE, 2), [33.0, 33.2]),
            sleep=sleep,
        )

    def test_full_bundle(self, extractor: SignalExtractor) -> None:
        result = extractor.extract_day(TEST_DATE, self._bundle(night(TEST_DATE, hours=8.0)))

        assert result.sleep_hours == pytest.approx(8.0)
        assert result.hrv.sdnn == pytest.approx(25.0)
        assert result.resting_hr.bpm == pytest.approx(55.0)
        assert result.temperature.skin_c == pytest.approx(33.1)
        assert result.notes == []

    def test_invalid_sleep_window_only_drops_sleep(self, extractor: SignalExtractor) -> None:
        broken = SleepWindow(start=at(TEST_DATE, 7), end=at(TEST_DATE, 7))
        result = extractor.extract_day(TEST_DATE, self._bundle(broken))

        assert isinstance(result.sleep_hours, InsufficientData)
        assert result.sleep_stages is None
        assert is_present(result.hrv)
        assert is_present(result.resting_hr)
        assert is_present(result.temperature)
        assert result.notes

    def test_missing_sleep_window(self, extractor: SignalExtractor) -> None:
        result = extractor.extract_day(TEST_DATE, self._bundle(None))
        assert isinstance(result.sleep_hours, InsufficientData)
        assert is_present(result.hrv)

    def test_stage_phases(self, extractor: SignalExtractor) -> None:
        start = at(TEST_DATE - timedelta(days=1), 23)
        sleep = SleepWindow(
            start=start,
            end=start + timedelta(hours=8),
            phases=(
                SleepPhase(0, "light"),
                SleepPhase(3600, "deep"),
                SleepPhase(7200, "rem"),
                SleepPhase(10800, "core"),
                SleepPhase(27000, "awake"),
            ),
        )
        result = extractor.extract_day(TEST_DATE, self._bundle(sleep))

        assert result.sleep_hours == pytest.approx(7.5)
        assert result.sleep_stages.deep_hours == pytest.approx(1.0)
        assert result.sleep_stages.rem_hours == pytest.approx(1.0)
        assert result.sleep_stages.light_hours == pytest.approx(5.5)
        assert result.sleep_stages.awake_hours == pytest.approx(0.5)

    def test_awake_only_phases_are_insufficient(self, extractor: SignalExtractor) -> None:
        start = at(TEST_DATE, 1)
        sleep = SleepWindow(start=start, end=start + timedelta(hours=1), phases=(SleepPhase(0, "awake"),))
        result = extractor.extract_day(TEST_DATE, self._bundle(sleep))
        assert isinstance(result.sleep_hours, InsufficientData)

    def test_to_payload_drops_absent_metrics(self, extractor: SignalExtractor) -> None:
        bundle = RawDayBundle(intervals=interval_series(at(TEST_DATE, 2), [800, 850] * 20))
        payload = extractor.extract_day(TEST_DATE, bundle).to_payload("polar")

        assert payload.source == "polar"
        assert payload.hrv_sdnn_ms == pytest.approx(25.0)
        assert payload.hrv_rmssd_ms == pytest.approx(50.0)
        assert payload.sleep_hours is None
        assert payload.resting_hr_bpm is None
        assert payload.skin_temp_c is None
