"""Provider over raw device streams.

``DeviceProvider`` pulls beat-to-beat intervals, heart rate samples, skin
temperature and sleep windows from a ``RawSampleSource`` (the transport
layer: BLE, a vendor SDK, an export file) and runs the signal extractor
for each day.  The transport itself lives outside this package.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Protocol, Sequence, TypeVar

from src.recovery.base import (
    DailyPayload,
    RawHeartRateSample,
    RawIntervalSample,
    RawTemperatureSample,
    SampleType,
    SleepWindow,
    SourceKind,
    as_local,
    iter_days,
    local_midnight,
    normalize_day,
)
from src.recovery.errors import InvalidRangeError, ProviderFetchError
from src.recovery.providers.base import DataProvider
from src.recovery.signal_extractor import RawDayBundle, SignalExtractor

logger = logging.getLogger("vigor.recovery.providers.device")

S = TypeVar("S", RawIntervalSample, RawHeartRateSample, RawTemperatureSample)

# Sleep that ends on day D may start the previous evening
_LOOKBACK = timedelta(hours=18)


class RawSampleSource(Protocol):
    """Transport collaborator delivering raw samples for [start, end).

    Implementations raise ``ProviderFetchError`` (or ``OSError``) when the
    device cannot be reached.
    """

    async def fetch_intervals(self, start: datetime, end: datetime) -> Sequence[RawIntervalSample]:
        ...

    async def fetch_heart_rate(self, start: datetime, end: datetime) -> Sequence[RawHeartRateSample]:
        ...

    async def fetch_temperature(self, start: datetime, end: datetime) -> Sequence[RawTemperatureSample]:
        ...

    async def fetch_sleep_windows(self, start: datetime, end: datetime) -> Sequence[SleepWindow]:
        ...


def _between(samples: Sequence[S], start: datetime, end: datetime, tz: tzinfo) -> list[S]:
    return [s for s in samples if start <= as_local(s.timestamp, tz) < end]


class DeviceProvider(DataProvider):
    """Extract daily metrics from a raw-sample device.

    Usage::

        provider = DeviceProvider(polar_transport, source_id="polar", tz=tz)
        payloads = await provider.fetch_daily(date(2024, 3, 1), date(2024, 3, 7))
    """

    def __init__(
        self,
        source: RawSampleSource,
        *,
        source_id: str = "device",
        display_name: str | None = None,
        kind: SourceKind = SourceKind.WEARABLE,
        extractor: SignalExtractor | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        self._source = source
        self.SOURCE_ID = source_id
        self.DISPLAY_NAME = display_name or source_id
        self.KIND = kind
        if extractor is None:
            extractor = SignalExtractor(tz=tz) if tz is not None else SignalExtractor()
        self._extractor = extractor
        self._tz = extractor.tz

    async def fetch_raw(self, start, end, sample_type):
        fetchers = {
            SampleType.INTERVAL: self._source.fetch_intervals,
            SampleType.HEART_RATE: self._source.fetch_heart_rate,
            SampleType.TEMPERATURE: self._source.fetch_temperature,
        }
        try:
            return await fetchers[sample_type](start, end)
        except OSError as exc:
            raise ProviderFetchError(self.SOURCE_ID, f"{sample_type.value} fetch failed: {exc}") from exc

    async def fetch_daily(self, start: date, end: date) -> list[DailyPayload]:
        days = iter_days(start, end)
        range_start = local_midnight(start, self._tz) - _LOOKBACK
        range_end = local_midnight(end + timedelta(days=1), self._tz)

        try:
            intervals, heart_rate, temperature, windows = await asyncio.gather(
                self._source.fetch_intervals(range_start, range_end),
                self._source.fetch_heart_rate(range_start, range_end),
                self._source.fetch_temperature(range_start, range_end),
                self._source.fetch_sleep_windows(range_start, range_end),
            )
        except OSError as exc:
            raise ProviderFetchError(self.SOURCE_ID, f"device fetch failed: {exc}") from exc

        sleep_by_day = self._sleep_by_wake_day(windows)
        payloads: list[DailyPayload] = []
        for day in days:
            sleep = sleep_by_day.get(day)
            day_start = local_midnight(day, self._tz)
            lower = day_start
            if sleep is not None:
                lower = min(lower, as_local(sleep.start, self._tz))
            upper = day_start + timedelta(days=1)
            bundle = RawDayBundle(
                intervals=_between(intervals, lower, upper, self._tz),
                heart_rate=_between(heart_rate, lower, upper, self._tz),
                temperature=_between(temperature, lower, upper, self._tz),
                sleep=sleep,
            )
            extraction = self._extractor.extract_day(day, bundle)
            if extraction.notes:
                logger.debug("%s %s: %s", self.SOURCE_ID, day, "; ".join(extraction.notes))
            payloads.append(extraction.to_payload(self.SOURCE_ID))

        logger.info(
            "%s: extracted %d day(s) from %d intervals, %d HR samples",
            self.SOURCE_ID, len(payloads), len(intervals), len(heart_rate),
        )
        return payloads

    def _sleep_by_wake_day(self, windows: Sequence[SleepWindow]) -> dict[date, SleepWindow]:
        """Main sleep per wake day: the longest valid window ending on that day."""
        by_day: dict[date, SleepWindow] = {}
        for window in windows:
            try:
                window.validate()
            except InvalidRangeError as exc:
                logger.warning("%s: dropping sleep window: %s", self.SOURCE_ID, exc)
                continue
            day = normalize_day(window.end, self._tz)
            current = by_day.get(day)
            if current is None or window.duration_hours > current.duration_hours:
                by_day[day] = window
        return by_day
