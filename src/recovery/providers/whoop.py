"""Whoop cloud provider.

Reads already-computed recovery and sleep records from the Whoop developer
API and maps them onto ``DailyPayload``.

API base: https://api.prod.whoop.com/developer

Endpoints used:
    /v1/recovery       — resting HR, HRV (RMSSD), skin temperature
    /v1/activity/sleep — sleep stage summary

Both are paginated with ``next_token``.  Whoop reports HRV as RMSSD only;
it is converted to an SDNN estimate (rmssd × 1.5) so it is comparable with
the other sources' baselines.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any

import httpx

from src.recovery.base import (
    DailyPayload,
    SleepStages,
    SourceKind,
    iter_days,
    local_midnight,
    normalize_day,
)
from src.recovery.config_loader import ScoringConfig, get_scoring_config
from src.recovery.errors import ProviderFetchError
from src.recovery.providers.base import DataProvider
from src.recovery.signal_extractor import rmssd_to_sdnn

logger = logging.getLogger("vigor.recovery.providers.whoop")

WHOOP_API_BASE = "https://api.prod.whoop.com/developer"
_PAGE_LIMIT = 25
_MAX_PAGES = 50
_MS_PER_HOUR = 3_600_000


def _safe_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string; naive values are taken as UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class WhoopProvider(DataProvider):
    """Whoop developer API (v1) provider.

    Usage::

        provider = WhoopProvider(access_token=token, tz=ZoneInfo("Europe/Berlin"))
        payloads = await provider.fetch_daily(date(2024, 3, 1), date(2024, 3, 7))
    """

    SOURCE_ID = "whoop"
    DISPLAY_NAME = "Whoop"
    KIND = SourceKind.CLOUD

    def __init__(
        self,
        access_token: str,
        *,
        api_base: str = WHOOP_API_BASE,
        http_client: httpx.AsyncClient | None = None,
        tz: tzinfo = timezone.utc,
        config: ScoringConfig | None = None,
    ) -> None:
        """Initialize the Whoop provider.

        Args:
            access_token: OAuth2 bearer token.
            api_base:     API root, overridable for testing.
            http_client:  Optional pre-configured httpx client (for testing).
            tz:           Local timezone used to key records by day.
            config:       Scoring config (RMSSD→SDNN factor).
        """
        self._access_token = access_token
        self._api_base = api_base.rstrip("/")
        self._http_client = http_client
        self._tz = tz
        self._config = config or get_scoring_config()

    # ------------------------------------------------------------------
    # DataProvider interface
    # ------------------------------------------------------------------

    async def fetch_daily(self, start: date, end: date) -> list[DailyPayload]:
        iter_days(start, end)  # rejects reversed ranges
        # Sleep ending on `start` began the evening before
        range_start = local_midnight(start, self._tz) - timedelta(days=1)
        range_end = local_midnight(end + timedelta(days=1), self._tz)

        sleeps = await self._get_all("/v1/activity/sleep", range_start, range_end)
        recoveries = await self._get_all("/v1/recovery", range_start, range_end)

        payloads: dict[date, DailyPayload] = {}
        sleep_days: dict[Any, date] = {}

        for record in sorted(sleeps, key=self._sleep_length):
            if record.get("nap"):
                continue
            end_ts = _parse_iso_datetime(record.get("end"))
            if end_ts is None:
                continue
            day = normalize_day(end_ts, self._tz)
            sleep_days[record.get("id")] = day
            if not (start <= day <= end):
                continue
            # Longest sleep wins: records are visited shortest first
            self._apply_sleep(payloads.setdefault(day, DailyPayload(day=day, source=self.SOURCE_ID)), record)

        for record in recoveries:
            day = sleep_days.get(record.get("sleep_id"))
            if day is None:
                created = _parse_iso_datetime(record.get("created_at"))
                if created is None:
                    continue
                day = normalize_day(created, self._tz)
            if not (start <= day <= end):
                continue
            self._apply_recovery(payloads.setdefault(day, DailyPayload(day=day, source=self.SOURCE_ID)), record)

        logger.info(
            "Whoop: %d sleep / %d recovery records -> %d day(s) for %s..%s",
            len(sleeps), len(recoveries), len(payloads), start, end,
        )
        return [payloads[d] for d in sorted(payloads)]

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _sleep_length(record: dict) -> float:
        summary = (record.get("score") or {}).get("stage_summary") or {}
        return _safe_float(summary.get("total_in_bed_time_milli")) or 0.0

    def _apply_sleep(self, payload: DailyPayload, record: dict) -> None:
        summary = (record.get("score") or {}).get("stage_summary") or {}
        if not summary:
            return

        def hours(key: str) -> float:
            return (_safe_float(summary.get(key)) or 0.0) / _MS_PER_HOUR

        stages = SleepStages(
            light_hours=hours("total_light_sleep_time_milli"),
            deep_hours=hours("total_slow_wave_sleep_time_milli"),
            rem_hours=hours("total_rem_sleep_time_milli"),
            awake_hours=hours("total_awake_time_milli"),
        )
        if stages.total_asleep_hours <= 0:
            return
        payload.sleep_hours = stages.total_asleep_hours
        payload.sleep_stages = stages

    def _apply_recovery(self, payload: DailyPayload, record: dict) -> None:
        if record.get("score_state", "SCORED") != "SCORED":
            return
        score = record.get("score") or {}
        rmssd = _safe_float(score.get("hrv_rmssd_milli"))
        if rmssd is not None and rmssd > 0:
            payload.hrv_rmssd_ms = rmssd
            payload.hrv_sdnn_ms = rmssd_to_sdnn(rmssd, self._config.extraction.rmssd_to_sdnn_factor)
        resting_hr = _safe_float(score.get("resting_heart_rate"))
        if resting_hr is not None:
            payload.resting_hr_bpm = resting_hr
        skin_temp = _safe_float(score.get("skin_temp_celsius"))
        if skin_temp is not None:
            payload.skin_temp_c = skin_temp

    # ------------------------------------------------------------------
    # Private HTTP helpers
    # ------------------------------------------------------------------

    async def _get_all(self, endpoint: str, start: datetime, end: datetime) -> list[dict]:
        """Follow ``next_token`` until the collection is exhausted."""
        params: dict[str, Any] = {
            "start": start.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "end": end.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "limit": _PAGE_LIMIT,
        }
        records: list[dict] = []
        for _ in range(_MAX_PAGES):
            data = await self._get(endpoint, params)
            records.extend(data.get("records", []))
            next_token = data.get("next_token")
            if not next_token:
                break
            params = {**params, "nextToken": next_token}
        else:
            logger.warning("Whoop: %s pagination stopped after %d pages", endpoint, _MAX_PAGES)
        return records

    async def _get(self, endpoint: str, params: dict) -> dict:
        """Make an authenticated GET request to the Whoop API.

        Raises:
            ProviderFetchError: On any transport error, non-2xx status, or
                                undecodable body.
        """
        url = f"{self._api_base}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }
        try:
            if self._http_client:
                response = await self._http_client.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderFetchError(
                self.SOURCE_ID, f"{endpoint} returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderFetchError(self.SOURCE_ID, f"{endpoint} request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderFetchError(self.SOURCE_ID, f"{endpoint} returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise ProviderFetchError(self.SOURCE_ID, f"{endpoint} returned unexpected payload")
        return data
