"""Tests for the Whoop cloud provider (HTTP mocked)."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.recovery.base import SourceKind
from src.recovery.config_loader import ScoringConfig
from src.recovery.errors import InvalidRangeError, ProviderFetchError
from src.recovery.providers.whoop import WhoopProvider, _parse_iso_datetime, _safe_float
from src.recovery.tests.conftest import TEST_DATE, UTC

HOUR_MS = 3_600_000


def _response(body: object) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json = MagicMock(return_value=body)
    return response


def _sleep(record_id: int, end: str, in_bed_hours: float, *, nap: bool = False, deep: float = 1.5) -> dict:
    return {
        "id": record_id,
        "end": end,
        "nap": nap,
        "score": {
            "stage_summary": {
                "total_in_bed_time_milli": int(in_bed_hours * HOUR_MS),
                "total_light_sleep_time_milli": int((in_bed_hours - deep - 2.0) * HOUR_MS),
                "total_slow_wave_sleep_time_milli": int(deep * HOUR_MS),
                "total_rem_sleep_time_milli": int(1.5 * HOUR_MS),
                "total_awake_time_milli": int(0.5 * HOUR_MS),
            }
        },
    }


def _recovery(sleep_id: int | None, created_at: str, *, state: str = "SCORED") -> dict:
    return {
        "sleep_id": sleep_id,
        "created_at": created_at,
        "score_state": state,
        "score": {"resting_heart_rate": 52, "hrv_rmssd_milli": 40.0, "skin_temp_celsius": 33.5},
    }


def _client(pages: dict[str, list[dict]]) -> MagicMock:
    """Mock client answering each endpoint with a queue of page bodies."""
    queues = {endpoint: list(bodies) for endpoint, bodies in pages.items()}

    def get(url: str, params: dict, headers: dict) -> MagicMock:
        for endpoint, queue in queues.items():
            if url.endswith(endpoint):
                return _response(queue.pop(0) if queue else {"records": []})
        return _response({"records": []})

    client = MagicMock()
    client.get = AsyncMock(side_effect=get)
    return client


@pytest.fixture
def provider_factory(scoring_config: ScoringConfig):
    def build(client: MagicMock) -> WhoopProvider:
        return WhoopProvider("token", http_client=client, tz=UTC, config=scoring_config)

    return build


class TestHelpers:
    def test_safe_float(self) -> None:
        assert _safe_float("52.5") == 52.5
        assert _safe_float(None) is None
        assert _safe_float("n/a") is None

    def test_parse_iso_datetime(self) -> None:
        parsed = _parse_iso_datetime("2026-02-23T06:30:00.000Z")
        assert parsed.tzinfo is not None
        assert parsed.hour == 6
        assert _parse_iso_datetime("2026-02-23T06:30:00").tzinfo is not None
        assert _parse_iso_datetime("garbage") is None
        assert _parse_iso_datetime(None) is None


class TestWhoopMapping:
    def test_identity(self) -> None:
        provider = WhoopProvider("token")
        assert provider.SOURCE_ID == "whoop"
        assert provider.KIND is SourceKind.CLOUD

    @pytest.mark.asyncio
    async def test_sleep_and_recovery_mapped_to_wake_day(self, provider_factory) -> None:
        client = _client(
            {
                "/v1/activity/sleep": [{"records": [_sleep(1, "2026-02-23T06:30:00Z", 8.0)]}],
                "/v1/recovery": [{"records": [_recovery(1, "2026-02-23T07:00:00Z")]}],
            }
        )

        payloads = await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE)

        assert len(payloads) == 1
        day = payloads[0]
        assert day.day == TEST_DATE
        assert day.source == "whoop"
        assert day.sleep_hours == pytest.approx(7.5)
        assert day.sleep_stages.deep_hours == pytest.approx(1.5)
        assert day.sleep_stages.awake_hours == pytest.approx(0.5)
        assert day.hrv_rmssd_ms == pytest.approx(40.0)
        assert day.hrv_sdnn_ms == pytest.approx(60.0)
        assert day.resting_hr_bpm == 52.0
        assert day.skin_temp_c == 33.5
        assert day.wrist_temp_deviation_c is None

    @pytest.mark.asyncio
    async def test_longest_sleep_wins_and_naps_ignored(self, provider_factory) -> None:
        client = _client(
            {
                "/v1/activity/sleep": [
                    {
                        "records": [
                            _sleep(1, "2026-02-23T07:00:00Z", 8.0, deep=2.0),
                            _sleep(2, "2026-02-23T03:00:00Z", 4.0, deep=0.5),
                            _sleep(3, "2026-02-23T15:00:00Z", 9.0, nap=True),
                        ]
                    }
                ],
            }
        )

        payloads = await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE)

        assert payloads[0].sleep_stages.deep_hours == pytest.approx(2.0)
        assert payloads[0].hrv_sdnn_ms is None

    @pytest.mark.asyncio
    async def test_unscored_recovery_skipped(self, provider_factory) -> None:
        client = _client(
            {"/v1/recovery": [{"records": [_recovery(None, "2026-02-23T07:00:00Z", state="PENDING_SCORE")]}]}
        )

        payloads = await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE)

        assert len(payloads) == 1
        assert not payloads[0].has_data

    @pytest.mark.asyncio
    async def test_partial_second_recovery_keeps_earlier_values(self, provider_factory) -> None:
        partial = _recovery(None, "2026-02-23T09:00:00Z")
        partial["score"] = {"hrv_rmssd_milli": 44.0}
        client = _client(
            {"/v1/recovery": [{"records": [_recovery(None, "2026-02-23T07:00:00Z"), partial]}]}
        )

        payloads = await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE)

        day = payloads[0]
        assert day.hrv_rmssd_ms == pytest.approx(44.0)
        assert day.resting_hr_bpm == 52.0
        assert day.skin_temp_c == 33.5

    @pytest.mark.asyncio
    async def test_records_outside_range_dropped(self, provider_factory) -> None:
        client = _client(
            {"/v1/activity/sleep": [{"records": [_sleep(1, "2026-02-21T06:30:00Z", 8.0)]}]}
        )
        assert await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE) == []

    @pytest.mark.asyncio
    async def test_pagination_follows_next_token(self, provider_factory) -> None:
        client = _client(
            {
                "/v1/recovery": [
                    {"records": [_recovery(None, "2026-02-22T07:00:00Z")], "next_token": "abc"},
                    {"records": [_recovery(None, "2026-02-23T07:00:00Z")]},
                ],
            }
        )

        payloads = await provider_factory(client).fetch_daily(TEST_DATE - timedelta(days=1), TEST_DATE)

        assert [p.day for p in payloads] == [TEST_DATE - timedelta(days=1), TEST_DATE]
        recovery_calls = [c for c in client.get.call_args_list if c.args[0].endswith("/v1/recovery")]
        assert len(recovery_calls) == 2
        assert recovery_calls[1].kwargs["params"]["nextToken"] == "abc"
        assert recovery_calls[0].kwargs["headers"]["Authorization"] == "Bearer token"

    @pytest.mark.asyncio
    async def test_reversed_range(self, provider_factory) -> None:
        with pytest.raises(InvalidRangeError):
            await provider_factory(_client({})).fetch_daily(TEST_DATE, TEST_DATE - timedelta(days=1))


class TestWhoopErrors:
    @pytest.mark.asyncio
    async def test_http_status_error(self, provider_factory) -> None:
        response = MagicMock()
        response.raise_for_status = MagicMock(
            side_effect=httpx.HTTPStatusError(
                "unauthorized",
                request=httpx.Request("GET", "https://example.test"),
                response=httpx.Response(401),
            )
        )
        client = MagicMock()
        client.get = AsyncMock(return_value=response)

        with pytest.raises(ProviderFetchError) as exc_info:
            await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE)

        assert exc_info.value.source == "whoop"
        assert "401" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error(self, provider_factory) -> None:
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ConnectError("connection refused"))

        with pytest.raises(ProviderFetchError):
            await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE)

    @pytest.mark.asyncio
    async def test_invalid_json(self, provider_factory) -> None:
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.json = MagicMock(side_effect=ValueError("not json"))
        client = MagicMock()
        client.get = AsyncMock(return_value=response)

        with pytest.raises(ProviderFetchError):
            await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE)

    @pytest.mark.asyncio
    async def test_non_object_body(self, provider_factory) -> None:
        client = MagicMock()
        client.get = AsyncMock(return_value=_response([1, 2, 3]))

        with pytest.raises(ProviderFetchError):
            await provider_factory(client).fetch_daily(TEST_DATE, TEST_DATE)
