"""Tests for ingest.lib.governor module."""

import asyncio
import logging
from typing import Callable, List

import httpx
import pytest

from ingest.lib.errors import (
    ApiConnectionError,
    ApiTimeoutError,
    AuthFailureError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationFailureError,
)
from ingest.lib.governor import DailyUsageStore, RequestGovernor


def _ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=[{"symbol": "AAPL", "price": 1.0}])


def _governor(clock, handler: Callable = _ok_handler, **kwargs) -> RequestGovernor:
    kwargs.setdefault("requests_per_minute", 10)
    kwargs.setdefault("requests_per_second", 0)
    return RequestGovernor(
        "secret",
        base_url="https://api.test/v3",
        transport=httpx.MockTransport(handler),
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def _max_in_trailing_window(times: List[float], window: float) -> int:
    return max(sum(1 for other in times if t - window < other <= t) for t in times)


# ============================================
# Admission control
# ============================================


class TestMinuteCeiling:
    """Tests for the rolling per-minute window."""

    def test_back_to_back_calls_wait_for_window(self, clock):
        """With a limit of 10, calls 11-15 are admitted only once the window frees."""

        async def _inner():
            governor = _governor(clock)
            times = []
            for _ in range(15):
                await governor.acquire()
                times.append(clock())
            await governor.aclose()
            return times

        times = asyncio.run(_inner())

        assert times[:10] == [0.0] * 10
        assert all(t >= 60.0 for t in times[10:])
        assert _max_in_trailing_window(times, 60.0) <= 10

    def test_wait_is_time_until_oldest_call_ages_out(self, clock):
        """The suspension is computed from the oldest dispatch, not a fixed sleep."""

        async def _inner():
            governor = _governor(clock, requests_per_minute=2)
            await governor.acquire()
            clock.advance(45)
            await governor.acquire()
            await governor.acquire()
            await governor.aclose()

        asyncio.run(_inner())

        assert clock.sleeps == [pytest.approx(15.0)]
        assert clock() == pytest.approx(60.0)

    def test_concurrent_callers_never_exceed_ceiling(self, clock):
        """Concurrent acquires keep every trailing 60s window within the ceiling."""

        async def _inner():
            governor = _governor(clock)
            times = []

            async def call():
                await governor.acquire()
                times.append(clock())

            await asyncio.gather(*(call() for _ in range(35)))
            await governor.aclose()
            return times

        times = asyncio.run(_inner())

        assert len(times) == 35
        assert _max_in_trailing_window(times, 60.0) <= 10

    def test_rejects_invalid_ceiling(self, clock):
        with pytest.raises(ValueError):
            _governor(clock, requests_per_minute=0)


class TestSecondCeiling:
    """Tests for the rolling per-second window."""

    def test_per_second_limit_spreads_calls(self, clock):
        async def _inner():
            governor = _governor(clock, requests_per_minute=100, requests_per_second=3)
            times = []
            for _ in range(5):
                await governor.acquire()
                times.append(clock())
            await governor.aclose()
            return times

        times = asyncio.run(_inner())

        assert times[:3] == [0.0, 0.0, 0.0]
        assert times[3:] == [pytest.approx(1.0), pytest.approx(1.0)]


# ============================================
# Rate-limit cooldown
# ============================================


class TestCooldown:
    """Tests for the shared suspension after a 429."""

    def test_429_raises_and_suspends_all_callers(self, clock):
        def handler(request):
            return httpx.Response(429, json={"message": "slow down"})

        async def _inner():
            governor = _governor(clock, handler, requests_per_minute=100)
            with pytest.raises(RateLimitedError) as exc_info:
                await governor.make_request("/quote/AAPL")
            assert governor.in_cooldown
            await governor.acquire()
            admitted_at = clock()
            await governor.aclose()
            return exc_info.value, admitted_at

        error, admitted_at = asyncio.run(_inner())

        assert error.status_code == 429
        assert admitted_at == pytest.approx(60.0)

    def test_retry_after_header_extends_cooldown(self, clock):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "120"})

        async def _inner():
            governor = _governor(clock, handler, requests_per_minute=100)
            with pytest.raises(RateLimitedError) as exc_info:
                await governor.make_request("/quote/AAPL")
            await governor.acquire()
            await governor.aclose()
            return exc_info.value

        error = asyncio.run(_inner())

        assert error.retry_after == 120.0
        assert clock() == pytest.approx(120.0)

    def test_limit_reach_payload_is_rate_limited(self, clock):
        def handler(request):
            return httpx.Response(200, json={"Error Message": "Limit Reach . Please upgrade your plan"})

        async def _inner():
            governor = _governor(clock, handler)
            with pytest.raises(RateLimitedError):
                await governor.make_request("/quote/AAPL")
            in_cooldown = governor.in_cooldown
            await governor.aclose()
            return in_cooldown

        assert asyncio.run(_inner()) is True


# ============================================
# Transport-boundary classification
# ============================================


class TestErrorMapping:
    """Raw HTTP failures become typed errors."""

    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (400, ValidationFailureError),
            (401, AuthFailureError),
            (403, AuthFailureError),
            (404, NotFoundError),
            (500, ServerError),
            (503, ServerError),
        ],
    )
    def test_status_codes(self, clock, status, error_cls):
        def handler(request):
            return httpx.Response(status, text="nope")

        async def _inner():
            governor = _governor(clock, handler)
            try:
                await governor.make_request("/quote/AAPL")
            finally:
                await governor.aclose()

        with pytest.raises(error_cls) as exc_info:
            asyncio.run(_inner())
        assert exc_info.value.status_code == status
        assert exc_info.value.endpoint == "/quote/AAPL"

    def test_invalid_api_key_payload(self, clock):
        def handler(request):
            return httpx.Response(200, json={"Error Message": "Invalid API KEY. Please retry."})

        async def _inner():
            governor = _governor(clock, handler)
            try:
                await governor.make_request("/quote/AAPL")
            finally:
                await governor.aclose()

        with pytest.raises(AuthFailureError):
            asyncio.run(_inner())

    def test_undecodable_body_is_validation_failure(self, clock):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        async def _inner():
            governor = _governor(clock, handler)
            try:
                await governor.make_request("/quote/AAPL")
            finally:
                await governor.aclose()

        with pytest.raises(ValidationFailureError):
            asyncio.run(_inner())

    def test_timeout_and_connection_errors(self, clock):
        def timeout_handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        def refused_handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def _call(handler):
            governor = _governor(clock, handler)
            try:
                await governor.make_request("/quote/AAPL")
            finally:
                await governor.aclose()

        with pytest.raises(ApiTimeoutError):
            asyncio.run(_call(timeout_handler))
        with pytest.raises(ApiConnectionError):
            asyncio.run(_call(refused_handler))


class TestMakeRequest:
    """Tests for successful dispatch."""

    def test_api_key_is_sent_and_none_params_dropped(self, clock):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, json={"historical": []})

        async def _inner():
            governor = _governor(clock, handler)
            data = await governor.make_request(
                "/historical-price-full/AAPL", {"from": "2026-01-01", "to": None}
            )
            await governor.aclose()
            return data

        data = asyncio.run(_inner())

        assert data == {"historical": []}
        url = seen[0]
        assert url.path == "/v3/historical-price-full/AAPL"
        assert url.params["apikey"] == "secret"
        assert url.params["from"] == "2026-01-01"
        assert "to" not in url.params

    def test_api_key_expanded_from_environment(self, clock, monkeypatch):
        monkeypatch.setenv("FMP_API_KEY", "from-env")
        governor = RequestGovernor("${FMP_API_KEY}", transport=httpx.MockTransport(_ok_handler))
        assert governor.api_key == "from-env"
        asyncio.run(governor.aclose())


# ============================================
# Usage tracking
# ============================================


class TestSnapshot:
    """Tests for snapshot() and cleanup_logs()."""

    def test_snapshot_counts(self, clock):
        responses = iter([200, 200, 500, 200])

        def handler(request):
            return httpx.Response(next(responses), json=[])

        async def _inner():
            governor = _governor(clock, handler)
            for _ in range(4):
                try:
                    await governor.make_request("/quote/AAPL")
                except ServerError:
                    pass
            stats = governor.snapshot()
            await governor.aclose()
            return stats

        stats = asyncio.run(_inner())

        assert stats["calls_in_last_minute"] == 4
        assert stats["remaining_this_minute"] == 6
        assert stats["success_count"] == 3
        assert stats["failure_count"] == 1
        assert stats["calls_today"] == 4
        assert stats["in_cooldown"] is False

    def test_cleanup_drops_old_call_records(self, clock):
        async def _inner():
            governor = _governor(clock, requests_per_minute=100)
            await governor.make_request("/quote/AAPL")
            clock.advance(400)
            await governor.make_request("/quote/MSFT")
            removed = governor.cleanup_logs()
            await governor.aclose()
            return removed

        assert asyncio.run(_inner()) == 1


class TestDailyCounter:
    """The daily counter never rejects calls."""

    def test_daily_limit_only_warns(self, clock, caplog):
        async def _inner():
            governor = _governor(clock, daily_limit=2, today=lambda: "2026-01-05")
            for _ in range(3):
                await governor.make_request("/quote/AAPL")
            stats = governor.snapshot()
            await governor.aclose()
            return stats

        with caplog.at_level(logging.WARNING, logger="ingest.lib.governor"):
            stats = asyncio.run(_inner())

        assert stats["calls_today"] == 3
        assert stats["success_count"] == 3
        assert "configured limit of 2" in caplog.text

    def test_counter_resets_on_new_day(self, clock):
        days = iter(["2026-01-05", "2026-01-05", "2026-01-06"])

        async def _inner():
            governor = _governor(clock, today=lambda: next(days))
            for _ in range(3):
                await governor.acquire()
            stats = governor.snapshot()
            await governor.aclose()
            return stats

        assert asyncio.run(_inner())["calls_today"] == 1

    def test_usage_store_resumes_same_day(self, clock, tmp_path):
        store = DailyUsageStore(tmp_path / "daily_usage.json")
        store.save("2026-01-05", 40)

        async def _inner(day):
            governor = _governor(clock, usage_store=store, today=lambda: day)
            await governor.acquire()
            count = governor.snapshot()["calls_today"]
            await governor.aclose()
            return count

        assert asyncio.run(_inner("2026-01-05")) == 41
        assert store.load() == ("2026-01-05", 41)
        assert asyncio.run(_inner("2026-01-06")) == 1

    def test_usage_store_tolerates_corrupt_file(self, tmp_path):
        path = tmp_path / "daily_usage.json"
        path.write_text("{not json")
        assert DailyUsageStore(path).load() == (None, 0)
