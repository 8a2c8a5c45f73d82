"""
Unit tests for client/platform.py -- the shared limited GET path and venue boundary.
"""

import httpx
import pytest
import respx

from client.kalshi import KalshiClient
from client.platform import ApiResult, VenueClient, guarded_fetch, limited_get
from client.polymarket import PolymarketClient
from client.rate_limit import BACKOFF_ACTIVE, RateLimitSettings, VenueRateLimiter
from client.sxbet import SXBetClient
from scanner.models import FetchResult, Venue

URL = "https://venue.test/markets"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def sleep(self, sec):
        self.now += sec


def _limiter(clock=None):
    clock = clock or FakeClock()
    return VenueRateLimiter("test", RateLimitSettings(min_interval_sec=0.0, markets_ttl_sec=30.0), clock=clock, sleep=clock.sleep)


class TestLimitedGet:
    @respx.mock
    def test_success_is_cached(self):
        route = respx.get(URL).mock(return_value=httpx.Response(200, json={"markets": [1]}))
        limiter = _limiter()
        with httpx.Client() as http:
            first = limited_get(http, limiter, URL, {"limit": 10})
            second = limited_get(http, limiter, URL, {"limit": 10})
        assert first.ok and not first.from_cache
        assert second.from_cache
        assert second.data == {"markets": [1]}
        assert route.call_count == 1

    @respx.mock
    def test_cache_hit_keeps_original_fetch_time(self):
        respx.get(URL).mock(return_value=httpx.Response(200, json={"markets": [1]}))
        limiter = _limiter()
        wall = {"now": 5000.0}
        with httpx.Client() as http:
            first = limited_get(http, limiter, URL, clock=lambda: wall["now"])
            wall["now"] += 25.0
            second = limited_get(http, limiter, URL, clock=lambda: wall["now"])
        assert first.fetched_at == 5000.0
        assert second.from_cache
        assert second.fetched_at == 5000.0

    @respx.mock
    def test_signer_runs_only_when_sending(self):
        route = respx.get(URL).mock(return_value=httpx.Response(200, json={}))
        limiter = _limiter()
        calls = []

        def sign():
            calls.append(1)
            return {"X-Sig": "s1"}

        with httpx.Client() as http:
            limited_get(http, limiter, URL, sign=sign)
            limited_get(http, limiter, URL, sign=sign)
        assert len(calls) == 1
        assert route.calls.last.request.headers["X-Sig"] == "s1"

    @respx.mock
    def test_uncached_kind_always_requests(self):
        route = respx.get(URL).mock(return_value=httpx.Response(200, json={}))
        limiter = _limiter()
        with httpx.Client() as http:
            limited_get(http, limiter, URL, cache_kind=None)
            limited_get(http, limiter, URL, cache_kind=None)
        assert route.call_count == 2

    @respx.mock
    def test_429_skips_and_starts_backoff(self):
        respx.get(URL).mock(return_value=httpx.Response(429, headers={"Retry-After": "12"}))
        limiter = _limiter()
        with httpx.Client() as http:
            result = limited_get(http, limiter, URL)
            again = limited_get(http, limiter, URL)
        assert result.skipped == "rate_limited"
        assert result.status == 429
        assert again.skipped == BACKOFF_ACTIVE
        assert limiter.backoff.last_retry_after == 12.0

    @respx.mock
    def test_timeout_is_a_skip(self):
        respx.get(URL).mock(side_effect=httpx.ReadTimeout("slow"))
        with httpx.Client() as http:
            result = limited_get(http, _limiter(), URL)
        assert result.skipped == "timeout"

    @respx.mock
    def test_server_error_raises(self):
        respx.get(URL).mock(return_value=httpx.Response(502))
        limiter = _limiter()
        with httpx.Client() as http, pytest.raises(httpx.HTTPStatusError):
            limited_get(http, limiter, URL)
        assert not limiter.is_backoff_active()

    def test_skip_factory(self):
        result = ApiResult.skip("timeout")
        assert not result.ok
        assert result.data is None


class TestGuardedFetch:
    def test_passes_result_through(self):
        expected = FetchResult(venue=Venue.KALSHI)
        assert guarded_fetch(Venue.KALSHI, lambda: expected) is expected

    def test_exception_becomes_error_result(self):
        def boom():
            raise KeyError("markets")

        result = guarded_fetch(Venue.SXBET, boom)
        assert result.venue is Venue.SXBET
        assert result.error.startswith("KeyError")
        assert result.markets == ()


class TestProtocol:
    def test_clients_satisfy_protocol(self):
        for cls in (KalshiClient, PolymarketClient, SXBetClient):
            client = cls(_limiter())
            assert isinstance(client, VenueClient)
            client.close()
