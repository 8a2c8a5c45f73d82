"""
Unit tests for client/rate_limit.py -- spacing, 429 backoff, TTL cache.
"""

import threading

from client.rate_limit import (
    BACKOFF_ACTIVE,
    BackoffState,
    RateLimitSettings,
    TtlCache,
    VenueRateLimiter,
    parse_retry_after,
    request_signature,
)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, sec):
        self.sleeps.append(sec)
        self.now += sec


def _limiter(clock, **overrides):
    settings = RateLimitSettings(**{
        "min_interval_sec": 0.5,
        "backoff_base_sec": 2.0,
        "backoff_max_sec": 16.0,
        "markets_ttl_sec": 30.0,
        "metadata_ttl_sec": 300.0,
        **overrides,
    })
    return VenueRateLimiter("kalshi", settings, clock=clock, sleep=clock.sleep)


class TestBackoffState:
    def test_doubles_until_ceiling(self):
        state = BackoffState()
        delays = [state.activate(0.0, 1.0, 8.0) for _ in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
        assert state.consecutive_429 == 6

    def test_retry_after_raises_delay_but_not_past_max(self):
        state = BackoffState()
        assert state.activate(0.0, 1.0, 60.0, retry_after=10.0) == 10.0
        state = BackoffState()
        assert state.activate(0.0, 1.0, 5.0, retry_after=10.0) == 5.0

    def test_window_never_shrinks(self):
        state = BackoffState()
        state.activate(100.0, 1.0, 60.0, retry_after=30.0)
        until = state.backoff_until
        state.activate(101.0, 1.0, 60.0, retry_after=0.0)
        assert state.backoff_until >= until

    def test_clear_resets(self):
        state = BackoffState()
        state.activate(0.0, 1.0, 8.0)
        state.clear()
        assert state.consecutive_429 == 0
        assert not state.is_active(0.0)


class TestSpacing:
    def test_first_request_does_not_wait(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        assert limiter.acquire() is True
        assert clock.sleeps == []

    def test_back_to_back_requests_are_spaced(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        limiter.acquire()
        limiter.acquire()
        limiter.acquire()
        assert clock.sleeps == [0.5, 0.5]

    def test_no_wait_after_idle(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        limiter.acquire()
        clock.now += 5.0
        limiter.acquire()
        assert clock.sleeps == []


class TestBackoff:
    def test_429_activates_and_blocks_acquire(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        limiter.record_outcome(False, status=429)
        assert limiter.is_backoff_active()
        assert limiter.check() == BACKOFF_ACTIVE
        assert limiter.acquire() is False

    def test_growth_then_full_clear_on_success(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        remaining = []
        for _ in range(5):
            limiter.record_outcome(False, status=429)
            remaining.append(limiter.backoff.remaining(clock.now))
        assert remaining == [2.0, 4.0, 8.0, 16.0, 16.0]

        clock.now += 20.0
        limiter.record_outcome(True, status=200)
        state = limiter.backoff
        assert state.consecutive_429 == 0
        assert state.backoff_until == 0.0
        assert not limiter.is_backoff_active()

    def test_other_errors_do_not_touch_backoff(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        limiter.record_outcome(False, status=500)
        assert not limiter.is_backoff_active()
        assert limiter.backoff.consecutive_429 == 0

    def test_backoff_expires(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        limiter.record_outcome(False, status=429)
        clock.now += 2.01
        assert limiter.acquire() is True

    def test_backoff_property_is_a_copy(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        copy = limiter.backoff
        copy.consecutive_429 = 99
        assert limiter.backoff.consecutive_429 == 0


class TestCache:
    def test_expiry(self):
        clock = FakeClock()
        cache = TtlCache(clock=clock)
        cache.set("k", [1, 2], 10.0)
        assert cache.get("k") == [1, 2]
        clock.now += 10.0
        assert cache.get("k") is None

    def test_zero_ttl_not_stored(self):
        cache = TtlCache(clock=FakeClock())
        cache.set("k", 1, 0)
        assert len(cache) == 0

    def test_purge_expired(self):
        clock = FakeClock()
        cache = TtlCache(clock=clock)
        cache.set("a", 1, 1.0)
        cache.set("b", 2, 100.0)
        clock.now += 5
        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_limiter_ttl_by_kind(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        limiter.store("markets?a=1", "m")
        limiter.store("series", "s", kind="metadata")
        clock.now += 31
        assert limiter.cached("markets?a=1") is None
        assert limiter.cached("series") == "s"


class TestInFlight:
    def test_second_caller_sees_overlap(self):
        limiter = _limiter(FakeClock())
        with limiter.in_flight("refresh") as first:
            with limiter.in_flight("refresh") as second:
                assert first is True
                assert second is False
        with limiter.in_flight("refresh") as again:
            assert again is True

    def test_concurrent_try_begin_single_winner(self):
        limiter = _limiter(FakeClock())
        wins = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            wins.append(limiter.try_begin("refresh"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wins.count(True) == 1

    def test_debug_info(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        limiter.record_outcome(False, retry_after=3.0, status=429)
        info = limiter.debug_info()
        assert info["venue"] == "kalshi"
        assert info["backoff_active"] is True
        assert info["last_retry_after"] == 3.0


class TestHelpers:
    def test_signature_sorted_and_drops_none(self):
        assert request_signature("/markets", {"b": 2, "a": 1, "c": None}) == "/markets?a=1&b=2"
        assert request_signature("/markets") == "/markets"

    def test_retry_after_seconds(self):
        assert parse_retry_after("7") == 7.0
        assert parse_retry_after("") is None
        assert parse_retry_after(None) is None
        assert parse_retry_after("garbage") is None

    def test_retry_after_http_date(self):
        # Wed, 21 Oct 2015 07:28:00 GMT
        now = 1445412470.0
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=now) == 10.0
