"""
Per-venue rate limiting: FIFO request spacing, 429 backoff, TTL response cache.

One VenueRateLimiter is built per venue at start-up and handed to that
venue's client. All mutable state (backoff window, cached responses,
in-flight refresh flags) lives on the instance behind a single Lock.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

BACKOFF_ACTIVE = "backoff_active"


class RateLimited(Exception):
    """A call that cannot be skipped was attempted inside a backoff window."""
    pass


@dataclass(frozen=True)
class RateLimitSettings:
    min_interval_sec: float = 0.1
    backoff_base_sec: float = 5.0
    backoff_max_sec: float = 60.0
    markets_ttl_sec: float = 60.0
    metadata_ttl_sec: float = 300.0


@dataclass
class BackoffState:
    """Mutates only on request outcome. Cleared on the first success."""

    consecutive_429: int = 0
    backoff_until: float = 0.0
    last_retry_after: float | None = None
    last_429_at: float | None = None

    def is_active(self, now: float) -> bool:
        return now < self.backoff_until

    def remaining(self, now: float) -> float:
        return max(0.0, self.backoff_until - now)

    def activate(
        self,
        now: float,
        base_sec: float,
        max_sec: float,
        retry_after: float | None = None,
    ) -> float:
        """Record a 429 and return the backoff delay in seconds."""
        self.consecutive_429 += 1
        self.last_429_at = now
        self.last_retry_after = retry_after
        delay = base_sec * (2 ** (self.consecutive_429 - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        delay = min(delay, max_sec)
        self.backoff_until = max(self.backoff_until, now + delay)
        return delay

    def clear(self) -> None:
        self.consecutive_429 = 0
        self.backoff_until = 0.0
        self.last_retry_after = None


class CachedValue:
    """A cached response with its absolute expiry."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float):
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TtlCache:
    """Thread-safe dict of CachedValue entries. Readers never block on fetches."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CachedValue] = {}

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_sec: float) -> None:
        if ttl_sec <= 0:
            return
        with self._lock:
            self._entries[key] = CachedValue(value, self._clock() + ttl_sec)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._entries.items() if v.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def request_signature(endpoint: str, params: dict | None = None) -> str:
    """Normalized cache key: endpoint plus sorted, non-None params."""
    if not params:
        return endpoint
    parts = [f"{k}={params[k]}" for k in sorted(params) if params[k] is not None]
    return f"{endpoint}?{'&'.join(parts)}" if parts else endpoint


def parse_retry_after(raw: str | None, now: float | None = None) -> float | None:
    """Retry-After header as seconds. Accepts delta-seconds or an HTTP date."""
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if now is None:
        now = time.time()
    return max(0.0, target.timestamp() - now)


class VenueRateLimiter:
    """
    Single-writer guard over one venue's request budget.

    Requests are spaced at least ``min_interval_sec`` apart even under
    concurrent callers: each caller reserves the next free slot under the
    lock, then sleeps outside it, so callers are served in arrival order.
    """

    def __init__(
        self,
        venue: str,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.venue = venue
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0
        self._backoff = BackoffState()
        self._in_flight: set[str] = set()
        self.cache = TtlCache(clock=clock)

    # -- Spacing --

    def check(self) -> str | None:
        """Skip reason when requests must not be issued right now."""
        with self._lock:
            if self._backoff.is_active(self._clock()):
                return BACKOFF_ACTIVE
        return None

    def acquire(self) -> bool:
        """
        Wait for this caller's slot. Returns False without waiting when the
        venue is inside a backoff window.
        """
        with self._lock:
            now = self._clock()
            if self._backoff.is_active(now):
                return False
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.settings.min_interval_sec
        wait = slot - now
        if wait > 0:
            self._sleep(wait)
        return True

    # -- Outcomes --

    def record_outcome(
        self,
        success: bool,
        retry_after: float | None = None,
        status: int | None = None,
    ) -> None:
        """429 activates/extends backoff; success clears it. Other failures leave it alone."""
        with self._lock:
            now = self._clock()
            if status == 429:
                delay = self._backoff.activate(
                    now,
                    self.settings.backoff_base_sec,
                    self.settings.backoff_max_sec,
                    retry_after,
                )
                logger.warning(
                    "%s rate limited (429 #%d), backing off %.1fs",
                    self.venue, self._backoff.consecutive_429, delay,
                )
            elif success:
                if self._backoff.consecutive_429:
                    logger.info("%s backoff cleared after success", self.venue)
                self._backoff.clear()

    def is_backoff_active(self) -> bool:
        return self.check() == BACKOFF_ACTIVE

    @property
    def backoff(self) -> BackoffState:
        """Copy of the current backoff state."""
        with self._lock:
            return BackoffState(
                consecutive_429=self._backoff.consecutive_429,
                backoff_until=self._backoff.backoff_until,
                last_retry_after=self._backoff.last_retry_after,
                last_429_at=self._backoff.last_429_at,
            )

    # -- Cache --

    def cached(self, signature: str) -> Any | None:
        return self.cache.get(signature)

    def store(self, signature: str, value: Any, kind: str = "markets") -> None:
        ttl = self.settings.metadata_ttl_sec if kind == "metadata" else self.settings.markets_ttl_sec
        self.cache.set(signature, value, ttl)

    # -- In-flight refresh guard --

    def try_begin(self, name: str) -> bool:
        """Atomically mark ``name`` as running. False if it already is."""
        with self._lock:
            if name in self._in_flight:
                return False
            self._in_flight.add(name)
            return True

    def end(self, name: str) -> None:
        with self._lock:
            self._in_flight.discard(name)

    @contextmanager
    def in_flight(self, name: str) -> Iterator[bool]:
        """Yields True when this caller owns the refresh, False on overlap."""
        acquired = self.try_begin(name)
        try:
            yield acquired
        finally:
            if acquired:
                self.end(name)

    def debug_info(self) -> dict:
        with self._lock:
            now = self._clock()
            return {
                "venue": self.venue,
                "backoff_active": self._backoff.is_active(now),
                "backoff_remaining_sec": round(self._backoff.remaining(now), 3),
                "consecutive_429": self._backoff.consecutive_429,
                "last_retry_after": self._backoff.last_retry_after,
                "in_flight": sorted(self._in_flight),
                "cache_entries": len(self.cache),
            }
