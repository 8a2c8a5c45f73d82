"""
Venue client protocol plus the shared request path used by every client.

Any venue client that satisfies VenueClient can plug into the orchestrator
with zero changes to matching/arbitrage code.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

import httpx

from client.rate_limit import BACKOFF_ACTIVE, VenueRateLimiter, parse_retry_after, request_signature
from scanner.models import FetchResult, Venue

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class MissingCredentials(Exception):
    """Authenticated call attempted without credentials."""
    pass


@runtime_checkable
class VenueClient(Protocol):
    """Minimal interface the orchestrator relies on."""

    @property
    def venue(self) -> Venue:
        ...

    def fetch_markets(self) -> FetchResult:
        """Full refresh. Must never raise."""
        ...

    def close(self) -> None:
        ...


@dataclass(frozen=True)
class ApiResult:
    """A response body, or the reason no request was made."""

    data: Any = None
    status: int = 0
    from_cache: bool = False
    skipped: str | None = None
    fetched_at: float | None = None  # when the body left the venue, cached or not

    @property
    def ok(self) -> bool:
        return self.skipped is None

    @classmethod
    def skip(cls, reason: str, status: int = 0) -> ApiResult:
        return cls(skipped=reason, status=status)


def limited_get(
    http: httpx.Client,
    limiter: VenueRateLimiter,
    url: str,
    params: dict | None = None,
    headers: dict[str, str] | None = None,
    cache_kind: str | None = "markets",
    sign: Callable[[], dict[str, str]] | None = None,
    clock: Callable[[], float] = time.time,
) -> ApiResult:
    """
    GET through the limiter: cache, backoff skip, FIFO slot, request, outcome.

    ``sign`` builds auth headers and runs only when a request is actually
    sent. Cache hits keep the original response time in ``fetched_at``.

    429 and timeouts become skipped results. Other HTTP errors raise
    httpx.HTTPStatusError for the caller's boundary to handle.
    """
    signature = request_signature(url, params)
    if cache_kind is not None:
        hit = limiter.cached(signature)
        if hit is not None:
            data, fetched_at = hit
            return ApiResult(data=data, status=200, from_cache=True, fetched_at=fetched_at)

    if not limiter.acquire():
        return ApiResult.skip(BACKOFF_ACTIVE)

    request_headers = dict(headers or {})
    if sign is not None:
        request_headers.update(sign())
    try:
        resp = http.get(url, params=params, headers=request_headers)
    except httpx.TimeoutException:
        limiter.record_outcome(False)
        logger.warning("%s request timed out: %s", limiter.venue, url)
        return ApiResult.skip("timeout")

    if resp.status_code == 429:
        retry_after = parse_retry_after(resp.headers.get("Retry-After"))
        limiter.record_outcome(False, retry_after=retry_after, status=429)
        return ApiResult.skip("rate_limited", status=429)

    if resp.status_code >= 400:
        limiter.record_outcome(False, status=resp.status_code)
        resp.raise_for_status()

    limiter.record_outcome(True, status=resp.status_code)
    data = resp.json()
    fetched_at = clock()
    if cache_kind is not None:
        limiter.store(signature, (data, fetched_at), cache_kind)
    return ApiResult(data=data, status=resp.status_code, fetched_at=fetched_at)


def guarded_fetch(venue: Venue, fetch: Callable[[], FetchResult]) -> FetchResult:
    """
    Venue boundary: any unexpected error becomes an empty result with a
    logged reason so one venue never aborts the whole scan.
    """
    try:
        return fetch()
    except Exception as e:
        logger.error("%s fetch failed: %s", venue.value, e, exc_info=True)
        return FetchResult(venue=venue, error=f"{type(e).__name__}: {e}")
