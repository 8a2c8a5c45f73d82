"""
Polymarket client: Gamma REST for market discovery, CLOB REST for books.

Gamma returns outcomes, outcomePrices and clobTokenIds as JSON-encoded
strings with prices in dollars. Everything is converted to cents here.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

import httpx

from client.payload import (
    complete_sides,
    derive_price,
    extract_list,
    parse_timestamp,
    to_cents,
    to_float,
    to_iso,
)
from client.platform import DEFAULT_TIMEOUT, guarded_fetch, limited_get
from client.rate_limit import BACKOFF_ACTIVE, VenueRateLimiter
from scanner.models import FetchResult, Market, MarketType, Venue

logger = logging.getLogger(__name__)

_SLUG_SPORTS: tuple[tuple[str, str], ...] = (
    ("nba-", "NBA"),
    ("nfl-", "NFL"),
    ("nhl-", "NHL"),
    ("mlb-", "MLB"),
    ("cbb-", "NCAA_BB"),
    ("cfb-", "NCAA_FB"),
    ("epl-", "EPL"),
    ("ucl-", "UCL"),
    ("lal-", "LALIGA"),
    ("bun-", "BUNDESLIGA"),
    ("sea-", "SERIEA"),
    ("mls-", "MLS"),
    ("ufc-", "UFC"),
    ("atp-", "TENNIS"),
    ("wta-", "TENNIS"),
    ("lol-", "ESPORTS"),
)


def _json_list(value: Any) -> list:
    """Gamma encodes arrays as JSON strings; accept both forms."""
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def is_tradable(raw: dict) -> bool:
    """Order book enabled, accepting orders (missing = yes), active, not closed or archived."""
    return (
        raw.get("enableOrderBook") is True
        and raw.get("acceptingOrders", True) is not False
        and raw.get("active") is not False
        and raw.get("closed") is not True
        and raw.get("archived") is not True
    )


def sport_from_slug(slug: str) -> str:
    slug = (slug or "").lower()
    for prefix, sport in _SLUG_SPORTS:
        if slug.startswith(prefix):
            return sport
    return ""


def parse_gamma_market(raw: dict, fetched_at: float | None = None) -> Market | None:
    """Canonical Market from a Gamma market dict. None when it fails basic invariants."""
    market_id = raw.get("conditionId") or raw.get("id")
    if not market_id:
        return None
    expiry_ts = parse_timestamp(raw.get("endDateIso") or raw.get("endDate") or raw.get("umaEndDate"))
    if expiry_ts is None:
        return None

    prices = _json_list(raw.get("outcomePrices"))
    yes = to_cents(prices[0], scale=100.0) if len(prices) > 0 else None
    no = to_cents(prices[1], scale=100.0) if len(prices) > 1 else None
    best_ask = to_cents(raw.get("bestAsk"), scale=100.0)
    best_bid = to_cents(raw.get("bestBid"), scale=100.0)
    last = to_cents(raw.get("lastTradePrice"), scale=100.0)
    if yes is None:
        yes = derive_price(best_ask, None, best_bid, last)
    if no is None and best_bid is not None:
        # The NO ask mirrors the YES bid
        no = derive_price(None, best_bid)
    sides = complete_sides(yes, no)
    if sides is None:
        return None

    outcomes = _json_list(raw.get("outcomes"))
    token_ids = _json_list(raw.get("clobTokenIds"))
    start = raw.get("gameStartTime") or raw.get("eventStartTime") or raw.get("startDate")
    start_ts = parse_timestamp(start)
    slug = raw.get("slug", "")

    return Market(
        venue=Venue.POLYMARKET,
        market_id=str(market_id),
        ticker=slug or str(market_id),
        title=raw.get("question", ""),
        market_type=MarketType.PREDICTION,
        yes_price=sides[0],
        no_price=sides[1],
        volume=to_float(raw.get("volumeNum") or raw.get("volume")) or 0.0,
        expiry_date=to_iso(expiry_ts),
        event_ticker=str(raw.get("gameId") or ""),
        start_time=to_iso(start_ts) if start_ts is not None else "",
        status="open",
        sport=sport_from_slug(slug),
        yes_bid=best_bid,
        yes_ask=best_ask,
        yes_label=str(outcomes[0]) if len(outcomes) > 0 else "",
        no_label=str(outcomes[1]) if len(outcomes) > 1 else "",
        yes_token_id=str(token_ids[0]) if token_ids else "",
        fetched_at=fetched_at if fetched_at is not None else time.time(),
    )


class PolymarketClient:
    """
    Gamma markets with limit/offset pagination.

    Stops on an empty page, a short page, the page cap, or the tradable
    item cap, whichever comes first. Satisfies the VenueClient protocol.
    """

    venue = Venue.POLYMARKET

    def __init__(
        self,
        limiter: VenueRateLimiter,
        gamma_host: str = "https://gamma-api.polymarket.com",
        clob_host: str = "https://clob.polymarket.com",
        page_limit: int = 100,
        max_pages: int = 10,
        max_markets: int = 1000,
        end_window_hours: float = 72.0,
        clock: Callable[[], float] = time.time,
        http: httpx.Client | None = None,
    ) -> None:
        self._limiter = limiter
        self._gamma_host = gamma_host.rstrip("/")
        self._clob_host = clob_host.rstrip("/")
        self._page_limit = page_limit
        self._max_pages = max_pages
        self._max_markets = max_markets
        self._end_window_sec = end_window_hours * 3600.0
        self._clock = clock
        self._http = http or httpx.Client(timeout=DEFAULT_TIMEOUT)

    def build_query(self, offset: int, now: float) -> dict[str, Any]:
        # Minute granularity keeps the response cache useful
        minute = now // 60 * 60
        return {
            "limit": self._page_limit,
            "offset": offset,
            "closed": "false",
            "end_date_min": to_iso(minute),
            "end_date_max": to_iso(minute + self._end_window_sec),
        }

    def fetch_markets(self) -> FetchResult:
        """Full refresh. Overlapping calls return skipped='overlap'."""
        with self._limiter.in_flight("markets_refresh") as owner:
            if not owner:
                logger.info("Polymarket refresh already running, skipping")
                return FetchResult(venue=self.venue, skipped="overlap")
            return guarded_fetch(self.venue, self._refresh)

    def _refresh(self) -> FetchResult:
        now = self._clock()
        stats = {"raw": 0, "dropped": 0, "untradable": 0, "pages": 0}
        markets: list[Market] = []
        offset = 0
        stop_reason = "completed pagination"

        while True:
            if stats["pages"] >= self._max_pages:
                stop_reason = f"reached page cap ({self._max_pages})"
                break
            result = limited_get(
                self._http, self._limiter, f"{self._gamma_host}/markets", self.build_query(offset, now),
                clock=self._clock,
            )
            if not result.ok:
                if not markets:
                    return FetchResult(venue=self.venue, skipped=result.skipped or BACKOFF_ACTIVE, stats=stats)
                stop_reason = f"skipped ({result.skipped})"
                break
            stats["pages"] += 1
            page = extract_list(result.data, ["data", "markets"])
            if not page:
                stop_reason = "empty page"
                break
            for raw in page:
                stats["raw"] += 1
                if not isinstance(raw, dict) or not is_tradable(raw):
                    stats["untradable"] += 1
                    continue
                market = parse_gamma_market(raw, result.fetched_at)
                if market is None:
                    stats["dropped"] += 1
                    continue
                markets.append(market)
                if len(markets) >= self._max_markets:
                    break
            if len(markets) >= self._max_markets:
                stop_reason = f"reached item cap ({self._max_markets})"
                break
            if len(page) < self._page_limit:
                stop_reason = "short page"
                break
            offset += self._page_limit

        logger.info(
            "Polymarket: %d tradable markets out of %d raw across %d page(s) (stopped: %s)",
            len(markets), stats["raw"], stats["pages"], stop_reason,
        )
        return FetchResult(venue=self.venue, markets=tuple(markets), stats=stats, fetched_at=now)

    def get_orderbook(self, token_id: str) -> dict[str, float | None]:
        """Best bid/ask in cents from the CLOB /book endpoint."""
        result = limited_get(
            self._http, self._limiter, f"{self._clob_host}/book", {"token_id": token_id}, cache_kind=None,
        )
        if not result.ok or not isinstance(result.data, dict):
            return {"bid": None, "ask": None}
        bids = [to_cents(lvl.get("price"), scale=100.0) for lvl in result.data.get("bids") or []]
        asks = [to_cents(lvl.get("price"), scale=100.0) for lvl in result.data.get("asks") or []]
        bids = [b for b in bids if b is not None]
        asks = [a for a in asks if a is not None]
        return {"bid": max(bids) if bids else None, "ask": min(asks) if asks else None}

    def close(self) -> None:
        self._http.close()
