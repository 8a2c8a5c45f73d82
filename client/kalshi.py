"""
Kalshi REST API v2 client. Sports series discovery, market refresh, orderbook,
signed portfolio calls.

Kalshi does not serve "all sports markets" cheaply, so each refresh first
discovers sports series tickers, scores them, and polls only the top-N.
All prices are in cents (0-100).

Kalshi API docs: https://trading-api.readme.io/reference
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable
from urllib.parse import urlparse

import httpx

from client.kalshi_auth import KalshiAuth, serialize_body
from client.payload import (
    NOT_FOUND,
    complete_sides,
    derive_price,
    extract,
    extract_cursor,
    extract_list,
    parse_timestamp,
    to_cents,
    to_float,
    to_iso,
)
from client.platform import DEFAULT_TIMEOUT, ApiResult, MissingCredentials, guarded_fetch, limited_get
from client.rate_limit import BACKOFF_ACTIVE, RateLimited, VenueRateLimiter, parse_retry_after
from scanner.matching import classify_lifecycle
from scanner.models import FetchResult, Lifecycle, Market, MarketType, Venue

logger = logging.getLogger(__name__)

_SERIES_MAX_PAGES = 5
_SERIES_PAGE_LIMIT = 200
_RECENCY_WINDOW_SEC = 3600.0
_RECENCY_BONUS_CAP = 30
# Series that returned more than this many markets last time are mostly futures/props
_MAX_PER_SERIES_EFFECTIVE = 200
_BLACKLIST_SCORE = -50
_TRADABLE_STATUSES = {"active", "open"}

# Ordered longest-first so KXNCAABGAME wins over KXNCAA
SPORT_PREFIXES: tuple[tuple[str, str], ...] = (
    ("KXNCAABGAME", "NCAA_BB"),
    ("KXNCAAFGAME", "NCAA_FB"),
    ("KXNBAGAME", "NBA"),
    ("KXNFLGAME", "NFL"),
    ("KXNHLGAME", "NHL"),
    ("KXMLBGAME", "MLB"),
    ("KXEPLGAME", "EPL"),
    ("KXUCLGAME", "UCL"),
    ("KXLALIGAGAME", "LALIGA"),
    ("KXSERIEAGAME", "SERIEA"),
    ("KXBUNDESLIGAGAME", "BUNDESLIGA"),
    ("KXLOLGAME", "ESPORTS"),
    ("KXTENNIS", "TENNIS"),
    ("KXNCAAB", "NCAA_BB"),
    ("KXNCAAF", "NCAA_FB"),
    ("KXUFC", "UFC"),
    ("KXMLS", "MLS"),
    ("KXNBA", "NBA"),
    ("KXNFL", "NFL"),
    ("KXNHL", "NHL"),
    ("KXMLB", "MLB"),
    ("KXEPL", "EPL"),
    ("KXUCL", "UCL"),
)

_GAME_PROP_RE = re.compile(r"^KX(NBA|NFL|NHL|MLB)(3D|PTS|REB|AST|STL|BLK)")
_FUTURES_RE = re.compile(r"WINNER|CHAMPION|TITLE")
_LEAGUE_ONLY_RE = re.compile(
    r"^KX(SERIEA|EREDIVISIE|BUNDESLIGA|LALIGA|LIGUE1|EPL|UCL|MLS|NBA|NFL|NHL|MLB|NCAAB|NCAAF)$"
)
_COMBO_RE = re.compile(r"MVE|MULTI")


def sport_hint(*tickers: str) -> str:
    """Sport code from the first ticker with a known prefix, else ''."""
    for ticker in tickers:
        upper = (ticker or "").upper()
        for prefix, sport in SPORT_PREFIXES:
            if upper.startswith(prefix):
                return sport
    return ""


def is_multivariate(ticker: str) -> bool:
    return (ticker or "").upper().startswith("KXMVE")


def score_series_ticker(
    ticker: str,
    allow: tuple[str, ...] = (),
    deny: tuple[str, ...] = (),
) -> int:
    """
    Priority score for polling a series. Game-like tickers score high,
    season futures and multi-leg combos score low.
    """
    t = ticker.upper()
    score = 0
    if "GAME" in t:
        score += 100
    if "MATCH" in t:
        score += 80
    if "VS" in t:
        score += 70
    if _GAME_PROP_RE.match(t):
        score += 50
    if _FUTURES_RE.search(t):
        score -= 50
    if _LEAGUE_ONLY_RE.match(t):
        score -= 40
    if _COMBO_RE.search(t):
        score -= 100
    if any(d.upper() in t for d in deny):
        score -= 200
    if any(a.upper() in t for a in allow):
        score += 150
    return score


class KalshiClient:
    """
    Kalshi REST API v2 client.

    Market data calls go through the venue's VenueRateLimiter (cache,
    backoff skip, FIFO spacing). Portfolio calls are signed and raise
    MissingCredentials when no KalshiAuth is configured.

    Satisfies the VenueClient protocol.
    """

    venue = Venue.KALSHI

    def __init__(
        self,
        limiter: VenueRateLimiter,
        auth: KalshiAuth | None = None,
        host: str = "https://api.elections.kalshi.com/trade-api/v2",
        series_override: tuple[str, ...] = (),
        series_allow: tuple[str, ...] = (),
        series_deny: tuple[str, ...] = (),
        max_series_per_refresh: int = 20,
        max_pages_per_series: int = 2,
        max_total_markets: int = 2000,
        page_limit: int = 1000,
        series_delay_sec: float = 0.2,
        filter_strategy: str = "window",
        close_window_ahead_min: int = 360,
        close_window_behind_min: int = 120,
        live_close_window_sec: float = 4 * 3600.0,
        max_event_hydrations: int = 50,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        http: httpx.Client | None = None,
    ) -> None:
        if filter_strategy not in ("window", "status"):
            raise ValueError(f"Unknown Kalshi filter strategy: {filter_strategy}")
        self._limiter = limiter
        self._auth = auth
        self._host = host.rstrip("/")
        self._path_prefix = urlparse(self._host).path
        self._series_override = tuple(series_override)
        self._series_allow = tuple(series_allow)
        self._series_deny = tuple(series_deny)
        self._max_series = max_series_per_refresh
        self._max_pages_per_series = max_pages_per_series
        self._max_total_markets = max_total_markets
        self._page_limit = page_limit
        self._series_delay_sec = series_delay_sec
        self._filter_strategy = filter_strategy
        self._window_ahead_sec = close_window_ahead_min * 60
        self._window_behind_sec = close_window_behind_min * 60
        self._live_close_window_sec = live_close_window_sec
        self._max_event_hydrations = max_event_hydrations
        self._sleep = sleep
        self._clock = clock
        self._http = http or httpx.Client(timeout=DEFAULT_TIMEOUT)
        # ticker -> (last_success_ts, market_count)
        self._series_history: dict[str, tuple[float, int]] = {}

    # -- Request plumbing --

    def _signed_path(self, path: str) -> str:
        """Kalshi signs the full URL path, e.g. /trade-api/v2/markets."""
        return f"{self._path_prefix}{path}"

    def _get(self, path: str, params: dict | None = None, cache_kind: str | None = "markets") -> ApiResult:
        auth = self._auth

        def sign() -> dict[str, str]:
            return auth.sign_request("GET", self._signed_path(path))

        # Signed only when the request is actually sent; cache hits carry no signature
        return limited_get(
            self._http, self._limiter, f"{self._host}{path}", params, {"Accept": "application/json"}, cache_kind,
            sign=sign if auth is not None else None, clock=self._clock,
        )

    def _signed_request(self, method: str, path: str, body: dict | None = None) -> dict:
        """Authenticated call. Signing failures propagate; nothing is sent unsigned."""
        if self._auth is None:
            raise MissingCredentials("Kalshi credentials are not configured")
        payload = serialize_body(body)
        headers = self._auth.sign_request(method, self._signed_path(path), payload)
        headers["Accept"] = "application/json"
        if not self._limiter.acquire():
            raise RateLimited(f"Kalshi {BACKOFF_ACTIVE}, {method} {path} not sent")
        resp = self._http.request(method, f"{self._host}{path}", headers=headers, content=payload or None)
        if resp.status_code == 429:
            self._limiter.record_outcome(
                False, retry_after=parse_retry_after(resp.headers.get("Retry-After")), status=429,
            )
        else:
            self._limiter.record_outcome(resp.is_success, status=resp.status_code)
        resp.raise_for_status()
        return resp.json() if resp.content else {}

    # -- Series discovery --

    def discover_series(self) -> list[str]:
        """
        Sports series tickers from /series (paged, cached in the metadata TTL).
        Falls back to the override list when discovery is empty or fails.
        """
        tickers: list[str] = []
        cursor: str | None = None
        for _ in range(_SERIES_MAX_PAGES):
            params: dict[str, Any] = {"category": "Sports", "limit": _SERIES_PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            try:
                result = self._get("/series", params, cache_kind="metadata")
            except httpx.HTTPError as e:
                logger.warning("Kalshi series discovery failed: %s", e)
                break
            if not result.ok:
                logger.info("Kalshi series discovery skipped: %s", result.skipped)
                break
            for item in extract_list(result.data, ["series"]):
                ticker = item.get("ticker") if isinstance(item, dict) else None
                if ticker and ticker not in tickers:
                    tickers.append(ticker)
            next_cursor = extract_cursor(result.data)
            if next_cursor is NOT_FOUND:
                break
            cursor = next_cursor

        if not tickers:
            logger.info("Kalshi discovery empty, using %d override series", len(self._series_override))
            return list(self._series_override)
        for ticker in self._series_override:
            if ticker not in tickers:
                tickers.append(ticker)
        return tickers

    def _recency_bonus(self, ticker: str, now: float) -> int:
        history = self._series_history.get(ticker)
        if history is None:
            return 0
        last_success, count = history
        if count > _MAX_PER_SERIES_EFFECTIVE:
            return -_RECENCY_BONUS_CAP
        if count > 0 and now - last_success <= _RECENCY_WINDOW_SEC:
            return min(_RECENCY_BONUS_CAP, count)
        return 0

    def choose_series(self, tickers: list[str], now: float | None = None) -> list[str]:
        """Score, drop blacklisted tickers, return the top-N to poll this cycle."""
        if now is None:
            now = self._clock()
        scored: list[tuple[int, str]] = []
        for ticker in tickers:
            score = score_series_ticker(ticker, self._series_allow, self._series_deny)
            score += self._recency_bonus(ticker, now)
            if score < _BLACKLIST_SCORE:
                logger.debug("Kalshi series %s blacklisted (score %d)", ticker, score)
                continue
            scored.append((score, ticker))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [ticker for _, ticker in scored[: self._max_series]]

    # -- Markets --

    def build_market_query(self, series_ticker: str, cursor: str | None, now: float) -> dict[str, Any]:
        """
        Kalshi corrupts results when status and close-time bounds are combined,
        so exactly one of them goes on the wire.
        """
        params: dict[str, Any] = {"series_ticker": series_ticker, "limit": self._page_limit}
        if self._filter_strategy == "status":
            params["status"] = "open"
        else:
            # Minute granularity keeps the response cache useful
            minute = int(now // 60 * 60)
            params["min_close_ts"] = minute - self._window_behind_sec
            params["max_close_ts"] = minute + self._window_ahead_sec
        if cursor:
            params["cursor"] = cursor
        return params

    def _in_window(self, close_ts: float, now: float) -> bool:
        return now - self._window_behind_sec <= close_ts <= now + self._window_ahead_sec

    def parse_market(
        self,
        raw: dict,
        series_ticker: str = "",
        event: dict | None = None,
        fetched_at: float | None = None,
    ) -> Market | None:
        """Canonical Market from a raw Kalshi market. None if it fails basic invariants."""
        ticker = raw.get("ticker")
        if not ticker:
            return None
        close_ts = parse_timestamp(raw.get("close_time") or raw.get("expiration_time"))
        if close_ts is None:
            return None

        def cents(field: str) -> float | None:
            value = to_cents(raw.get(field))
            if value is None:
                value = to_cents(raw.get(f"{field}_dollars"), scale=100.0)
            return value

        yes_ask, yes_bid = cents("yes_ask"), cents("yes_bid")
        no_ask, no_bid = cents("no_ask"), cents("no_bid")
        last = cents("last_price")
        yes = derive_price(yes_ask, no_bid, yes_bid, last)
        no = derive_price(no_ask, yes_bid, no_bid, round(100.0 - last, 2) if last else None)
        if yes is None and no is None:
            yes, no = cents("yes_price"), cents("no_price")
        sides = complete_sides(yes, no)
        if sides is None:
            return None

        event = event or {}
        event_ticker = raw.get("event_ticker", "") or event.get("event_ticker", "")
        series = series_ticker or event.get("series_ticker", "")
        title = event.get("title") or raw.get("title", "")
        start = event.get("strike_date") or raw.get("expected_expiration_time_start") or ""
        start_ts = parse_timestamp(start) if start else None

        return Market(
            venue=Venue.KALSHI,
            market_id=ticker,
            ticker=ticker,
            title=title,
            market_type=MarketType.PREDICTION,
            yes_price=sides[0],
            no_price=sides[1],
            volume=to_float(raw.get("volume")) or 0.0,
            expiry_date=to_iso(close_ts),
            event_ticker=event_ticker,
            series_ticker=series,
            start_time=to_iso(start_ts) if start_ts is not None else "",
            status=str(raw.get("status", "")),
            sport=sport_hint(event_ticker, series, ticker),
            yes_bid=yes_bid,
            yes_ask=yes_ask,
            yes_label=raw.get("yes_sub_title", ""),
            no_label=raw.get("no_sub_title", ""),
            fetched_at=fetched_at if fetched_at is not None else self._clock(),
        )

    def fetch_markets(self) -> FetchResult:
        """Full refresh. Overlapping calls return skipped='overlap'."""
        with self._limiter.in_flight("markets_refresh") as owner:
            if not owner:
                logger.info("Kalshi refresh already running, skipping")
                return FetchResult(venue=self.venue, skipped="overlap")
            return guarded_fetch(self.venue, self._refresh)

    def _refresh(self) -> FetchResult:
        if self._limiter.is_backoff_active():
            return FetchResult(venue=self.venue, skipped=BACKOFF_ACTIVE)

        now = self._clock()
        stats = {
            "raw": 0, "dropped": 0, "filtered_status": 0, "filtered_window": 0,
            "multivariate": 0, "hydrated": 0, "pages": 0, "series_polled": 0, "series_failed": 0,
        }
        chosen = self.choose_series(self.discover_series(), now)
        raw_items: list[tuple[str, dict, float]] = []
        stopped_by_backoff = False

        for index, series in enumerate(chosen):
            if len(raw_items) >= self._max_total_markets:
                break
            try:
                series_count, stopped_by_backoff = self._fetch_series(series, now, raw_items, stats)
            except httpx.HTTPStatusError as e:
                logger.warning("Kalshi series %s failed: %s", series, e)
                stats["series_failed"] += 1
                series_count = 0
            stats["series_polled"] += 1
            if series_count:
                self._series_history[series] = (now, series_count)
            else:
                previous = self._series_history.get(series)
                self._series_history[series] = (previous[0] if previous else 0.0, 0)
            if stopped_by_backoff:
                logger.warning("Kalshi backoff active, stopping after %d series", stats["series_polled"])
                break
            if index < len(chosen) - 1 and self._series_delay_sec > 0:
                self._sleep(self._series_delay_sec)

        events = self._hydrate_events(raw_items, stats)
        markets: list[Market] = []
        for series, raw, page_time in raw_items:
            market = self.parse_market(raw, series, events.get(raw.get("event_ticker", "")), page_time)
            if market is None:
                stats["dropped"] += 1
                continue
            markets.append(market)

        logger.info(
            "Kalshi: %d markets from %d series (%d raw, %d dropped, %d status-filtered, %d window-filtered)",
            len(markets), stats["series_polled"], stats["raw"], stats["dropped"],
            stats["filtered_status"], stats["filtered_window"],
        )
        if not markets and stopped_by_backoff:
            return FetchResult(venue=self.venue, skipped=BACKOFF_ACTIVE, stats=stats, fetched_at=now)
        return FetchResult(venue=self.venue, markets=tuple(markets), stats=stats, fetched_at=now)

    def _fetch_series(
        self,
        series: str,
        now: float,
        out: list[tuple[str, dict, float]],
        stats: dict[str, int],
    ) -> tuple[int, bool]:
        """Paginate one series into ``out``. Returns (kept_count, hit_backoff)."""
        kept = 0
        cursor: str | None = None
        for _ in range(self._max_pages_per_series):
            result = self._get("/markets", self.build_market_query(series, cursor, now))
            if not result.ok:
                return kept, result.skipped in (BACKOFF_ACTIVE, "rate_limited")
            stats["pages"] += 1
            page_time = result.fetched_at if result.fetched_at is not None else self._clock()
            items = extract_list(result.data, ["markets"])
            for raw in items:
                if not isinstance(raw, dict):
                    stats["dropped"] += 1
                    continue
                stats["raw"] += 1
                if is_multivariate(raw.get("ticker", "")):
                    stats["multivariate"] += 1
                    continue
                status = str(raw.get("status", "")).lower()
                if status and status not in _TRADABLE_STATUSES:
                    stats["filtered_status"] += 1
                    continue
                close_ts = parse_timestamp(raw.get("close_time"))
                if close_ts is not None and not self._in_window(close_ts, now):
                    stats["filtered_window"] += 1
                    continue
                out.append((series, raw, page_time))
                kept += 1
                if len(out) >= self._max_total_markets:
                    return kept, False
            next_cursor = extract_cursor(result.data)
            if next_cursor is NOT_FOUND or not items:
                break
            cursor = next_cursor
        return kept, False

    # -- Events --

    def get_event(self, event_ticker: str) -> dict | None:
        """Event metadata (title, strike_date, series). Cached in the metadata TTL."""
        result = self._get(f"/events/{event_ticker}", cache_kind="metadata")
        if not result.ok:
            return None
        event = extract(result.data, ["event"])
        return event if isinstance(event, dict) else None

    def get_events(self, series_ticker: str, status: str | None = None, limit: int = 200) -> list[dict]:
        """Events of one series, optionally filtered by status."""
        params: dict[str, Any] = {"series_ticker": series_ticker, "limit": limit}
        if status:
            params["status"] = status
        result = self._get("/events", params, cache_kind="metadata")
        if not result.ok:
            return []
        return [e for e in extract_list(result.data, ["events"]) if isinstance(e, dict)]

    def _hydrate_events(self, raw_items: list[tuple[str, dict, float]], stats: dict[str, int]) -> dict[str, dict]:
        """Fetch event metadata for sports event tickers so markets carry strike dates."""
        wanted: list[str] = []
        for series, raw, _ in raw_items:
            event_ticker = raw.get("event_ticker", "")
            if event_ticker and event_ticker not in wanted and sport_hint(event_ticker, series):
                wanted.append(event_ticker)
        events: dict[str, dict] = {}
        for event_ticker in wanted[: self._max_event_hydrations]:
            try:
                event = self.get_event(event_ticker)
            except httpx.HTTPError as e:
                logger.debug("Kalshi event %s hydration failed: %s", event_ticker, e)
                continue
            if event is None:
                if self._limiter.is_backoff_active():
                    break
                continue
            events[event_ticker] = event
            stats["hydrated"] += 1
        return events

    def classify_event(self, event: dict, now: float | None = None) -> Lifecycle:
        """Lifecycle of a raw Kalshi event (status, strike date, nested market close)."""
        if now is None:
            now = self._clock()
        status = str(event.get("status", "")).lower()
        close_ts = parse_timestamp(event.get("close_time"))
        nested = event.get("markets") or []
        if close_ts is None and nested and isinstance(nested[0], dict):
            close_ts = parse_timestamp(nested[0].get("close_time"))
            status = status or str(nested[0].get("status", "")).lower()
        return classify_lifecycle(
            status,
            parse_timestamp(event.get("strike_date")),
            close_ts,
            now,
            self._live_close_window_sec,
        )

    # -- Orderbook --

    def get_orderbook(self, ticker: str) -> dict[str, float | None]:
        """
        Best levels in cents. Kalshi returns bids only: a NO bid at P is a
        YES ask at 100 - P.
        """
        result = self._get(f"/markets/{ticker}/orderbook", cache_kind=None)
        if not result.ok:
            return {"yes_bid": None, "yes_ask": None, "no_bid": None, "no_ask": None}
        book = extract(result.data, ["orderbook"])
        book = book if isinstance(book, dict) else {}

        def best(levels: Any) -> float | None:
            prices = [lvl[0] for lvl in levels or [] if isinstance(lvl, (list, tuple)) and len(lvl) >= 2 and lvl[1] > 0]
            return float(max(prices)) if prices else None

        yes_bid = best(book.get("yes"))
        no_bid = best(book.get("no"))
        return {
            "yes_bid": yes_bid,
            "no_bid": no_bid,
            "yes_ask": round(100.0 - no_bid, 2) if no_bid is not None else None,
            "no_ask": round(100.0 - yes_bid, 2) if yes_bid is not None else None,
        }

    # -- Portfolio (signed) --

    def get_balance(self) -> float:
        """Account balance in dollars."""
        data = self._signed_request("GET", "/portfolio/balance")
        return data.get("balance", 0) / 100.0

    def get_positions(self) -> list[dict]:
        data = self._signed_request("GET", "/portfolio/positions")
        return data.get("market_positions", [])

    def place_order(
        self,
        ticker: str,
        side: str,
        count: int,
        price_cents: int,
        action: str = "buy",
        order_type: str = "limit",
    ) -> dict:
        """Place a limit order. ``price_cents`` applies to ``side`` (yes/no)."""
        if not 1 <= price_cents <= 99:
            raise ValueError(f"Kalshi price out of range: {price_cents} cents (must be 1-99)")
        body: dict[str, Any] = {
            "ticker": ticker,
            "side": side,
            "action": action,
            "count": count,
            "type": order_type,
            f"{side}_price": price_cents,
        }
        return self._signed_request("POST", "/portfolio/orders", body)

    def cancel_order(self, order_id: str) -> dict:
        return self._signed_request("DELETE", f"/portfolio/orders/{order_id}")

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._http.close()
