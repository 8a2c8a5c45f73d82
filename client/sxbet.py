"""
SX.bet REST client. Decimal-odds sportsbook on the SX network.

Odds arrive as maker percentage odds scaled by 1e20 (the maker's implied
probability). A taker on the other side gets 1 - p, so taker decimal odds
are 1 / (1 - p). SX.bet charges no trading fees.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from client.payload import NOT_FOUND, extract, extract_cursor, extract_list, parse_timestamp, to_float, to_iso
from client.platform import DEFAULT_TIMEOUT, guarded_fetch, limited_get
from client.rate_limit import VenueRateLimiter
from scanner.models import FetchResult, Market, MarketType, Venue

logger = logging.getLogger(__name__)

ODDS_PRECISION = 10 ** 20
MIN_DECIMAL_ODDS = 1.01
_ODDS_BATCH = 30

# Two-way winner markets (12, and 12 including overtime). Spreads, totals
# and 1X2 are not complementary with a binary winner market.
MONEYLINE_MARKET_TYPES = (52, 226)
_SPREAD_MARKET_TYPES = (3, 342)
_TOTAL_MARKET_TYPES = (2, 28, 835)

_LEAGUE_SPORTS = {
    "NBA": "NBA",
    "NFL": "NFL",
    "NHL": "NHL",
    "MLB": "MLB",
    "NCAAB": "NCAA_BB",
    "NCAAF": "NCAA_FB",
    "ENGLISH PREMIER LEAGUE": "EPL",
    "PREMIER LEAGUE": "EPL",
    "UEFA CHAMPIONS LEAGUE": "UCL",
    "LA LIGA": "LALIGA",
    "BUNDESLIGA": "BUNDESLIGA",
    "SERIE A": "SERIEA",
    "MLS": "MLS",
    "UFC": "UFC",
}


def taker_decimal_odds(percentage_odds: Any) -> float | None:
    """Taker decimal odds from maker percentage odds. None on junk input."""
    if percentage_odds is None:
        return None
    try:
        maker_prob = int(str(percentage_odds)) / ODDS_PRECISION
    except ValueError:
        return None
    if not 0 <= maker_prob < 1:
        return None
    taker_prob = 1.0 - maker_prob
    return max(MIN_DECIMAL_ODDS, round(1.0 / taker_prob, 4))


@dataclass(frozen=True)
class BestOdds:
    """Best taker odds on both outcomes of one market."""

    one: float | None
    two: float | None
    fetched_at: float | None = None


def sport_from_league(label: str) -> str:
    upper = (label or "").upper()
    for key, sport in _LEAGUE_SPORTS.items():
        if key in upper:
            return sport
    return ""


class SXBetClient:
    """
    Active markets plus best taker odds. Requires an API key; without one
    every refresh is skipped with reason 'missing_credentials'.
    """

    venue = Venue.SXBET

    def __init__(
        self,
        limiter: VenueRateLimiter,
        api_key: str = "",
        host: str = "https://api.sx.bet",
        base_token: str = "0x6629Ce1Cf35Cc1329ebB4F63202F3f197b3F050B",
        max_pages: int = 5,
        max_markets: int = 1000,
        event_duration_hours: float = 3.0,
        market_types: tuple[int, ...] | None = MONEYLINE_MARKET_TYPES,
        clock: Callable[[], float] = time.time,
        http: httpx.Client | None = None,
    ) -> None:
        self._limiter = limiter
        self._api_key = api_key
        self._host = host.rstrip("/")
        self._base_token = base_token
        self._max_pages = max_pages
        self._max_markets = max_markets
        self._event_duration_sec = event_duration_hours * 3600.0
        self._market_types = market_types
        self._clock = clock
        self._http = http or httpx.Client(timeout=DEFAULT_TIMEOUT)

    @property
    def _headers(self) -> dict[str, str]:
        return {"X-Api-Key": self._api_key, "Accept": "application/json"}

    def fetch_markets(self) -> FetchResult:
        if not self._api_key:
            logger.info("SX.bet skipped: no API key configured")
            return FetchResult(venue=self.venue, skipped="missing_credentials")
        with self._limiter.in_flight("markets_refresh") as owner:
            if not owner:
                logger.info("SX.bet refresh already running, skipping")
                return FetchResult(venue=self.venue, skipped="overlap")
            return guarded_fetch(self.venue, self._refresh)

    def get_active_markets(self, stats: dict[str, int]) -> tuple[list[dict], str | None]:
        """Raw active markets across pages. Returns (markets, skip_reason)."""
        raw_markets: list[dict] = []
        key: str | None = None
        for _ in range(self._max_pages):
            params: dict[str, Any] = {"baseToken": self._base_token, "onlyMainLine": "true"}
            if key:
                params["paginationKey"] = key
            result = limited_get(self._http, self._limiter, f"{self._host}/markets/active", params, self._headers)
            if not result.ok:
                return raw_markets, result.skipped
            stats["pages"] += 1
            page = extract_list(result.data, ["data.markets", "data", "markets"])
            raw_markets.extend(m for m in page if isinstance(m, dict))
            if len(raw_markets) >= self._max_markets:
                return raw_markets[: self._max_markets], None
            next_key = extract_cursor(result.data)
            if next_key is NOT_FOUND or not page:
                break
            key = next_key
        return raw_markets, None

    def get_best_odds(self, market_hashes: list[str]) -> dict[str, BestOdds]:
        """marketHash -> taker odds on both outcomes, stamped with the response time."""
        odds: dict[str, BestOdds] = {}
        for start in range(0, len(market_hashes), _ODDS_BATCH):
            batch = market_hashes[start:start + _ODDS_BATCH]
            params = {"marketHashes": ",".join(batch), "baseToken": self._base_token}
            result = limited_get(
                self._http, self._limiter, f"{self._host}/orders/odds/best", params, self._headers,
                clock=self._clock,
            )
            if not result.ok:
                logger.info("SX.bet best odds skipped: %s", result.skipped)
                break
            for entry in extract_list(result.data, ["data.bestOdds", "data", "bestOdds"]):
                if not isinstance(entry, dict) or not entry.get("marketHash"):
                    continue
                one = extract(entry, ["outcomeOne.percentageOdds"])
                two = extract(entry, ["outcomeTwo.percentageOdds"])
                odds[entry["marketHash"]] = BestOdds(
                    taker_decimal_odds(one) if one is not NOT_FOUND else None,
                    taker_decimal_odds(two) if two is not NOT_FOUND else None,
                    result.fetched_at,
                )
        return odds

    def parse_market(
        self,
        raw: dict,
        odds: tuple[float | None, float | None],
        fetched_at: float,
    ) -> Market | None:
        """Canonical SPORTSBOOK Market. None without a game time or odds on both outcomes."""
        market_hash = raw.get("marketHash")
        start_ts = parse_timestamp(raw.get("gameTime"))
        if not market_hash or start_ts is None:
            return None
        odds_one, odds_two = odds
        # Both outcomes need a live taker order; a one-sided book is not tradeable as a hedge
        if odds_one is None or odds_two is None:
            return None

        team_one = raw.get("teamOneName") or raw.get("outcomeOneName", "")
        team_two = raw.get("teamTwoName") or raw.get("outcomeTwoName", "")
        title = raw.get("gameLabel") or f"{team_one} vs {team_two}"
        line = to_float(raw.get("line"))
        # gameLabel is shared by every market of a game; the line tells them apart
        if line is not None and raw.get("type") in _SPREAD_MARKET_TYPES:
            title = f"{title} Spread {line:+g}"
        elif line is not None and raw.get("type") in _TOTAL_MARKET_TYPES:
            title = f"{title} Total {line:g}"
        league = raw.get("leagueLabel", "")
        return Market(
            venue=Venue.SXBET,
            market_id=market_hash,
            ticker=market_hash,
            title=title,
            market_type=MarketType.SPORTSBOOK,
            yes_price=odds_one,
            no_price=odds_two,
            volume=to_float(raw.get("volume")) or 0.0,
            expiry_date=to_iso(start_ts + self._event_duration_sec),
            event_ticker=str(raw.get("sportXeventId", "")),
            series_ticker=league,
            start_time=to_iso(start_ts),
            status="open",
            sport=sport_from_league(league),
            yes_label=raw.get("outcomeOneName", ""),
            no_label=raw.get("outcomeTwoName", ""),
            fetched_at=fetched_at,
        )

    def _refresh(self) -> FetchResult:
        now = self._clock()
        stats = {"raw": 0, "dropped": 0, "filtered_type": 0, "pages": 0, "priced": 0, "one_sided": 0}
        raw_markets, skipped = self.get_active_markets(stats)
        if skipped and not raw_markets:
            return FetchResult(venue=self.venue, skipped=skipped, stats=stats)
        stats["raw"] = len(raw_markets)

        if self._market_types is not None:
            kept = [m for m in raw_markets if m.get("type") in self._market_types]
            stats["filtered_type"] = len(raw_markets) - len(kept)
            raw_markets = kept

        odds = self.get_best_odds([m["marketHash"] for m in raw_markets if m.get("marketHash")])
        stats["priced"] = len(odds)
        markets: list[Market] = []
        for raw in raw_markets:
            best = odds.get(raw.get("marketHash", ""))
            if best is None:
                market = None
            else:
                if (best.one is None) != (best.two is None):
                    stats["one_sided"] += 1
                stamp = best.fetched_at if best.fetched_at is not None else now
                market = self.parse_market(raw, (best.one, best.two), stamp)
            if market is None:
                stats["dropped"] += 1
                continue
            markets.append(market)

        logger.info(
            "SX.bet: %d markets (%d raw, %d priced, %d dropped)",
            len(markets), stats["raw"], stats["priced"], stats["dropped"],
        )
        return FetchResult(venue=self.venue, markets=tuple(markets), stats=stats, fetched_at=now)

    def close(self) -> None:
        self._http.close()
