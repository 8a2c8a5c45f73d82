"""
Unit tests for client/polymarket.py -- Gamma market discovery and CLOB books.
"""

import json

import httpx
import respx

from client.polymarket import PolymarketClient, is_tradable, parse_gamma_market, sport_from_slug
from client.rate_limit import RateLimitSettings, VenueRateLimiter
from scanner.models import MarketType, Venue

GAMMA = "https://gamma.test"
CLOB = "https://clob.test"
# 2025-01-15T18:30:00Z
NOW = 1736965800.0


def _client(**kwargs) -> PolymarketClient:
    limiter = VenueRateLimiter(
        "polymarket",
        RateLimitSettings(min_interval_sec=0.0),
        clock=lambda: NOW,
        sleep=lambda _: None,
    )
    return PolymarketClient(limiter, gamma_host=GAMMA, clob_host=CLOB, clock=lambda: NOW, **kwargs)


def _gamma(i: int = 0, **overrides) -> dict:
    raw = {
        "id": str(500 + i),
        "conditionId": f"0xcond{i}",
        "question": "Lakers vs. Celtics",
        "slug": f"nba-lal-bos-2025-01-15-{i}",
        "endDateIso": "2025-01-16",
        "gameStartTime": "2025-01-15T19:30:00Z",
        "outcomes": json.dumps(["Lakers", "Celtics"]),
        "outcomePrices": json.dumps(["0.41", "0.60"]),
        "clobTokenIds": json.dumps(["111", "222"]),
        "bestBid": 0.40,
        "bestAsk": 0.42,
        "volumeNum": 25000.5,
        "enableOrderBook": True,
        "active": True,
        "closed": False,
    }
    raw.update(overrides)
    return raw


class TestParseGammaMarket:
    def test_json_string_fields(self):
        market = parse_gamma_market(_gamma(), NOW)
        assert market.venue is Venue.POLYMARKET
        assert market.market_type is MarketType.PREDICTION
        assert market.market_id == "0xcond0"
        assert (market.yes_price, market.no_price) == (41.0, 60.0)
        assert (market.yes_label, market.no_label) == ("Lakers", "Celtics")
        assert market.yes_token_id == "111"
        assert market.yes_bid == 40.0 and market.yes_ask == 42.0
        assert market.sport == "NBA"
        assert market.expiry_date == "2025-01-16T23:59:59Z"
        assert market.start_time == "2025-01-15T19:30:00Z"
        assert market.volume == 25000.5

    def test_book_fallback_when_outcome_prices_missing(self):
        market = parse_gamma_market(_gamma(outcomePrices=None), NOW)
        assert market.yes_price == 42.0
        assert market.no_price == 60.0

    def test_list_fields_accepted(self):
        market = parse_gamma_market(_gamma(outcomes=["Yes", "No"], clobTokenIds=["9"]), NOW)
        assert market.yes_label == "Yes"
        assert market.yes_token_id == "9"

    def test_rejects_incomplete(self):
        assert parse_gamma_market(_gamma(id=None, conditionId=None)) is None
        assert parse_gamma_market(_gamma(endDateIso=None)) is None
        unpriced = _gamma(outcomePrices="not json", bestBid=None, bestAsk=None)
        assert parse_gamma_market(unpriced) is None


class TestTradable:
    def test_requires_order_book(self):
        assert is_tradable(_gamma())
        assert not is_tradable(_gamma(enableOrderBook=None))

    def test_closed_archived_paused(self):
        assert not is_tradable(_gamma(closed=True))
        assert not is_tradable(_gamma(archived=True))
        assert not is_tradable(_gamma(acceptingOrders=False))
        assert not is_tradable(_gamma(active=False))

    def test_slug_sport(self):
        assert sport_from_slug("EPL-ars-che-2025-01-15") == "EPL"
        assert sport_from_slug("will-it-rain") == ""


class TestFetchMarkets:
    @respx.mock
    def test_paginates_until_short_page(self):
        route = respx.get(f"{GAMMA}/markets").mock(side_effect=[
            httpx.Response(200, json=[_gamma(0), _gamma(1)]),
            httpx.Response(200, json=[_gamma(2, closed=True)]),
        ])

        result = _client(page_limit=2).fetch_markets()

        assert result.ok
        assert [m.market_id for m in result.markets] == ["0xcond0", "0xcond1"]
        assert result.stats == {"raw": 3, "dropped": 0, "untradable": 1, "pages": 2}
        assert route.call_count == 2
        assert route.calls[1].request.url.params["offset"] == "2"

    @respx.mock
    def test_cached_page_keeps_first_fetch_time(self):
        route = respx.get(f"{GAMMA}/markets").mock(return_value=httpx.Response(200, json=[_gamma(0)]))
        limiter = VenueRateLimiter("polymarket", RateLimitSettings(min_interval_sec=0.0), clock=lambda: NOW, sleep=lambda _: None)
        wall = {"now": NOW}
        client = PolymarketClient(limiter, gamma_host=GAMMA, clob_host=CLOB, clock=lambda: wall["now"])

        first = client.fetch_markets()
        wall["now"] = NOW + 25
        second = client.fetch_markets()

        assert route.call_count == 1
        assert first.markets[0].fetched_at == NOW
        assert second.markets[0].fetched_at == NOW

    @respx.mock
    def test_query_window(self):
        route = respx.get(f"{GAMMA}/markets").mock(return_value=httpx.Response(200, json=[]))
        _client(end_window_hours=24).fetch_markets()
        params = route.calls.last.request.url.params
        assert params["closed"] == "false"
        assert params["end_date_min"] == "2025-01-15T18:30:00Z"
        assert params["end_date_max"] == "2025-01-16T18:30:00Z"

    @respx.mock
    def test_page_and_item_caps(self):
        respx.get(f"{GAMMA}/markets").mock(return_value=httpx.Response(200, json=[_gamma(0), _gamma(1)]))
        assert len(_client(page_limit=2, max_pages=3, max_markets=3).fetch_markets().markets) == 3
        assert _client(page_limit=2, max_pages=1).fetch_markets().stats["pages"] == 1

    @respx.mock
    def test_first_page_rate_limited(self):
        respx.get(f"{GAMMA}/markets").mock(return_value=httpx.Response(429))
        result = _client().fetch_markets()
        assert result.skipped == "rate_limited"
        assert result.markets == ()

    @respx.mock
    def test_server_error_becomes_error_result(self):
        respx.get(f"{GAMMA}/markets").mock(return_value=httpx.Response(503))
        result = _client().fetch_markets()
        assert not result.ok
        assert "HTTPStatusError" in result.error


class TestOrderbook:
    @respx.mock
    def test_best_levels(self):
        respx.get(f"{CLOB}/book").mock(return_value=httpx.Response(200, json={
            "bids": [{"price": "0.38", "size": "10"}, {"price": "0.40", "size": "5"}],
            "asks": [{"price": "0.45", "size": "10"}, {"price": "0.43", "size": "2"}],
        }))
        assert _client().get_orderbook("111") == {"bid": 40.0, "ask": 43.0}

    @respx.mock
    def test_empty_book(self):
        respx.get(f"{CLOB}/book").mock(return_value=httpx.Response(200, json={"bids": [], "asks": []}))
        assert _client().get_orderbook("111") == {"bid": None, "ask": None}
