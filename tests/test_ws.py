"""
Unit tests for client/ws.py -- feed protocols, live price cache, reconnect loop.
"""

import asyncio
import json
from unittest.mock import MagicMock

from client.kalshi_auth import KalshiAuth, SigningError
from client.ws import (
    KALSHI_WS_PATH,
    ConnectionState,
    KalshiFeedProtocol,
    LiveFeed,
    LiveFeedBridge,
    LivePrice,
    LivePriceCache,
    PolymarketFeedProtocol,
    apply_live_prices,
)
from scanner.models import Market, MarketType, Side, Venue

NOW = 1736965800.0


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class FakeSocket:
    """Async-iterable connection that replays canned frames, then closes."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame


def _prediction(venue=Venue.KALSHI, market_id="T1", **kw):
    fields = dict(
        venue=venue, market_id=market_id, title="Lakers vs Celtics", market_type=MarketType.PREDICTION,
        yes_price=50.0, no_price=50.0, expiry_date="2025-01-15T23:00:00Z", fetched_at=NOW - 10,
    )
    fields.update(kw)
    return Market(**fields)


def _prices_by_side(prices):
    return {p.outcome: p for p in prices}


class TestKalshiProtocol:
    def test_subscribe_messages(self):
        protocol = KalshiFeedProtocol()
        first = json.loads(protocol.subscribe_message(["T1", "T2"]))
        assert first == {
            "id": 1,
            "cmd": "subscribe",
            "params": {"channels": ["ticker", "orderbook_delta", "trade"], "market_tickers": ["T1", "T2"]},
        }
        second = json.loads(protocol.unsubscribe_message(["T2"]))
        assert second["id"] == 2 and second["cmd"] == "unsubscribe"
        assert protocol.subscribe_message([]) is None

    def test_signed_handshake(self):
        auth = MagicMock(spec=KalshiAuth)
        auth.sign_request.return_value = {"KALSHI-ACCESS-KEY": "k"}
        assert KalshiFeedProtocol(auth).handshake_headers() == {"KALSHI-ACCESS-KEY": "k"}
        auth.sign_request.assert_called_once_with("GET", KALSHI_WS_PATH)
        assert KalshiFeedProtocol().handshake_headers() == {}

    def test_ticker_prefers_ask(self):
        raw = json.dumps({"type": "ticker", "msg": {
            "market_ticker": "T1", "yes_bid": 43, "yes_ask": 45, "no_bid": 55, "no_ask": 57,
        }})
        prices = _prices_by_side(KalshiFeedProtocol().parse(raw, NOW))
        assert prices[Side.YES].price == 45 and prices[Side.NO].price == 57
        assert prices[Side.YES].bid == 43 and prices[Side.YES].ask == 45
        assert prices[Side.YES].implied_probability == 0.45
        assert prices[Side.YES].timestamp == NOW

    def test_ticker_falls_back_to_bid_then_last(self):
        protocol = KalshiFeedProtocol()
        bid_only = _prices_by_side(protocol.parse(json.dumps({"type": "ticker", "msg": {"market_ticker": "T1", "yes_bid": 41}}), NOW))
        assert bid_only[Side.YES].price == 41 and bid_only[Side.NO].price == 59
        last_only = _prices_by_side(protocol.parse(json.dumps({"type": "ticker", "msg": {"market_ticker": "T1", "last_price": 38}}), NOW))
        assert last_only[Side.YES].price == 38

    def test_book_snapshot_and_deltas(self):
        protocol = KalshiFeedProtocol()
        snapshot = json.dumps({"type": "orderbook_snapshot", "msg": {
            "market_ticker": "T1", "yes": [[40, 10], [42, 5]], "no": [[55, 3]],
        }})
        prices = _prices_by_side(protocol.parse(snapshot, NOW))
        assert (prices[Side.YES].price, prices[Side.NO].price) == (45.0, 58.0)
        assert prices[Side.YES].bid == 42 and prices[Side.YES].ask == 45.0

        delta = json.dumps({"type": "orderbook_delta", "msg": {"market_ticker": "T1", "side": "no", "price": 55, "delta": -3}})
        prices = _prices_by_side(protocol.parse(delta, NOW))
        assert (prices[Side.YES].price, prices[Side.NO].price) == (42, 58.0)
        assert prices[Side.YES].ask is None

        grow = json.dumps({"type": "orderbook_delta", "msg": {"market_ticker": "T1", "side": "no", "price": 56, "delta": 4}})
        assert _prices_by_side(protocol.parse(grow, NOW))[Side.YES].price == 44.0

    def test_trade_and_control_messages(self):
        protocol = KalshiFeedProtocol()
        trade = json.dumps({"type": "trade", "msg": {"market_ticker": "T1", "yes_price": 47, "no_price": 53}})
        assert [p.price for p in protocol.parse(trade, NOW)] == [47, 53]
        assert protocol.parse(json.dumps({"type": "subscribed", "msg": {"channel": "ticker"}}), NOW) == []
        assert protocol.parse(json.dumps({"type": "ticker", "msg": {"yes_bid": 40}}), NOW) == []
        assert protocol.parse("[]", NOW) == []


class TestPolymarketProtocol:
    def _protocol(self):
        protocol = PolymarketFeedProtocol()
        tokens = protocol.register([
            _prediction(Venue.POLYMARKET, "0xcond0", yes_token_id="111"),
            _prediction(Venue.POLYMARKET, "0xnotoken"),
            _prediction(Venue.KALSHI, "T1", yes_token_id="ignored"),
        ])
        assert tokens == ["111"]
        return protocol

    def test_subscribe_messages(self):
        protocol = PolymarketFeedProtocol()
        assert json.loads(protocol.subscribe_message(["111"])) == {"assets_ids": ["111"], "type": "market"}
        assert json.loads(protocol.unsubscribe_message(["111"]))["action"] == "unsubscribe"

    def test_book_maps_token_to_market(self):
        raw = json.dumps({
            "event_type": "book", "asset_id": "111", "market": "0xraw",
            "bids": [{"price": "0.40", "size": "10"}, {"price": "0.39", "size": "2"}],
            "asks": [{"price": "0.43", "size": "1"}, {"price": "0.42", "size": "8"}],
        })
        prices = _prices_by_side(self._protocol().parse(raw, NOW))
        assert prices[Side.YES].market_id == "0xcond0"
        assert (prices[Side.YES].price, prices[Side.NO].price) == (42.0, 58.0)
        assert prices[Side.YES].bid == 40.0 and prices[Side.YES].ask == 42.0

    def test_price_change_batch(self):
        raw = json.dumps([{
            "event_type": "price_change", "market": "0xraw",
            "price_changes": [{"asset_id": "111", "best_bid": "0.41", "best_ask": "0.44", "price": "0.43"}],
        }])
        prices = _prices_by_side(self._protocol().parse(raw, NOW))
        assert prices[Side.YES].price == 44.0

    def test_unregistered_asset_keyed_by_market(self):
        raw = json.dumps({"event_type": "last_trade_price", "asset_id": "999", "market": "0xm", "price": "0.55"})
        prices = _prices_by_side(self._protocol().parse(raw, NOW))
        assert prices[Side.YES].market_id == "0xm"
        assert prices[Side.NO].price == 45.0

    def test_unpriced_events_ignored(self):
        protocol = self._protocol()
        assert protocol.parse(json.dumps({"event_type": "book", "asset_id": "111", "bids": [], "asks": []}), NOW) == []
        assert protocol.parse(json.dumps({"event_type": "tick_size_change", "asset_id": "111"}), NOW) == []


class TestLivePriceCache:
    def test_freshness(self):
        clock = FakeClock()
        cache = LivePriceCache(clock=clock)
        cache.update(LivePrice(Venue.KALSHI, "T1", Side.YES, 45.0, 0.45, NOW))
        assert cache.get(Venue.KALSHI, "T1", Side.YES, max_age_sec=5).price == 45.0
        clock.now += 6
        assert cache.get(Venue.KALSHI, "T1", Side.YES, max_age_sec=5) is None
        assert cache.get(Venue.KALSHI, "T1", Side.YES) is not None

    def test_stats(self):
        clock = FakeClock()
        cache = LivePriceCache(clock=clock)
        cache.update(LivePrice(Venue.KALSHI, "T1", Side.YES, 45.0, 0.45, NOW - 2))
        cache.update(LivePrice(Venue.POLYMARKET, "0x", Side.YES, 40.0, 0.40, NOW - 1))
        cache.update(LivePrice(Venue.POLYMARKET, "0x", Side.YES, 41.0, 0.41, NOW))
        assert cache.stats() == {"entries": 2, "updates": 3, "by_venue": {"kalshi": 1, "polymarket": 1}, "newest_age_sec": 0.0}
        cache.clear()
        assert len(cache) == 0


class TestApplyLivePrices:
    def test_overlays_fresh_prediction_quotes(self):
        clock = FakeClock()
        cache = LivePriceCache(clock=clock)
        for price in KalshiFeedProtocol().parse(json.dumps({"type": "ticker", "msg": {
            "market_ticker": "T1", "yes_bid": 43, "yes_ask": 45, "no_ask": 57,
        }}), NOW):
            cache.update(price)
        sportsbook = Market(
            venue=Venue.SXBET, market_id="T1", title="", market_type=MarketType.SPORTSBOOK,
            yes_price=2.0, no_price=2.0, expiry_date="2025-01-15T23:00:00Z",
        )
        markets = [_prediction(), _prediction(market_id="T2"), sportsbook]

        out = apply_live_prices(markets, cache, max_age_sec=10)

        assert (out[0].yes_price, out[0].no_price) == (45, 57)
        assert out[0].yes_bid == 43 and out[0].yes_ask == 45
        assert out[0].fetched_at == NOW
        assert out[1] is markets[1]
        assert out[2] is sportsbook

    def test_stale_quotes_ignored(self):
        clock = FakeClock()
        cache = LivePriceCache(clock=clock)
        cache.update(LivePrice(Venue.KALSHI, "T1", Side.YES, 45.0, 0.45, NOW))
        clock.now += 30
        market = _prediction()
        assert apply_live_prices([market], cache, max_age_sec=10) == [market]

    def test_single_side_is_completed(self):
        cache = LivePriceCache(clock=FakeClock())
        cache.update(LivePrice(Venue.KALSHI, "T1", Side.YES, 45.0, 0.45, NOW))
        out = apply_live_prices([_prediction()], cache, max_age_sec=10)
        assert (out[0].yes_price, out[0].no_price) == (45.0, 55.0)


def _feed(connector, **kwargs):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    feed = LiveFeed(
        url="wss://test.invalid/ws",
        protocol=kwargs.pop("protocol", KalshiFeedProtocol()),
        cache=kwargs.pop("cache", LivePriceCache(clock=FakeClock())),
        connector=connector,
        sleep=kwargs.pop("sleep", fake_sleep),
        clock=FakeClock(),
        **kwargs,
    )
    return feed, sleeps


class TestLiveFeed:
    def test_reconnect_delay_is_capped(self):
        feed, _ = _feed(MagicMock(), reconnect_base_sec=1.0, reconnect_max_sec=30.0)
        assert [feed.reconnect_delay(n) for n in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_gives_up_after_max_attempts(self):
        def refuse(url, **kwargs):
            raise ConnectionRefusedError("refused")

        feed, sleeps = _feed(refuse, max_reconnect_attempts=3)
        transitions = []
        feed.on_state_change(lambda old, new: transitions.append(new))

        async def run():
            await feed.start()
            await feed._task

        asyncio.run(run())

        assert sleeps == [1.0, 2.0, 4.0]
        assert feed.state is ConnectionState.ERROR
        assert transitions == [ConnectionState.CONNECTING, ConnectionState.RECONNECTING, ConnectionState.ERROR]
        assert feed.status()["last_error"].startswith("ConnectionRefusedError")

    def test_unexpected_error_still_reconnects(self):
        attempts = []

        def broken(url, **kwargs):
            attempts.append(url)
            raise RuntimeError("frame handler bug")

        feed, sleeps = _feed(broken, max_reconnect_attempts=2)

        async def run():
            await feed.start()
            await feed._task

        asyncio.run(run())

        assert len(attempts) == 3
        assert sleeps == [1.0, 2.0]
        assert feed.state is ConnectionState.ERROR
        assert feed.status()["last_error"] == "RuntimeError: frame handler bug"

    def test_signing_error_is_fatal(self):
        auth = MagicMock(spec=KalshiAuth)
        auth.sign_request.side_effect = SigningError("bad key")
        feed, sleeps = _feed(MagicMock(), protocol=KalshiFeedProtocol(auth))

        async def run():
            await feed.start()
            await feed._task

        asyncio.run(run())
        assert feed.state is ConnectionState.ERROR
        assert sleeps == []

    def test_connects_subscribes_and_caches(self):
        frames = [
            json.dumps({"type": "subscribed", "msg": {"channel": "ticker"}}),
            json.dumps({"type": "ticker", "msg": {"market_ticker": "T1", "yes_ask": 45, "no_ask": 57}}),
            "not json",
        ]
        socket = FakeSocket(frames)
        calls = []

        def connector(url, **kwargs):
            calls.append(kwargs)
            return socket

        cache = LivePriceCache(clock=FakeClock())
        holder = {}

        async def stop_after_first_drop(delay):
            holder["feed"]._running = False

        feed, _ = _feed(connector, cache=cache, sleep=stop_after_first_drop, heartbeat_sec=15.0)
        holder["feed"] = feed

        async def run():
            await feed.subscribe(["T2", "T1"])
            await feed.start()
            await feed._task

        asyncio.run(run())

        assert calls[0]["ping_interval"] == 15.0
        assert json.loads(socket.sent[0])["params"]["market_tickers"] == ["T1", "T2"]
        assert cache.get(Venue.KALSHI, "T1", Side.YES).price == 45
        status = feed.status()
        assert status["messages"] == 3
        assert status["parse_errors"] == 1
        assert status["symbols"] == 2


class TestLiveFeedBridge:
    def test_start_subscribe_stop(self):
        def refuse(url, **kwargs):
            raise OSError("offline")

        feed, _ = _feed(refuse, max_reconnect_attempts=0)
        bridge = LiveFeedBridge([feed])
        assert set(bridge.feeds) == {Venue.KALSHI}

        bridge.subscribe(Venue.KALSHI, ["T1"])
        assert feed.symbols == frozenset()

        bridge.start()
        assert bridge.running
        bridge.subscribe(Venue.KALSHI, ["T1"])
        bridge.subscribe(Venue.POLYMARKET, ["111"])
        bridge.stop()

        assert not bridge.running
        assert feed.symbols == frozenset({"T1"})
        assert bridge.status()[0]["venue"] == "kalshi"
