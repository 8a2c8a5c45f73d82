"""
WebSocket live price feeds for Kalshi and Polymarket.

Each LiveFeed owns one connection and a venue FeedProtocol that turns raw
messages into LivePrice entries in a shared LivePriceCache. Feeds reconnect
with exponential backoff and give up (ERROR) after the configured attempts.
LiveFeedBridge runs the feeds on a background event loop for the
synchronous orchestrator.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterable, Protocol

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from client.kalshi_auth import KalshiAuth, SigningError
from client.payload import complete_sides, derive_price, to_cents, to_float
from scanner.models import Market, MarketType, Side, Venue

logger = logging.getLogger(__name__)

KALSHI_WS_PATH = "/trade-api/ws/v2"
KALSHI_CHANNELS = ("ticker", "orderbook_delta", "trade")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class LivePrice:
    venue: Venue
    market_id: str
    outcome: Side
    price: float  # cents
    implied_probability: float
    timestamp: float
    source: str = "websocket"
    bid: float | None = None
    ask: float | None = None


class LivePriceCache:
    """Thread-safe latest quote per (venue, market, outcome)."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._prices: dict[tuple[Venue, str, Side], LivePrice] = {}
        self._updates = 0

    def update(self, price: LivePrice) -> None:
        with self._lock:
            self._prices[(price.venue, price.market_id, price.outcome)] = price
            self._updates += 1

    def get(
        self,
        venue: Venue,
        market_id: str,
        outcome: Side,
        max_age_sec: float | None = None,
    ) -> LivePrice | None:
        """Latest quote, or None when missing or older than ``max_age_sec``."""
        with self._lock:
            entry = self._prices.get((venue, market_id, outcome))
        if entry is None:
            return None
        if max_age_sec is not None and self._clock() - entry.timestamp > max_age_sec:
            return None
        return entry

    def prices_for(self, venue: Venue, market_id: str, max_age_sec: float | None = None) -> dict[Side, LivePrice]:
        found = {}
        for side in Side:
            entry = self.get(venue, market_id, side, max_age_sec)
            if entry is not None:
                found[side] = entry
        return found

    def clear(self) -> None:
        with self._lock:
            self._prices.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._prices)

    def stats(self) -> dict:
        with self._lock:
            entries = list(self._prices.values())
            updates = self._updates
        by_venue: dict[str, int] = {}
        for entry in entries:
            by_venue[entry.venue.value] = by_venue.get(entry.venue.value, 0) + 1
        newest = max((e.timestamp for e in entries), default=None)
        return {
            "entries": len(entries),
            "updates": updates,
            "by_venue": by_venue,
            "newest_age_sec": round(self._clock() - newest, 3) if newest is not None else None,
        }


def _quote_pair(
    venue: Venue,
    market_id: str,
    yes: float | None,
    no: float | None,
    now: float,
    yes_bid: float | None = None,
    yes_ask: float | None = None,
) -> list[LivePrice]:
    sides = complete_sides(yes, no)
    if sides is None:
        return []
    yes_price, no_price = sides
    return [
        LivePrice(venue, market_id, Side.YES, yes_price, yes_price / 100.0, now, bid=yes_bid, ask=yes_ask),
        LivePrice(venue, market_id, Side.NO, no_price, no_price / 100.0, now),
    ]


class FeedProtocol(Protocol):
    """Venue wire format for a LiveFeed."""

    venue: Venue

    def handshake_headers(self) -> dict[str, str]: ...

    def subscribe_message(self, symbols: list[str]) -> str | None: ...

    def unsubscribe_message(self, symbols: list[str]) -> str | None: ...

    def parse(self, raw: str | bytes, now: float) -> list[LivePrice]: ...

    def reset(self) -> None: ...


class KalshiFeedProtocol:
    """
    Kalshi market data channels. The handshake is signed like a REST GET on
    the WS path. Order books are rebuilt locally from snapshot + deltas;
    Kalshi books hold bids only, so the YES ask is 100 minus the best NO bid.
    """

    venue = Venue.KALSHI

    def __init__(self, auth: KalshiAuth | None = None) -> None:
        self.auth = auth
        self._next_id = 0
        # ticker -> side -> {price_cents: quantity}
        self._books: dict[str, dict[str, dict[float, float]]] = {}

    def _message_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def handshake_headers(self) -> dict[str, str]:
        if self.auth is None:
            return {}
        return self.auth.sign_request("GET", KALSHI_WS_PATH)

    def subscribe_message(self, symbols: list[str]) -> str | None:
        if not symbols:
            return None
        return json.dumps({
            "id": self._message_id(),
            "cmd": "subscribe",
            "params": {"channels": list(KALSHI_CHANNELS), "market_tickers": list(symbols)},
        })

    def unsubscribe_message(self, symbols: list[str]) -> str | None:
        if not symbols:
            return None
        for ticker in symbols:
            self._books.pop(ticker, None)
        return json.dumps({
            "id": self._message_id(),
            "cmd": "unsubscribe",
            "params": {"channels": list(KALSHI_CHANNELS), "market_tickers": list(symbols)},
        })

    def reset(self) -> None:
        self._books.clear()

    def parse(self, raw: str | bytes, now: float) -> list[LivePrice]:
        message = json.loads(raw)
        if not isinstance(message, dict):
            return []
        kind = message.get("type", "")
        body = message.get("msg") or {}
        items = body if isinstance(body, list) else [body]
        out: list[LivePrice] = []
        for item in items:
            if not isinstance(item, dict) or not item.get("market_ticker"):
                continue
            if kind == "orderbook_snapshot":
                out.extend(self._on_snapshot(item, now))
            elif kind == "orderbook_delta":
                out.extend(self._on_delta(item, now))
            elif kind == "ticker" or (not kind and ("yes_bid" in item or "yes_ask" in item)):
                out.extend(self._on_ticker(item, now))
            elif kind == "trade":
                out.extend(self._on_trade(item, now))
        if kind in ("subscribed", "unsubscribed"):
            logger.debug("Kalshi WS %s: %s", kind, body)
        elif kind == "error":
            logger.warning("Kalshi WS error message: %s", body)
        return out

    def _on_snapshot(self, item: dict, now: float) -> list[LivePrice]:
        ticker = item["market_ticker"]
        book: dict[str, dict[float, float]] = {"yes": {}, "no": {}}
        for side in ("yes", "no"):
            for level in item.get(side) or []:
                price, qty = to_float(level[0]), to_float(level[1])
                if price is not None and qty is not None and qty > 0:
                    book[side][price] = qty
        self._books[ticker] = book
        return self._book_prices(ticker, now)

    def _on_delta(self, item: dict, now: float) -> list[LivePrice]:
        ticker = item["market_ticker"]
        side = item.get("side")
        price, delta = to_float(item.get("price")), to_float(item.get("delta"))
        if side not in ("yes", "no") or price is None or delta is None:
            return []
        levels = self._books.setdefault(ticker, {"yes": {}, "no": {}})[side]
        qty = levels.get(price, 0.0) + delta
        if qty <= 0:
            levels.pop(price, None)
        else:
            levels[price] = qty
        return self._book_prices(ticker, now)

    def _book_prices(self, ticker: str, now: float) -> list[LivePrice]:
        book = self._books.get(ticker, {})
        best_yes = max(book.get("yes", {}), default=None)
        best_no = max(book.get("no", {}), default=None)
        yes = derive_price(None, best_no, best_yes)
        no = derive_price(None, best_yes, best_no)
        yes_ask = round(100.0 - best_no, 2) if best_no is not None else None
        return _quote_pair(self.venue, ticker, yes, no, now, yes_bid=best_yes, yes_ask=yes_ask)

    def _on_ticker(self, item: dict, now: float) -> list[LivePrice]:
        yes_bid, yes_ask = to_cents(item.get("yes_bid")), to_cents(item.get("yes_ask"))
        no_bid, no_ask = to_cents(item.get("no_bid")), to_cents(item.get("no_ask"))
        yes = derive_price(yes_ask, no_bid, yes_bid, to_cents(item.get("last_price")))
        no = derive_price(no_ask, yes_bid, no_bid)
        return _quote_pair(self.venue, item["market_ticker"], yes, no, now, yes_bid=yes_bid, yes_ask=yes_ask)

    def _on_trade(self, item: dict, now: float) -> list[LivePrice]:
        yes = to_cents(item.get("yes_price", item.get("price")))
        no = to_cents(item.get("no_price"))
        return _quote_pair(self.venue, item["market_ticker"], yes, no, now)


class PolymarketFeedProtocol:
    """
    Polymarket CLOB market channel, subscribed by asset (token) id. Prices
    arrive in dollars and are stored in cents. Registered YES tokens map
    back to their market id; NO-token quotes are flipped onto the YES side.
    """

    venue = Venue.POLYMARKET

    def __init__(self) -> None:
        # asset id -> (market id, side the asset pays on)
        self._tokens: dict[str, tuple[str, Side]] = {}

    def register(self, markets: Iterable[Market]) -> list[str]:
        """Remember YES token ids for ``markets``; returns them for subscription."""
        tokens = []
        for market in markets:
            if market.venue is Venue.POLYMARKET and market.yes_token_id:
                self._tokens[market.yes_token_id] = (market.market_id, Side.YES)
                tokens.append(market.yes_token_id)
        return tokens

    def handshake_headers(self) -> dict[str, str]:
        return {}

    def subscribe_message(self, symbols: list[str]) -> str | None:
        if not symbols:
            return None
        return json.dumps({"assets_ids": list(symbols), "type": "market"})

    def unsubscribe_message(self, symbols: list[str]) -> str | None:
        if not symbols:
            return None
        return json.dumps({"assets_ids": list(symbols), "type": "market", "action": "unsubscribe"})

    def reset(self) -> None:
        pass

    def _resolve(self, event: dict, asset_id: str) -> tuple[str, Side]:
        if asset_id in self._tokens:
            return self._tokens[asset_id]
        return str(event.get("market") or asset_id), Side.YES

    def _emit(self, event: dict, asset_id: str, price: float | None, now: float,
              bid: float | None = None, ask: float | None = None) -> list[LivePrice]:
        if price is None or not asset_id:
            return []
        market_id, side = self._resolve(event, asset_id)
        if side is Side.NO:
            flipped_bid = round(100.0 - ask, 2) if ask is not None else None
            flipped_ask = round(100.0 - bid, 2) if bid is not None else None
            return _quote_pair(self.venue, market_id, None, price, now, flipped_bid, flipped_ask)
        return _quote_pair(self.venue, market_id, price, None, now, bid, ask)

    def parse(self, raw: str | bytes, now: float) -> list[LivePrice]:
        data = json.loads(raw)
        events = data if isinstance(data, list) else [data]
        out: list[LivePrice] = []
        for event in events:
            if not isinstance(event, dict):
                continue
            kind = event.get("event_type") or event.get("type") or ""
            asset_id = str(event.get("asset_id") or "")
            if kind == "book":
                out.extend(self._on_book(event, asset_id, now))
            elif kind == "price_change":
                changes = event.get("price_changes")
                if isinstance(changes, list):
                    for change in changes:
                        change_asset = str(change.get("asset_id") or asset_id)
                        out.extend(self._on_price(event, change_asset, change, now))
                else:
                    out.extend(self._on_price(event, asset_id, event, now))
            elif kind in ("last_trade_price", "price", "price_update"):
                out.extend(self._emit(event, asset_id, to_cents(event.get("price"), scale=100.0), now))
        return out

    def _on_book(self, event: dict, asset_id: str, now: float) -> list[LivePrice]:
        bids = [to_float(level.get("price")) for level in event.get("bids") or []]
        asks = [to_float(level.get("price")) for level in event.get("asks") or []]
        best_bid = max((p for p in bids if p is not None), default=None)
        best_ask = min((p for p in asks if p is not None), default=None)
        bid = to_cents(best_bid, scale=100.0)
        ask = to_cents(best_ask, scale=100.0)
        return self._emit(event, asset_id, derive_price(ask, None, bid), now, bid, ask)

    def _on_price(self, event: dict, asset_id: str, change: dict, now: float) -> list[LivePrice]:
        bid = to_cents(change.get("best_bid"), scale=100.0)
        ask = to_cents(change.get("best_ask"), scale=100.0)
        price = derive_price(ask, None, bid, to_cents(change.get("price"), scale=100.0))
        return self._emit(event, asset_id, price, now, bid, ask)


@dataclass
class LiveFeed:
    """
    One reconnecting WebSocket connection. Subscribed symbols are remembered
    and re-sent after every reconnect. Keepalive pings are sent by the
    websockets client every ``heartbeat_sec``.
    """

    url: str
    protocol: FeedProtocol
    cache: LivePriceCache
    max_reconnect_attempts: int = 10
    reconnect_base_sec: float = 1.0
    reconnect_max_sec: float = 30.0
    heartbeat_sec: float = 30.0
    connect_timeout_sec: float = 10.0
    connector: Callable = connect
    sleep: Callable = asyncio.sleep
    clock: Callable[[], float] = time.time

    _state: ConnectionState = ConnectionState.DISCONNECTED
    _symbols: set[str] = field(default_factory=set)
    _listeners: list[Callable[[ConnectionState, ConnectionState], None]] = field(default_factory=list)
    _ws: object = None
    _task: asyncio.Task | None = None
    _running: bool = False
    _attempts: int = 0
    _messages: int = 0
    _parse_errors: int = 0
    _last_message_time: float = 0.0
    _connected_at: float = 0.0
    _last_error: str = ""

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def symbols(self) -> frozenset[str]:
        return frozenset(self._symbols)

    def on_state_change(self, callback: Callable[[ConnectionState, ConnectionState], None]) -> None:
        """``callback(old, new)`` on every transition."""
        self._listeners.append(callback)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.debug("%s feed: %s -> %s", self.protocol.venue.value, old.value, new.value)
        for callback in list(self._listeners):
            callback(old, new)

    def reconnect_delay(self, attempt: int) -> float:
        return min(self.reconnect_base_sec * (2 ** attempt), self.reconnect_max_sec)

    async def start(self) -> None:
        """Start the connection loop in a background task."""
        if self._running:
            return
        self._running = True
        self._attempts = 0
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def subscribe(self, symbols: Iterable[str]) -> None:
        new = [s for s in symbols if s and s not in self._symbols]
        if not new:
            return
        self._symbols.update(new)
        if self._ws is not None and self._state is ConnectionState.CONNECTED:
            message = self.protocol.subscribe_message(new)
            if message:
                await self._ws.send(message)

    async def unsubscribe(self, symbols: Iterable[str]) -> None:
        gone = [s for s in symbols if s in self._symbols]
        if not gone:
            return
        self._symbols.difference_update(gone)
        message = self.protocol.unsubscribe_message(gone)
        if message and self._ws is not None and self._state is ConnectionState.CONNECTED:
            await self._ws.send(message)

    async def _run_loop(self) -> None:
        while self._running:
            self._set_state(ConnectionState.CONNECTING if self._attempts == 0 else ConnectionState.RECONNECTING)
            try:
                headers = self.protocol.handshake_headers()
                async with self.connector(
                    self.url,
                    additional_headers=headers,
                    open_timeout=self.connect_timeout_sec,
                    ping_interval=self.heartbeat_sec,
                ) as ws:
                    self._ws = ws
                    self._attempts = 0
                    self._connected_at = self.clock()
                    self.protocol.reset()
                    self._set_state(ConnectionState.CONNECTED)
                    logger.info("%s feed connected to %s", self.protocol.venue.value, self.url)

                    message = self.protocol.subscribe_message(sorted(self._symbols))
                    if message:
                        await ws.send(message)

                    async for raw in ws:
                        if not self._running:
                            break
                        self._handle_message(raw)
            except SigningError as e:
                self._last_error = f"SigningError: {e}"
                logger.error("%s feed cannot sign handshake: %s", self.protocol.venue.value, e)
                self._running = False
                self._set_state(ConnectionState.ERROR)
                return
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                self._last_error = f"{type(e).__name__}: {e}"
            except Exception as e:
                # Anything else (a protocol bug, a bad frame handler) still reconnects
                self._last_error = f"{type(e).__name__}: {e}"
                logger.error("%s feed failed unexpectedly", self.protocol.venue.value, exc_info=True)
            finally:
                self._ws = None

            if not self._running:
                break
            if self._attempts >= self.max_reconnect_attempts:
                logger.error(
                    "%s feed gave up after %d reconnect attempts. Last error: %s",
                    self.protocol.venue.value, self._attempts, self._last_error or "closed",
                )
                self._running = False
                self._set_state(ConnectionState.ERROR)
                return

            delay = self.reconnect_delay(self._attempts)
            self._attempts += 1
            self._set_state(ConnectionState.RECONNECTING)
            logger.warning(
                "%s feed disconnected (attempt %d/%d), retry in %.1fs: %s",
                self.protocol.venue.value, self._attempts, self.max_reconnect_attempts,
                delay, self._last_error or "closed",
            )
            await self.sleep(delay)

    def _handle_message(self, raw: str | bytes) -> None:
        now = self.clock()
        self._messages += 1
        self._last_message_time = now
        try:
            prices = self.protocol.parse(raw, now)
        except (ValueError, TypeError, KeyError, IndexError) as e:
            self._parse_errors += 1
            logger.warning("Unparseable %s WS message (%s): %.200s", self.protocol.venue.value, e, raw)
            return
        for price in prices:
            self.cache.update(price)

    def status(self) -> dict:
        return {
            "venue": self.protocol.venue.value,
            "state": self._state.value,
            "symbols": len(self._symbols),
            "messages": self._messages,
            "parse_errors": self._parse_errors,
            "reconnect_attempts": self._attempts,
            "last_message_age_sec": (
                round(self.clock() - self._last_message_time, 3) if self._last_message_time else None
            ),
            "last_error": self._last_error,
        }


class LiveFeedBridge:
    """
    Synchronous facade over LiveFeeds. Runs them on a daemon thread with
    its own event loop; the main loop reads the shared LivePriceCache.
    """

    def __init__(self, feeds: Iterable[LiveFeed]) -> None:
        self.feeds: dict[Venue, LiveFeed] = {feed.protocol.venue: feed for feed in feeds}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._ready.clear()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="live-feeds")
        self._thread.start()
        self._ready.wait(timeout=5.0)
        logger.info("Live feeds started: %s", ", ".join(v.value for v in self.feeds))

    def _run_loop(self) -> None:
        loop = self._loop
        asyncio.set_event_loop(loop)
        for feed in self.feeds.values():
            loop.run_until_complete(feed.start())
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            loop.close()

    def subscribe(self, venue: Venue, symbols: Iterable[str]) -> None:
        feed = self.feeds.get(venue)
        if feed is None or self._loop is None or not self.running:
            return
        asyncio.run_coroutine_threadsafe(feed.subscribe(list(symbols)), self._loop)

    def stop(self, timeout: float = 5.0) -> None:
        if not self.running or self._loop is None:
            return
        stops = [asyncio.run_coroutine_threadsafe(feed.stop(), self._loop) for feed in self.feeds.values()]
        for future in stops:
            try:
                future.result(timeout=timeout)
            except (TimeoutError, asyncio.CancelledError) as e:
                logger.warning("Live feed did not stop cleanly: %s", e)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=timeout)
        logger.info("Live feeds stopped")

    def status(self) -> list[dict]:
        return [feed.status() for feed in self.feeds.values()]


def apply_live_prices(
    markets: Iterable[Market],
    cache: LivePriceCache,
    max_age_sec: float,
) -> list[Market]:
    """
    Overlay fresh WebSocket quotes on REST-fetched prediction markets.
    Markets without a fresh quote pass through unchanged.
    """
    out: list[Market] = []
    overlaid = 0
    for market in markets:
        if market.market_type is not MarketType.PREDICTION:
            out.append(market)
            continue
        live = cache.prices_for(market.venue, market.market_id, max_age_sec)
        if not live:
            out.append(market)
            continue
        yes_entry, no_entry = live.get(Side.YES), live.get(Side.NO)
        sides = complete_sides(
            yes_entry.price if yes_entry else None,
            no_entry.price if no_entry else None,
        )
        yes_price, no_price = sides
        timestamp = min(e.timestamp for e in live.values())
        out.append(replace(
            market,
            yes_price=yes_price,
            no_price=no_price,
            yes_bid=yes_entry.bid if yes_entry and yes_entry.bid is not None else market.yes_bid,
            yes_ask=yes_entry.ask if yes_entry and yes_entry.ask is not None else market.yes_ask,
            fetched_at=max(market.fetched_at, timestamp),
        ))
        overlaid += 1
    if overlaid:
        logger.debug("Applied live prices to %d markets", overlaid)
    return out
