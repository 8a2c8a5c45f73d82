"""
Data models for the cross-venue pipeline. Pure data, minimal behavior.
"""

from __future__ import annotations

import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Any

from client.payload import parse_timestamp


class Venue(Enum):
    KALSHI = "kalshi"
    POLYMARKET = "polymarket"
    SXBET = "sxbet"


class MarketType(Enum):
    PREDICTION = "prediction"  # probability cents 0-100
    SPORTSBOOK = "sportsbook"  # decimal odds


class Side(Enum):
    YES = "yes"
    NO = "no"

    @property
    def opposite(self) -> Side:
        return Side.NO if self is Side.YES else Side.YES


class Lifecycle(Enum):
    PRE = "PRE"
    LIVE = "LIVE"
    ENDED = "ENDED"


@dataclass(frozen=True)
class Market:
    """
    Canonical listing. For PREDICTION markets yes_price/no_price are cents
    (0-100); for SPORTSBOOK markets they are decimal odds on outcome one
    (yes) and outcome two (no).
    """

    venue: Venue
    market_id: str
    title: str
    market_type: MarketType
    yes_price: float
    no_price: float
    expiry_date: str  # ISO 8601
    ticker: str = ""
    volume: float = 0.0
    event_ticker: str = ""
    series_ticker: str = ""
    start_time: str = ""  # ISO 8601, empty = unknown
    status: str = ""
    sport: str = ""
    yes_bid: float | None = None
    yes_ask: float | None = None
    yes_label: str = ""
    no_label: str = ""
    yes_token_id: str = ""  # venue asset id streaming the YES side
    fetched_at: float = field(default_factory=time.time)

    @property
    def expiry_ts(self) -> float | None:
        return parse_timestamp(self.expiry_date)

    @property
    def start_ts(self) -> float | None:
        return parse_timestamp(self.start_time) if self.start_time else None

    def price_for(self, side: Side) -> float:
        return self.yes_price if side is Side.YES else self.no_price

    def label_for(self, side: Side) -> str:
        return self.yes_label if side is Side.YES else self.no_label

    def quote_for(self, side: Side) -> tuple[float | None, float | None]:
        """(bid, ask) in cents for buying ``side``. NO mirrors the YES book."""
        if self.market_type is MarketType.SPORTSBOOK:
            return None, None
        if side is Side.YES:
            return self.yes_bid, self.yes_ask
        bid = 100.0 - self.yes_ask if self.yes_ask is not None else None
        ask = 100.0 - self.yes_bid if self.yes_bid is not None else None
        return bid, ask

    def implied_probability(self, side: Side) -> float:
        """Probability in [0, 1] implied by the quoted price on one side."""
        price = self.price_for(side)
        if self.market_type is MarketType.SPORTSBOOK:
            return 1.0 / price if price > 0 else 0.0
        return price / 100.0

    def to_record(self) -> dict[str, Any]:
        """Serialize to the camelCase snapshot market shape."""
        return {
            "id": self.market_id,
            "platform": self.venue.value,
            "ticker": self.ticker,
            "title": self.title,
            "marketType": self.market_type.value,
            "yesPrice": self.yes_price,
            "noPrice": self.no_price,
            "volume": self.volume,
            "expiryDate": self.expiry_date,
            "eventTicker": self.event_ticker,
            "seriesTicker": self.series_ticker,
            "startTime": self.start_time,
            "status": self.status,
            "sport": self.sport,
            "yesBid": self.yes_bid,
            "yesAsk": self.yes_ask,
            "yesLabel": self.yes_label,
            "noLabel": self.no_label,
            "yesTokenId": self.yes_token_id,
            "fetchedAt": self.fetched_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Market:
        return cls(
            venue=Venue(record["platform"]),
            market_id=str(record["id"]),
            title=record.get("title", ""),
            market_type=MarketType(record.get("marketType", MarketType.PREDICTION.value)),
            yes_price=float(record["yesPrice"]),
            no_price=float(record["noPrice"]),
            expiry_date=record["expiryDate"],
            ticker=record.get("ticker", ""),
            volume=float(record.get("volume") or 0.0),
            event_ticker=record.get("eventTicker", ""),
            series_ticker=record.get("seriesTicker", ""),
            start_time=record.get("startTime", ""),
            status=record.get("status", ""),
            sport=record.get("sport", ""),
            yes_bid=record.get("yesBid"),
            yes_ask=record.get("yesAsk"),
            yes_label=record.get("yesLabel", ""),
            no_label=record.get("noLabel", ""),
            yes_token_id=record.get("yesTokenId", ""),
            fetched_at=float(record.get("fetchedAt") or time.time()),
        )


@dataclass(frozen=True)
class VendorEvent:
    """A venue's notion of one real-world occurrence."""

    venue: Venue
    event_id: str
    raw_title: str
    normalized_title: str
    tokens: frozenset[str]
    sport: str = ""
    status: Lifecycle = Lifecycle.PRE
    start_ts: float | None = None
    close_ts: float | None = None
    home_team: str = ""
    away_team: str = ""
    market_ids: tuple[str, ...] = ()

    @property
    def anchor_ts(self) -> float | None:
        """Start time when known, else close time."""
        return self.start_ts if self.start_ts is not None else self.close_ts


@dataclass(frozen=True)
class MatchedGroup:
    """Same-event listings spanning two or more venues. Derived per cycle."""

    event_key: str
    sport: str
    status: Lifecycle
    members: tuple[VendorEvent, ...]
    quality: float = 0.0

    @property
    def venues(self) -> tuple[Venue, ...]:
        return tuple(m.venue for m in self.members)

    def member_for(self, venue: Venue) -> VendorEvent | None:
        for member in self.members:
            if member.venue is venue:
                return member
        return None


@dataclass(frozen=True)
class ArbLeg:
    venue: Venue
    market_id: str
    title: str
    side: Side
    market_type: MarketType
    price: float  # cents or decimal odds
    stake: float  # USD cost of this leg
    fee: float
    volume: float = 0.0
    fetched_at: float = 0.0
    bid: float | None = None  # cents, None when the venue shows no book
    ask: float | None = None

    @property
    def implied_probability(self) -> float:
        if self.market_type is MarketType.SPORTSBOOK:
            return 1.0 / self.price if self.price > 0 else 0.0
        return self.price / 100.0


@dataclass(frozen=True)
class ArbitrageOpportunity:
    """Two hedged legs locking in the same payout whichever side wins."""

    group_key: str
    legs: tuple[ArbLeg, ...]
    target_payout: float
    total_cost: float
    gross_profit: float
    total_fees: float
    net_profit: float
    profit_margin: float  # percent of total cost
    sport: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def profit_bps(self) -> float:
        return self.profit_margin * 100.0

    @property
    def combined_implied_probability(self) -> float:
        return sum(leg.implied_probability for leg in self.legs)

    def price_age_ms(self, now: float | None = None) -> float:
        """Age of the oldest quote backing this opportunity."""
        if now is None:
            now = time.time()
        oldest = min((leg.fetched_at for leg in self.legs), default=now)
        return max(0.0, (now - oldest) * 1000.0)

    def stakes_for(self, payout: float) -> tuple[float, ...]:
        """Leg stakes rescaled so every leg still pays exactly ``payout``."""
        if self.target_payout <= 0:
            return tuple(0.0 for _ in self.legs)
        scale = payout / self.target_payout
        return tuple(round(leg.stake * scale, 2) for leg in self.legs)


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one venue refresh. Never raises past the client boundary."""

    venue: Venue
    markets: tuple[Market, ...] = ()
    skipped: str | None = None
    error: str | None = None
    stats: dict[str, int] = field(default_factory=dict)
    fetched_at: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.skipped is None and self.error is None
