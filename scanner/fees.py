"""
Per-venue fee schedules.

Fee shapes by venue:
  - NOTIONAL:  rate * leg cost + flat, paid whether the leg wins or not
  - PARABOLIC: ceil(rate * C * P * (1 - P) * 100) / 100, paid up front
               (Kalshi taker fee; C = contracts, P = price 0-1)
  - PROFIT:    rate * (payout - cost), charged only if the leg wins
  - NONE:      SX.bet
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from scanner.models import Market, Venue


class FeeKind(Enum):
    NOTIONAL = "notional"
    PARABOLIC = "parabolic"
    PROFIT = "profit"
    NONE = "none"


KALSHI_FEE_FACTOR = 0.07
# S&P / Nasdaq index markets pay half
KALSHI_INDEX_FEE_FACTOR = 0.035
KALSHI_MAKER_FEE_FACTOR = 0.0175
_KALSHI_INDEX_PREFIXES = ("INX", "NASDAQ100")


def _ceil_cents(amount: float) -> float:
    # Guard against 0.07 * 100 style float noise pushing a whole cent up
    return math.ceil(round(amount * 100, 6)) / 100.0


@dataclass(frozen=True)
class FeeSchedule:
    kind: FeeKind = FeeKind.NONE
    rate: float = 0.0
    flat: float = 0.0

    @property
    def profit_only(self) -> bool:
        return self.kind is FeeKind.PROFIT

    def upfront_fee(self, cost: float, contracts: float, price_prob: float) -> float:
        """Fee paid regardless of outcome, in dollars."""
        if self.kind is FeeKind.NOTIONAL:
            return _ceil_cents(self.rate * cost + self.flat)
        if self.kind is FeeKind.PARABOLIC:
            p = max(0.0, min(1.0, price_prob))
            return _ceil_cents(self.rate * contracts * p * (1 - p) + self.flat)
        return self.flat

    def profit_fee(self, cost: float, payout: float) -> float:
        """Fee charged only when this leg wins, in dollars."""
        if self.kind is not FeeKind.PROFIT:
            return 0.0
        return round(self.rate * max(0.0, payout - cost), 6)


DEFAULT_SCHEDULES: dict[Venue, FeeSchedule] = {
    Venue.KALSHI: FeeSchedule(FeeKind.PARABOLIC, KALSHI_FEE_FACTOR),
    Venue.POLYMARKET: FeeSchedule(FeeKind.NOTIONAL, 0.02, flat=0.02),
    Venue.SXBET: FeeSchedule(FeeKind.NONE),
}


def kalshi_fee_factor(ticker: str, maker: bool = False) -> float:
    if maker:
        return KALSHI_MAKER_FEE_FACTOR
    if (ticker or "").upper().startswith(_KALSHI_INDEX_PREFIXES):
        return KALSHI_INDEX_FEE_FACTOR
    return KALSHI_FEE_FACTOR


def schedule_for(market: Market, schedules: dict[Venue, FeeSchedule]) -> FeeSchedule:
    """Venue schedule, with Kalshi's reduced rate for index markets."""
    schedule = schedules.get(market.venue, FeeSchedule())
    if market.venue is Venue.KALSHI and schedule.kind is FeeKind.PARABOLIC:
        factor = kalshi_fee_factor(market.ticker)
        if factor != KALSHI_FEE_FACTOR:
            return FeeSchedule(FeeKind.PARABOLIC, schedule.rate * factor / KALSHI_FEE_FACTOR, schedule.flat)
    return schedule
