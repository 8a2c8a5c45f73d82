"""
Two-leg arbitrage across probability-cents and decimal-odds markets.

Every combination locks in the same payout whichever side wins:
  - probability-cents leg: cost = price / 100 * payout (one share pays $1)
  - decimal-odds leg:      cost = payout / odds

Fees follow each venue's schedule (see scanner.fees). Up-front fees are
paid on both legs; profit-only fees are charged on the winning leg, so the
worse of the two is assumed.

Markets pair only when they settle on the same proposition: both winner
markets, or spreads or totals at the same line.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Iterable

from scanner.fees import DEFAULT_SCHEDULES, FeeSchedule, schedule_for
from scanner.models import (
    ArbitrageOpportunity,
    ArbLeg,
    Market,
    MarketType,
    MatchedGroup,
    Side,
    Venue,
)
from scanner.normalize import normalize_title, same_proposition, score_token_overlap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LegQuote:
    """One side of one market, priced for a target payout."""

    market: Market
    side: Side
    cost: float
    contracts: float
    probability: float


def leg_cost(market: Market, side: Side, payout: float) -> LegQuote | None:
    """Cost of ``payout`` dollars on one side. None when the quote is unusable."""
    price = market.price_for(side)
    if market.market_type is MarketType.SPORTSBOOK:
        if price <= 1.0:
            return None
        return LegQuote(market, side, payout / price, payout / price, 1.0 / price)
    if not 0 < price < 100:
        return None
    return LegQuote(market, side, price / 100.0 * payout, payout, price / 100.0)


def _generic_label(label: str) -> bool:
    return label.strip().lower() in ("", "yes", "no")


def outcomes_flipped(a: Market, b: Market) -> bool | None:
    """
    Whether B's YES names the outcome that is A's NO.

    False when labels line up or are absent, True when they are swapped,
    None when the labels describe unrelated propositions.
    """
    if _generic_label(a.yes_label) or (_generic_label(b.yes_label) and _generic_label(b.no_label)):
        return False
    a_yes = normalize_title(a.yes_label).tokens
    same = score_token_overlap(a_yes, normalize_title(b.yes_label).tokens).overlap
    other = score_token_overlap(a_yes, normalize_title(b.no_label).tokens).overlap
    if same == 0 and other == 0:
        return None
    return other > same


class ArbitrageEngine:
    """Best fee-adjusted, equal-payout combination per market pair or group."""

    def __init__(
        self,
        fee_schedules: dict[Venue, FeeSchedule] | None = None,
        target_payout: float = 100.0,
        min_margin_pct: float = 0.0,
    ) -> None:
        self.fee_schedules = dict(DEFAULT_SCHEDULES)
        if fee_schedules:
            self.fee_schedules.update(fee_schedules)
        self.target_payout = target_payout
        self.min_margin_pct = min_margin_pct

    def combinations(self, a: Market, b: Market, flipped: bool = False) -> list[tuple[Side, Side]]:
        """Complementary (side on A, side on B) pairs."""
        if flipped:
            return [(Side.YES, Side.YES), (Side.NO, Side.NO)]
        return [(Side.YES, Side.NO), (Side.NO, Side.YES)]

    def evaluate_combination(
        self,
        a: Market,
        side_a: Side,
        b: Market,
        side_b: Side,
        group_key: str = "",
        sport: str = "",
        now: float | None = None,
    ) -> ArbitrageOpportunity | None:
        payout = self.target_payout
        quote_a = leg_cost(a, side_a, payout)
        quote_b = leg_cost(b, side_b, payout)
        if quote_a is None or quote_b is None:
            return None

        legs: list[ArbLeg] = []
        upfront_total = 0.0
        profit_fees: list[float] = []
        for quote in (quote_a, quote_b):
            schedule = schedule_for(quote.market, self.fee_schedules)
            upfront = schedule.upfront_fee(quote.cost, quote.contracts, quote.probability)
            on_win = schedule.profit_fee(quote.cost, payout)
            upfront_total += upfront
            profit_fees.append(on_win)
            bid, ask = quote.market.quote_for(quote.side)
            legs.append(ArbLeg(
                venue=quote.market.venue,
                market_id=quote.market.market_id,
                title=quote.market.title,
                side=quote.side,
                market_type=quote.market.market_type,
                price=quote.market.price_for(quote.side),
                stake=round(quote.cost, 2),
                fee=round(upfront + on_win, 2),
                volume=quote.market.volume,
                fetched_at=quote.market.fetched_at,
                bid=bid,
                ask=ask,
            ))

        total_cost = quote_a.cost + quote_b.cost
        gross = payout - total_cost
        total_fees = upfront_total + max(profit_fees)
        net = gross - total_fees
        margin = net / total_cost * 100.0 if total_cost > 0 else 0.0
        return ArbitrageOpportunity(
            group_key=group_key or f"{a.market_id}|{b.market_id}",
            legs=tuple(legs),
            target_payout=payout,
            total_cost=round(total_cost, 2),
            gross_profit=round(gross, 2),
            total_fees=round(total_fees, 2),
            net_profit=round(net, 2),
            profit_margin=round(margin, 4),
            sport=sport or a.sport or b.sport,
            timestamp=now if now is not None else time.time(),
        )

    def evaluate_pair(
        self,
        a: Market,
        b: Market,
        group_key: str = "",
        sport: str = "",
        now: float | None = None,
    ) -> ArbitrageOpportunity | None:
        """Highest-margin combination clearing the threshold, else None."""
        if a.venue is b.venue:
            return None
        if not same_proposition(a.title, b.title, a.ticker, b.ticker):
            return None
        flipped = outcomes_flipped(a, b)
        if flipped is None:
            return None
        best: ArbitrageOpportunity | None = None
        for side_a, side_b in self.combinations(a, b, flipped):
            opp = self.evaluate_combination(a, side_a, b, side_b, group_key, sport, now)
            if opp is None or opp.net_profit <= 0 or opp.profit_margin < self.min_margin_pct:
                continue
            if best is None or opp.profit_margin > best.profit_margin:
                best = opp
        return best

    def evaluate_group(
        self,
        group: MatchedGroup,
        markets_by_id: dict[tuple[Venue, str], Market],
        now: float | None = None,
    ) -> ArbitrageOpportunity | None:
        """Best opportunity over every cross-venue market pair in the group."""
        per_venue: list[list[Market]] = []
        for member in group.members:
            found = [markets_by_id[(member.venue, mid)] for mid in member.market_ids if (member.venue, mid) in markets_by_id]
            if found:
                per_venue.append(found)
        best: ArbitrageOpportunity | None = None
        for left, right in itertools.combinations(per_venue, 2):
            for a in left:
                for b in right:
                    opp = self.evaluate_pair(a, b, group.event_key, group.sport, now)
                    if opp is not None and (best is None or opp.profit_margin > best.profit_margin):
                        best = opp
        return best

    def scan(
        self,
        groups: Iterable[MatchedGroup],
        markets: Iterable[Market],
        now: float | None = None,
    ) -> list[ArbitrageOpportunity]:
        """One best opportunity per group, highest margin first."""
        markets_by_id = {(m.venue, m.market_id): m for m in markets}
        found: list[ArbitrageOpportunity] = []
        for group in groups:
            opp = self.evaluate_group(group, markets_by_id, now)
            if opp is not None:
                found.append(opp)
        found.sort(key=lambda o: o.profit_margin, reverse=True)
        if found:
            logger.info(
                "Arbitrage: %d opportunities, best %.2f%% on %s",
                len(found), found[0].profit_margin, found[0].group_key,
            )
        return found
