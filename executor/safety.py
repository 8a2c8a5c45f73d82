"""
Pre-execution safety gate and circuit breaker.

Six independent checks run on every opportunity. Only CRITICAL failures
block; WARNING results pass through and are surfaced in the report.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from scanner.models import ArbitrageOpportunity, ArbLeg, MarketType

logger = logging.getLogger(__name__)

_PRICE_AGE_WARN_FRACTION = 0.8
_SLIPPAGE_WARN_FRACTION = 0.7
_SUSTAINED_SKEW_MIN_SAMPLES = 5
_SUSTAINED_SKEW_FRACTION = 0.7
# One cent on a $1 contract
_BPS_PER_CENT = 100.0


class CircuitBreakerTripped(Exception):
    """Raised when execution is attempted while the breaker is open."""
    pass


class SafetyCheckFailed(Exception):
    """Raised when a pre-execution safety check blocks an opportunity."""
    pass


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    severity: Severity = Severity.INFO
    reason: str = ""


@dataclass(frozen=True)
class SafetyReport:
    overall_passed: bool
    checks: tuple[CheckResult, ...]
    blockers: tuple[str, ...]
    warnings: tuple[str, ...]

    def check(self, name: str) -> CheckResult | None:
        for result in self.checks:
            if result.name == name:
                return result
        return None


@dataclass(frozen=True)
class CircuitBreakerState:
    state: BreakerState
    consecutive_failures: int
    open_reason: str = ""
    opened_at: float | None = None
    closes_at: float | None = None


@dataclass
class CircuitBreaker:
    """
    Opens after N consecutive execution failures. Closes lazily once the
    cooldown has elapsed, or on manual reset. Any success resets the count.
    """

    max_consecutive_failures: int = 3
    cooldown_sec: float = 300.0
    clock: Callable[[], float] = time.time

    _state: BreakerState = BreakerState.CLOSED
    _consecutive_failures: int = 0
    _open_reason: str = ""
    _opened_at: float | None = None

    def _refresh(self) -> None:
        if self._state is BreakerState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.cooldown_sec:
                logger.info("Circuit breaker cooled down after %.0fs, closing", self.cooldown_sec)
                self._close()

    def _close(self) -> None:
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._open_reason = ""
        self._opened_at = None

    @property
    def is_open(self) -> bool:
        self._refresh()
        return self._state is BreakerState.OPEN

    @property
    def consecutive_failures(self) -> int:
        self._refresh()
        return self._consecutive_failures

    def record_execution(self, success: bool, error: str = "") -> None:
        """Feed one execution outcome into the breaker."""
        self._refresh()
        if success:
            self._consecutive_failures = 0
            return
        self._consecutive_failures += 1
        logger.warning(
            "Execution failure %d/%d: %s",
            self._consecutive_failures, self.max_consecutive_failures, error or "unknown",
        )
        if self._state is BreakerState.CLOSED and self._consecutive_failures >= self.max_consecutive_failures:
            self.trip(f"{self._consecutive_failures} consecutive failures" + (f" (last: {error})" if error else ""))

    def trip(self, reason: str) -> None:
        self._state = BreakerState.OPEN
        self._open_reason = reason
        self._opened_at = self.clock()
        logger.error("Circuit breaker OPEN: %s", reason)

    def reset(self) -> None:
        """Manual close."""
        if self._state is BreakerState.OPEN:
            logger.info("Circuit breaker manually reset")
        self._close()

    def ensure_closed(self) -> None:
        """Raise CircuitBreakerTripped while the breaker is open."""
        if self.is_open:
            raise CircuitBreakerTripped(f"Circuit breaker open: {self._open_reason}")

    def state(self) -> CircuitBreakerState:
        self._refresh()
        closes_at = self._opened_at + self.cooldown_sec if self._opened_at is not None else None
        return CircuitBreakerState(
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            open_reason=self._open_reason,
            opened_at=self._opened_at,
            closes_at=closes_at,
        )


@dataclass
class SafetyGate:
    """All-must-pass checks over an ArbitrageOpportunity."""

    breaker: CircuitBreaker
    max_price_age_ms: float = 2000.0
    max_slippage_bps: float = 100.0
    min_profit_bps: float = 25.0
    min_liquidity_usd: float = 10.0
    max_platform_skew_pct: float = 20.0
    skew_window_sec: float = 30.0
    sportsbook_spread_bps: float = 50.0
    clock: Callable[[], float] = time.time

    _skew_samples: deque = field(default_factory=deque)
    stats: dict = field(default_factory=lambda: {
        "checks_performed": 0,
        "passed": 0,
        "failed": 0,
        "failures_by_reason": {},
        "last_blocked": None,
    })

    # -- Individual checks --

    def check_price_age(self, opp: ArbitrageOpportunity, now: float) -> CheckResult:
        age = opp.price_age_ms(now)
        if age > self.max_price_age_ms:
            return CheckResult("price_age", False, Severity.CRITICAL,
                               f"price data {age:.0f}ms old (max {self.max_price_age_ms:.0f}ms)")
        if age >= self.max_price_age_ms * _PRICE_AGE_WARN_FRACTION:
            return CheckResult("price_age", True, Severity.WARNING, f"price data aging: {age:.0f}ms")
        return CheckResult("price_age", True)

    def _leg_slippage_bps(self, leg: ArbLeg, quotes: dict[str, tuple[float | None, float | None]]) -> float:
        if leg.market_type is MarketType.SPORTSBOOK:
            return self.sportsbook_spread_bps
        bid, ask = quotes.get(leg.market_id, (leg.bid, leg.ask))
        if bid is None or ask is None or ask < bid:
            return self.sportsbook_spread_bps
        return (ask - bid) / 2.0 * _BPS_PER_CENT

    def check_slippage(
        self,
        opp: ArbitrageOpportunity,
        quotes: dict[str, tuple[float | None, float | None]] | None = None,
    ) -> CheckResult:
        """Half-spread per leg as the slippage estimate; the worst leg counts."""
        quotes = quotes or {}
        worst = max((self._leg_slippage_bps(leg, quotes) for leg in opp.legs), default=0.0)
        if worst > self.max_slippage_bps:
            return CheckResult("slippage", False, Severity.CRITICAL,
                               f"estimated slippage {worst:.0f}bps (max {self.max_slippage_bps:.0f}bps)")
        if worst >= self.max_slippage_bps * _SLIPPAGE_WARN_FRACTION:
            return CheckResult("slippage", True, Severity.WARNING, f"slippage near limit: {worst:.0f}bps")
        return CheckResult("slippage", True)

    def check_circuit_breaker(self) -> CheckResult:
        state = self.breaker.state()
        if state.state is BreakerState.OPEN:
            return CheckResult("circuit_breaker", False, Severity.CRITICAL,
                               f"circuit breaker open: {state.open_reason}")
        if state.consecutive_failures > 0:
            return CheckResult("circuit_breaker", True, Severity.WARNING,
                               f"{state.consecutive_failures} recent execution failure(s)")
        return CheckResult("circuit_breaker", True)

    def check_liquidity(self, opp: ArbitrageOpportunity) -> CheckResult:
        # Zero volume means the venue reported none, not an empty market
        known = [leg.volume for leg in opp.legs if leg.volume > 0]
        if not known:
            return CheckResult("liquidity", True, Severity.WARNING, "no volume data on any leg")
        smallest = min(known)
        if smallest < self.min_liquidity_usd:
            return CheckResult("liquidity", False, Severity.CRITICAL,
                               f"leg volume {smallest:.2f} below {self.min_liquidity_usd:.2f}")
        unknown = [leg.venue.value for leg in opp.legs if leg.volume <= 0]
        if unknown:
            return CheckResult("liquidity", True, Severity.WARNING, f"no volume data on {', '.join(unknown)}")
        return CheckResult("liquidity", True)

    def check_profit_margin(self, opp: ArbitrageOpportunity) -> CheckResult:
        if opp.profit_bps < self.min_profit_bps:
            return CheckResult("profit_margin", False, Severity.CRITICAL,
                               f"margin {opp.profit_bps:.1f}bps below {self.min_profit_bps:.1f}bps")
        return CheckResult("profit_margin", True)

    def check_data_consistency(self, opp: ArbitrageOpportunity, now: float) -> CheckResult:
        """
        Combined implied probability of a hedge should sit near 100%. Large
        skew, or moderate skew that persists, points at bad data.
        """
        skew = abs(1.0 - opp.combined_implied_probability) * 100.0
        self._skew_samples.append((now, skew))
        cutoff = now - self.skew_window_sec
        while self._skew_samples and self._skew_samples[0][0] < cutoff:
            self._skew_samples.popleft()

        if skew > self.max_platform_skew_pct:
            return CheckResult("data_consistency", False, Severity.CRITICAL,
                               f"cross-venue skew {skew:.1f}% (max {self.max_platform_skew_pct:.1f}%)")
        if len(self._skew_samples) >= _SUSTAINED_SKEW_MIN_SAMPLES:
            avg = sum(s for _, s in self._skew_samples) / len(self._skew_samples)
            if avg > self.max_platform_skew_pct * _SUSTAINED_SKEW_FRACTION:
                return CheckResult("data_consistency", False, Severity.WARNING,
                                   f"sustained skew {avg:.1f}% over {len(self._skew_samples)} samples")
        return CheckResult("data_consistency", True)

    # -- Gate --

    def check(
        self,
        opp: ArbitrageOpportunity,
        quotes: dict[str, tuple[float | None, float | None]] | None = None,
    ) -> SafetyReport:
        """
        Run every check. ``quotes`` maps market id to (bid, ask) cents for
        the side being bought, when fresher than the quote carried on the leg.
        """
        now = self.clock()
        checks = (
            self.check_price_age(opp, now),
            self.check_slippage(opp, quotes),
            self.check_circuit_breaker(),
            self.check_liquidity(opp),
            self.check_profit_margin(opp),
            self.check_data_consistency(opp, now),
        )
        blockers = tuple(f"{c.name}: {c.reason}" for c in checks if not c.passed and c.severity is Severity.CRITICAL)
        warnings = tuple(f"{c.name}: {c.reason}" for c in checks if c.severity is Severity.WARNING)
        report = SafetyReport(
            overall_passed=not blockers,
            checks=checks,
            blockers=blockers,
            warnings=warnings,
        )
        self._record(opp, report, now)
        return report

    def enforce(
        self,
        opp: ArbitrageOpportunity,
        quotes: dict[str, tuple[float | None, float | None]] | None = None,
    ) -> SafetyReport:
        """check() that raises SafetyCheckFailed when any critical check fails."""
        report = self.check(opp, quotes)
        if not report.overall_passed:
            raise SafetyCheckFailed("; ".join(report.blockers))
        return report

    def _record(self, opp: ArbitrageOpportunity, report: SafetyReport, now: float) -> None:
        self.stats["checks_performed"] += 1
        if report.overall_passed:
            self.stats["passed"] += 1
            return
        self.stats["failed"] += 1
        by_reason = self.stats["failures_by_reason"]
        for result in report.checks:
            if not result.passed and result.severity is Severity.CRITICAL:
                by_reason[result.name] = by_reason.get(result.name, 0) + 1
        self.stats["last_blocked"] = {
            "group_key": opp.group_key,
            "blockers": list(report.blockers),
            "timestamp": now,
        }
        logger.info("Blocked %s: %s", opp.group_key, "; ".join(report.blockers))
