"""
Unit tests for executor/safety.py -- safety gate and circuit breaker.
"""

import pytest

from executor.safety import (
    BreakerState,
    CircuitBreaker,
    CircuitBreakerTripped,
    SafetyCheckFailed,
    SafetyGate,
    Severity,
)
from scanner.models import ArbitrageOpportunity, ArbLeg, MarketType, Side, Venue

NOW = 1736965800.0


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def _opp(poly_price=40.0, sx_odds=2.10, fetched_at=NOW, poly_volume=500.0, sx_volume=800.0, margin=9.337,
         poly_bid=None, poly_ask=None):
    legs = (
        ArbLeg(Venue.POLYMARKET, "0xpoly", "Lakers vs. Celtics", Side.YES, MarketType.PREDICTION,
               poly_price, 40.0, 4.2, volume=poly_volume, fetched_at=fetched_at, bid=poly_bid, ask=poly_ask),
        ArbLeg(Venue.SXBET, "0xsx", "Lakers vs Celtics", Side.NO, MarketType.SPORTSBOOK,
               sx_odds, 47.62, 0.0, volume=sx_volume, fetched_at=fetched_at),
    )
    return ArbitrageOpportunity(
        group_key="nba:celtics_lakers:2025-01-15",
        legs=legs,
        target_payout=100.0,
        total_cost=87.62,
        gross_profit=12.38,
        total_fees=4.2,
        net_profit=8.18,
        profit_margin=margin,
        sport="NBA",
        timestamp=NOW,
    )


def _gate(clock=None, **kwargs):
    clock = clock or FakeClock()
    breaker = CircuitBreaker(clock=clock)
    return SafetyGate(breaker=breaker, clock=clock, **kwargs)


class TestCircuitBreaker:
    def test_trips_after_consecutive_failures(self):
        breaker = CircuitBreaker(max_consecutive_failures=3, clock=FakeClock())
        breaker.record_execution(False, "timeout")
        breaker.record_execution(False, "timeout")
        assert not breaker.is_open
        breaker.record_execution(False, "rejected")
        assert breaker.is_open
        state = breaker.state()
        assert state.state is BreakerState.OPEN
        assert "3 consecutive failures" in state.open_reason
        assert state.closes_at == NOW + 300.0
        with pytest.raises(CircuitBreakerTripped):
            breaker.ensure_closed()

    def test_success_resets_count(self):
        breaker = CircuitBreaker(max_consecutive_failures=3, clock=FakeClock())
        breaker.record_execution(False)
        breaker.record_execution(False)
        breaker.record_execution(True)
        breaker.record_execution(False)
        assert breaker.consecutive_failures == 1
        assert not breaker.is_open

    def test_auto_closes_after_cooldown(self):
        clock = FakeClock()
        breaker = CircuitBreaker(max_consecutive_failures=1, cooldown_sec=60.0, clock=clock)
        breaker.record_execution(False)
        clock.now += 59.0
        assert breaker.is_open
        clock.now += 1.0
        assert not breaker.is_open
        assert breaker.consecutive_failures == 0
        breaker.ensure_closed()

    def test_manual_trip_and_reset(self):
        breaker = CircuitBreaker(clock=FakeClock())
        breaker.trip("operator halt")
        assert breaker.state().open_reason == "operator halt"
        breaker.reset()
        assert breaker.state().state is BreakerState.CLOSED


class TestSafetyGate:
    def test_clean_opportunity_passes(self):
        gate = _gate()
        report = gate.check(_opp())
        assert report.overall_passed
        assert report.blockers == ()
        assert [c.name for c in report.checks] == [
            "price_age", "slippage", "circuit_breaker", "liquidity", "profit_margin", "data_consistency",
        ]
        assert gate.stats["passed"] == 1

    def test_stale_price_blocks_regardless_of_margin(self):
        gate = _gate()
        report = gate.check(_opp(fetched_at=NOW - 5.0, margin=40.0))
        assert not report.overall_passed
        assert report.check("price_age").severity is Severity.CRITICAL
        assert report.blockers[0].startswith("price_age: price data 5000ms old")

    def test_aging_price_warns(self):
        report = _gate().check(_opp(fetched_at=NOW - 1.7))
        assert report.overall_passed
        assert report.check("price_age").severity is Severity.WARNING
        assert any(w.startswith("price_age") for w in report.warnings)

    def test_slippage_from_quotes(self):
        gate = _gate()
        wide = gate.check(_opp(), quotes={"0xpoly": (38.0, 42.0)})
        assert wide.check("slippage").passed is False
        tight = gate.check(_opp(), quotes={"0xpoly": (39.5, 40.5)})
        assert tight.check("slippage").passed
        assert tight.check("slippage").severity is Severity.INFO

    def test_slippage_from_leg_book(self):
        gate = _gate()
        wide = gate.check(_opp(poly_bid=5.0, poly_ask=40.0))
        assert wide.check("slippage").passed is False
        assert not wide.overall_passed
        tight = gate.check(_opp(poly_bid=39.5, poly_ask=40.5))
        assert tight.check("slippage").severity is Severity.INFO

    def test_explicit_quotes_override_leg_book(self):
        report = _gate().check(_opp(poly_bid=5.0, poly_ask=40.0), quotes={"0xpoly": (39.5, 40.5)})
        assert report.check("slippage").passed

    def test_slippage_near_limit_warns(self):
        report = _gate(max_slippage_bps=70.0).check(_opp())
        result = report.check("slippage")
        assert result.passed and result.severity is Severity.WARNING

    def test_open_breaker_blocks(self):
        gate = _gate()
        gate.breaker.trip("manual")
        report = gate.check(_opp())
        assert not report.overall_passed
        assert "circuit_breaker: circuit breaker open: manual" in report.blockers

    def test_recent_failures_warn(self):
        gate = _gate()
        gate.breaker.record_execution(False, "timeout")
        result = gate.check(_opp()).check("circuit_breaker")
        assert result.passed and result.severity is Severity.WARNING

    def test_liquidity(self):
        thin = _gate().check(_opp(poly_volume=5.0))
        assert thin.check("liquidity").passed is False
        unknown = _gate().check(_opp(poly_volume=0.0, sx_volume=0.0))
        assert unknown.overall_passed
        assert unknown.check("liquidity").severity is Severity.WARNING

    def test_unknown_volume_on_one_leg_warns(self):
        report = _gate().check(_opp(sx_volume=0.0))
        result = report.check("liquidity")
        assert report.overall_passed
        assert result.passed and result.severity is Severity.WARNING
        assert result.reason == "no volume data on sxbet"
        still_thin = _gate().check(_opp(poly_volume=5.0, sx_volume=0.0))
        assert still_thin.check("liquidity").passed is False

    def test_profit_floor(self):
        report = _gate(min_profit_bps=1000.0).check(_opp())
        assert report.check("profit_margin").passed is False
        assert not report.overall_passed

    def test_large_skew_blocks(self):
        # 20 cents + 1/2.10 leaves the hedge about 32% short of certainty
        report = _gate().check(_opp(poly_price=20.0))
        assert report.check("data_consistency").severity is Severity.CRITICAL
        assert not report.overall_passed

    def test_sustained_skew_warns_without_blocking(self):
        clock = FakeClock()
        gate = _gate(clock=clock, max_platform_skew_pct=15.0)
        reports = []
        for _ in range(5):
            reports.append(gate.check(_opp()))
            clock.now += 1.0
        assert reports[3].check("data_consistency").passed
        last = reports[4].check("data_consistency")
        assert last.passed is False and last.severity is Severity.WARNING
        assert reports[4].overall_passed

    def test_skew_window_expires_samples(self):
        clock = FakeClock()
        gate = _gate(clock=clock, max_platform_skew_pct=15.0, skew_window_sec=30.0)
        for _ in range(4):
            gate.check(_opp())
        clock.now += 60.0
        assert gate.check(_opp()).check("data_consistency").passed

    def test_enforce_and_stats(self):
        gate = _gate()
        with pytest.raises(SafetyCheckFailed, match="liquidity"):
            gate.enforce(_opp(sx_volume=1.0))
        assert gate.stats["failed"] == 1
        assert gate.stats["failures_by_reason"] == {"liquidity": 1}
        assert gate.stats["last_blocked"]["group_key"] == "nba:celtics_lakers:2025-01-15"
        assert gate.enforce(_opp()).overall_passed
