"""
One scan cycle end to end:

  fetch (all venues in parallel) -> snapshot / stale fallback
  -> live price overlay -> events -> cross-venue groups
  -> arbitrage scan -> safety gate -> execute or log

Cycles never overlap. The next interval comes from IntervalPolicy.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol

from client.platform import VenueClient
from client.ws import LiveFeedBridge, LivePriceCache, PolymarketFeedProtocol, apply_live_prices
from executor.safety import SafetyGate, SafetyReport
from pipeline.interval import IntervalPolicy, detect_live_signals
from scanner.arbitrage import ArbitrageEngine
from scanner.matching import EventMatcher, events_from_markets
from scanner.models import ArbitrageOpportunity, Lifecycle, Market, MatchedGroup, Venue
from state.snapshots import SnapshotRead, SnapshotStore

logger = logging.getLogger(__name__)

OVERLAP = "overlap"


class OpportunityExecutor(Protocol):
    def execute(self, opp: ArbitrageOpportunity) -> bool: ...


class CycleSink(Protocol):
    def write_cycle(self, report: CycleReport) -> None: ...


@dataclass(frozen=True)
class VenueOutcome:
    venue: Venue
    markets: int = 0
    source: str | None = None  # live / fast / durable, None when nothing served
    stale: bool = False
    skipped: str | None = None
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.source == "live"


@dataclass
class CycleReport:
    cycle: int
    started_at: float
    elapsed_sec: float = 0.0
    venues: list[VenueOutcome] = field(default_factory=list)
    markets: int = 0
    events: int = 0
    groups: list[MatchedGroup] = field(default_factory=list)
    opportunities: list[ArbitrageOpportunity] = field(default_factory=list)
    approved: list[tuple[ArbitrageOpportunity, SafetyReport]] = field(default_factory=list)
    blocked: int = 0
    executed: int = 0
    live_signals: int = 0
    next_interval_sec: float = 0.0
    skipped: str | None = None

    @property
    def live_groups(self) -> int:
        return sum(1 for g in self.groups if g.status is Lifecycle.LIVE)

    @property
    def best(self) -> ArbitrageOpportunity | None:
        return self.opportunities[0] if self.opportunities else None


class Orchestrator:
    """Drives the pipeline; owns no I/O of its own beyond its collaborators."""

    def __init__(
        self,
        clients: Iterable[VenueClient],
        matcher: EventMatcher,
        engine: ArbitrageEngine,
        gate: SafetyGate,
        snapshots: SnapshotStore,
        policy: IntervalPolicy,
        status: CycleSink | None = None,
        live_cache: LivePriceCache | None = None,
        live_bridge: LiveFeedBridge | None = None,
        executor: OpportunityExecutor | None = None,
        fetch_workers: int = 3,
        snapshot_max_age_sec: float = 900.0,
        live_price_max_age_sec: float = 10.0,
        live_close_window_sec: float = 4 * 3600.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.clients = {client.venue: client for client in clients}
        self.matcher = matcher
        self.engine = engine
        self.gate = gate
        self.snapshots = snapshots
        self.policy = policy
        self.status = status
        self.live_cache = live_cache
        self.live_bridge = live_bridge
        self.executor = executor
        self.fetch_workers = max(1, fetch_workers)
        self.snapshot_max_age_sec = snapshot_max_age_sec
        self.live_price_max_age_sec = live_price_max_age_sec
        self.live_close_window_sec = live_close_window_sec
        self._clock = clock
        self._sleep = sleep
        self._cycle_lock = threading.Lock()
        self.cycle = 0
        self.last_report: CycleReport | None = None

    # -- Fetch --

    def _load_venue(self, venue: Venue) -> tuple[SnapshotRead, float]:
        client = self.clients[venue]
        start = time.monotonic()
        read = self.snapshots.load_or_fetch(
            venue, client.fetch_markets, max_age_sec=self.snapshot_max_age_sec, force=True,
        )
        return read, (time.monotonic() - start) * 1000.0

    def fetch_all(self) -> tuple[list[VenueOutcome], list[Market]]:
        """Fetch every venue concurrently; all fetches finish before this returns."""
        outcomes: list[VenueOutcome] = []
        markets: list[Market] = []
        if not self.clients:
            return outcomes, markets
        workers = min(self.fetch_workers, len(self.clients))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
            futures = {pool.submit(self._load_venue, venue): venue for venue in self.clients}
            for future in as_completed(futures):
                venue = futures[future]
                try:
                    read, elapsed_ms = future.result()
                except Exception as e:
                    logger.error("%s load failed: %s", venue.value, e, exc_info=True)
                    outcomes.append(VenueOutcome(venue, error=f"{type(e).__name__}: {e}"))
                    continue
                venue_markets = read.markets
                markets.extend(venue_markets)
                fetched = read.fetch
                outcomes.append(VenueOutcome(
                    venue=venue,
                    markets=len(venue_markets),
                    source=read.source,
                    stale=read.stale,
                    skipped=fetched.skipped if fetched else None,
                    error=fetched.error if fetched else None,
                    elapsed_ms=round(elapsed_ms, 1),
                ))
        outcomes.sort(key=lambda o: list(Venue).index(o.venue))
        return outcomes, markets

    # -- Live feeds --

    def _subscribe_live(self, groups: list[MatchedGroup], markets: list[Market]) -> None:
        if self.live_bridge is None or not groups:
            return
        wanted: set[tuple[Venue, str]] = set()
        for group in groups:
            for member in group.members:
                wanted.update((member.venue, mid) for mid in member.market_ids)
        matched = [m for m in markets if (m.venue, m.market_id) in wanted]

        kalshi = [m.market_id for m in matched if m.venue is Venue.KALSHI]
        if kalshi:
            self.live_bridge.subscribe(Venue.KALSHI, kalshi)
        poly_feed = self.live_bridge.feeds.get(Venue.POLYMARKET)
        if poly_feed is not None and isinstance(poly_feed.protocol, PolymarketFeedProtocol):
            tokens = poly_feed.protocol.register(m for m in matched if m.venue is Venue.POLYMARKET)
            if tokens:
                self.live_bridge.subscribe(Venue.POLYMARKET, tokens)

    # -- Gate / act --

    def _act(self, opportunities: list[ArbitrageOpportunity], report: CycleReport) -> None:
        for opp in opportunities:
            safety = self.gate.check(opp)
            if not safety.overall_passed:
                report.blocked += 1
                continue
            report.approved.append((opp, safety))
            for warning in safety.warnings:
                logger.info("  %s warning: %s", opp.group_key, warning)

            if self.executor is None:
                legs = " + ".join(f"{leg.venue.value} {leg.side.value.upper()} @ {leg.price:g}" for leg in opp.legs)
                logger.info(
                    "[DRY RUN] Would execute %s: %s | cost $%.2f net $%.2f (%.2f%%)",
                    opp.group_key, legs, opp.total_cost, opp.net_profit, opp.profit_margin,
                )
                continue

            try:
                success = bool(self.executor.execute(opp))
                error = "" if success else "executor reported failure"
            except Exception as e:
                logger.error("Execution of %s failed: %s", opp.group_key, e, exc_info=True)
                success, error = False, f"{type(e).__name__}: {e}"
            self.gate.breaker.record_execution(success, error)
            if success:
                report.executed += 1

    # -- Cycle --

    def run_cycle(self) -> CycleReport:
        """Run one full cycle. A cycle already in progress makes this a no-op."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous cycle still running, skipping")
            return CycleReport(cycle=self.cycle, started_at=self._clock(), skipped=OVERLAP)
        try:
            self.cycle += 1
            started = self._clock()
            report = CycleReport(cycle=self.cycle, started_at=started)

            report.venues, markets = self.fetch_all()
            if self.live_cache is not None:
                markets = apply_live_prices(markets, self.live_cache, self.live_price_max_age_sec)
            report.markets = len(markets)

            now = self._clock()
            events = events_from_markets(markets, now, self.live_close_window_sec)
            report.events = len(events)
            report.groups = self.matcher.match(events, now)
            self._subscribe_live(report.groups, markets)

            report.opportunities = self.engine.scan(report.groups, markets, now)
            self._act(report.opportunities, report)

            report.live_signals = detect_live_signals(markets, now)
            self.policy.record_scan(len(report.opportunities), report.live_signals)
            report.next_interval_sec = self.policy.next_interval(report.live_signals, len(report.opportunities))
            report.elapsed_sec = round(self._clock() - started, 3)

            logger.info(
                "Cycle %d: %d markets, %d events, %d groups (%d live), %d opps, %d approved, "
                "%d blocked in %.1fs; next in %.0fs",
                report.cycle, report.markets, report.events, len(report.groups), report.live_groups,
                len(report.opportunities), len(report.approved), report.blocked,
                report.elapsed_sec, report.next_interval_sec,
            )
            self.last_report = report
            if self.status is not None:
                self.status.write_cycle(report)
            return report
        finally:
            self._cycle_lock.release()

    def run_forever(self, should_stop: Callable[[], bool], slice_sec: float = 0.25) -> int:
        """Loop until ``should_stop()``; returns the number of cycles run."""
        cycles = 0
        while not should_stop():
            interval = self.policy.default_sec
            try:
                report = self.run_cycle()
                cycles += 1
                if report.next_interval_sec > 0:
                    interval = report.next_interval_sec
            except Exception as e:
                # Full traceback goes to the debug log file
                logger.error("Cycle %d failed: %s", self.cycle, e, exc_info=True)

            deadline = self._clock() + interval
            while not should_stop():
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                self._sleep(min(slice_sec, remaining))
        return cycles

    def close(self) -> None:
        if self.live_bridge is not None:
            self.live_bridge.stop()
        for client in self.clients.values():
            client.close()
        self.snapshots.close()
