#!/usr/bin/env python3
"""
Cross-venue sports arbitrage scanner -- pipeline entry point.

Each cycle:
  1. Fetch Kalshi, Polymarket and SX.bet markets in parallel
  2. Snapshot them (fall back to the last good snapshot on failure)
  3. Match the same game across venues
  4. Price every hedged two-leg combination after fees
  5. Run the safety gate, then execute or log
  6. Sleep for an adaptive interval and repeat

Usage:
  python run.py --dry-run            # detect and log only (default)
  python run.py --once               # single cycle, then exit
  python run.py --json-log scan.ndjson
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time

from config import (
    Config, active_platforms, load_config, price_age_limit_ms, rate_limit_settings, split_list, sxbet_market_types,
)
from client.kalshi import KalshiClient
from client.kalshi_auth import KalshiAuth, SigningError
from client.platform import VenueClient
from client.polymarket import PolymarketClient
from client.rate_limit import VenueRateLimiter
from client.sxbet import SXBetClient
from client.ws import (
    KalshiFeedProtocol,
    LiveFeed,
    LiveFeedBridge,
    LivePriceCache,
    PolymarketFeedProtocol,
)
from executor.safety import CircuitBreaker, SafetyGate
from monitor.logger import setup_logging
from monitor.status import StatusWriter
from pipeline.interval import IntervalPolicy
from pipeline.orchestrator import Orchestrator
from scanner.arbitrage import ArbitrageEngine
from scanner.fees import FeeKind, FeeSchedule
from scanner.matching import EventMatcher
from scanner.models import Venue
from state.snapshots import MemoryTier, SnapshotStore, SqliteTier

logger = logging.getLogger(__name__)

_BANNER = r"""
  ___               __   __
 / __|__ _ _ ___ __ \ \ / /__ _ _ _  _ ___
| (__| '_| / _ (_-<  \ V / -_) ' \ || / -_)
 \___|_| |_\___/__/   \_/\___|_||_\_,_\___|   Sports Arbitrage Scanner
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cross-venue sports arbitrage scanner")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--dry-run", action="store_true", help="Detect and log only, never execute")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    parser.add_argument("--status-file", type=str, default=None, help="Markdown status file (default: STATUS_FILE or status.md)")
    return parser.parse_args(argv)


def build_fee_schedules(cfg: Config) -> dict[Venue, FeeSchedule]:
    return {
        Venue.KALSHI: FeeSchedule(FeeKind.PARABOLIC, cfg.kalshi_fee_rate),
        Venue.POLYMARKET: FeeSchedule(FeeKind.NOTIONAL, cfg.polymarket_fee_rate, flat=cfg.polymarket_gas_usd),
        Venue.SXBET: (
            FeeSchedule(FeeKind.PROFIT, cfg.sxbet_fee_rate) if cfg.sxbet_fee_rate > 0 else FeeSchedule(FeeKind.NONE)
        ),
    }


def build_kalshi_auth(cfg: Config) -> KalshiAuth | None:
    """Signed Kalshi requests when credentials are configured, else public access."""
    if not cfg.kalshi_api_key_id or not (cfg.kalshi_private_key_path or cfg.kalshi_private_key_pem):
        return None
    try:
        return KalshiAuth(
            api_key_id=cfg.kalshi_api_key_id,
            private_key_path=cfg.kalshi_private_key_path,
            private_key_pem=cfg.kalshi_private_key_pem,
            email=cfg.kalshi_email,
        )
    except SigningError as e:
        logger.warning("Kalshi credentials unusable, continuing unsigned: %s", e)
        return None


def build_clients(cfg: Config, auth: KalshiAuth | None = None) -> list[VenueClient]:
    clients: list[VenueClient] = []
    for venue in active_platforms(cfg):
        limiter = VenueRateLimiter(venue.value, rate_limit_settings(cfg, venue))
        if venue is Venue.KALSHI:
            clients.append(KalshiClient(
                limiter,
                auth=auth,
                host=cfg.kalshi_host,
                series_override=split_list(cfg.kalshi_series_override),
                series_allow=split_list(cfg.kalshi_series_allow),
                series_deny=split_list(cfg.kalshi_series_deny),
                max_series_per_refresh=cfg.kalshi_max_series_per_refresh,
                max_pages_per_series=cfg.kalshi_max_pages_per_series,
                max_total_markets=cfg.kalshi_max_total_markets,
                page_limit=cfg.kalshi_page_limit,
                series_delay_sec=cfg.kalshi_series_delay_ms / 1000.0,
                filter_strategy=cfg.kalshi_filter_strategy,
                close_window_ahead_min=cfg.kalshi_close_window_ahead_min,
                close_window_behind_min=cfg.kalshi_close_window_behind_min,
                live_close_window_sec=cfg.live_close_window_hours * 3600.0,
            ))
        elif venue is Venue.POLYMARKET:
            clients.append(PolymarketClient(
                limiter,
                gamma_host=cfg.gamma_host,
                clob_host=cfg.clob_host,
                page_limit=cfg.polymarket_page_limit,
                max_pages=cfg.polymarket_max_pages,
                max_markets=cfg.polymarket_max_markets,
                end_window_hours=cfg.polymarket_end_window_hours,
            ))
        elif venue is Venue.SXBET:
            clients.append(SXBetClient(
                limiter,
                api_key=cfg.sxbet_api_key,
                host=cfg.sxbet_host,
                base_token=cfg.sxbet_base_token,
                max_pages=cfg.sxbet_max_pages,
                max_markets=cfg.sxbet_max_markets,
                event_duration_hours=cfg.sxbet_event_duration_hours,
                market_types=sxbet_market_types(cfg),
            ))
    return clients


def build_live_bridge(cfg: Config, cache: LivePriceCache, auth: KalshiAuth | None, venues: list[Venue]) -> LiveFeedBridge:
    def feed(url: str, protocol) -> LiveFeed:
        return LiveFeed(
            url=url,
            protocol=protocol,
            cache=cache,
            max_reconnect_attempts=cfg.ws_max_reconnect_attempts,
            reconnect_base_sec=cfg.ws_reconnect_base_ms / 1000.0,
            reconnect_max_sec=cfg.ws_reconnect_max_ms / 1000.0,
            heartbeat_sec=cfg.ws_heartbeat_ms / 1000.0,
            connect_timeout_sec=cfg.ws_connect_timeout_ms / 1000.0,
        )

    feeds = []
    if Venue.KALSHI in venues:
        feeds.append(feed(cfg.kalshi_ws_url, KalshiFeedProtocol(auth)))
    if Venue.POLYMARKET in venues:
        feeds.append(feed(cfg.polymarket_ws_url, PolymarketFeedProtocol()))
    return LiveFeedBridge(feeds)


def build_orchestrator(cfg: Config, status: StatusWriter | None = None) -> Orchestrator:
    auth = build_kalshi_auth(cfg)
    clients = build_clients(cfg, auth)
    if not clients:
        raise SystemExit("No venues enabled; check DISABLED_VENUES / SXBET_API_KEY")

    live_cache = live_bridge = None
    if cfg.ws_enabled:
        live_cache = LivePriceCache()
        live_bridge = build_live_bridge(cfg, live_cache, auth, [c.venue for c in clients])

    breaker = CircuitBreaker(
        max_consecutive_failures=cfg.max_consecutive_failures,
        cooldown_sec=cfg.breaker_cooldown_ms / 1000.0,
    )
    gate = SafetyGate(
        breaker=breaker,
        max_price_age_ms=price_age_limit_ms(cfg),
        max_slippage_bps=cfg.max_slippage_bps,
        min_profit_bps=cfg.min_profit_bps,
        min_liquidity_usd=cfg.min_liquidity_usd,
        max_platform_skew_pct=cfg.max_platform_skew_pct,
        skew_window_sec=cfg.skew_window_ms / 1000.0,
        sportsbook_spread_bps=cfg.sportsbook_spread_bps,
    )
    snapshots = SnapshotStore(
        fast=MemoryTier(ttl_sec=cfg.snapshot_fast_ttl_sec, enabled=cfg.snapshot_fast_enabled),
        durable=SqliteTier(cfg.snapshot_db_path, enabled=cfg.snapshot_durable_enabled),
    )
    return Orchestrator(
        clients=clients,
        matcher=EventMatcher(
            time_tolerance_sec=cfg.match_time_tolerance_min * 60.0,
            min_token_overlap=cfg.match_min_token_overlap,
            min_coverage=cfg.match_min_coverage,
            min_platforms=cfg.match_min_platforms,
        ),
        engine=ArbitrageEngine(
            fee_schedules=build_fee_schedules(cfg),
            target_payout=cfg.arb_target_payout,
            min_margin_pct=cfg.arb_min_margin_pct,
        ),
        gate=gate,
        snapshots=snapshots,
        policy=IntervalPolicy(
            live_sec=cfg.interval_live_sec,
            high_activity_sec=cfg.interval_high_activity_sec,
            default_sec=cfg.interval_default_sec,
        ),
        status=status,
        live_cache=live_cache,
        live_bridge=live_bridge,
        fetch_workers=cfg.fetch_workers,
        snapshot_max_age_sec=cfg.snapshot_max_age_sec,
        live_price_max_age_sec=cfg.ws_price_max_age_sec,
        live_close_window_sec=cfg.live_close_window_hours * 3600.0,
    )


def _force_exit(deadline: float) -> None:
    logger.error("Graceful shutdown exceeded %.0fs, forcing exit", deadline)
    logging.shutdown()
    os._exit(1)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = load_config()
    updates = {}
    if args.dry_run:
        updates["dry_run"] = True
    if args.status_file:
        updates["status_file"] = args.status_file
    if updates:
        cfg = cfg.model_copy(update=updates)

    log_file_path = setup_logging(cfg.log_level, json_log_file=args.json_log)
    logger.info(_BANNER.strip("\n"))
    logger.info("  Log file: %s", log_file_path)
    logger.info("  Venues: %s", ", ".join(v.value for v in active_platforms(cfg)) or "none")
    if not cfg.dry_run:
        # Order placement is owned by an external executor; this process only detects
        logger.warning("DRY_RUN=false but no executor is wired in; approved opportunities are logged only")

    status = StatusWriter(file_path=cfg.status_file, mode="DRY-RUN" if cfg.dry_run else "DETECT")
    orchestrator = build_orchestrator(cfg, status)

    stop = threading.Event()
    stop_reason = {"value": "completed"}
    deadline_timer: threading.Timer | None = None

    def handle_signal(signum, frame):
        nonlocal deadline_timer
        if stop.is_set():
            return
        stop_reason["value"] = signal.Signals(signum).name
        logger.info("%s received, finishing current cycle...", stop_reason["value"])
        stop.set()
        deadline_timer = threading.Timer(cfg.shutdown_deadline_sec, _force_exit, args=(cfg.shutdown_deadline_sec,))
        deadline_timer.daemon = True
        deadline_timer.start()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    session_start = time.time()
    cycles = 0
    try:
        if orchestrator.live_bridge is not None:
            orchestrator.live_bridge.start()
        if args.once:
            orchestrator.run_cycle()
            cycles = 1
        else:
            cycles = orchestrator.run_forever(stop.is_set)
    finally:
        logger.info("Shutting down after %.0fs (%d cycles)", time.time() - session_start, cycles)
        status.mark_stopped(stop_reason["value"])
        orchestrator.close()
        if deadline_timer is not None:
            deadline_timer.cancel()
    return 0


if __name__ == "__main__":
    sys.exit(main())
