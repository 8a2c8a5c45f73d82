"""
Configuration loaded from environment variables. Fail-fast on invalid values.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings
from pydantic import Field

from client.rate_limit import RateLimitSettings
from scanner.models import Venue


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Credentials (market data is public on Kalshi/Polymarket; SX.bet needs a key)
    kalshi_api_key_id: str = ""
    kalshi_private_key_path: str = ""
    kalshi_private_key_pem: str = ""
    kalshi_email: str = ""
    sxbet_api_key: str = ""

    # API endpoints
    kalshi_host: str = "https://api.elections.kalshi.com/trade-api/v2"
    kalshi_ws_url: str = "wss://api.elections.kalshi.com/trade-api/ws/v2"
    gamma_host: str = "https://gamma-api.polymarket.com"
    clob_host: str = "https://clob.polymarket.com"
    polymarket_ws_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    sxbet_host: str = "https://api.sx.bet"
    # USDC on SX network
    sxbet_base_token: str = "0x6629Ce1Cf35Cc1329ebB4F63202F3f197b3F050B"

    # Venues switched off explicitly (comma separated: kalshi,polymarket,sxbet)
    disabled_venues: str = ""

    # Rate limiting: Kalshi
    kalshi_min_interval_ms: float = Field(default=100.0, ge=0)
    kalshi_backoff_base_ms: float = Field(default=5000.0, gt=0)
    kalshi_backoff_max_ms: float = Field(default=60000.0, gt=0)
    kalshi_markets_ttl_sec: float = Field(default=60.0, ge=0)
    kalshi_series_ttl_sec: float = Field(default=300.0, ge=0)

    # Rate limiting: Polymarket
    polymarket_min_interval_ms: float = Field(default=100.0, ge=0)
    polymarket_backoff_base_ms: float = Field(default=2000.0, gt=0)
    polymarket_backoff_max_ms: float = Field(default=60000.0, gt=0)
    polymarket_markets_ttl_sec: float = Field(default=30.0, ge=0)
    polymarket_metadata_ttl_sec: float = Field(default=300.0, ge=0)

    # Rate limiting: SX.bet
    sxbet_min_interval_ms: float = Field(default=250.0, ge=0)
    sxbet_backoff_base_ms: float = Field(default=5000.0, gt=0)
    sxbet_backoff_max_ms: float = Field(default=60000.0, gt=0)
    sxbet_markets_ttl_sec: float = Field(default=30.0, ge=0)
    sxbet_metadata_ttl_sec: float = Field(default=300.0, ge=0)

    # Kalshi discovery + pagination
    kalshi_page_limit: int = Field(default=1000, ge=1, le=1000)
    kalshi_max_pages_per_series: int = Field(default=2, ge=1)
    kalshi_max_total_markets: int = Field(default=2000, ge=1)
    kalshi_max_series_per_refresh: int = Field(default=20, ge=1)
    kalshi_series_delay_ms: float = Field(default=200.0, ge=0)
    # "window" = close-time window on the wire, status client-side; "status" = the reverse
    kalshi_filter_strategy: str = Field(default="window", pattern="^(window|status)$")
    # Live-event close window: markets closing within [now - behind, now + ahead]
    kalshi_close_window_ahead_min: int = Field(default=360, ge=1)
    kalshi_close_window_behind_min: int = Field(default=120, ge=0)
    # Comma separated substring lists
    kalshi_series_allow: str = ""
    kalshi_series_deny: str = ""
    # Used when discovery is empty or fails
    kalshi_series_override: str = "KXNBAGAME,KXNFLGAME,KXNHLGAME,KXMLBGAME,KXNCAABGAME,KXNCAAFGAME,KXEPLGAME,KXUCLGAME"

    # Polymarket pagination
    polymarket_page_limit: int = Field(default=100, ge=1, le=500)
    polymarket_max_pages: int = Field(default=10, ge=1)
    polymarket_max_markets: int = Field(default=1000, ge=1)
    # Gamma end_date window (hours ahead of now)
    polymarket_end_window_hours: float = Field(default=72.0, gt=0)

    # SX.bet pagination
    sxbet_max_pages: int = Field(default=5, ge=1)
    sxbet_max_markets: int = Field(default=1000, ge=1)
    sxbet_event_duration_hours: float = Field(default=3.0, gt=0)
    # Market types kept (comma separated ints; empty keeps all). 52 and 226 are two-way winner markets
    sxbet_market_types: str = "52,226"

    # Matcher
    match_time_tolerance_min: float = Field(default=15.0, gt=0)
    match_min_token_overlap: int = Field(default=2, ge=1)
    match_min_coverage: float = Field(default=0.6, gt=0, le=1.0)
    match_min_platforms: int = Field(default=2, ge=2, le=3)
    # Close-only events are LIVE when closing within this many hours
    live_close_window_hours: float = Field(default=4.0, gt=0)

    # Arbitrage
    arb_target_payout: float = Field(default=100.0, gt=0)
    arb_min_margin_pct: float = Field(default=0.5, ge=0)
    kalshi_fee_rate: float = Field(default=0.07, ge=0, le=1.0)
    polymarket_fee_rate: float = Field(default=0.02, ge=0, le=1.0)
    polymarket_gas_usd: float = Field(default=0.02, ge=0)
    sxbet_fee_rate: float = Field(default=0.0, ge=0, le=1.0)

    # Safety gate
    # Streaming prices (WS_ENABLED) are held to max_price_age_ms; REST polling to the looser limit
    max_price_age_ms: float = Field(default=2000.0, gt=0)
    max_price_age_rest_ms: float = Field(default=30000.0, gt=0)
    max_slippage_bps: float = Field(default=100.0, gt=0)
    min_profit_bps: float = Field(default=25.0, ge=0)
    min_liquidity_usd: float = Field(default=10.0, ge=0)
    max_platform_skew_pct: float = Field(default=20.0, gt=0)
    skew_window_ms: float = Field(default=30000.0, gt=0)
    # Assumed half-spread for decimal-odds books without depth data
    sportsbook_spread_bps: float = Field(default=50.0, ge=0)

    # Circuit breaker
    max_consecutive_failures: int = Field(default=3, gt=0)
    breaker_cooldown_ms: float = Field(default=300000.0, gt=0)

    # Adaptive scan interval (seconds)
    interval_live_sec: float = Field(default=5.0, gt=0)
    interval_high_activity_sec: float = Field(default=10.0, gt=0)
    interval_default_sec: float = Field(default=30.0, gt=0)

    # Snapshot store
    snapshot_db_path: str = "state/snapshots.db"
    snapshot_fast_ttl_sec: float = Field(default=120.0, gt=0)
    snapshot_max_age_sec: float = Field(default=900.0, gt=0)
    snapshot_fast_enabled: bool = True
    snapshot_durable_enabled: bool = True

    # WebSocket live prices
    ws_enabled: bool = False
    ws_max_reconnect_attempts: int = Field(default=10, ge=1)
    ws_reconnect_base_ms: float = Field(default=1000.0, gt=0)
    ws_reconnect_max_ms: float = Field(default=30000.0, gt=0)
    ws_heartbeat_ms: float = Field(default=30000.0, gt=0)
    ws_connect_timeout_ms: float = Field(default=10000.0, gt=0)
    ws_price_max_age_sec: float = Field(default=10.0, gt=0)

    # Orchestrator
    fetch_workers: int = Field(default=3, ge=1, le=8)
    shutdown_deadline_sec: float = Field(default=10.0, gt=0)
    status_file: str = "status.md"

    # Modes
    dry_run: bool = True
    log_level: str = "INFO"


def split_list(raw: str) -> tuple[str, ...]:
    """Split a comma separated config value into trimmed, non-empty items."""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def price_age_limit_ms(cfg: Config) -> float:
    """Oldest price the safety gate accepts: the streaming limit with live feeds, the REST one without."""
    return cfg.max_price_age_ms if cfg.ws_enabled else cfg.max_price_age_rest_ms


def sxbet_market_types(cfg: Config) -> tuple[int, ...] | None:
    """SX.bet market types to keep, or None to keep every type."""
    types = tuple(int(t) for t in split_list(cfg.sxbet_market_types))
    return types or None


def active_platforms(cfg: Config) -> list[Venue]:
    """
    Return venues that can run with the current config.

    Kalshi and Polymarket market data is public. SX.bet requires an API key.
    """
    disabled = {v.lower() for v in split_list(cfg.disabled_venues)}
    venues: list[Venue] = []
    for venue in (Venue.KALSHI, Venue.POLYMARKET, Venue.SXBET):
        if venue.value in disabled:
            continue
        if venue is Venue.SXBET and not cfg.sxbet_api_key:
            continue
        venues.append(venue)
    return venues


def rate_limit_settings(cfg: Config, venue: Venue) -> RateLimitSettings:
    """Build the per-venue limiter settings from the flat config."""
    if venue is Venue.KALSHI:
        return RateLimitSettings(
            min_interval_sec=cfg.kalshi_min_interval_ms / 1000.0,
            backoff_base_sec=cfg.kalshi_backoff_base_ms / 1000.0,
            backoff_max_sec=cfg.kalshi_backoff_max_ms / 1000.0,
            markets_ttl_sec=cfg.kalshi_markets_ttl_sec,
            metadata_ttl_sec=cfg.kalshi_series_ttl_sec,
        )
    if venue is Venue.POLYMARKET:
        return RateLimitSettings(
            min_interval_sec=cfg.polymarket_min_interval_ms / 1000.0,
            backoff_base_sec=cfg.polymarket_backoff_base_ms / 1000.0,
            backoff_max_sec=cfg.polymarket_backoff_max_ms / 1000.0,
            markets_ttl_sec=cfg.polymarket_markets_ttl_sec,
            metadata_ttl_sec=cfg.polymarket_metadata_ttl_sec,
        )
    return RateLimitSettings(
        min_interval_sec=cfg.sxbet_min_interval_ms / 1000.0,
        backoff_base_sec=cfg.sxbet_backoff_base_ms / 1000.0,
        backoff_max_sec=cfg.sxbet_backoff_max_ms / 1000.0,
        markets_ttl_sec=cfg.sxbet_markets_ttl_sec,
        metadata_ttl_sec=cfg.sxbet_metadata_ttl_sec,
    )


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid values."""
    return Config()
