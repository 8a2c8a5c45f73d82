"""
Per-venue market snapshots in two tiers.

The fast tier is an in-process TTL map; the durable tier is SQLite (WAL)
and survives restarts. Writes are validated first and go to both tiers
independently. Reads try fast then durable and report why each tier
could not serve.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from client.payload import parse_timestamp
from scanner.models import FetchResult, Market, Venue

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_SCHEMA = """
CREATE TABLE IF NOT EXISTS market_snapshots (
    platform TEXT PRIMARY KEY,
    schema_version INTEGER NOT NULL,
    fetched_at TEXT NOT NULL,
    data_json TEXT NOT NULL,
    updated_at REAL NOT NULL
);
"""

# Diagnostic states
MISSING = "missing"
INVALID = "invalid"
STALE = "stale"
ERROR = "error"
DISABLED = "disabled"


class SnapshotValidationError(Exception):
    """Raised when a snapshot fails validation before it is stored."""
    pass


@dataclass(frozen=True)
class SnapshotDiagnostic:
    tier: str
    state: str
    detail: str = ""


@dataclass(frozen=True)
class SnapshotRead:
    snapshot: dict | None
    source: str | None  # "fast", "durable", "live" or None
    diagnostics: tuple[SnapshotDiagnostic, ...] = ()
    stale: bool = False
    fetch: FetchResult | None = None

    @property
    def found(self) -> bool:
        return self.snapshot is not None

    @property
    def markets(self) -> list[Market]:
        if self.snapshot is None:
            return []
        return [Market.from_record(m) for m in self.snapshot.get("markets", [])]


def iso_now(now: float | None = None) -> str:
    ts = time.time() if now is None else now
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_snapshot(
    venue: Venue,
    markets: Iterable[Market],
    filters: dict | None = None,
    meta: dict | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    records = [m.to_record() for m in markets]
    snapshot: dict[str, Any] = {
        "schemaVersion": SCHEMA_VERSION,
        "platform": venue.value,
        "fetchedAt": iso_now(now),
        "totalMarkets": len(records),
        "markets": records,
    }
    if filters:
        snapshot["filters"] = filters
    if meta:
        snapshot["meta"] = meta
    return snapshot


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_snapshot(snapshot: Any, expected_version: int = SCHEMA_VERSION) -> list[str]:
    """Every problem found, empty when the snapshot is usable."""
    if not isinstance(snapshot, dict):
        return ["snapshot is not an object"]
    errors: list[str] = []
    version = snapshot.get("schemaVersion")
    if not _is_number(version):
        errors.append("schemaVersion missing or invalid")
    elif version != expected_version:
        errors.append(f"schemaVersion {version} != {expected_version}")
    platform = snapshot.get("platform")
    if not platform:
        errors.append("platform missing")
    if parse_timestamp(snapshot.get("fetchedAt")) is None:
        errors.append("fetchedAt invalid")
    markets = snapshot.get("markets")
    if not isinstance(markets, list):
        errors.append("markets missing or not array")
        return errors
    for i, market in enumerate(markets):
        if not isinstance(market, dict):
            errors.append(f"market[{i}] is not an object")
            continue
        if not market.get("id") or not isinstance(market["id"], str):
            errors.append(f"market[{i}] missing id")
        if market.get("platform") != platform:
            errors.append(f"market[{i}] platform mismatch ({market.get('platform')})")
        if parse_timestamp(market.get("expiryDate")) is None:
            errors.append(f"market[{i}] invalid expiryDate")
        if not _is_number(market.get("yesPrice")) or not _is_number(market.get("noPrice")):
            errors.append(f"market[{i}] missing prices")
    return errors


def snapshot_age_sec(snapshot: dict, now: float | None = None) -> float | None:
    fetched = parse_timestamp(snapshot.get("fetchedAt"))
    if fetched is None:
        return None
    return (time.time() if now is None else now) - fetched


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int(seconds % 3600 // 60)}m"


def describe_staleness(snapshot: dict, max_age_sec: float | None, now: float | None = None) -> str | None:
    """None when fresh (or no limit), else a short reason."""
    if not max_age_sec or max_age_sec <= 0:
        return None
    age = snapshot_age_sec(snapshot, now)
    if age is None:
        return "invalid fetchedAt timestamp"
    if age > max_age_sec:
        return f"stale ({format_duration(age)} old > max {format_duration(max_age_sec)})"
    return None


class MemoryTier:
    """Fast tier. Entries expire ``ttl_sec`` after being stored."""

    name = "fast"

    def __init__(self, ttl_sec: float = 120.0, enabled: bool = True,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_sec = ttl_sec
        self.enabled = enabled
        self.disabled_reason = "" if enabled else "disabled by config"
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[dict, float]] = {}

    def write(self, venue: Venue, snapshot: dict) -> None:
        with self._lock:
            self._entries[venue.value] = (snapshot, self._clock() + self.ttl_sec)

    def read(self, venue: Venue) -> tuple[dict | None, SnapshotDiagnostic | None]:
        with self._lock:
            entry = self._entries.get(venue.value)
            if entry is not None and self._clock() >= entry[1]:
                del self._entries[venue.value]
                entry = None
        if entry is None:
            return None, SnapshotDiagnostic(self.name, MISSING)
        return entry[0], None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class SqliteTier:
    """
    Durable tier, one row per venue. Reads are served from an in-process
    cache that is invalidated on every write. Disables itself with a
    reason when the database cannot be opened.
    """

    name = "durable"

    def __init__(self, db_path: str | Path, enabled: bool = True) -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._read_cache: dict[str, dict] = {}
        self.enabled = enabled
        self.disabled_reason = "" if enabled else "disabled by config"
        self.writes = 0
        self.reads = 0
        if enabled:
            self._open()

    def _open(self) -> None:
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.executescript(_SCHEMA)
            conn.commit()
            self._conn = conn
        except (sqlite3.Error, OSError) as e:
            self.enabled = False
            self.disabled_reason = f"cannot open {self._db_path}: {e}"
            logger.warning("Durable snapshot tier disabled: %s", self.disabled_reason)

    def write(self, venue: Venue, snapshot: dict) -> None:
        data_json = json.dumps(snapshot, default=str)
        with self._lock:
            self._read_cache.pop(venue.value, None)
            self._conn.execute(
                "INSERT OR REPLACE INTO market_snapshots "
                "(platform, schema_version, fetched_at, data_json, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (venue.value, snapshot.get("schemaVersion", 0), snapshot.get("fetchedAt", ""), data_json, time.time()),
            )
            self._conn.commit()
            self.writes += 1
        logger.debug("Snapshot saved: %s (%d bytes)", venue.value, len(data_json))

    def read(self, venue: Venue) -> tuple[dict | None, SnapshotDiagnostic | None]:
        with self._lock:
            cached = self._read_cache.get(venue.value)
            if cached is not None:
                return cached, None
            try:
                row = self._conn.execute(
                    "SELECT data_json FROM market_snapshots WHERE platform = ?", (venue.value,)
                ).fetchone()
            except sqlite3.Error as e:
                return None, SnapshotDiagnostic(self.name, ERROR, str(e))
            self.reads += 1
        if row is None:
            return None, SnapshotDiagnostic(self.name, MISSING)
        try:
            snapshot = json.loads(row[0])
        except (json.JSONDecodeError, TypeError) as e:
            return None, SnapshotDiagnostic(self.name, INVALID, f"corrupt JSON: {e}")
        with self._lock:
            self._read_cache[venue.value] = snapshot
        return snapshot, None

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self.enabled = False
            self.disabled_reason = "closed"


@dataclass
class SnapshotStore:
    fast: MemoryTier
    durable: SqliteTier
    schema_version: int = SCHEMA_VERSION
    stats: dict = field(default_factory=lambda: {
        "writes": 0, "write_failures": 0, "reads": 0, "fast_hits": 0,
        "durable_hits": 0, "stale_served": 0, "misses": 0,
    })

    @property
    def tiers(self) -> tuple[MemoryTier | SqliteTier, ...]:
        return (self.fast, self.durable)

    def write(
        self,
        venue: Venue,
        markets: Iterable[Market],
        filters: dict | None = None,
        meta: dict | None = None,
    ) -> dict:
        """
        Validate and store a snapshot in every enabled tier. Raises
        SnapshotValidationError before any tier is touched; a failing tier
        is logged and does not stop the other.
        """
        snapshot = build_snapshot(venue, markets, filters, meta)
        errors = validate_snapshot(snapshot, self.schema_version)
        if errors:
            raise SnapshotValidationError(
                f"{venue.value} snapshot invalid: {'; '.join(errors[:5])}"
                + (f" (+{len(errors) - 5} more)" if len(errors) > 5 else "")
            )
        for tier in self.tiers:
            if not tier.enabled:
                continue
            try:
                tier.write(venue, snapshot)
            except (sqlite3.Error, OSError, TypeError, ValueError) as e:
                self.stats["write_failures"] += 1
                logger.error("Snapshot write to %s tier failed for %s: %s", tier.name, venue.value, e)
        self.stats["writes"] += 1
        return snapshot

    def read(self, venue: Venue, max_age_sec: float | None = None) -> SnapshotRead:
        """First fresh, valid snapshot (fast, then durable). A stale one is kept as fallback."""
        self.stats["reads"] += 1
        diagnostics: list[SnapshotDiagnostic] = []
        fallback: tuple[dict, str] | None = None
        for tier in self.tiers:
            if not tier.enabled:
                diagnostics.append(SnapshotDiagnostic(tier.name, DISABLED, tier.disabled_reason))
                continue
            snapshot, diagnostic = tier.read(venue)
            if diagnostic is not None:
                diagnostics.append(diagnostic)
                continue
            errors = validate_snapshot(snapshot, self.schema_version)
            if errors:
                diagnostics.append(SnapshotDiagnostic(tier.name, INVALID, "; ".join(errors[:3])))
                continue
            staleness = describe_staleness(snapshot, max_age_sec)
            if staleness:
                diagnostics.append(SnapshotDiagnostic(tier.name, STALE, staleness))
                if fallback is None:
                    fallback = (snapshot, tier.name)
                continue
            self.stats[f"{tier.name}_hits"] += 1
            if tier is self.durable and self.fast.enabled:
                self.fast.write(venue, snapshot)
            return SnapshotRead(snapshot, tier.name, tuple(diagnostics))

        if fallback is not None:
            return SnapshotRead(fallback[0], fallback[1], tuple(diagnostics), stale=True)
        self.stats["misses"] += 1
        for diagnostic in diagnostics:
            if diagnostic.state not in (MISSING, DISABLED):
                logger.warning("%s snapshot %s tier %s: %s", venue.value, diagnostic.tier, diagnostic.state, diagnostic.detail)
        return SnapshotRead(None, None, tuple(diagnostics))

    def load_or_fetch(
        self,
        venue: Venue,
        fetch: Callable[[], FetchResult],
        max_age_sec: float | None = None,
        force: bool = False,
    ) -> SnapshotRead:
        """
        Serve a fresh snapshot when one exists (unless ``force``), otherwise
        fetch live and store it. When the fetch fails the last good snapshot
        is served, flagged stale.
        """
        if not force and max_age_sec:
            cached = self.read(venue, max_age_sec)
            if cached.found and not cached.stale:
                return cached

        result = fetch()
        if result.ok:
            try:
                snapshot = self.write(venue, result.markets, meta={"stats": dict(result.stats)})
                return SnapshotRead(snapshot, "live", fetch=result)
            except SnapshotValidationError as e:
                logger.error("%s", e)

        fallback = self.read(venue, max_age_sec)
        if fallback.found:
            self.stats["stale_served"] += 1
            age = snapshot_age_sec(fallback.snapshot)
            logger.warning(
                "%s fetch %s; serving %s snapshot from %s tier",
                venue.value,
                result.error or f"skipped ({result.skipped})" if not result.ok else "rejected",
                format_duration(age) + " old" if age is not None else "undated",
                fallback.source,
            )
            return SnapshotRead(fallback.snapshot, fallback.source, fallback.diagnostics, stale=True, fetch=result)
        return SnapshotRead(None, None, fallback.diagnostics, fetch=result)

    def close(self) -> None:
        self.fast.clear()
        self.durable.close()
