"""
Adaptive scan interval. Sports run around the clock across time zones,
so the interval depends on market state only, never on time of day.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from scanner.models import Market, MarketType

logger = logging.getLogger(__name__)

LIVE_KEYWORDS = (
    "live", "inplay", "in play", "in-play",
    "quarter", "half", "period", "inning", "set",
    "tonight", "today", "now", "current",
)

_SPORTSBOOK_WINDOW_SEC = 3 * 3600
_KEYWORD_WINDOW_SEC = 6 * 3600
_IMMINENT_WINDOW_SEC = 3600
_HISTORY = 10
_ACTIVITY_SCANS = 5
_ACTIVITY_THRESHOLD = 3


def is_live_signal(market: Market, now: float) -> bool:
    expiry = market.expiry_ts
    if expiry is None:
        return False
    remaining = expiry - now
    if remaining <= 0:
        return False
    if market.market_type is MarketType.SPORTSBOOK and remaining <= _SPORTSBOOK_WINDOW_SEC:
        return True
    title = (market.title or "").lower()
    if remaining <= _KEYWORD_WINDOW_SEC and any(k in title for k in LIVE_KEYWORDS):
        return True
    return remaining <= _IMMINENT_WINDOW_SEC


def detect_live_signals(markets: Iterable[Market], now: float | None = None) -> int:
    """Count of listings that look in-play or about to resolve."""
    if now is None:
        now = time.time()
    return sum(1 for m in markets if is_live_signal(m, now))


@dataclass
class IntervalPolicy:
    live_sec: float = 5.0
    high_activity_sec: float = 10.0
    default_sec: float = 30.0
    _history: deque = field(default_factory=lambda: deque(maxlen=_HISTORY))

    def record_scan(self, opportunities_found: int, live_count: int) -> None:
        self._history.append((opportunities_found, live_count))

    def recent_activity(self) -> int:
        """Opportunities found over the last few scans."""
        return sum(found for found, _ in list(self._history)[-_ACTIVITY_SCANS:])

    def next_interval(self, live_count: int, opportunities_found: int) -> float:
        if live_count > 0:
            logger.debug("Live signals (%d), scanning every %.0fs", live_count, self.live_sec)
            return self.live_sec
        if opportunities_found > 0 or self.recent_activity() > _ACTIVITY_THRESHOLD:
            logger.debug("High activity, scanning every %.0fs", self.high_activity_sec)
            return self.high_activity_sec
        return self.default_sec
