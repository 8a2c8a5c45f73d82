"""
Cross-venue event matching and lifecycle classification.

Each venue's markets are folded into VendorEvents, then events from
different venues are paired when both hold:
  - text: token overlap and coverage clear the configured thresholds
  - time: start-time buckets (round(ts / tolerance)) differ by at most 1

Pairs are grouped transitively (union-find). A group needs at least
``min_platforms`` distinct venues and keeps one representative per venue,
picked by summed Jaccard plus rapidfuzz similarity to the other members.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from rapidfuzz import fuzz

from scanner.models import Lifecycle, Market, MatchedGroup, Venue, VendorEvent
from scanner.normalize import (
    common_tokens,
    normalize_title,
    parse_teams,
    score_token_overlap,
    time_bucket,
    time_buckets_match,
    tokens_to_slug,
)

logger = logging.getLogger(__name__)

ENDED_STATUSES = frozenset({"closed", "settled", "finalized", "determined", "resolved"})
_DEFAULT_LIVE_CLOSE_WINDOW_SEC = 4 * 3600.0


def classify_lifecycle(
    status: str,
    start_ts: float | None,
    close_ts: float | None,
    now: float,
    live_close_window_sec: float = _DEFAULT_LIVE_CLOSE_WINDOW_SEC,
) -> Lifecycle:
    """
    ENDED when explicitly closed/settled or past close. PRE before start.
    LIVE between start and close. Close-only events count as LIVE inside the
    live close window. No timing at all defaults to PRE.
    """
    if (status or "").lower() in ENDED_STATUSES:
        return Lifecycle.ENDED
    if close_ts is not None and now >= close_ts:
        return Lifecycle.ENDED
    if start_ts is not None:
        return Lifecycle.PRE if now < start_ts else Lifecycle.LIVE
    if close_ts is not None and close_ts - now <= live_close_window_sec:
        return Lifecycle.LIVE
    return Lifecycle.PRE


def aggregate_status(statuses: Iterable[Lifecycle]) -> Lifecycle:
    """LIVE if any member is LIVE, ENDED if all are ENDED, else PRE."""
    statuses = list(statuses)
    if any(s is Lifecycle.LIVE for s in statuses):
        return Lifecycle.LIVE
    if statuses and all(s is Lifecycle.ENDED for s in statuses):
        return Lifecycle.ENDED
    return Lifecycle.PRE


def events_from_markets(
    markets: Iterable[Market],
    now: float | None = None,
    live_close_window_sec: float = _DEFAULT_LIVE_CLOSE_WINDOW_SEC,
) -> list[VendorEvent]:
    """
    Fold markets into one VendorEvent per (venue, event ticker). Markets
    without an event ticker become their own event.
    """
    if now is None:
        now = time.time()
    grouped: dict[tuple[Venue, str], list[Market]] = {}
    for market in markets:
        key = (market.venue, market.event_ticker or market.market_id)
        grouped.setdefault(key, []).append(market)

    events: list[VendorEvent] = []
    for (venue, event_id), members in grouped.items():
        # Moneyline titles are the shortest; spreads/totals add qualifiers
        title = min((m.title for m in members if m.title), key=len, default="")
        sport = next((m.sport for m in members if m.sport), "")
        starts = [m.start_ts for m in members if m.start_ts is not None]
        closes = [m.expiry_ts for m in members if m.expiry_ts is not None]
        start_ts = min(starts) if starts else None
        close_ts = min(closes) if closes else None
        statuses = {m.status.lower() for m in members if m.status}
        status = "closed" if statuses and statuses <= ENDED_STATUSES else ""
        normalized = normalize_title(title, sport)
        home, away = parse_teams(title, sport)
        events.append(VendorEvent(
            venue=venue,
            event_id=event_id,
            raw_title=title,
            normalized_title=normalized.normalized_title,
            tokens=frozenset(normalized.tokens),
            sport=sport,
            status=classify_lifecycle(status, start_ts, close_ts, now, live_close_window_sec),
            start_ts=start_ts,
            close_ts=close_ts,
            home_team=home,
            away_team=away,
            market_ids=tuple(m.market_id for m in members),
        ))
    return events


@dataclass(frozen=True)
class PairScore:
    overlap: int
    coverage: float
    jaccard: float
    similarity: float  # rapidfuzz token_set_ratio, 0-100
    text_ok: bool
    time_ok: bool

    @property
    def matched(self) -> bool:
        return self.text_ok and self.time_ok


class _UnionFind:
    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def find(self, i: int) -> int:
        while self._parent[i] != i:
            self._parent[i] = self._parent[self._parent[i]]
            i = self._parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self._parent[max(ra, rb)] = min(ra, rb)


class EventMatcher:
    """Clusters VendorEvents across venues into MatchedGroups."""

    def __init__(
        self,
        time_tolerance_sec: float = 900.0,
        min_token_overlap: int = 2,
        min_coverage: float = 0.6,
        min_platforms: int = 2,
        post_game_window_sec: float = 300.0,
    ) -> None:
        self.time_tolerance_sec = time_tolerance_sec
        self.min_token_overlap = min_token_overlap
        self.min_coverage = min_coverage
        self.min_platforms = min_platforms
        self.post_game_window_sec = post_game_window_sec
        self.stats: dict = {}

    def compare(self, a: VendorEvent, b: VendorEvent) -> PairScore:
        score = score_token_overlap(a.tokens, b.tokens)
        text_ok = score.overlap >= self.min_token_overlap and score.coverage >= self.min_coverage
        if a.sport and b.sport and a.sport != b.sport:
            text_ok = False
        ta, tb = a.anchor_ts, b.anchor_ts
        # Unknown timing never matches
        time_ok = (
            ta is not None
            and tb is not None
            and time_buckets_match(time_bucket(ta, self.time_tolerance_sec), time_bucket(tb, self.time_tolerance_sec))
        )
        similarity = fuzz.token_set_ratio(a.normalized_title, b.normalized_title) if text_ok else 0.0
        return PairScore(
            overlap=score.overlap,
            coverage=score.coverage,
            jaccard=score.jaccard,
            similarity=similarity,
            text_ok=text_ok,
            time_ok=time_ok,
        )

    def _eligible(self, event: VendorEvent, now: float) -> bool:
        if not event.tokens or event.anchor_ts is None:
            return False
        if event.status is Lifecycle.ENDED:
            close = event.close_ts
            return close is not None and now - close <= self.post_game_window_sec
        return True

    def match(self, events: Iterable[VendorEvent], now: float | None = None) -> list[MatchedGroup]:
        """Group events into MatchedGroups spanning at least ``min_platforms`` venues."""
        if now is None:
            now = time.time()
        pool = [e for e in events if self._eligible(e, now)]
        uf = _UnionFind(len(pool))
        pair_scores: dict[tuple[int, int], PairScore] = {}

        # Only neighbouring buckets can be time-compatible
        buckets: dict[int, list[int]] = {}
        for i, event in enumerate(pool):
            buckets.setdefault(time_bucket(event.anchor_ts, self.time_tolerance_sec), []).append(i)

        for bucket, members in buckets.items():
            candidates = members + buckets.get(bucket + 1, [])
            same_bucket = set(members)
            for i in members:
                for j in candidates:
                    if j <= i and j in same_bucket:
                        continue
                    if pool[i].venue is pool[j].venue:
                        continue
                    score = self.compare(pool[i], pool[j])
                    if score.matched:
                        pair_scores[(min(i, j), max(i, j))] = score
                        uf.union(i, j)

        components: dict[int, list[int]] = {}
        for i in range(len(pool)):
            components.setdefault(uf.find(i), []).append(i)

        groups: list[MatchedGroup] = []
        for indices in components.values():
            if len({pool[i].venue for i in indices}) < self.min_platforms:
                continue
            groups.append(self._build_group(pool, indices, pair_scores))

        groups.sort(key=lambda g: (-g.quality, g.event_key))
        self._record_stats(pool, groups)
        return groups

    def _build_group(
        self,
        pool: list[VendorEvent],
        indices: list[int],
        pair_scores: dict[tuple[int, int], PairScore],
    ) -> MatchedGroup:
        def strength(i: int) -> float:
            total = 0.0
            for j in indices:
                score = pair_scores.get((min(i, j), max(i, j)))
                if score is not None:
                    total += score.jaccard + score.similarity / 100.0
            return total

        best: dict[Venue, int] = {}
        for i in indices:
            venue = pool[i].venue
            if venue not in best or strength(i) > strength(best[venue]):
                best[venue] = i
        members = tuple(pool[i] for i in sorted(best.values(), key=lambda i: list(Venue).index(pool[i].venue)))

        sport = next((m.sport for m in members if m.sport), "")
        status = aggregate_status(m.status for m in members)
        slug = tokens_to_slug(common_tokens(m.tokens for m in members)) or "unknown"
        anchor = min(m.anchor_ts for m in members if m.anchor_ts is not None)
        day = datetime.fromtimestamp(anchor, tz=timezone.utc).strftime("%Y-%m-%d")
        event_key = f"{(sport or 'unknown').lower()}:{slug}:{day}"

        quality = 0.5 + (len(members) - 2) * 0.2
        if all(m.status is Lifecycle.LIVE for m in members):
            quality += 0.15
        if sport:
            quality += 0.1
        return MatchedGroup(
            event_key=event_key,
            sport=sport,
            status=status,
            members=members,
            quality=round(min(1.0, quality), 4),
        )

    def _record_stats(self, pool: list[VendorEvent], groups: list[MatchedGroup]) -> None:
        by_sport: dict[str, int] = {}
        for group in groups:
            by_sport[group.sport or "unknown"] = by_sport.get(group.sport or "unknown", 0) + 1
        self.stats = {
            "events": len(pool),
            "groups": len(groups),
            "live": sum(1 for g in groups if g.status is Lifecycle.LIVE),
            "pre": sum(1 for g in groups if g.status is Lifecycle.PRE),
            "three_venue": sum(1 for g in groups if len(g.members) >= 3),
            "by_sport": by_sport,
        }
        logger.debug("Matcher: %d events -> %d groups", len(pool), len(groups))
