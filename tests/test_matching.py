"""
Unit tests for scanner/matching.py -- lifecycle and cross-venue grouping.
"""

from scanner.matching import EventMatcher, aggregate_status, classify_lifecycle, events_from_markets
from scanner.models import Lifecycle, Market, MarketType, Venue, VendorEvent

# 2025-01-15T18:30:00Z
NOW = 1736965800.0
TIP_OFF = "2025-01-15T19:30:00Z"


def _market(venue, market_id, title, start=TIP_OFF, event="", sport="NBA", **overrides):
    fields = dict(
        venue=venue,
        market_id=market_id,
        title=title,
        market_type=MarketType.SPORTSBOOK if venue is Venue.SXBET else MarketType.PREDICTION,
        yes_price=2.0 if venue is Venue.SXBET else 50.0,
        no_price=2.0 if venue is Venue.SXBET else 50.0,
        expiry_date="2025-01-15T23:00:00Z",
        start_time=start,
        event_ticker=event,
        sport=sport,
    )
    fields.update(overrides)
    return Market(**fields)


def _event(venue, title_tokens, start_ts=NOW + 3600, sport="NBA", **overrides):
    fields = dict(
        venue=venue,
        event_id=f"{venue.value}-1",
        raw_title=" ".join(title_tokens),
        normalized_title=" ".join(title_tokens),
        tokens=frozenset(title_tokens),
        sport=sport,
        start_ts=start_ts,
    )
    fields.update(overrides)
    return VendorEvent(**fields)


class TestLifecycle:
    def test_explicit_status_and_past_close(self):
        assert classify_lifecycle("settled", None, None, NOW) is Lifecycle.ENDED
        assert classify_lifecycle("", NOW - 7200, NOW - 1, NOW) is Lifecycle.ENDED

    def test_start_time_decides(self):
        assert classify_lifecycle("open", NOW + 60, NOW + 9000, NOW) is Lifecycle.PRE
        assert classify_lifecycle("open", NOW - 60, NOW + 9000, NOW) is Lifecycle.LIVE

    def test_close_only_window(self):
        assert classify_lifecycle("", None, NOW + 3600, NOW) is Lifecycle.LIVE
        assert classify_lifecycle("", None, NOW + 86400, NOW) is Lifecycle.PRE
        assert classify_lifecycle("", None, None, NOW) is Lifecycle.PRE

    def test_aggregate(self):
        assert aggregate_status([Lifecycle.PRE, Lifecycle.LIVE]) is Lifecycle.LIVE
        assert aggregate_status([Lifecycle.ENDED, Lifecycle.ENDED]) is Lifecycle.ENDED
        assert aggregate_status([Lifecycle.ENDED, Lifecycle.PRE]) is Lifecycle.PRE
        assert aggregate_status([]) is Lifecycle.PRE


class TestEventsFromMarkets:
    def test_folds_by_event_ticker(self):
        markets = [
            _market(Venue.KALSHI, "K-LAL", "Los Angeles Lakers at Boston Celtics: Spread", event="K1"),
            _market(Venue.KALSHI, "K-BOS", "Los Angeles Lakers at Boston Celtics", event="K1"),
            _market(Venue.POLYMARKET, "0xpoly", "Lakers vs. Celtics"),
        ]
        events = {e.event_id: e for e in events_from_markets(markets, NOW)}
        assert set(events) == {"K1", "0xpoly"}
        kalshi = events["K1"]
        assert kalshi.market_ids == ("K-LAL", "K-BOS")
        assert kalshi.raw_title == "Los Angeles Lakers at Boston Celtics"
        assert kalshi.home_team == "boston celtics"
        assert kalshi.away_team == "los angeles lakers"
        assert kalshi.status is Lifecycle.PRE
        assert kalshi.start_ts == 1736969400.0

    def test_all_closed_members_end_the_event(self):
        markets = [_market(Venue.KALSHI, "K-LAL", "Lakers at Celtics", event="K1", status="finalized")]
        assert events_from_markets(markets, NOW)[0].status is Lifecycle.ENDED


class TestEventMatcher:
    def test_three_venue_group(self):
        markets = [
            _market(Venue.KALSHI, "K-LAL", "Los Angeles Lakers at Boston Celtics", event="K1"),
            _market(Venue.POLYMARKET, "0xpoly", "Lakers vs. Celtics", start="2025-01-15T19:35:00Z"),
            _market(Venue.SXBET, "0xsx", "Los Angeles Lakers vs Boston Celtics", event="L123"),
            _market(Venue.POLYMARKET, "0xother", "Knicks vs. Heat"),
        ]
        matcher = EventMatcher()
        groups = matcher.match(events_from_markets(markets, NOW), NOW)

        assert len(groups) == 1
        group = groups[0]
        assert group.venues == (Venue.KALSHI, Venue.POLYMARKET, Venue.SXBET)
        assert group.event_key == "nba:angeles_boston_celtics_lakers:2025-01-15"
        assert group.status is Lifecycle.PRE
        assert group.quality == 0.8
        assert group.member_for(Venue.SXBET).event_id == "L123"
        assert matcher.stats["three_venue"] == 1

    def test_differently_worded_titles_form_one_group(self):
        # (Polymarket T+0, Kalshi T+2min, SX.bet T-1min); the second and third
        # tip-offs sit exactly on a rounding edge between two 15 minute buckets
        schedules = [
            ("2025-01-15T19:30:00Z", "2025-01-15T19:32:00Z", "2025-01-15T19:29:00Z"),
            ("2025-01-15T19:37:30Z", "2025-01-15T19:39:30Z", "2025-01-15T19:36:30Z"),
            ("2025-01-15T19:52:30Z", "2025-01-15T19:54:30Z", "2025-01-15T19:51:30Z"),
        ]
        for poly_start, kalshi_start, sx_start in schedules:
            markets = [
                _market(Venue.POLYMARKET, "0xpoly", "Lakers vs Celtics", start=poly_start),
                _market(Venue.KALSHI, "K-LAL", "LA Lakers @ Boston Celtics", start=kalshi_start, event="K1"),
                _market(Venue.SXBET, "0xsx", "Celtics-Lakers Moneyline", start=sx_start, event="L123"),
            ]
            matcher = EventMatcher(time_tolerance_sec=900)
            groups = matcher.match(events_from_markets(markets, NOW), NOW)

            assert len(groups) == 1, poly_start
            assert set(groups[0].venues) == {Venue.POLYMARKET, Venue.KALSHI, Venue.SXBET}
            assert matcher.stats["three_venue"] == 1

    def test_same_venue_never_pairs(self):
        events = [
            _event(Venue.KALSHI, ["lakers", "celtics"], event_id="a"),
            _event(Venue.KALSHI, ["lakers", "celtics"], event_id="b"),
        ]
        assert EventMatcher().match(events, NOW) == []

    def test_time_tolerance(self):
        near = _event(Venue.POLYMARKET, ["lakers", "celtics"], start_ts=NOW + 3600 + 600)
        far = _event(Venue.POLYMARKET, ["lakers", "celtics"], start_ts=NOW + 3600 + 6 * 3600)
        base = _event(Venue.KALSHI, ["lakers", "celtics"])
        matcher = EventMatcher(time_tolerance_sec=900)
        assert matcher.compare(base, near).matched
        assert not matcher.compare(base, far).time_ok

    def test_unknown_time_not_matchable(self):
        untimed = _event(Venue.POLYMARKET, ["lakers", "celtics"], start_ts=None)
        base = _event(Venue.KALSHI, ["lakers", "celtics"])
        assert not EventMatcher().compare(base, untimed).time_ok
        assert EventMatcher().match([base, untimed], NOW) == []

    def test_sport_mismatch_blocks(self):
        nba = _event(Venue.KALSHI, ["kings", "panthers"], sport="NBA")
        nhl = _event(Venue.SXBET, ["kings", "panthers"], sport="NHL")
        score = EventMatcher().compare(nba, nhl)
        assert not score.text_ok
        assert score.similarity == 0.0

    def test_weak_text_overlap(self):
        a = _event(Venue.KALSHI, ["lakers", "celtics"])
        b = _event(Venue.POLYMARKET, ["lakers", "knicks", "heat"])
        assert not EventMatcher().compare(a, b).text_ok

    def test_long_ended_events_excluded(self):
        ended = _event(Venue.KALSHI, ["lakers", "celtics"], status=Lifecycle.ENDED, close_ts=NOW - 3600)
        recent = _event(Venue.POLYMARKET, ["lakers", "celtics"], status=Lifecycle.ENDED, close_ts=NOW - 60)
        other = _event(Venue.SXBET, ["lakers", "celtics"])
        groups = EventMatcher().match([ended, recent, other], NOW)
        assert len(groups) == 1
        assert groups[0].venues == (Venue.POLYMARKET, Venue.SXBET)

    def test_min_platforms(self):
        events = [_event(Venue.KALSHI, ["lakers", "celtics"]), _event(Venue.SXBET, ["lakers", "celtics"])]
        assert len(EventMatcher(min_platforms=2).match(events, NOW)) == 1
        assert EventMatcher(min_platforms=3).match(events, NOW) == []
