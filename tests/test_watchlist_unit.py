"""
Unit tests for the weekly Watchlist aggregate.

Tests week boundary computation, stock upserts, status updates, week
completion and the document schema.
"""

from datetime import date, datetime

import pytest
import pytz

from swingtrack.config import IST
from swingtrack.errors import SchemaError
from swingtrack.models import Levels, SimulationStatus, TrackingStatus, TradeSimulation, WatchlistStock
from swingtrack.watchlist import (
    Watchlist,
    WatchlistStatus,
    archive_stale_actives,
    get_or_create_current_week,
    week_bounds,
    week_label,
)


def ist(*args):
    return IST.localize(datetime(*args))


def make_stock(key, symbol, scan_type='breakout', score=None):
    levels = Levels(entry=100.0, stop=96.0, target1=104.0, target2=108.0)
    return WatchlistStock(instrument_key=key, symbol=symbol, scan_type=scan_type,
                          setup_score=score, levels=levels)


class TestWeekBounds:
    def test_midweek(self):
        start, end = week_bounds(ist(2024, 12, 25, 10, 0))

        assert start == ist(2024, 12, 23, 0, 0)
        assert end == ist(2024, 12, 27, 23, 59, 59)

    def test_naive_time_is_ist(self):
        assert week_bounds(datetime(2024, 12, 23, 0, 30))[0].date() == date(2024, 12, 23)

    def test_utc_sunday_night_is_ist_monday(self):
        # 2024-12-22 20:00 UTC is 2024-12-23 01:30 IST
        utc_time = pytz.utc.localize(datetime(2024, 12, 22, 20, 0))

        start, _ = week_bounds(utc_time)

        assert start.date() == date(2024, 12, 23)

    def test_weekend_stays_on_finished_week(self):
        start, _ = week_bounds(ist(2024, 12, 28, 12, 0))

        assert start.date() == date(2024, 12, 23)

    def test_weekend_rolls_forward_when_asked(self):
        start, end = week_bounds(ist(2024, 12, 28, 12, 0), roll_weekend=True)

        assert start.date() == date(2024, 12, 30)
        assert end.date() == date(2025, 1, 3)

    def test_label(self):
        start, end = week_bounds(ist(2024, 12, 25, 10, 0))

        assert week_label(start, end) == 'Dec 23 - Dec 27, 2024'

    def test_label_across_years(self):
        start, end = week_bounds(ist(2025, 1, 1, 10, 0))

        assert week_label(start, end) == 'Dec 30 - Jan 3, 2025'


class TestStocks:
    @pytest.fixture
    def watchlist(self):
        return Watchlist.for_week(ist(2024, 12, 23, 9, 0))

    def test_add_stock_stamps_added_at(self, watchlist):
        stock = watchlist.add_stock(make_stock('NSE_EQ|A', 'AAA'), now=ist(2024, 12, 23, 9, 0))

        assert stock.added_at == '2024-12-23T09:00:00+05:30'
        assert watchlist.find_stock('NSE_EQ|A') is stock

    def test_duplicate_rejected(self, watchlist):
        watchlist.add_stock(make_stock('NSE_EQ|A', 'AAA'))

        with pytest.raises(ValueError, match='already on the watchlist'):
            watchlist.add_stock(make_stock('NSE_EQ|A', 'AAA'))

    def test_add_stocks_upserts(self, watchlist):
        original = watchlist.add_stock(make_stock('NSE_EQ|A', 'AAA', score=60))
        original.tracking_status = TrackingStatus.ENTRY_ZONE
        original.analysis_id = 'analysis-1'

        fresh = make_stock('NSE_EQ|A', 'AAA', scan_type='momentum', score=75)
        fresh.levels = Levels(entry=110.0, stop=105.0, target1=115.0, target2=120.0)

        counts = watchlist.add_stocks([fresh, make_stock('NSE_EQ|B', 'BBB')])

        assert counts == {'added': 1, 'updated': 1}
        assert len(watchlist.stocks) == 2
        updated = watchlist.find_stock('NSE_EQ|A')
        assert updated is original
        assert updated.levels.entry == 110.0
        assert updated.scan_type == 'momentum'
        assert updated.tracking_status == TrackingStatus.ENTRY_ZONE
        assert updated.analysis_id is None

    def test_update_stock_status(self, watchlist):
        watchlist.add_stock(make_stock('NSE_EQ|A', 'AAA'))

        changed = watchlist.update_stock_status('NSE_EQ|A', TrackingStatus.APPROACHING,
                                                now=ist(2024, 12, 24, 15, 30))
        unchanged = watchlist.update_stock_status('NSE_EQ|A', TrackingStatus.APPROACHING)

        stock = watchlist.find_stock('NSE_EQ|A')
        assert changed is True
        assert unchanged is False
        assert stock.previous_status == TrackingStatus.WATCHING
        assert stock.status_changed_at == '2024-12-24T15:30:00+05:30'

    def test_unknown_stock(self, watchlist):
        with pytest.raises(KeyError):
            watchlist.update_stock_status('NSE_EQ|Z', TrackingStatus.APPROACHING)
        with pytest.raises(KeyError):
            watchlist.link_analysis('NSE_EQ|Z', 'analysis-1')

    def test_contains(self, watchlist):
        assert watchlist.contains(ist(2024, 12, 27, 15, 30))
        assert not watchlist.contains(ist(2024, 12, 28, 0, 0))


class TestCompleteWeek:
    def test_unresolved_stocks_expire(self):
        watchlist = Watchlist.for_week(ist(2024, 12, 23, 9, 0))
        waiting = watchlist.add_stock(make_stock('NSE_EQ|A', 'AAA', score=70))
        near = watchlist.add_stock(make_stock('NSE_EQ|B', 'BBB', scan_type='pullback', score=80))
        near.tracking_status = TrackingStatus.APPROACHING
        traded = watchlist.add_stock(make_stock('NSE_EQ|C', 'CCC'))
        traded.tracking_status = TrackingStatus.TARGET1_HIT
        traded.trade_simulation = TradeSimulation(capital=100000.0, status=SimulationStatus.EXPIRED,
                                                  total_pnl=2500.456)

        summary = watchlist.complete_week(now=ist(2024, 12, 27, 16, 0))

        assert waiting.tracking_status == TrackingStatus.EXPIRED
        assert near.tracking_status == TrackingStatus.EXPIRED
        assert traded.tracking_status == TrackingStatus.TARGET1_HIT
        assert watchlist.status == WatchlistStatus.COMPLETED
        assert watchlist.completed_at == '2024-12-27T16:00:00+05:30'
        assert summary == {
            'total_stocks': 3,
            'avg_setup_score': 75.0,
            'scan_breakdown': {'breakout': 2, 'pullback': 1},
            'status_breakdown': {'EXPIRED': 2, 'TARGET1_HIT': 1},
            'simulation_breakdown': {'EXPIRED': 1},
            'total_simulated_pnl': 2500.46,
        }


class TestDocument:
    def test_to_dict_from_dict(self):
        watchlist = Watchlist.for_week(ist(2024, 12, 23, 9, 0))
        watchlist.add_stock(make_stock('NSE_EQ|A', 'AAA'))

        restored = Watchlist.from_dict(watchlist.to_dict())

        assert restored.week_start == watchlist.week_start
        assert restored.week_end == watchlist.week_end
        assert restored.week_label == 'Dec 23 - Dec 27, 2024'
        assert restored.to_dict() == watchlist.to_dict()

    def test_unknown_field_rejected(self):
        data = Watchlist.for_week(ist(2024, 12, 23, 9, 0)).to_dict()
        data['owner'] = 'someone'

        with pytest.raises(SchemaError, match='Unknown watchlist fields'):
            Watchlist.from_dict(data)

    def test_bad_week_start_rejected(self):
        data = Watchlist.for_week(ist(2024, 12, 23, 9, 0)).to_dict()
        data['week_start'] = 'last monday'

        with pytest.raises(SchemaError):
            Watchlist.from_dict(data)

    def test_unknown_status_rejected(self):
        data = Watchlist.for_week(ist(2024, 12, 23, 9, 0)).to_dict()
        data['stocks'] = [dict(make_stock('NSE_EQ|A', 'AAA').to_dict(), tracking_status='MOONING')]

        with pytest.raises(SchemaError, match='Unknown tracking_status'):
            Watchlist.from_dict(data)


class FakeStore:
    def __init__(self, watchlists=()):
        self.watchlists = {w.key: w for w in watchlists}
        self.saved = []

    def get_watchlist(self, week_start):
        return self.watchlists.get(week_start.isoformat())

    def get_watchlists(self, status=None):
        found = [w for w in self.watchlists.values() if status is None or w.status == status]
        return sorted(found, key=lambda w: w.week_start, reverse=True)

    def save_watchlist(self, watchlist):
        self.watchlists[watchlist.key] = watchlist
        self.saved.append(watchlist.key)
        return True


class TestStoreOperations:
    def test_creates_current_week(self):
        store = FakeStore()

        watchlist = get_or_create_current_week(store, now=ist(2024, 12, 24, 9, 0))

        assert watchlist.key == '2024-12-23'
        assert store.saved == ['2024-12-23']

    def test_returns_existing_week(self):
        existing = Watchlist.for_week(ist(2024, 12, 23, 9, 0))
        store = FakeStore([existing])

        watchlist = get_or_create_current_week(store, now=ist(2024, 12, 26, 9, 0))

        assert watchlist is existing
        assert store.saved == []

    def test_weekend_creates_next_week(self):
        store = FakeStore()

        watchlist = get_or_create_current_week(store, now=ist(2024, 12, 28, 20, 0))

        assert watchlist.key == '2024-12-30'

    def test_stale_actives_archived(self, caplog):
        old = Watchlist.for_week(ist(2024, 12, 16, 9, 0))
        store = FakeStore([old])

        current = get_or_create_current_week(store, now=ist(2024, 12, 23, 9, 0))

        assert old.status == WatchlistStatus.ARCHIVED
        assert current.status == WatchlistStatus.ACTIVE
        assert 'Archived 1 stale ACTIVE' in caplog.text

    def test_single_active_untouched(self):
        store = FakeStore([Watchlist.for_week(ist(2024, 12, 23, 9, 0))])

        assert archive_stale_actives(store) == 0
