"""
Unit tests for the end-of-day DailyTracker.

Tests snapshot recording, status and flag classification, simulation
replay, week close, provisional bar replacement and skipped stocks.
"""

from datetime import date, datetime, timedelta

import pytest
import requests

from swingtrack.config import IST
from swingtrack.models import (
    Bar,
    DailySnapshot,
    EventType,
    Flag,
    Levels,
    SimulationStatus,
    TrackingStatus,
    TradeSimulation,
    WatchlistStock,
)
from swingtrack.tracking import DailyTracker
from swingtrack.watchlist import Watchlist


KEY = 'NSE_EQ|INE000A01010'
MONDAY = date(2024, 12, 23)
TUESDAY = date(2024, 12, 24)
FRIDAY = date(2024, 12, 27)


def pre_week_bars():
    start = date(2024, 11, 1)
    bars = []
    for i in range(30):
        close = 98.0 + (0.5 if i % 2 else 0.0)
        bars.append(Bar(start + timedelta(days=i), close, close + 1.0, close - 1.0, close, 1000.0))
    return bars


class FakeMarketData:
    def __init__(self, bars=None, error=None):
        self.bars = bars or []
        self.error = error

    def get_bars(self, instrument_key, from_date, to_date):
        if self.error is not None:
            raise self.error
        return [b for b in self.bars if from_date <= b.date <= to_date]


class FakeStore:
    def __init__(self, active=None):
        self.active = active
        self.saved = []

    def find_active(self):
        return self.active

    def save_watchlist(self, watchlist):
        self.saved.append(watchlist)
        return True


@pytest.fixture
def watchlist():
    watchlist = Watchlist.for_week(IST.localize(datetime(2024, 12, 23, 8, 0)))
    watchlist.add_stock(WatchlistStock(
        instrument_key=KEY, symbol='ACME', scan_type='breakout',
        levels=Levels(entry=100.0, stop=96.0, target1=104.0, target2=108.0, entry_range=(100.0, 101.0)),
    ))
    return watchlist


class TestDailyRun:
    def test_records_snapshot_and_enters(self, watchlist):
        market = FakeMarketData(pre_week_bars() + [Bar(MONDAY, 99.0, 100.5, 98.8, 100.3, 3000.0)])
        store = FakeStore(watchlist)

        summary = DailyTracker(market, store).run(today=MONDAY)

        assert summary['processed'] == 1
        assert summary['skipped'] == 0
        assert store.saved == [watchlist]

        stock = watchlist.stocks[0]
        snapshot = stock.snapshot_for(MONDAY)
        assert snapshot.close == 100.3
        assert snapshot.is_intraday is False
        assert snapshot.volume_vs_avg == 3.0
        assert snapshot.distance_from_entry_pct == 0.3
        assert snapshot.tracking_status == TrackingStatus.ENTRY_ZONE
        assert 0 < snapshot.rsi < 72

        assert stock.trade_simulation.status == SimulationStatus.ENTERED
        assert stock.trade_simulation.entry_price == 100.0
        assert stock.tracking_status == TrackingStatus.ENTRY_ZONE
        assert stock.status_changed_at == '2024-12-23T15:30:00+05:30'
        assert stock.tracking_flags == [Flag.VOLUME_SPIKE, Flag.APPROACHING_ENTRY]

        result = summary['results'][0]
        assert result['status_changed'] is True
        assert result['new_flags'] == [Flag.VOLUME_SPIKE, Flag.APPROACHING_ENTRY]
        assert summary['review_triggers'] == [{
            'instrument_key': KEY,
            'symbol': 'ACME',
            'reason': 'Stock entered buy zone. Should user enter now?',
        }]

    def test_eod_replaces_provisional_bar_and_keeps_crossing(self, watchlist):
        stock = watchlist.stocks[0]
        stock.upsert_snapshot(DailySnapshot(date=MONDAY, open=100.5, high=100.5, low=100.5, close=100.5,
                                            is_intraday=True, crossings={'ENTRY': '2024-12-23T11:00:00+05:30'}))
        market = FakeMarketData(pre_week_bars() + [
            Bar(MONDAY, 99.0, 100.5, 98.8, 100.3, 1000.0),
            Bar(TUESDAY, 100.3, 101.0, 99.9, 100.8, 1000.0),
        ])

        DailyTracker(market).run(watchlist, today=TUESDAY)

        assert [s.date for s in stock.daily_snapshots] == [MONDAY, TUESDAY]
        monday = stock.snapshot_for(MONDAY)
        assert monday.is_intraday is False
        assert monday.low == 98.8
        assert monday.crossings == {'ENTRY': '2024-12-23T11:00:00+05:30'}

        entry = stock.trade_simulation.events[0]
        assert entry.type == EventType.ENTRY
        assert entry.date == MONDAY
        assert entry.time == '2024-12-23T11:00:00+05:30'

    def test_week_close_expires_untriggered_setup(self, watchlist):
        week = [Bar(MONDAY + timedelta(days=i), 98.0, 99.0, 97.5, 98.5, 1000.0) for i in range(5)]
        market = FakeMarketData(pre_week_bars() + week)

        summary = DailyTracker(market).run(watchlist, today=FRIDAY)

        stock = watchlist.stocks[0]
        assert summary['processed'] == 1
        assert len(stock.daily_snapshots) == 5
        assert stock.trade_simulation.status == SimulationStatus.EXPIRED
        assert stock.trade_simulation.events == []
        assert stock.tracking_status == TrackingStatus.EXPIRED

    def test_finished_trade_only_records_snapshot(self, watchlist):
        stock = watchlist.stocks[0]
        stock.tracking_status = TrackingStatus.STOPPED_OUT
        stock.trade_simulation = TradeSimulation(capital=100000.0, status=SimulationStatus.STOPPED_OUT)
        market = FakeMarketData(pre_week_bars() + [Bar(TUESDAY, 99.0, 100.5, 98.8, 100.3, 1000.0)])

        summary = DailyTracker(market).run(watchlist, today=TUESDAY)

        assert stock.snapshot_for(TUESDAY) is not None
        assert stock.tracking_status == TrackingStatus.STOPPED_OUT
        assert stock.trade_simulation.status == SimulationStatus.STOPPED_OUT
        assert summary['review_triggers'] == []


class TestSkips:
    def test_no_session_this_week(self, watchlist):
        summary = DailyTracker(FakeMarketData(pre_week_bars())).run(watchlist, today=MONDAY)

        assert summary['processed'] == 0
        assert summary['skipped'] == 1
        assert watchlist.stocks[0].daily_snapshots == []

    def test_network_failure(self, watchlist):
        market = FakeMarketData(error=requests.exceptions.ConnectionError('down'))

        summary = DailyTracker(market).run(watchlist, today=MONDAY)

        assert summary['skipped'] == 1

    def test_no_active_watchlist(self):
        summary = DailyTracker(FakeMarketData(), FakeStore()).run(today=MONDAY)

        assert summary['processed'] == 0

    def test_requires_watchlist_or_store(self):
        with pytest.raises(ValueError):
            DailyTracker(FakeMarketData()).run(today=MONDAY)


class TestDryRun:
    def test_dry_run_changes_nothing(self, watchlist):
        market = FakeMarketData(pre_week_bars() + [Bar(MONDAY, 99.0, 100.5, 98.8, 100.3, 3000.0)])
        store = FakeStore(watchlist)
        before = watchlist.to_dict()

        summary = DailyTracker(market, store).run(today=MONDAY, dry_run=True)

        assert summary['dry_run'] is True
        assert summary['processed'] == 1
        assert summary['results'][0]['status'] == TrackingStatus.ENTRY_ZONE
        assert store.saved == []
        assert watchlist.to_dict() == before
