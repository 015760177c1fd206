"""
Intraday Reconciliation

Folds a live price into a stock's state during market hours: builds or
updates a provisional bar for today, stamps the time any relevant level was
crossed, and re-runs the full simulation so the result matches what the
end-of-day replay will produce.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests

from swingtrack.config import IST
from swingtrack.errors import DataUnavailableError
from swingtrack.models import (
    DailySnapshot,
    EventType,
    SimulationStatus,
    TERMINAL_SIMULATION_STATUSES,
    WatchlistStock,
)
from swingtrack.simulator import TradeSimulator, annotate_event_times
from swingtrack.status import StatusClassifier, status_from_simulation
from swingtrack.watchlist import week_bounds

logger = logging.getLogger(__name__)


class IntradayReconciler:
    """
    Reconciles live prices with stored snapshots and simulation.

    Args:
        market_data: Provider with get_bars(instrument_key, from_date, to_date)
            and find_level_cross_time(instrument_key, level, direction, on_or_before)
        simulator: TradeSimulator to replay with
        classifier: StatusClassifier for the live status
    """

    def __init__(self, market_data, simulator: Optional[TradeSimulator] = None,
                 classifier: Optional[StatusClassifier] = None):
        self.market_data = market_data
        self.simulator = simulator or TradeSimulator()
        self.classifier = classifier or StatusClassifier()

    def reconcile(self, stock: WatchlistStock, live_price: float,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Apply one live price to a stock, in place.

        Args:
            stock: Watchlist stock (mutated)
            live_price: Latest traded price
            now: Current time (defaults to now in IST)

        Returns:
            Dict with 'changed' (True when the stock must be persisted),
            'status', 'simulation_status' and 'crossings' recorded this call
        """
        if now is None:
            now = datetime.now(IST)
        elif now.tzinfo is None:
            now = IST.localize(now)
        else:
            now = now.astimezone(IST)

        result = {'changed': False, 'status': stock.tracking_status,
                  'simulation_status': None, 'crossings': {}}

        if stock.levels is None or live_price is None or live_price <= 0:
            return result

        previous = stock.trade_simulation
        if previous is not None and previous.status in TERMINAL_SIMULATION_STATUSES:
            result['simulation_status'] = previous.status
            return result

        changed = False
        if not stock.daily_snapshots:
            changed |= self._backfill(stock, now)

        if self._stuck_waiting(stock, now):
            logger.warning("%s: simulation WAITING but history shows entry was triggered; re-simulating",
                           stock.symbol)

        snapshot, bar_changed = self._provisional_bar(stock, live_price, now)
        changed |= bar_changed

        for event_type, level, direction in self._watched_levels(stock):
            if event_type.value in snapshot.crossings:
                continue
            reached = live_price >= level if direction == 'above' else live_price <= level
            if not reached:
                continue
            snapshot.crossings[event_type.value] = self._cross_time(stock, level, direction, now)
            result['crossings'][event_type.value] = snapshot.crossings[event_type.value]
            changed = True

        try:
            simulation = self.simulator.simulate_trade(
                stock.levels, stock.daily_snapshots, current_price=live_price)
        except ValueError as e:
            logger.warning("%s: simulation not recomputed: %s", stock.symbol, e)
            result['changed'] = changed
            return result
        annotate_event_times(simulation, stock.daily_snapshots)

        if previous is None or simulation.to_dict() != previous.to_dict():
            stock.trade_simulation = simulation
            changed = True
        result['simulation_status'] = simulation.status

        status = status_from_simulation(simulation) or self.classifier.classify(live_price, stock.levels)
        if stock.set_tracking_status(status, now.isoformat()):
            logger.info("%s: %s -> %s (intraday)", stock.symbol, stock.previous_status.value, status.value)
            changed = True

        result['status'] = stock.tracking_status
        result['changed'] = changed
        return result

    # -------------------------------------------------------------------------

    def _backfill(self, stock: WatchlistStock, now: datetime) -> bool:
        """Reconstruct this week's completed sessions when nothing was recorded."""
        week_start = week_bounds(now)[0].date()
        yesterday = now.date() - timedelta(days=1)
        if yesterday < week_start:
            return False

        try:
            bars = self.market_data.get_bars(stock.instrument_key, week_start, yesterday)
        except (requests.exceptions.RequestException, DataUnavailableError) as e:
            logger.warning("%s: backfill failed: %s", stock.symbol, e)
            return False

        added = 0
        for bar in bars:
            if bar.date >= now.date():
                continue
            if stock.upsert_snapshot(DailySnapshot.from_bar(bar, is_backfill=True)):
                added += 1
        if added:
            logger.info("%s: backfilled %d session(s) from %s", stock.symbol, added, week_start.isoformat())
        return added > 0

    def _stuck_waiting(self, stock: WatchlistStock, now: datetime) -> bool:
        simulation = stock.trade_simulation
        if simulation is None or simulation.status != SimulationStatus.WAITING:
            return False
        if stock.levels.entry_confirmation != 'touch':
            return False

        trigger = stock.levels.trigger_price
        for snapshot in stock.daily_snapshots:
            if snapshot.date >= now.date():
                continue
            crossed = snapshot.high >= trigger if stock.levels.is_long else snapshot.low <= trigger
            if crossed:
                return True
        return False

    def _provisional_bar(self, stock: WatchlistStock, price: float,
                         now: datetime) -> Tuple[DailySnapshot, bool]:
        """Create or extend today's provisional bar. An end-of-day bar is left alone."""
        today = now.date()
        existing = stock.snapshot_for(today)

        if existing is not None and not existing.is_intraday:
            return existing, False

        if existing is None:
            snapshot = DailySnapshot(date=today, open=price, high=price, low=price,
                                     close=price, is_intraday=True)
        else:
            snapshot = replace(existing, high=max(existing.high, price),
                               low=min(existing.low, price), close=price,
                               crossings=dict(existing.crossings))

        changed = stock.upsert_snapshot(snapshot)
        return stock.snapshot_for(today), changed

    def _watched_levels(self, stock: WatchlistStock) -> List[Tuple[EventType, float, str]]:
        """Levels whose crossing matters in the current simulation state."""
        levels = stock.levels
        simulation = stock.trade_simulation
        up, down = ('above', 'below') if levels.is_long else ('below', 'above')
        status = simulation.status if simulation is not None else SimulationStatus.WAITING

        if status == SimulationStatus.WAITING:
            if levels.entry_confirmation != 'touch':
                return []
            return [(EventType.ENTRY, levels.trigger_price, up)]

        if status == SimulationStatus.ENTERED:
            return [
                (EventType.STOPPED_OUT, levels.stop, down),
                (EventType.T1_HIT, levels.target1, up),
            ]

        if status == SimulationStatus.PARTIAL_EXIT:
            trailing = simulation.trailing_stop
            side = 1 if levels.is_long else -1
            stop_event = (EventType.TRAILING_STOP if side * (trailing - levels.stop) > 0
                          else EventType.STOPPED_OUT)
            watched = [(stop_event, trailing, down)]
            if levels.target2 is not None and not simulation.has_event(EventType.T2_HIT):
                watched.append((EventType.T2_HIT, levels.target2, up))
            elif levels.target3 is not None:
                watched.append((EventType.T3_HIT, levels.target3, up))
            return watched

        return []

    def _cross_time(self, stock: WatchlistStock, level: float, direction: str, now: datetime) -> str:
        try:
            cross = self.market_data.find_level_cross_time(
                stock.instrument_key, level, direction, now.date())
        except (requests.exceptions.RequestException, DataUnavailableError) as e:
            logger.warning("%s: crossing lookup failed (%s); using current time", stock.symbol, e)
            cross = None

        if cross is None:
            return now.isoformat()
        logger.info("%s: crossed %s %.2f at %s", stock.symbol, direction, level, cross['cross_time'])
        return cross['cross_time']
