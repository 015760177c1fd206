"""
Daily Tracking

End-of-day run over the active watchlist: records each stock's session as an
authoritative snapshot, classifies status and flags, replays the simulation
from all snapshots and reports what changed.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import requests

from swingtrack import indicators
from swingtrack.config import IST, MARKET_CLOSE
from swingtrack.errors import DataUnavailableError
from swingtrack.models import DailySnapshot, SimulationStatus, WatchlistStock
from swingtrack.simulator import TradeSimulator, annotate_event_times
from swingtrack.status import DailyObservation, StatusClassifier, review_trigger, status_from_simulation
from swingtrack.watchlist import Watchlist

logger = logging.getLogger(__name__)


# Calendar days of history fetched for RSI and the 50-day volume average
HISTORY_DAYS = 120

# Finished trades only get the day's bar recorded
FINISHED_SIMULATION_STATUSES = (SimulationStatus.FULL_EXIT, SimulationStatus.STOPPED_OUT)


def _pct(value: float, base: Optional[float]) -> Optional[float]:
    if not base:
        return None
    return round((value - base) / base * 100, 2)


class DailyTracker:
    """
    Runs the daily tracking pass.

    Args:
        market_data: Provider with get_bars(instrument_key, from_date, to_date)
        store: DatabaseManager used to load the active watchlist and persist
        simulator: TradeSimulator (a default policy is used when omitted)
        classifier: StatusClassifier
    """

    def __init__(self, market_data, store=None, simulator: Optional[TradeSimulator] = None,
                 classifier: Optional[StatusClassifier] = None):
        self.market_data = market_data
        self.store = store
        self.simulator = simulator or TradeSimulator()
        self.classifier = classifier or StatusClassifier()

    def run(self, watchlist: Optional[Watchlist] = None, today: Optional[date] = None,
            dry_run: bool = False, week_closed: Optional[bool] = None) -> Dict[str, Any]:
        """
        Track every stock on the watchlist for one session.

        Args:
            watchlist: Watchlist to track (defaults to the store's active one)
            today: Session date (defaults to today in IST)
            dry_run: Compute on a copy and persist nothing
            week_closed: Whether this is the week's final session (defaults to
                today being on or after the watchlist's last day)

        Returns:
            Dict with processed, skipped, results (per stock) and
            review_triggers
        """
        if watchlist is None:
            if self.store is None:
                raise ValueError("No watchlist given and no store configured")
            watchlist = self.store.find_active()
        if watchlist is None:
            logger.info("No active watchlist; nothing to track")
            return {'processed': 0, 'skipped': 0, 'results': [], 'review_triggers': [], 'dry_run': dry_run}

        if dry_run:
            watchlist = Watchlist.from_dict(watchlist.to_dict())

        today = today or datetime.now(IST).date()
        if week_closed is None:
            week_closed = today >= watchlist.week_end.date()

        results: List[Dict[str, Any]] = []
        skipped = 0
        for stock in watchlist.stocks:
            try:
                outcome = self.track_stock(stock, today, watchlist.week_start.date(), week_closed)
            except (DataUnavailableError, requests.exceptions.RequestException) as e:
                logger.warning("%s: skipped, no market data (%s)", stock.symbol, e)
                outcome = None
            if outcome is None:
                skipped += 1
                continue
            results.append(outcome)

        triggers = [r for r in results if r['review']['trigger']]
        logger.info("Tracked %s: %d processed, %d skipped, %d review trigger(s)%s",
                    watchlist.week_label, len(results), skipped, len(triggers),
                    ' (dry run)' if dry_run else '')

        if not dry_run and self.store is not None:
            self.store.save_watchlist(watchlist)

        return {
            'processed': len(results),
            'skipped': skipped,
            'results': results,
            'review_triggers': [
                {'instrument_key': r['instrument_key'], 'symbol': r['symbol'], 'reason': r['review']['reason']}
                for r in triggers
            ],
            'dry_run': dry_run,
        }

    def track_stock(self, stock: WatchlistStock, today: date, week_start: date,
                    week_closed: bool = False) -> Optional[Dict[str, Any]]:
        """
        Track one stock, in place.

        Returns:
            Per-stock result dict, or None when the stock was skipped

        Raises:
            DataUnavailableError: If there is no session data for the stock
        """
        if stock.levels is None:
            logger.warning("%s: no levels, skipping", stock.symbol)
            return None

        history = self.market_data.get_bars(
            stock.instrument_key, today - timedelta(days=HISTORY_DAYS), today)
        history = [b for b in history if b.date <= today]
        if not history or history[-1].date < week_start:
            raise DataUnavailableError(f"No session this week for {stock.instrument_key}")

        latest = history[-1]
        closes = [b.close for b in history]
        avg_volume = indicators.average_volume([b.volume for b in history[:-1]], 50)
        observation = DailyObservation(
            price=latest.close,
            rsi=indicators.rsi(closes),
            volume=latest.volume,
            avg_volume=avg_volume,
            open=latest.open,
            prev_close=history[-2].close if len(history) > 1 else None,
        )

        # Earlier sessions of the week replace any provisional bars
        for bar in history[:-1]:
            if bar.date < week_start:
                continue
            existing = stock.snapshot_for(bar.date)
            if existing is None or existing.is_provisional:
                crossings = dict(existing.crossings) if existing else {}
                stock.upsert_snapshot(DailySnapshot.from_bar(bar, crossings=crossings))

        existing = stock.snapshot_for(latest.date)
        levels = stock.levels
        snapshot = DailySnapshot.from_bar(
            latest,
            rsi=round(observation.rsi, 2) if observation.rsi is not None else None,
            volume_vs_avg=round(latest.volume / avg_volume, 2) if latest.volume and avg_volume else None,
            distance_from_entry_pct=_pct(latest.close, levels.entry),
            distance_from_stop_pct=_pct(latest.close, levels.stop),
            distance_from_target_pct=_pct(latest.close, levels.target2 or levels.target1),
            tracking_status=stock.tracking_status,
            tracking_flags=list(stock.tracking_flags),
            analysis_id=stock.analysis_id,
            crossings=dict(existing.crossings) if existing else {},
        )

        previous = stock.trade_simulation
        if previous is not None and previous.status in FINISHED_SIMULATION_STATUSES:
            stock.upsert_snapshot(snapshot)
            return self._result(stock, stock.tracking_status, stock.tracking_flags, {'trigger': False, 'reason': None})

        classified = self.classifier.classify_status(observation, levels)
        stock.upsert_snapshot(snapshot)

        try:
            simulation = self.simulator.simulate_trade(levels, stock.daily_snapshots, week_closed=week_closed)
            annotate_event_times(simulation, stock.daily_snapshots)
            stock.trade_simulation = simulation
        except ValueError as e:
            logger.warning("%s: keeping last simulation, replay failed: %s", stock.symbol, e)
            simulation = previous

        old_status, old_flags = stock.tracking_status, list(stock.tracking_flags)
        new_status = status_from_simulation(simulation) or classified['status']
        stamp = IST.localize(datetime.combine(today, MARKET_CLOSE)).isoformat()
        if stock.set_tracking_status(new_status, stamp):
            logger.info("%s: %s -> %s", stock.symbol, old_status.value, new_status.value)
        stock.tracking_flags = list(classified['flags'])

        stored = stock.snapshot_for(latest.date)
        stored.tracking_status = new_status
        stored.tracking_flags = list(classified['flags'])

        review = review_trigger(old_status, new_status, old_flags, classified['flags'],
                                close=latest.close, levels=levels)
        return self._result(stock, old_status, old_flags, review)

    @staticmethod
    def _result(stock: WatchlistStock, old_status, old_flags, review: Dict[str, Any]) -> Dict[str, Any]:
        simulation = stock.trade_simulation
        return {
            'instrument_key': stock.instrument_key,
            'symbol': stock.symbol,
            'old_status': old_status,
            'status': stock.tracking_status,
            'status_changed': old_status != stock.tracking_status,
            'new_flags': [f for f in stock.tracking_flags if f not in old_flags],
            'simulation_status': simulation.status if simulation is not None else None,
            'review': review,
        }
