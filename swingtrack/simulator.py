"""
Trade Simulator

Replays a stock's levels against its daily bars, from scratch, to derive the
hypothetical trade: entry fill, staged exits at T1/T2/T3, stop or trailing
stop exits, week-end expiry, P&L and an append-only event log.

The replay is a pure function of (levels, bars, policy). It never patches a
previous simulation, so running it twice on the same inputs gives identical
output and a late-arriving bar can never leave the state out of step.
"""

import logging
import math
from typing import Iterable, List, Optional, Sequence, Union

from swingtrack import config
from swingtrack.config import SimulationPolicy
from swingtrack.errors import BarOrderError, LevelsValidationError
from swingtrack.models import (
    Bar,
    DailySnapshot,
    EventType,
    Levels,
    SimulationEvent,
    SimulationStatus,
    TradeSimulation,
    WatchlistStock,
)

logger = logging.getLogger(__name__)


def _to_bar(item) -> Bar:
    if isinstance(item, Bar):
        return item
    if isinstance(item, DailySnapshot):
        return item.to_bar()
    if isinstance(item, dict):
        return Bar.from_dict(item)
    raise TypeError(f"Cannot use {type(item).__name__} as a bar")


def validate_bar_order(bars: Sequence[Bar]) -> None:
    """
    Raises:
        BarOrderError: If dates are not strictly ascending
    """
    for previous, current in zip(bars, bars[1:]):
        if current.date <= previous.date:
            if current.date == previous.date:
                raise BarOrderError(f"Duplicate bar for {current.date.isoformat()}")
            raise BarOrderError(
                f"Bars out of order: {current.date.isoformat()} follows {previous.date.isoformat()}"
            )


class _TradeReplay:
    """Mutable state for a single replay. Never shared between calls."""

    def __init__(self, levels: Levels, policy: SimulationPolicy):
        self.levels = levels
        self.policy = policy
        self.side = 1 if levels.is_long else -1
        self.sim = TradeSimulation(capital=policy.capital)
        self.sim.trailing_stop = levels.stop

    # -- helpers --------------------------------------------------------------

    def _favourable(self, price: float, level: float) -> bool:
        """True if price has reached level in the trade's direction."""
        return self.side * (price - level) >= 0

    def _pnl(self, price: float, qty: int) -> float:
        return self.side * (price - self.sim.entry_price) * qty

    def _record(self, bar: Bar, event_type: EventType, price: float, qty: int,
                pnl: float, detail: str) -> None:
        self.sim.events.append(SimulationEvent(
            date=bar.date, type=event_type, price=price, qty=qty, pnl=pnl, detail=detail,
        ))
        logger.debug("%s %s price=%.2f qty=%d pnl=%.2f", bar.date, event_type.value, price, qty, pnl)

    def _book(self, bar: Bar, event_type: EventType, price: float, qty: int, detail: str) -> None:
        pnl = self._pnl(price, qty)
        self.sim.realized_pnl += pnl
        self.sim.qty_remaining -= qty
        self.sim.qty_exited += qty
        self._record(bar, event_type, price, qty, pnl, detail)

    # -- entry ----------------------------------------------------------------

    def _fill(self, bar: Bar, price: float, qty: int, detail: str) -> None:
        sim = self.sim
        sim.status = SimulationStatus.ENTERED
        sim.entry_price = price
        sim.entry_date = bar.date
        sim.qty_total = qty
        sim.qty_remaining = qty
        sim.qty_exited = 0
        sim.trailing_stop = self.levels.stop
        sim.peak_price = price
        self._record(bar, EventType.ENTRY, price, qty, 0.0, detail)

    def check_touch_entry(self, bar: Bar) -> bool:
        trigger = self.levels.trigger_price
        reached = bar.high >= trigger if self.side > 0 else bar.low <= trigger
        if not reached:
            return False

        qty = math.floor(self.policy.capital / trigger)
        self._fill(bar, trigger, qty,
                   f"Entry triggered at {trigger:.2f}. Bought {qty} shares.")
        return True

    def check_close_signal(self, bar: Bar) -> None:
        entry = self.levels.entry
        if not self._favourable(bar.close, entry):
            return

        premium_pct = self.side * (bar.close - entry) / entry * 100
        if premium_pct > config.ENTRY_EXTENDED_MAX_PCT:
            self._record(bar, EventType.ENTRY_SKIPPED, bar.close, 0, 0.0,
                         f"Entry signal skipped. Close {bar.close:.2f} is +{premium_pct:.1f}% "
                         f"beyond entry {entry:.2f}. Wait for pullback.")
            return

        planned_qty = math.floor(self.policy.capital / entry)
        self.sim.status = SimulationStatus.ENTRY_SIGNALED
        self.sim.signal_date = bar.date
        self.sim.signal_close = bar.close
        self._record(bar, EventType.ENTRY_SIGNAL, bar.close, planned_qty, 0.0,
                     f"Entry signal confirmed. Close {bar.close:.2f} vs entry {entry:.2f} "
                     f"(+{premium_pct:.1f}%). Buy at next open.")

    def execute_signal(self, bar: Bar) -> bool:
        """Fill a confirmed close-above signal at this bar's open."""
        sim, levels = self.sim, self.levels
        entry, stop, open_price = levels.entry, levels.stop, bar.open
        premium_pct = self.side * (open_price - entry) / entry * 100

        skip_reason = None
        if self.side * (open_price - stop) < 0:
            skip_reason = f"open {open_price:.2f} is beyond stop {stop:.2f}"
        elif premium_pct > config.ENTRY_EXTENDED_MAX_PCT:
            skip_reason = f"open {open_price:.2f} is overextended (+{premium_pct:.1f}%)"

        if skip_reason:
            sim.status = SimulationStatus.WAITING
            sim.signal_date = None
            sim.signal_close = None
            self._record(bar, EventType.ENTRY_SKIPPED, open_price, 0, 0.0,
                         f"Entry skipped: {skip_reason}.")
            return False

        qty = math.floor(self.policy.capital / entry)
        note = ''
        if premium_pct > config.ENTRY_GOOD_MAX_PCT:
            # Same rupee risk as the planned entry
            reduced = math.floor(qty * (entry - stop) / (open_price - stop))
            note = f" (extended +{premium_pct:.1f}%, reduced from {qty})"
            qty = reduced

        signal_date = sim.signal_date
        self._fill(bar, open_price, qty,
                   f"Bought {qty} shares at open {open_price:.2f}{note}. "
                   f"Signal was close {sim.signal_close:.2f} on {signal_date.isoformat()}.")
        return True

    # -- exits ----------------------------------------------------------------

    def check_exits(self, bar: Bar) -> None:
        sim, levels = self.sim, self.levels
        side = self.side

        extreme = bar.high if side > 0 else bar.low
        if side * (extreme - sim.peak_price) > 0:
            sim.peak_price = extreme
        sim.peak_gain_pct = side * (sim.peak_price - sim.entry_price) / sim.entry_price * 100

        # Stop first: within a bar the worst case is assumed
        adverse = bar.low if side > 0 else bar.high
        if side * (adverse - sim.trailing_stop) <= 0:
            price = sim.trailing_stop
            trailing = side * (sim.trailing_stop - levels.stop) > 0
            qty = sim.qty_remaining
            event_type = EventType.TRAILING_STOP if trailing else EventType.STOPPED_OUT
            detail = (f"Trailing stop hit at {price:.2f}. Exited {qty} shares."
                      if trailing else f"Stop loss hit at {price:.2f}. Exited {qty} shares.")
            self._book(bar, event_type, price, qty, detail)
            sim.status = SimulationStatus.STOPPED_OUT
            return

        if sim.status == SimulationStatus.ENTERED and self._favourable(extreme, levels.target1):
            qty = math.floor(sim.qty_total * self.policy.t1_booking_pct)
            if self.policy.breakeven_anchor == 'planned_entry':
                pick = max if side > 0 else min
                breakeven = pick(levels.entry, sim.entry_price)
            else:
                breakeven = sim.entry_price
            self._book(bar, EventType.T1_HIT, levels.target1, qty,
                       f"T1 hit at {levels.target1:.2f}. Booked {qty} shares. "
                       f"Stop moved to {breakeven:.2f}.")
            sim.trailing_stop = breakeven
            sim.status = SimulationStatus.PARTIAL_EXIT
            if sim.qty_remaining == 0:
                sim.status = SimulationStatus.FULL_EXIT
                return

        t2, t3 = levels.target2, levels.target3
        if (sim.status == SimulationStatus.PARTIAL_EXIT and t2 is not None
                and not sim.has_event(EventType.T2_HIT) and self._favourable(extreme, t2)):
            if t3 is not None:
                qty = math.floor(sim.qty_remaining * self.policy.t2_booking_pct)
                self._book(bar, EventType.T2_HIT, t2, qty,
                           f"T2 hit at {t2:.2f}. Booked {qty} shares, holding "
                           f"{sim.qty_remaining - qty} for T3. Stop moved to {t2:.2f}.")
                sim.trailing_stop = t2
            else:
                qty = sim.qty_remaining
                self._book(bar, EventType.T2_HIT, t2, qty,
                           f"T2 hit at {t2:.2f}. Exited remaining {qty} shares.")
            if sim.qty_remaining == 0:
                sim.status = SimulationStatus.FULL_EXIT
                return

        if (sim.status == SimulationStatus.PARTIAL_EXIT and t3 is not None
                and sim.has_event(EventType.T2_HIT) and self._favourable(extreme, t3)):
            qty = sim.qty_remaining
            self._book(bar, EventType.T3_HIT, t3, qty,
                       f"T3 hit at {t3:.2f}. Exited final {qty} shares.")
            sim.status = SimulationStatus.FULL_EXIT

    # -- driver ---------------------------------------------------------------

    def run(self, bars: Sequence[Bar], week_closed: bool,
            current_price: Optional[float]) -> TradeSimulation:
        sim, levels = self.sim, self.levels
        window = levels.entry_window_days

        for index, bar in enumerate(bars):
            if sim.status in (SimulationStatus.FULL_EXIT, SimulationStatus.STOPPED_OUT,
                              SimulationStatus.EXPIRED):
                break

            if sim.status == SimulationStatus.ENTRY_SIGNALED:
                if not self.execute_signal(bar):
                    continue

            elif sim.status == SimulationStatus.WAITING:
                if window is not None and index >= window:
                    sim.status = SimulationStatus.EXPIRED
                    logger.debug("Entry window of %d bars passed without entry", window)
                    break
                if levels.entry_confirmation == 'close_above':
                    self.check_close_signal(bar)
                    continue
                if not self.check_touch_entry(bar):
                    continue

            self.check_exits(bar)

        latest = current_price if current_price is not None else (bars[-1].close if bars else None)

        if week_closed and bars:
            last = bars[-1]
            if sim.status in (SimulationStatus.WAITING, SimulationStatus.ENTRY_SIGNALED):
                sim.status = SimulationStatus.EXPIRED
            elif sim.is_open:
                qty = sim.qty_remaining
                self._book(last, EventType.EXPIRED, last.close, qty,
                           f"Week closed. Exited remaining {qty} shares at {last.close:.2f}.")
                sim.status = SimulationStatus.EXPIRED

        if sim.entry_price is not None and sim.qty_remaining and latest is not None:
            sim.unrealized_pnl = self._pnl(latest, sim.qty_remaining)
        else:
            sim.unrealized_pnl = 0.0
        sim.total_pnl = sim.realized_pnl + sim.unrealized_pnl
        sim.total_return_pct = sim.total_pnl / sim.capital * 100
        return sim


class TradeSimulator:
    """
    Replays levels against daily bars to produce a TradeSimulation.

    Instances hold only the booking policy, so one simulator can be shared
    across stocks and threads.
    """

    def __init__(self, policy: Optional[SimulationPolicy] = None):
        self.policy = policy or SimulationPolicy()

    def simulate_trade(self, stock: Union[WatchlistStock, Levels],
                       bars: Iterable[Union[Bar, DailySnapshot, dict]],
                       capital: Optional[float] = None,
                       week_closed: bool = False,
                       current_price: Optional[float] = None) -> TradeSimulation:
        """
        Simulate the trade from scratch.

        Args:
            stock: WatchlistStock (its levels are used) or Levels
            bars: Daily bars in strictly ascending date order; DailySnapshot
                and dict rows are accepted and converted
            capital: Notional capital (defaults to the policy's capital)
            week_closed: True when the last bar is the week's final session;
                unfilled setups expire and open positions are closed at the
                last close
            current_price: Mark price for unrealized P&L (defaults to the
                last bar's close)

        Returns:
            A new TradeSimulation

        Raises:
            LevelsValidationError: If levels are missing or inconsistent
            BarOrderError: If bars are not strictly ascending by date
            SchemaError: If a bar has a non-positive price or inconsistent high/low
            ValueError: If capital cannot buy a single share

        Examples:
            >>> levels = Levels(entry=100, stop=92, target1=110, target2=120,
            ...                 entry_range=(98, 100))
            >>> sim = TradeSimulator().simulate_trade(levels, [
            ...     Bar(date(2024, 12, 23), 97, 99, 96, 98.5)])
            >>> sim.status.value, sim.entry_price, sim.qty_total
            ('ENTERED', 98, 1020)
        """
        levels = stock.levels if isinstance(stock, WatchlistStock) else stock
        if levels is None:
            raise LevelsValidationError("Stock has no levels")
        levels.validate()

        policy = self.policy
        if capital is not None and capital != policy.capital:
            policy = SimulationPolicy(
                capital=capital,
                t1_booking_pct=policy.t1_booking_pct,
                t2_booking_pct=policy.t2_booking_pct,
                breakeven_anchor=policy.breakeven_anchor,
            )

        if math.floor(policy.capital / max(levels.entry, levels.trigger_price)) < 1:
            raise ValueError(f"Capital {policy.capital} cannot buy one share at {levels.entry}")

        ordered: List[Bar] = [_to_bar(b) for b in bars]
        for bar in ordered:
            bar.validate()
        validate_bar_order(ordered)

        return _TradeReplay(levels, policy).run(ordered, week_closed, current_price)


def annotate_event_times(simulation: TradeSimulation,
                         snapshots: Iterable[DailySnapshot]) -> TradeSimulation:
    """
    Copy intraday crossing times recorded on snapshots onto matching events.

    Only the display-only `time` field is touched.
    """
    crossings = {s.date: s.crossings for s in snapshots if s.crossings}
    for event in simulation.events:
        stamp = crossings.get(event.date, {}).get(event.type.value)
        if stamp:
            event.time = stamp
    return simulation
