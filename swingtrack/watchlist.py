"""
Weekly watchlist aggregate.

One Watchlist per trading week holds the tracked stocks. Week boundaries are
computed once, in the trading timezone, when the watchlist is created and are
never recomputed from the stored document.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from swingtrack.config import IST, WEEK_TRADING_DAYS
from swingtrack.errors import SchemaError
from swingtrack.models import TrackingStatus, WatchlistStock, parse_enum

logger = logging.getLogger(__name__)


class WatchlistStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    ARCHIVED = 'ARCHIVED'


# Statuses that never reached a trade and expire when the week completes
UNRESOLVED_STATUSES = (TrackingStatus.WATCHING, TrackingStatus.APPROACHING)


def _to_ist(moment: Optional[datetime]) -> datetime:
    if moment is None:
        return datetime.now(IST)
    if moment.tzinfo is None:
        return IST.localize(moment)
    return moment.astimezone(IST)


def week_bounds(now: Optional[datetime] = None, roll_weekend: bool = False) -> Tuple[datetime, datetime]:
    """
    Trading week containing `now`: Monday 00:00 to Friday 23:59:59 IST.

    Args:
        now: Wall-clock time (naive values are taken as IST)
        roll_weekend: On Saturday/Sunday return the coming week instead of
            the one just finished (screening runs over the weekend)

    Examples:
        >>> start, end = week_bounds(IST.localize(datetime(2024, 12, 25, 10, 0)))
        >>> start.date().isoformat(), end.date().isoformat()
        ('2024-12-23', '2024-12-27')
    """
    local = _to_ist(now)
    monday = local.date() - timedelta(days=local.weekday())
    if roll_weekend and local.weekday() >= WEEK_TRADING_DAYS:
        monday += timedelta(days=7)

    start = IST.localize(datetime(monday.year, monday.month, monday.day))
    friday = monday + timedelta(days=WEEK_TRADING_DAYS - 1)
    end = IST.localize(datetime(friday.year, friday.month, friday.day, 23, 59, 59))
    return start, end


def week_label(start: datetime, end: datetime) -> str:
    """
    Examples:
        >>> week_label(datetime(2024, 12, 23), datetime(2024, 12, 27))
        'Dec 23 - Dec 27, 2024'
    """
    return f"{start:%b} {start.day} - {end:%b} {end.day}, {end.year}"


@dataclass
class Watchlist:
    """Aggregate root for one trading week."""

    week_start: datetime
    week_end: datetime
    week_label: str = ''
    status: WatchlistStatus = WatchlistStatus.ACTIVE
    stocks: List[WatchlistStock] = field(default_factory=list)
    week_summary: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def for_week(cls, now: Optional[datetime] = None, roll_weekend: bool = False) -> 'Watchlist':
        start, end = week_bounds(now, roll_weekend)
        return cls(
            week_start=start,
            week_end=end,
            week_label=week_label(start, end),
            created_at=_to_ist(now).isoformat(),
        )

    @property
    def key(self) -> str:
        return self.week_start.date().isoformat()

    def contains(self, moment: datetime) -> bool:
        return self.week_start <= _to_ist(moment) <= self.week_end

    def find_stock(self, instrument_key: str) -> Optional[WatchlistStock]:
        for stock in self.stocks:
            if stock.instrument_key == instrument_key:
                return stock
        return None

    def _require_stock(self, instrument_key: str) -> WatchlistStock:
        stock = self.find_stock(instrument_key)
        if stock is None:
            raise KeyError(f"{instrument_key} is not on the {self.week_label} watchlist")
        return stock

    def add_stock(self, stock: WatchlistStock, now: Optional[datetime] = None) -> WatchlistStock:
        """
        Raises:
            ValueError: If the instrument is already on the watchlist
        """
        if self.find_stock(stock.instrument_key) is not None:
            raise ValueError(f"{stock.symbol} is already on the watchlist")
        if stock.added_at is None:
            stock.added_at = _to_ist(now).isoformat()
        self.stocks.append(stock)
        return stock

    def add_stocks(self, stocks: Iterable[WatchlistStock], now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Upsert screened stocks by instrument_key.

        A re-screened stock gets fresh levels and screening data but keeps its
        added_at, tracking state, snapshots and simulation. Its analysis link
        is cleared because the analysis was written for the old levels.

        Returns:
            Dict with 'added' and 'updated' counts
        """
        added = updated = 0
        for incoming in stocks:
            existing = self.find_stock(incoming.instrument_key)
            if existing is None:
                self.add_stock(incoming, now)
                added += 1
                continue

            existing.symbol = incoming.symbol
            existing.stock_name = incoming.stock_name
            existing.scan_type = incoming.scan_type
            existing.selection_reason = incoming.selection_reason
            existing.setup_score = incoming.setup_score
            existing.grade = incoming.grade
            existing.screening_data = dict(incoming.screening_data)
            existing.levels = incoming.levels
            existing.analysis_id = None
            existing.ai_notes = None
            updated += 1

        logger.info("Watchlist %s: %d added, %d updated", self.week_label, added, updated)
        return {'added': added, 'updated': updated}

    def update_stock_status(self, instrument_key: str, status: TrackingStatus,
                            flags=None, now: Optional[datetime] = None) -> bool:
        """Set a stock's tracking status (and flags when given). Returns True on change."""
        stock = self._require_stock(instrument_key)
        changed = stock.set_tracking_status(status, _to_ist(now).isoformat())
        if flags is not None and list(flags) != stock.tracking_flags:
            stock.tracking_flags = list(flags)
            changed = True
        return changed

    def link_analysis(self, instrument_key: str, analysis_id: str) -> None:
        self._require_stock(instrument_key).analysis_id = analysis_id

    def complete_week(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Close the week: expire stocks that never triggered and write the summary.

        Returns:
            The week_summary dict
        """
        stamp = _to_ist(now).isoformat()
        for stock in self.stocks:
            if stock.tracking_status in UNRESOLVED_STATUSES:
                stock.set_tracking_status(TrackingStatus.EXPIRED, stamp)

        scores = [s.setup_score for s in self.stocks if s.setup_score is not None]
        outcomes = Counter(
            s.trade_simulation.status.value for s in self.stocks if s.trade_simulation is not None
        )
        total_pnl = sum(s.trade_simulation.total_pnl for s in self.stocks if s.trade_simulation is not None)

        self.week_summary = {
            'total_stocks': len(self.stocks),
            'avg_setup_score': round(sum(scores) / len(scores), 2) if scores else None,
            'scan_breakdown': dict(Counter(s.scan_type or 'unknown' for s in self.stocks)),
            'status_breakdown': dict(Counter(s.tracking_status.value for s in self.stocks)),
            'simulation_breakdown': dict(outcomes),
            'total_simulated_pnl': round(total_pnl, 2),
        }
        self.status = WatchlistStatus.COMPLETED
        self.completed_at = stamp
        logger.info("Completed watchlist %s: %s", self.week_label, self.week_summary)
        return self.week_summary

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Watchlist':
        if not isinstance(data, dict):
            raise SchemaError(f"watchlist must be a mapping, got {type(data).__name__}")
        allowed = {'week_start', 'week_end', 'week_label', 'status', 'stocks',
                   'week_summary', 'created_at', 'completed_at'}
        unknown = set(data) - allowed
        if unknown:
            raise SchemaError(f"Unknown watchlist fields: {sorted(unknown)}")
        try:
            start = datetime.fromisoformat(data['week_start']).astimezone(IST)
            end = datetime.fromisoformat(data['week_end']).astimezone(IST)
        except (KeyError, TypeError, ValueError) as e:
            raise SchemaError(f"Invalid week boundaries: {e}") from None

        return cls(
            week_start=start,
            week_end=end,
            week_label=data.get('week_label') or week_label(start, end),
            status=parse_enum(WatchlistStatus, data.get('status', 'ACTIVE'), 'watchlist status'),
            stocks=[WatchlistStock.from_dict(s) for s in data.get('stocks') or []],
            week_summary=data.get('week_summary'),
            created_at=data.get('created_at'),
            completed_at=data.get('completed_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'week_start': self.week_start.isoformat(),
            'week_end': self.week_end.isoformat(),
            'week_label': self.week_label,
            'status': self.status.value,
            'stocks': [s.to_dict() for s in self.stocks],
            'week_summary': self.week_summary,
            'created_at': self.created_at,
            'completed_at': self.completed_at,
        }


# =============================================================================
# STORE-BACKED OPERATIONS
# =============================================================================

def archive_stale_actives(store) -> int:
    """
    Keep only the newest ACTIVE watchlist; archive the rest.

    Returns:
        Number of watchlists archived
    """
    actives = store.get_watchlists(WatchlistStatus.ACTIVE)
    if len(actives) <= 1:
        return 0

    actives.sort(key=lambda w: w.week_start, reverse=True)
    for stale in actives[1:]:
        stale.status = WatchlistStatus.ARCHIVED
        store.save_watchlist(stale)

    logger.warning("Archived %d stale ACTIVE watchlist(s); kept %s",
                   len(actives) - 1, actives[0].week_label)
    return len(actives) - 1


def get_or_create_current_week(store, now: Optional[datetime] = None,
                               roll_weekend: bool = True) -> Watchlist:
    """
    Load the watchlist for the current trading week, creating it if needed.

    Args:
        store: DatabaseManager (or anything with get_watchlist/save_watchlist/
            get_watchlists)
        now: Wall-clock time
        roll_weekend: On weekends target the coming week
    """
    start, _ = week_bounds(now, roll_weekend)
    watchlist = store.get_watchlist(start.date())
    if watchlist is None:
        watchlist = Watchlist.for_week(now, roll_weekend)
        store.save_watchlist(watchlist)
        logger.info("Created watchlist for %s", watchlist.week_label)
        archive_stale_actives(store)
    return watchlist
