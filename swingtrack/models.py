"""
Typed entities for the watchlist and trade simulation.

Every persisted document passes through the from_dict constructors here, which
reject unknown statuses, event types and fields instead of letting loosely
typed data reach the simulation math.
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from swingtrack.errors import LevelsValidationError, SchemaError


class Direction(str, Enum):
    LONG = 'LONG'
    SHORT = 'SHORT'


class TrackingStatus(str, Enum):
    WATCHING = 'WATCHING'
    APPROACHING = 'APPROACHING'
    ENTRY_ZONE = 'ENTRY_ZONE'
    RETEST_ZONE = 'RETEST_ZONE'
    ABOVE_ENTRY = 'ABOVE_ENTRY'
    TARGET1_HIT = 'TARGET1_HIT'
    TARGET2_HIT = 'TARGET2_HIT'
    STOPPED_OUT = 'STOPPED_OUT'
    # Set only when syncing with a finished simulation
    FULL_EXIT = 'FULL_EXIT'
    EXPIRED = 'EXPIRED'


class Flag(str, Enum):
    RSI_DANGER = 'RSI_DANGER'
    RSI_EXIT = 'RSI_EXIT'
    VOLUME_SPIKE = 'VOLUME_SPIKE'
    APPROACHING_ENTRY = 'APPROACHING_ENTRY'
    GAP_DOWN = 'GAP_DOWN'


class SimulationStatus(str, Enum):
    WAITING = 'WAITING'
    ENTRY_SIGNALED = 'ENTRY_SIGNALED'
    ENTERED = 'ENTERED'
    PARTIAL_EXIT = 'PARTIAL_EXIT'
    FULL_EXIT = 'FULL_EXIT'
    STOPPED_OUT = 'STOPPED_OUT'
    EXPIRED = 'EXPIRED'


TERMINAL_SIMULATION_STATUSES = (
    SimulationStatus.FULL_EXIT,
    SimulationStatus.STOPPED_OUT,
    SimulationStatus.EXPIRED,
)


class EventType(str, Enum):
    ENTRY_SIGNAL = 'ENTRY_SIGNAL'
    ENTRY_SKIPPED = 'ENTRY_SKIPPED'
    ENTRY = 'ENTRY'
    T1_HIT = 'T1_HIT'
    T2_HIT = 'T2_HIT'
    T3_HIT = 'T3_HIT'
    STOPPED_OUT = 'STOPPED_OUT'
    TRAILING_STOP = 'TRAILING_STOP'
    EXPIRED = 'EXPIRED'


def parse_enum(enum_cls, value, field_name: str):
    """Convert a raw value to enum_cls, raising SchemaError for unknown values."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise SchemaError(f"Unknown {field_name}: {value!r}") from None


def parse_date(value) -> date:
    """Accept a date, datetime or ISO string and return a calendar date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            raise SchemaError(f"Invalid date: {value!r}") from None
    raise SchemaError(f"Invalid date: {value!r}")


def _check_keys(data: Dict[str, Any], cls, name: str) -> None:
    if not isinstance(data, dict):
        raise SchemaError(f"{name} must be a mapping, got {type(data).__name__}")
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise SchemaError(f"Unknown {name} fields: {sorted(unknown)}")


def _require_keys(data: Dict[str, Any], keys: Tuple[str, ...], name: str) -> None:
    missing = [key for key in keys if data.get(key) is None]
    if missing:
        raise SchemaError(f"{name} missing required fields: {missing}")


def _round(value: Optional[float], ndigits: int = 2) -> Optional[float]:
    return None if value is None else round(value, ndigits)


# =============================================================================
# LEVELS
# =============================================================================

@dataclass
class Levels:
    """
    Planned price levels for one setup.

    For LONG setups stop < entry <= target1 < target2 <= target3, mirrored
    for SHORT. The entry zone's near edge (low for LONG, high for SHORT) is
    the price that triggers an entry.
    """

    entry: float
    stop: float
    target1: float
    target2: Optional[float] = None
    target3: Optional[float] = None
    entry_range: Optional[Tuple[float, float]] = None
    direction: Direction = Direction.LONG
    archetype: Optional[str] = None
    entry_confirmation: str = 'touch'
    entry_window_days: Optional[int] = None
    mode: Optional[str] = None
    entry_type: Optional[str] = None
    target1_basis: Optional[str] = None
    target2_basis: Optional[str] = None
    risk_reward: Optional[float] = None
    risk_percent: Optional[float] = None
    reward_percent: Optional[float] = None
    reason: Optional[str] = None

    @property
    def is_long(self) -> bool:
        return self.direction == Direction.LONG

    @property
    def zone_low(self) -> float:
        if self.entry_range:
            return self.entry_range[0]
        return self.entry * 0.99

    @property
    def zone_high(self) -> float:
        if self.entry_range:
            return self.entry_range[1]
        return self.entry * 1.01

    @property
    def trigger_price(self) -> float:
        """Price at which an entry is considered triggered and filled."""
        return self.zone_low if self.is_long else self.zone_high

    def validate(self) -> None:
        """
        Check the levels are complete and correctly ordered.

        Raises:
            LevelsValidationError: If a required level is missing or the
                ladder is out of order for the setup's direction
        """
        for name in ('entry', 'stop', 'target1'):
            value = getattr(self, name)
            if value is None:
                raise LevelsValidationError(f"Missing {name}")
            if value <= 0:
                raise LevelsValidationError(f"Invalid {name}: {value}. Must be positive.")

        if self.target3 is not None and self.target2 is None:
            raise LevelsValidationError("target3 requires target2")

        if self.entry_range is not None:
            low, high = self.entry_range
            if low > high:
                raise LevelsValidationError(f"Invalid entry_range: [{low}, {high}]")

        if self.entry_confirmation not in ('touch', 'close_above'):
            raise LevelsValidationError(f"Unknown entry_confirmation: {self.entry_confirmation}")

        sign = 1 if self.is_long else -1
        ladder = [('stop', self.stop), ('entry', self.entry), ('target1', self.target1)]
        if self.target2 is not None:
            ladder.append(('target2', self.target2))
        if self.target3 is not None:
            ladder.append(('target3', self.target3))

        for (lower_name, lower), (upper_name, upper) in zip(ladder, ladder[1:]):
            # entry may equal target1 and target2 may equal target3
            strict = (lower_name, upper_name) not in (('entry', 'target1'), ('target2', 'target3'))
            if strict and sign * (upper - lower) <= 0:
                raise LevelsValidationError(
                    f"{upper_name} ({upper}) must be {'above' if sign > 0 else 'below'} "
                    f"{lower_name} ({lower}) for {self.direction.value} setups"
                )
            if not strict and sign * (upper - lower) < 0:
                raise LevelsValidationError(
                    f"{upper_name} ({upper}) must not be {'below' if sign > 0 else 'above'} "
                    f"{lower_name} ({lower}) for {self.direction.value} setups"
                )

        # Entries fill at the trigger, not at entry
        trigger = self.trigger_price
        if sign * (trigger - self.stop) <= 0:
            raise LevelsValidationError(
                f"Entry trigger ({trigger}) must be {'above' if sign > 0 else 'below'} "
                f"stop ({self.stop}) for {self.direction.value} setups"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Levels':
        _check_keys(data, cls, 'levels')
        values = dict(data)
        if values.get('entry_range') is not None:
            entry_range = values['entry_range']
            if len(entry_range) != 2:
                raise SchemaError(f"entry_range must have two values, got {entry_range!r}")
            values['entry_range'] = (float(entry_range[0]), float(entry_range[1]))
        values['direction'] = parse_enum(Direction, values.get('direction', 'LONG'), 'direction')
        for key in ('entry', 'stop', 'target1'):
            if values.get(key) is None:
                raise LevelsValidationError(f"Missing {key}")
        return cls(**values)

    @classmethod
    def from_calculation(cls, result: Dict[str, Any]) -> 'Levels':
        """Build Levels from a valid LevelCalculator result dict."""
        if not result.get('valid'):
            raise LevelsValidationError(f"Rejected levels: {result.get('reason')}")
        known = {f.name for f in fields(cls)}
        return cls.from_dict({k: v for k, v in result.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['direction'] = self.direction.value
        data['entry_range'] = list(self.entry_range) if self.entry_range else None
        return data


# =============================================================================
# BARS AND SNAPSHOTS
# =============================================================================

@dataclass(frozen=True)
class Bar:
    """One daily OHLC(V) bar."""

    date: date
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None

    def validate(self) -> None:
        """
        Raises:
            SchemaError: If a price is not positive or high/low do not
                bound the open and close
        """
        for name in ('open', 'high', 'low', 'close'):
            value = getattr(self, name)
            if value <= 0:
                raise SchemaError(f"Bar {self.date.isoformat()}: {name} must be positive, got {value}")
        if self.high < max(self.open, self.close) or self.low > min(self.open, self.close):
            raise SchemaError(
                f"Bar {self.date.isoformat()}: high {self.high} / low {self.low} do not bound "
                f"open {self.open} and close {self.close}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bar':
        try:
            bar = cls(
                date=parse_date(data['date']),
                open=float(data['open']),
                high=float(data['high']),
                low=float(data['low']),
                close=float(data['close']),
                volume=None if data.get('volume') is None else float(data['volume']),
            )
        except KeyError as e:
            raise SchemaError(f"Bar missing field {e}") from None
        except (TypeError, ValueError) as e:
            raise SchemaError(f"Invalid bar: {e}") from None
        bar.validate()
        return bar

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date.isoformat(),
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


@dataclass
class DailySnapshot:
    """
    One stock's observed state on one calendar date.

    is_intraday marks a provisional bar built from live prices, is_backfill a
    bar reconstructed from history. Both are superseded by an end-of-day
    snapshot for the same date.
    """

    date: date
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None
    rsi: Optional[float] = None
    volume_vs_avg: Optional[float] = None
    distance_from_entry_pct: Optional[float] = None
    distance_from_stop_pct: Optional[float] = None
    distance_from_target_pct: Optional[float] = None
    tracking_status: Optional[TrackingStatus] = None
    tracking_flags: List[Flag] = field(default_factory=list)
    analysis_id: Optional[str] = None
    is_intraday: bool = False
    is_backfill: bool = False
    crossings: Dict[str, str] = field(default_factory=dict)

    @property
    def is_provisional(self) -> bool:
        return self.is_intraday or self.is_backfill

    def to_bar(self) -> Bar:
        return Bar(self.date, self.open, self.high, self.low, self.close, self.volume)

    @classmethod
    def from_bar(cls, bar: Bar, **kwargs) -> 'DailySnapshot':
        return cls(date=bar.date, open=bar.open, high=bar.high, low=bar.low,
                   close=bar.close, volume=bar.volume, **kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DailySnapshot':
        _check_keys(data, cls, 'snapshot')
        _require_keys(data, ('date', 'open', 'high', 'low', 'close'), 'snapshot')
        values = dict(data)
        values['date'] = parse_date(values['date'])
        if values.get('tracking_status') is not None:
            values['tracking_status'] = parse_enum(
                TrackingStatus, values['tracking_status'], 'tracking_status')
        values['tracking_flags'] = [
            parse_enum(Flag, f, 'flag') for f in values.get('tracking_flags') or []
        ]
        values['crossings'] = dict(values.get('crossings') or {})
        for key in values['crossings']:
            parse_enum(EventType, key, 'crossing event type')
        snapshot = cls(**values)
        snapshot.to_bar().validate()
        return snapshot

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['date'] = self.date.isoformat()
        data['tracking_status'] = self.tracking_status.value if self.tracking_status else None
        data['tracking_flags'] = [f.value for f in self.tracking_flags]
        data['crossings'] = dict(self.crossings)
        return data


# =============================================================================
# SIMULATION
# =============================================================================

@dataclass
class SimulationEvent:
    """One entry in the append-only simulation audit trail."""

    date: date
    type: EventType
    price: float
    qty: int
    pnl: float
    detail: str
    time: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SimulationEvent':
        _check_keys(data, cls, 'event')
        _require_keys(data, ('date', 'type', 'price', 'qty', 'pnl'), 'event')
        values = dict(data)
        values['date'] = parse_date(values['date'])
        values['type'] = parse_enum(EventType, values['type'], 'event type')
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date.isoformat(),
            'type': self.type.value,
            'price': _round(self.price),
            'qty': self.qty,
            'pnl': _round(self.pnl),
            'detail': self.detail,
            'time': self.time,
        }


@dataclass
class TradeSimulation:
    """
    Derived trade state. Always recomputed wholesale from levels and bars.

    P&L fields hold unrounded values; to_dict() rounds to 2 decimals for
    display and storage.
    """

    capital: float
    status: SimulationStatus = SimulationStatus.WAITING
    entry_price: Optional[float] = None
    entry_date: Optional[date] = None
    qty_total: int = 0
    qty_remaining: int = 0
    qty_exited: int = 0
    trailing_stop: Optional[float] = None
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_pnl: float = 0.0
    total_return_pct: float = 0.0
    peak_price: Optional[float] = None
    peak_gain_pct: float = 0.0
    signal_date: Optional[date] = None
    signal_close: Optional[float] = None
    events: List[SimulationEvent] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in (SimulationStatus.ENTERED, SimulationStatus.PARTIAL_EXIT)

    def has_event(self, event_type: EventType) -> bool:
        return any(e.type == event_type for e in self.events)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TradeSimulation':
        _check_keys(data, cls, 'trade_simulation')
        _require_keys(data, ('capital',), 'trade_simulation')
        values = dict(data)
        values['status'] = parse_enum(SimulationStatus, values.get('status', 'WAITING'), 'simulation status')
        for key in ('entry_date', 'signal_date'):
            if values.get(key) is not None:
                values[key] = parse_date(values[key])
        values['events'] = [SimulationEvent.from_dict(e) for e in values.get('events') or []]
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'capital': self.capital,
            'status': self.status.value,
            'entry_price': _round(self.entry_price),
            'entry_date': self.entry_date.isoformat() if self.entry_date else None,
            'qty_total': self.qty_total,
            'qty_remaining': self.qty_remaining,
            'qty_exited': self.qty_exited,
            'trailing_stop': _round(self.trailing_stop),
            'realized_pnl': _round(self.realized_pnl),
            'unrealized_pnl': _round(self.unrealized_pnl),
            'total_pnl': _round(self.total_pnl),
            'total_return_pct': _round(self.total_return_pct),
            'peak_price': _round(self.peak_price),
            'peak_gain_pct': _round(self.peak_gain_pct),
            'signal_date': self.signal_date.isoformat() if self.signal_date else None,
            'signal_close': _round(self.signal_close),
            'events': [e.to_dict() for e in self.events],
        }


# =============================================================================
# WATCHLIST STOCK
# =============================================================================

@dataclass
class WatchlistStock:
    """A tracked stock: levels, daily snapshots and its current simulation."""

    instrument_key: str
    symbol: str
    stock_name: Optional[str] = None
    scan_type: Optional[str] = None
    selection_reason: Optional[str] = None
    setup_score: Optional[float] = None
    grade: Optional[str] = None
    screening_data: Dict[str, Any] = field(default_factory=dict)
    levels: Optional[Levels] = None
    tracking_status: TrackingStatus = TrackingStatus.WATCHING
    tracking_flags: List[Flag] = field(default_factory=list)
    previous_status: Optional[TrackingStatus] = None
    status_changed_at: Optional[str] = None
    daily_snapshots: List[DailySnapshot] = field(default_factory=list)
    trade_simulation: Optional[TradeSimulation] = None
    analysis_id: Optional[str] = None
    ai_notes: Optional[str] = None
    added_at: Optional[str] = None

    def snapshot_for(self, day: date) -> Optional[DailySnapshot]:
        for snapshot in self.daily_snapshots:
            if snapshot.date == day:
                return snapshot
        return None

    def upsert_snapshot(self, snapshot: DailySnapshot) -> bool:
        """
        Insert or replace the snapshot for snapshot.date.

        An authoritative (end-of-day) snapshot always replaces whatever is
        stored for that date. A provisional snapshot never replaces an
        authoritative one.

        Returns:
            True if the stored snapshots changed
        """
        for index, existing in enumerate(self.daily_snapshots):
            if existing.date != snapshot.date:
                continue
            if snapshot.is_provisional and not existing.is_provisional:
                return False
            if existing == snapshot:
                return False
            self.daily_snapshots[index] = snapshot
            return True

        self.daily_snapshots.append(snapshot)
        self.daily_snapshots.sort(key=lambda s: s.date)
        return True

    def bars(self) -> List[Bar]:
        return [s.to_bar() for s in sorted(self.daily_snapshots, key=lambda s: s.date)]

    def set_tracking_status(self, status: TrackingStatus, changed_at: Optional[str] = None) -> bool:
        if status == self.tracking_status:
            return False
        self.previous_status = self.tracking_status
        self.tracking_status = status
        self.status_changed_at = changed_at
        return True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WatchlistStock':
        _check_keys(data, cls, 'stock')
        values = dict(data)
        _require_keys(data, ('instrument_key', 'symbol'), 'stock')
        if values.get('levels') is not None:
            values['levels'] = Levels.from_dict(values['levels'])
        values['tracking_status'] = parse_enum(
            TrackingStatus, values.get('tracking_status', 'WATCHING'), 'tracking_status')
        if values.get('previous_status') is not None:
            values['previous_status'] = parse_enum(
                TrackingStatus, values['previous_status'], 'tracking_status')
        values['tracking_flags'] = [
            parse_enum(Flag, f, 'flag') for f in values.get('tracking_flags') or []
        ]
        values['daily_snapshots'] = sorted(
            (DailySnapshot.from_dict(s) for s in values.get('daily_snapshots') or []),
            key=lambda s: s.date,
        )
        if values.get('trade_simulation') is not None:
            values['trade_simulation'] = TradeSimulation.from_dict(values['trade_simulation'])
        values['screening_data'] = dict(values.get('screening_data') or {})
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instrument_key': self.instrument_key,
            'symbol': self.symbol,
            'stock_name': self.stock_name,
            'scan_type': self.scan_type,
            'selection_reason': self.selection_reason,
            'setup_score': self.setup_score,
            'grade': self.grade,
            'screening_data': dict(self.screening_data),
            'levels': self.levels.to_dict() if self.levels else None,
            'tracking_status': self.tracking_status.value,
            'tracking_flags': [f.value for f in self.tracking_flags],
            'previous_status': self.previous_status.value if self.previous_status else None,
            'status_changed_at': self.status_changed_at,
            'daily_snapshots': [s.to_dict() for s in self.daily_snapshots],
            'trade_simulation': self.trade_simulation.to_dict() if self.trade_simulation else None,
            'analysis_id': self.analysis_id,
            'ai_notes': self.ai_notes,
            'added_at': self.added_at,
        }
