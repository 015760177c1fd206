"""
Configuration for the swingtrack watchlist system.

Business-policy numbers live here as named module constants so they can be
overridden in one place (or per call through SimulationPolicy). Runtime
overrides are persisted in the config table managed by DatabaseManager.
"""

import logging
import sys
from dataclasses import dataclass
from datetime import time as dtime
from pathlib import Path
from typing import Optional

import pytz


# =============================================================================
# MARKET / CALENDAR
# =============================================================================

TRADING_TIMEZONE = "Asia/Kolkata"
IST = pytz.timezone(TRADING_TIMEZONE)

MARKET_CLOSE = dtime(15, 30)

# Monday 00:00 .. Friday 23:59:59 in the trading timezone
WEEK_TRADING_DAYS = 5

# =============================================================================
# SIMULATION POLICY
# =============================================================================

DEFAULT_CAPITAL = 100000.0

# T1 books this fraction of qty_total
T1_BOOKING_PCT = 0.5
# T2 books this fraction of qty_remaining when a T3 exists (else everything)
T2_BOOKING_PCT = 0.7

# Where the stop moves after T1: "planned_entry" or "fill_price"
BREAKEVEN_ANCHOR = "planned_entry"

# Close-above confirmation thresholds (premium over entry, percent)
ENTRY_GOOD_MAX_PCT = 2.0
ENTRY_EXTENDED_MAX_PCT = 5.0

# =============================================================================
# LEVEL CALCULATION
# =============================================================================

TICK_SIZE = 0.05

MAX_RISK_PERCENT = 5.0
MIN_RISK_PERCENT = 0.5
MIN_REWARD_PERCENT = 2.0
MAX_REWARD_PERCENT = 15.0
MIN_RISK_REWARD = 1.2

# Partial booking window for T1 (relative to entry and T2)
T1_MIN_ABOVE_ENTRY = 1.02
T1_MAX_BELOW_T2 = 0.95

# =============================================================================
# STATUS FLAGS
# =============================================================================

RSI_DANGER_LEVEL = 72.0
RSI_EXIT_LEVEL = 75.0
VOLUME_SPIKE_MULTIPLE = 2.0
GAP_DOWN_RATIO = 0.97
APPROACHING_PCT = 2.0
RETEST_ABOVE_STOP = 1.02

# =============================================================================
# DEFAULTS SEEDED INTO config TABLE
# =============================================================================

DEFAULT_CONFIG = [
    ('capital', str(DEFAULT_CAPITAL), 'float', 'Notional capital per simulated trade'),
    ('t1_booking_pct', str(T1_BOOKING_PCT), 'float', 'Fraction of qty_total booked at T1'),
    ('t2_booking_pct', str(T2_BOOKING_PCT), 'float', 'Fraction of qty_remaining booked at T2 when T3 exists'),
    ('breakeven_anchor', BREAKEVEN_ANCHOR, 'str', 'Stop after T1: planned_entry or fill_price'),
]


@dataclass(frozen=True)
class SimulationPolicy:
    """Booking and breakeven rules applied by the trade simulator."""

    capital: float = DEFAULT_CAPITAL
    t1_booking_pct: float = T1_BOOKING_PCT
    t2_booking_pct: float = T2_BOOKING_PCT
    breakeven_anchor: str = BREAKEVEN_ANCHOR

    def __post_init__(self):
        if self.capital <= 0:
            raise ValueError("capital must be positive")
        if not 0 < self.t1_booking_pct <= 1:
            raise ValueError("t1_booking_pct must be in (0, 1]")
        if not 0 < self.t2_booking_pct <= 1:
            raise ValueError("t2_booking_pct must be in (0, 1]")
        if self.breakeven_anchor not in ('planned_entry', 'fill_price'):
            raise ValueError(f"Unknown breakeven_anchor: {self.breakeven_anchor}")

    @classmethod
    def from_config(cls, database_manager) -> 'SimulationPolicy':
        """Build a policy from the persisted config table."""
        config = database_manager.get_all_config()
        return cls(
            capital=config.get('capital', DEFAULT_CAPITAL),
            t1_booking_pct=config.get('t1_booking_pct', T1_BOOKING_PCT),
            t2_booking_pct=config.get('t2_booking_pct', T2_BOOKING_PCT),
            breakeven_anchor=config.get('breakeven_anchor', BREAKEVEN_ANCHOR),
        )


def setup_logging(log_dir: Optional[str] = None, level: str = "INFO") -> None:
    """
    Configure root logging for scripts and schedulers.

    Args:
        log_dir: Directory for swingtrack.log (stdout only when None)
        level: Logging level name
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path / "swingtrack.log"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='[%(asctime)s] %(levelname)s %(name)s: %(message)s',
        handlers=handlers,
    )
