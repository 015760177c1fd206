"""
Technical indicators used for screening levels and daily tracking.

All functions take plain sequences (oldest first) and return floats, or
None when there is not enough history.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np

from swingtrack.models import Bar


def ema(values: Sequence[float], period: int) -> Optional[float]:
    """
    Exponential moving average of the last value, seeded with the SMA of
    the first `period` values.
    """
    if period <= 0:
        raise ValueError("period must be positive")
    if len(values) < period:
        return None

    data = np.asarray(values, dtype=float)
    alpha = 2.0 / (period + 1)
    current = float(np.mean(data[:period]))
    for value in data[period:]:
        current = alpha * float(value) + (1 - alpha) * current
    return current


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """
    Wilder RSI of the latest close.

    Returns:
        RSI in [0, 100], or None with fewer than period + 1 closes
    """
    if len(closes) < period + 1:
        return None

    deltas = np.diff(np.asarray(closes, dtype=float))
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def atr(bars: Sequence[Bar], period: int = 14) -> Optional[float]:
    """Wilder average true range over daily bars."""
    if len(bars) < period + 1:
        return None

    highs = np.array([b.high for b in bars], dtype=float)
    lows = np.array([b.low for b in bars], dtype=float)
    closes = np.array([b.close for b in bars], dtype=float)

    prev_close = closes[:-1]
    true_range = np.maximum.reduce([
        highs[1:] - lows[1:],
        np.abs(highs[1:] - prev_close),
        np.abs(lows[1:] - prev_close),
    ])

    current = float(np.mean(true_range[:period]))
    for value in true_range[period:]:
        current = (current * (period - 1) + float(value)) / period
    return current


def average_volume(volumes: Sequence[Optional[float]], period: int = 50) -> Optional[float]:
    """Mean of the last `period` known volumes."""
    known = [v for v in volumes if v is not None]
    if not known:
        return None
    return float(np.mean(known[-period:]))


def pivot_points(high: float, low: float, close: float) -> Dict[str, float]:
    """
    Classic floor pivots.

    Examples:
        >>> pivot_points(110, 90, 100)['r1']
        110.0
    """
    pivot = (high + low + close) / 3
    span = high - low
    return {
        'pivot': pivot,
        'r1': 2 * pivot - low,
        's1': 2 * pivot - high,
        'r2': pivot + span,
        's2': pivot - span,
    }


def _window(bars: Sequence[Bar], days: int) -> Sequence[Bar]:
    return bars[-days:] if len(bars) >= days else bars


def build_technicals(daily_bars: List[Bar], weekly_bar: Optional[Bar] = None) -> Dict[str, Optional[float]]:
    """
    Assemble the technicals bundle consumed by LevelCalculator.

    Args:
        daily_bars: Daily bars, oldest first; the last bar is the most recent
            completed session
        weekly_bar: Last completed weekly bar, used for weekly pivots

    Returns:
        Dict with last_close/high/low, ema20, atr, rsi, rolling highs and
        lows, daily and weekly pivot levels, and volume context

    Raises:
        ValueError: If daily_bars is empty
    """
    if not daily_bars:
        raise ValueError("daily_bars cannot be empty")

    last = daily_bars[-1]
    closes = [b.close for b in daily_bars]
    volumes = [b.volume for b in daily_bars]

    daily_pivots = pivot_points(last.high, last.low, last.close)

    technicals = {
        'last_close': last.close,
        'last_high': last.high,
        'last_low': last.low,
        'last_volume': last.volume,
        'ema20': ema(closes, 20),
        'atr': atr(daily_bars, 14),
        'rsi': rsi(closes, 14),
        'avg_volume_20': average_volume(volumes[:-1], 20),
        'high_5d': max(b.high for b in _window(daily_bars, 5)),
        'low_5d': min(b.low for b in _window(daily_bars, 5)),
        'high_10d': max(b.high for b in _window(daily_bars, 10)),
        'low_10d': min(b.low for b in _window(daily_bars, 10)),
        'high_20d': max(b.high for b in _window(daily_bars, 20)),
        'high_52w': max(b.high for b in _window(daily_bars, 252)),
        'low_52w': min(b.low for b in _window(daily_bars, 252)),
        'daily_r1': daily_pivots['r1'],
        'daily_s1': daily_pivots['s1'],
        'weekly_r1': None,
        'weekly_r2': None,
        'weekly_s1': None,
        'weekly_s2': None,
    }

    if weekly_bar is not None:
        weekly = pivot_points(weekly_bar.high, weekly_bar.low, weekly_bar.close)
        technicals.update({
            'weekly_r1': weekly['r1'],
            'weekly_r2': weekly['r2'],
            'weekly_s1': weekly['s1'],
            'weekly_s2': weekly['s2'],
        })

    return technicals
