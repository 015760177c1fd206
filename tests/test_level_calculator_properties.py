"""
Property-based tests for the Level Calculator.

Whatever the technicals, a valid result is correctly ordered for its
direction and respects the guardrails; anything else is a rejection dict.
"""

from hypothesis import assume, given, settings, strategies as st

from swingtrack import config
from swingtrack.levels import LevelCalculator, SCAN_TYPES
from swingtrack.models import Levels


LONG_SCANS = [s for s in SCAN_TYPES if s != 'breakdown']


@st.composite
def technicals(draw):
    close = draw(st.floats(min_value=20.0, max_value=5000.0))
    atr_pct = draw(st.floats(min_value=0.005, max_value=0.06))
    atr = close * atr_pct

    def around(low, high):
        return close * draw(st.floats(min_value=low, max_value=high))

    last_high = max(close, around(1.0, 1.03))
    last_low = min(close, around(0.97, 1.0))
    return {
        'last_close': close,
        'last_high': last_high,
        'last_low': last_low,
        'ema20': around(0.9, 1.05),
        'atr': atr,
        'rsi': draw(st.floats(min_value=20.0, max_value=85.0)),
        'high_5d': max(last_high, around(1.0, 1.05)),
        'low_5d': min(last_low, around(0.95, 1.0)),
        'high_10d': max(last_high, around(1.0, 1.08)),
        'low_10d': min(last_low, around(0.92, 1.0)),
        'high_20d': max(last_high, around(1.0, 1.2)),
        'high_52w': max(last_high, around(1.0, 1.4)),
        'low_52w': min(last_low, around(0.6, 1.0)),
        'daily_r1': around(1.0, 1.06),
        'daily_s1': around(0.94, 1.0),
        'weekly_r1': around(1.0, 1.1),
        'weekly_r2': around(1.05, 1.2),
        'weekly_s1': around(0.9, 1.0),
        'weekly_s2': around(0.8, 0.95),
        'last_volume': draw(st.floats(min_value=1e3, max_value=1e7)),
        'avg_volume_20': draw(st.floats(min_value=1e3, max_value=1e7)),
    }


@given(scan=st.sampled_from(LONG_SCANS), t=technicals())
@settings(max_examples=200)
def test_property_long_levels_are_ordered(scan, t):
    """Valid LONG results satisfy stop < entry <= T1 < T2 <= T3"""
    result = LevelCalculator().calculate_levels(scan, 'LONG', t)
    assume(result['valid'])

    assert result['stop'] < result['entry'] <= result['target1'] < result['target2']
    if result['target3'] is not None:
        assert result['target3'] > result['target2']

    Levels.from_calculation(result).validate()


@given(t=technicals())
@settings(max_examples=200)
def test_property_short_levels_are_mirrored(t):
    """Valid SHORT results satisfy stop > entry >= T1 > T2 >= T3"""
    result = LevelCalculator().calculate_levels('breakdown', 'SHORT', t)
    assume(result['valid'])

    assert result['stop'] > result['entry'] >= result['target1'] > result['target2']
    if result['target3'] is not None:
        assert result['target3'] < result['target2']

    Levels.from_calculation(result).validate()


@given(scan=st.sampled_from(SCAN_TYPES), direction=st.sampled_from(['LONG', 'SHORT']), t=technicals())
@settings(max_examples=200)
def test_property_guardrails_hold(scan, direction, t):
    """Valid results stay inside the risk, reward and R:R limits"""
    result = LevelCalculator().calculate_levels(scan, direction, t)

    if not result['valid']:
        assert isinstance(result['reason'], str) and result['reason']
        return

    assert config.MIN_RISK_PERCENT <= result['risk_percent'] <= config.MAX_RISK_PERCENT
    assert config.MIN_REWARD_PERCENT <= result['reward_percent'] <= config.MAX_REWARD_PERCENT
    assert result['risk_reward'] >= config.MIN_RISK_REWARD


@given(scan=st.sampled_from(SCAN_TYPES), t=technicals())
@settings(max_examples=100)
def test_property_prices_are_on_tick(scan, t):
    """Every emitted price is a multiple of the tick size"""
    direction = 'SHORT' if scan == 'breakdown' else 'LONG'
    result = LevelCalculator().calculate_levels(scan, direction, t)
    assume(result['valid'])

    prices = [result['entry'], result['stop'], result['target1'], result['target2']]
    if result['target3'] is not None:
        prices.append(result['target3'])
    for price in prices:
        ticks = price / config.TICK_SIZE
        assert abs(ticks - round(ticks)) < 1e-6


@given(scan=st.sampled_from(SCAN_TYPES), t=technicals())
@settings(max_examples=100)
def test_property_calculation_is_deterministic(scan, t):
    direction = 'SHORT' if scan == 'breakdown' else 'LONG'
    calculator = LevelCalculator()

    assert calculator.calculate_levels(scan, direction, t) == calculator.calculate_levels(scan, direction, t)
