"""
Level Calculator

Computes entry, stop and staged targets for a screened setup. The entry style
matches why the stock was found:
- breakout / consolidation_breakout: buy above resistance
- pullback: limit at EMA20 when the dip is healthy, else buy above the last high
- momentum: continuation entry above the most recent high
- a_plus_momentum: 52-week breakout with structural (pivot ladder) targets
- breakdown (SHORT): sell below the recent low, stop above the 5-day swing high

Every result passes the same guardrails. A setup that fails them comes back as
{'valid': False, 'reason': ...} and should simply be left off the watchlist.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from swingtrack import config
from swingtrack.models import Direction

logger = logging.getLogger(__name__)


SCAN_TYPES = (
    'breakout',
    'pullback',
    'momentum',
    'consolidation_breakout',
    'a_plus_momentum',
    'breakdown',
)


def round_to_tick(price: float, tick: float = config.TICK_SIZE) -> float:
    """
    Round a price to the nearest tick.

    Examples:
        >>> round_to_tick(101.13)
        101.15
    """
    return round(round(price / tick) * tick, 2)


def _num(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def _positive(value) -> bool:
    return _num(value) and value > 0


def _reject(reason: str, **extra) -> Dict[str, Any]:
    result = {'valid': False, 'reason': reason}
    result.update(extra)
    return result


class LevelCalculator:
    """
    Calculates trading levels from a technicals bundle.

    The technicals bundle uses the keys produced by
    swingtrack.indicators.build_technicals: last_close, last_high, last_low,
    ema20, atr, rsi, high_5d, low_5d, high_10d, low_10d, high_20d, high_52w,
    low_52w, daily_r1, daily_s1, weekly_r1, weekly_r2, weekly_s1, weekly_s2,
    last_volume, avg_volume_20. Missing keys are treated as unavailable.
    """

    def __init__(self, tick_size: float = config.TICK_SIZE):
        if tick_size <= 0:
            raise ValueError("tick_size must be positive")
        self.tick_size = tick_size

    def _tick(self, price: float) -> float:
        return round_to_tick(price, self.tick_size)

    def calculate_levels(self, scan_type: str, direction: str,
                         technicals: Dict[str, Any]) -> Dict[str, Any]:
        """
        Calculate entry/stop/target levels for a setup.

        Args:
            scan_type: One of SCAN_TYPES
            direction: 'LONG' or 'SHORT'
            technicals: Technical reference points (see class docstring)

        Returns:
            On success a dict with valid=True and entry, entry_range, stop,
            target1, target2, target3, risk_percent, reward_percent,
            risk_reward, reason, archetype, mode, entry_type, the target
            bases and any guardrail adjustments. On rejection a dict with
            valid=False and a reason.

        Examples:
            >>> calc = LevelCalculator()
            >>> result = calc.calculate_levels('breakout', 'LONG', {
            ...     'last_close': 99.0, 'last_high': 100.0, 'ema20': 97.0,
            ...     'atr': 2.0, 'high_20d': 100.0})
            >>> result['valid'], result['entry']
            (True, 100.4)
        """
        scan = (scan_type or '').lower()
        try:
            side = Direction((direction or 'LONG').upper())
        except ValueError:
            return self._rejected(scan, _reject(f"Unknown direction: {direction}"))

        if technicals is None:
            return self._rejected(scan, _reject('No data provided'))

        if not _positive(technicals.get('last_close')):
            return self._rejected(scan, _reject('Last close missing or invalid'))

        if side == Direction.SHORT:
            raw = self._breakdown_levels(technicals)
        elif scan == 'breakdown':
            return self._rejected(scan, _reject('Breakdown setups are SHORT only'))
        elif scan == 'a_plus_momentum':
            raw = self._a_plus_momentum_levels(technicals)
        elif scan in ('breakout', 'pullback', 'momentum', 'consolidation_breakout'):
            if not _positive(technicals.get('atr')):
                return self._rejected(scan, _reject('ATR missing or invalid'))
            if not _positive(technicals.get('ema20')):
                return self._rejected(scan, _reject('EMA20 missing or invalid'))
            raw = {
                'breakout': self._breakout_levels,
                'pullback': self._pullback_levels,
                'momentum': self._momentum_levels,
                'consolidation_breakout': self._consolidation_levels,
            }[scan](technicals)
        else:
            return self._rejected(scan, _reject(f"Unknown scan type: {scan_type}"))

        if not raw['valid']:
            return self._rejected(scan, raw)

        guarded = self.apply_guardrails(raw['entry'], raw['stop'], raw['target2'], side)
        if not guarded['valid']:
            guarded.update({
                'scan_type': scan,
                'mode': raw['mode'],
                'original_reason': raw['reason'],
            })
            return self._rejected(scan, guarded)

        entry = self._tick(guarded['entry'])
        stop = self._tick(guarded['stop'])
        target2 = self._tick(guarded['target'])
        target1, target1_basis = self._partial_booking(entry, target2, technicals, side)

        target3 = raw.get('target3')
        if target3 is not None:
            target3 = self._tick(target3)
            beyond = target3 > target2 if side == Direction.LONG else target3 < target2
            if not beyond:
                target3 = None

        entry_range = raw.get('entry_range')
        if entry_range is not None:
            entry_range = [self._tick(entry_range[0]), self._tick(entry_range[1])]

        result = {
            'valid': True,
            'scan_type': scan,
            'direction': side.value,
            'mode': raw['mode'],
            'archetype': raw['archetype'],
            'entry_type': raw['entry_type'],
            'entry': entry,
            'entry_range': entry_range,
            'stop': stop,
            'target1': target1,
            'target1_basis': target1_basis,
            'target2': target2,
            'target2_basis': raw.get('target2_basis', 'projection'),
            'target3': target3,
            'risk_reward': guarded['risk_reward'],
            'risk_percent': guarded['risk_percent'],
            'reward_percent': guarded['reward_percent'],
            'adjustments': guarded['adjustments'],
            'reason': raw['reason'],
        }
        logger.info(
            "%s %s levels: entry=%s stop=%s T1=%s T2=%s T3=%s R:R=%s",
            scan, side.value, entry, stop, target1, target2, target3, guarded['risk_reward'],
        )
        return result

    def _rejected(self, scan: str, result: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("%s rejected: %s", scan or 'unknown', result['reason'])
        return result

    # -------------------------------------------------------------------------
    # Guardrails
    # -------------------------------------------------------------------------

    def apply_guardrails(self, entry: float, stop: float, target: float,
                         direction: Direction = Direction.LONG) -> Dict[str, Any]:
        """
        Validate a raw entry/stop/target triple.

        Risk must lie in [MIN_RISK_PERCENT, MAX_RISK_PERCENT] of entry, the
        reward must be at least MIN_REWARD_PERCENT, rewards above
        MAX_REWARD_PERCENT are capped, and the final reward:risk must reach
        MIN_RISK_REWARD. Stops are never moved to make a setup pass.

        Returns:
            Dict with valid, and on success entry, stop, target (possibly
            capped), risk_reward, risk_percent, reward_percent, adjustments
        """
        if not (_num(entry) and _num(stop) and _num(target)):
            return _reject('Invalid levels calculated (missing values)')
        if entry <= 0 or stop <= 0 or target <= 0:
            return _reject('Invalid levels calculated (zero or negative values)')

        sign = 1 if direction == Direction.LONG else -1
        side_word = 'below' if sign > 0 else 'above'

        risk = sign * (entry - stop)
        if risk <= 0:
            return _reject(f"Stop ({stop:.2f}) must be {side_word} entry ({entry:.2f})")

        reward = sign * (target - entry)
        if reward <= 0:
            return _reject(
                f"Target ({target:.2f}) must be {'above' if sign > 0 else 'below'} entry ({entry:.2f})")

        risk_percent = risk / entry * 100
        if risk_percent > config.MAX_RISK_PERCENT:
            return _reject(
                f"Risk too high: {risk_percent:.2f}% (max {config.MAX_RISK_PERCENT}%)",
                risk_percent=round(risk_percent, 2),
            )
        if risk_percent < config.MIN_RISK_PERCENT:
            return _reject(
                f"Risk too small: {risk_percent:.2f}% (min {config.MIN_RISK_PERCENT}%). "
                f"Stop is too close to entry",
                risk_percent=round(risk_percent, 2),
            )

        reward_percent = reward / entry * 100
        if reward_percent < config.MIN_REWARD_PERCENT:
            return _reject(
                f"Target too close: {reward_percent:.2f}% (min {config.MIN_REWARD_PERCENT}%)",
                reward_percent=round(reward_percent, 2),
            )

        adjustments: List[str] = []
        if reward_percent > config.MAX_REWARD_PERCENT:
            target = entry * (1 + sign * config.MAX_REWARD_PERCENT / 100)
            adjustments.append(
                f"Target capped from {reward_percent:.2f}% to {config.MAX_REWARD_PERCENT}%")
            reward = sign * (target - entry)
            reward_percent = reward / entry * 100

        risk_reward = reward / risk
        if risk_reward < config.MIN_RISK_REWARD:
            return _reject(
                f"R:R too low: {risk_reward:.2f}:1 (min {config.MIN_RISK_REWARD}:1)",
                risk_reward=round(risk_reward, 2),
                suggested_target=self._tick(entry + sign * risk * 1.5),
            )

        return {
            'valid': True,
            'entry': entry,
            'stop': stop,
            'target': target,
            'risk_reward': round(risk_reward, 2),
            'risk_percent': round(risk_percent, 2),
            'reward_percent': round(reward_percent, 2),
            'adjustments': adjustments,
        }

    # -------------------------------------------------------------------------
    # Targets
    # -------------------------------------------------------------------------

    def _partial_booking(self, entry: float, target2: float, technicals: Dict[str, Any],
                         direction: Direction) -> Tuple[float, str]:
        """T1: nearest daily pivot inside the booking window, else the midpoint."""
        if direction == Direction.LONG:
            pivot = technicals.get('daily_r1')
            low, high = entry * config.T1_MIN_ABOVE_ENTRY, target2 * config.T1_MAX_BELOW_T2
            if _num(pivot) and low < pivot < high:
                return self._tick(pivot), 'daily_r1'
        else:
            pivot = technicals.get('daily_s1')
            low = target2 * (2 - config.T1_MAX_BELOW_T2)
            high = entry * (2 - config.T1_MIN_ABOVE_ENTRY)
            if _num(pivot) and low < pivot < high:
                return self._tick(pivot), 'daily_s1'

        return self._tick(entry + (target2 - entry) * 0.5), 'midpoint'

    def walk_ladder(self, entry: float, stop: float, candidates: List[Tuple[str, Any]],
                    direction: Direction = Direction.LONG) -> Optional[Dict[str, Any]]:
        """
        Pick T2 from an ordered structural ladder.

        The first candidate beyond entry that clears both the minimum reward
        and the minimum reward:risk becomes T2; the next candidate beyond T2
        becomes T3.

        Returns:
            Dict with target2, target2_basis, target3 (or None), or None if no
            rung qualifies
        """
        sign = 1 if direction == Direction.LONG else -1
        risk = sign * (entry - stop)
        if risk <= 0:
            return None

        rungs = [(name, value) for name, value in candidates if _positive(value)]
        for index, (name, value) in enumerate(rungs):
            reward = sign * (value - entry)
            if reward <= 0:
                continue
            if reward / entry * 100 < config.MIN_REWARD_PERCENT:
                continue
            if reward / risk < config.MIN_RISK_REWARD:
                continue

            target3 = None
            for _, later in rungs[index + 1:]:
                if sign * (later - value) > 0:
                    target3 = later
                    break
            return {'target2': value, 'target2_basis': name, 'target3': target3}

        return None

    # -------------------------------------------------------------------------
    # Scan-type formulas
    # -------------------------------------------------------------------------

    def _breakout_levels(self, t: Dict[str, Any]) -> Dict[str, Any]:
        atr, ema20 = t['atr'], t['ema20']
        resistance = t.get('high_20d') if _positive(t.get('high_20d')) else t.get('last_high')
        if not _positive(resistance):
            return _reject('No resistance level available for breakout')

        entry = resistance + 0.2 * atr
        stop = max(ema20, resistance * 0.97) - 0.1 * atr
        risk = entry - stop
        target = max(entry + risk * 1.5, entry + 2.0 * atr)

        return {
            'valid': True,
            'mode': 'BREAKOUT',
            'archetype': 'breakout',
            'entry_type': 'buy_above',
            'entry': entry,
            'entry_range': [entry, entry + 0.3 * atr],
            'stop': stop,
            'target2': target,
            'reason': f"Breakout setup: price coiled near {resistance:.2f}. "
                      f"Entry triggers above resistance for confirmation.",
        }

    def _pullback_levels(self, t: Dict[str, Any]) -> Dict[str, Any]:
        atr, ema20, close = t['atr'], t['ema20'], t['last_close']
        high_20d = t.get('high_20d')

        distance_atr = abs(close - ema20) / atr
        volume, avg_volume = t.get('last_volume'), t.get('avg_volume_20')
        volume_ratio = volume / avg_volume if _num(volume) and _positive(avg_volume) else 1.0
        rsi = t.get('rsi')
        rsi_healthy = not _num(rsi) or rsi >= 45

        healthy = distance_atr <= 0.4 and volume_ratio < 1.3 and close >= ema20 and rsi_healthy

        if healthy:
            entry = ema20 - min(0.1 * atr, ema20 * 0.003)
            entry_range = [ema20 - 0.3 * atr, ema20 + 0.3 * atr]
            stop = ema20 - 0.6 * atr
            from_high = high_20d if _num(high_20d) and high_20d > entry else entry + 1.2 * atr
            target = max(from_high, ema20 + 1.2 * atr)
            return {
                'valid': True,
                'mode': 'PULLBACK_AGGRESSIVE',
                'archetype': 'pullback',
                'entry_type': 'limit',
                'entry': entry,
                'entry_range': entry_range,
                'stop': stop,
                'target2': target,
                'reason': 'Healthy pullback: price respecting EMA20 on light volume. '
                          'Buy the dip with a limit order.',
            }

        last_high = t.get('last_high')
        if not _positive(last_high):
            return _reject('Last high required for conservative pullback entry')

        entry = last_high + 0.1 * atr
        stop = ema20 - 0.6 * atr
        from_high = high_20d if _num(high_20d) and high_20d > entry else entry + 1.2 * atr
        target = max(from_high, entry + 1.2 * atr)

        reasons = []
        if distance_atr > 0.4:
            reasons.append(f"price {distance_atr:.2f} ATR from EMA20")
        if _num(rsi) and rsi < 45:
            reasons.append(f"RSI {rsi:.1f} shows weak momentum")
        if close < ema20:
            reasons.append('closed below EMA20')
        if volume_ratio >= 1.3:
            reasons.append(f"high volume ({volume_ratio:.2f}x avg)")
        if not reasons:
            reasons.append('pullback needs confirmation')

        return {
            'valid': True,
            'mode': 'PULLBACK_CONSERVATIVE',
            'archetype': 'pullback',
            'entry_type': 'buy_above',
            'entry': entry,
            'entry_range': [entry, entry + 0.3 * atr],
            'stop': stop,
            'target2': target,
            'reason': 'Conservative entry: ' + '; '.join(reasons) + '. Entry above last high.',
        }

    def _momentum_levels(self, t: Dict[str, Any]) -> Dict[str, Any]:
        atr, ema20, close = t['atr'], t['ema20'], t['last_close']
        last_high, high_20d = t.get('last_high'), t.get('high_20d')

        if not _positive(last_high):
            return _reject('Last high required for momentum entry')

        if _positive(high_20d) and close >= high_20d * 0.98:
            levels = self._breakout_levels(t)
            if levels['valid']:
                levels['mode'] = 'MOMENTUM_NEAR_BREAKOUT'
                levels['reason'] = 'Momentum stock near 20D high, treated as breakout. ' + levels['reason']
            return levels

        # Entry above the most recent high, not at the close
        entry = last_high + 0.15 * atr
        stop = max(ema20 - 0.1 * atr, entry - 1.2 * atr)
        risk = entry - stop
        from_high = high_20d * 1.05 if _positive(high_20d) else entry + 1.5 * atr
        target = max(from_high, entry + 1.5 * atr, entry + risk * 1.5)

        return {
            'valid': True,
            'mode': 'MOMENTUM',
            'archetype': 'trend-follow',
            'entry_type': 'buy_above',
            'entry': entry,
            'entry_range': [entry, entry + 0.3 * atr],
            'stop': stop,
            'target2': target,
            'reason': f"Momentum continuation: {(close - ema20) / ema20 * 100:.2f}% above EMA20. "
                      f"Entry above last high ({last_high:.2f}).",
        }

    def _consolidation_levels(self, t: Dict[str, Any]) -> Dict[str, Any]:
        atr = t['atr']
        last_high, last_low = t.get('last_high'), t.get('last_low')
        high_10d, low_10d = t.get('high_10d'), t.get('low_10d')

        if not (_positive(last_high) and _positive(last_low)):
            return _reject('Last high/low required for consolidation entry')

        day_range = last_high - last_low
        has_range = _num(high_10d) and _num(low_10d) and high_10d > low_10d
        range_10d = high_10d - low_10d if has_range else day_range

        entry = last_high + 0.1 * atr
        floor = min(low_10d, last_low) if has_range else last_low
        stop = floor - 0.1 * atr
        expansion = max(range_10d * 0.6, day_range * 2, 1.5 * atr)

        return {
            'valid': True,
            'mode': 'CONSOLIDATION_BREAKOUT',
            'archetype': 'breakout',
            'entry_type': 'buy_above',
            'entry': entry,
            'entry_range': [entry, entry + 0.2 * atr],
            'stop': stop,
            'target2': entry + expansion,
            'reason': f"Consolidation breakout: tight range ({day_range / last_high * 100:.2f}%). "
                      f"Expecting {expansion / entry * 100:.2f}% expansion.",
        }

    def _a_plus_momentum_levels(self, t: Dict[str, Any]) -> Dict[str, Any]:
        last_high, ema20, weekly_s1 = t.get('last_high'), t.get('ema20'), t.get('weekly_s1')

        if not _positive(last_high):
            return _reject('Last high required for A+ momentum entry')
        if not _positive(ema20):
            return _reject('EMA20 required for A+ momentum stop')

        entry = self._tick(last_high * 1.005)
        base = max(ema20, weekly_s1) if _positive(weekly_s1) else ema20
        stop = self._tick(base * 0.997)
        # Never risk more than 1.5% on a breakout entry
        stop = max(stop, self._tick(entry * 0.985))

        ladder = self.walk_ladder(entry, stop, [
            ('weekly_r1', t.get('weekly_r1')),
            ('weekly_r2', t.get('weekly_r2')),
            ('high_52w', t.get('high_52w')),
        ])
        if ladder is None:
            return _reject(
                'A+ momentum rejected: no structural target (weekly R1, weekly R2, 52W high) '
                'clears the minimum reward:risk')

        return {
            'valid': True,
            'mode': 'A_PLUS_MOMENTUM',
            'archetype': '52w_breakout',
            'entry_type': 'buy_above',
            'entry': entry,
            'entry_range': [entry, entry * 1.01],
            'stop': stop,
            'target2': ladder['target2'],
            'target2_basis': ladder['target2_basis'],
            'target3': ladder['target3'],
            'reason': f"A+ momentum (52W breakout): entry {entry:.2f} above last high, "
                      f"stop {stop:.2f}, T2 at {ladder['target2_basis']}.",
        }

    def _breakdown_levels(self, t: Dict[str, Any]) -> Dict[str, Any]:
        atr = t.get('atr')
        if not _positive(atr):
            return _reject('ATR missing or invalid')

        support = t.get('low_5d') if _positive(t.get('low_5d')) else t.get('last_low')
        if not _positive(support):
            return _reject('Recent low required for breakdown entry')

        # Anchor to the recent swing high; the 20-day high is usually far away
        swing_high = t.get('high_5d') if _positive(t.get('high_5d')) else t.get('last_high')
        if not _positive(swing_high):
            return _reject('Recent swing high required for breakdown stop')

        entry = support - 0.1 * atr
        stop = swing_high + 0.1 * atr

        ladder = self.walk_ladder(entry, stop, [
            ('weekly_s1', t.get('weekly_s1')),
            ('weekly_s2', t.get('weekly_s2')),
            ('low_52w', t.get('low_52w')),
        ], Direction.SHORT)
        if ladder is None:
            return _reject(
                'Breakdown rejected: no structural target (weekly S1, weekly S2, 52W low) '
                'clears the minimum reward:risk')

        return {
            'valid': True,
            'mode': 'BREAKDOWN',
            'archetype': 'breakdown',
            'entry_type': 'sell_below',
            'entry': entry,
            'entry_range': [entry - 0.3 * atr, entry],
            'stop': stop,
            'target2': ladder['target2'],
            'target2_basis': ladder['target2_basis'],
            'target3': ladder['target3'],
            'reason': f"Breakdown: entry below recent low {support:.2f}, "
                      f"stop above swing high {swing_high:.2f}.",
        }
