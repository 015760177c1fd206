"""
Status Classifier

Derives a discrete tracking status and advisory flags from one day's
observation against a stock's levels. Pure functions, no side effects.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from swingtrack import config
from swingtrack.errors import DataUnavailableError
from swingtrack.models import EventType, Flag, Levels, SimulationStatus, TrackingStatus

logger = logging.getLogger(__name__)


# Status transitions and new flags that warrant a fresh review of the setup
REVIEW_TRIGGERS = {
    (TrackingStatus.WATCHING, TrackingStatus.ENTRY_ZONE): 'Stock entered buy zone. Should user enter now?',
    (TrackingStatus.WATCHING, TrackingStatus.RETEST_ZONE): '52W breakout stock retesting old high. Is retest holding?',
    (TrackingStatus.APPROACHING, TrackingStatus.ENTRY_ZONE): 'Stock moved from approaching to entry zone.',
    (TrackingStatus.ENTRY_ZONE, TrackingStatus.ABOVE_ENTRY): 'Entry triggered. Confirm position or caution?',
    (None, TrackingStatus.STOPPED_OUT): 'Stop hit. Confirm exit or false break?',
    (None, TrackingStatus.TARGET1_HIT): 'T1 reached. Partial booked, trailing remainder.',
    (None, TrackingStatus.TARGET2_HIT): 'T2 reached. Full exit recommended.',
}

FLAG_TRIGGERS = {
    Flag.RSI_DANGER: 'RSI crossed 72. Risk of overextension.',
    Flag.RSI_EXIT: 'RSI crossed 75. Strong exit signal.',
    Flag.VOLUME_SPIKE: 'Unusual volume (2x+ average). Distribution or accumulation?',
    Flag.GAP_DOWN: 'Significant gap down (>3%). Reassess stop.',
}

BELOW_ENTRY_STATUSES = (
    TrackingStatus.WATCHING,
    TrackingStatus.RETEST_ZONE,
    TrackingStatus.APPROACHING,
)


@dataclass
class DailyObservation:
    """
    One day's market observation for a stock.

    prev_close is the prior trading day's close taken from daily candles,
    not from the previous stored snapshot.
    """

    price: Optional[float]
    rsi: Optional[float] = None
    volume: Optional[float] = None
    avg_volume: Optional[float] = None
    open: Optional[float] = None
    prev_close: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DailyObservation':
        return cls(
            price=data.get('price'),
            rsi=data.get('rsi'),
            volume=data.get('volume'),
            avg_volume=data.get('avg_volume'),
            open=data.get('open'),
            prev_close=data.get('prev_close'),
        )


class StatusClassifier:
    """
    Classifies a stock's daily state against its levels.

    The precedence order in classify() is fixed: the first matching rule wins,
    so a gap that puts price below the stop reports STOPPED_OUT even if it is
    also beyond a target.
    """

    def classify_status(self, observation, levels: Levels) -> Dict[str, Any]:
        """
        Classify status and flags for one observation.

        Args:
            observation: DailyObservation or dict with price, rsi, volume,
                avg_volume, open, prev_close
            levels: The stock's levels

        Returns:
            Dict with 'status' (TrackingStatus) and 'flags' (list of Flag)

        Raises:
            DataUnavailableError: If the observation has no usable price

        Examples:
            >>> levels = Levels(entry=100, stop=92, target1=110, target2=120,
            ...                 entry_range=(98, 100))
            >>> StatusClassifier().classify_status({'price': 99}, levels)['status']
            <TrackingStatus.ENTRY_ZONE: 'ENTRY_ZONE'>
        """
        if isinstance(observation, dict):
            observation = DailyObservation.from_dict(observation)

        return {
            'status': self.classify(observation.price, levels),
            'flags': self.calculate_flags(observation, levels),
        }

    def classify(self, price: Optional[float], levels: Levels) -> TrackingStatus:
        if price is None or price <= 0:
            raise DataUnavailableError(f"No usable price: {price!r}")

        sign = 1 if levels.is_long else -1
        zone_low, zone_high = levels.zone_low, levels.zone_high
        t1, t2 = levels.target1, levels.target2

        # Signed distance: positive means price has moved in the trade's favour
        def beyond(level: float) -> float:
            return sign * (price - level)

        if beyond(levels.stop) < 0:
            return TrackingStatus.STOPPED_OUT

        if t2 is not None and beyond(t2) >= 0:
            return TrackingStatus.TARGET2_HIT

        if t1 is not None and beyond(t1) >= 0:
            return TrackingStatus.TARGET1_HIT

        if zone_low <= price <= zone_high:
            return TrackingStatus.ENTRY_ZONE

        if levels.archetype == '52w_breakout' and levels.is_long:
            if levels.stop * config.RETEST_ABOVE_STOP <= price < zone_low:
                return TrackingStatus.RETEST_ZONE

        upper = t1 if t1 is not None else t2
        near_edge = zone_high if levels.is_long else zone_low
        if upper is not None and beyond(near_edge) > 0 and beyond(upper) < 0:
            return TrackingStatus.ABOVE_ENTRY

        if self._approaching(price, levels):
            return TrackingStatus.APPROACHING

        return TrackingStatus.WATCHING

    def calculate_flags(self, observation: DailyObservation, levels: Levels) -> List[Flag]:
        flags = []

        rsi = observation.rsi
        if rsi is not None:
            if rsi >= config.RSI_DANGER_LEVEL:
                flags.append(Flag.RSI_DANGER)
            if rsi >= config.RSI_EXIT_LEVEL:
                flags.append(Flag.RSI_EXIT)

        volume, avg_volume = observation.volume, observation.avg_volume
        if volume is not None and avg_volume and avg_volume > 0:
            if volume >= avg_volume * config.VOLUME_SPIKE_MULTIPLE:
                flags.append(Flag.VOLUME_SPIKE)

        if observation.price and self._approaching(observation.price, levels):
            flags.append(Flag.APPROACHING_ENTRY)

        open_price, prev_close = observation.open, observation.prev_close
        if open_price and prev_close and open_price > 0 and prev_close > 0:
            if open_price <= prev_close * config.GAP_DOWN_RATIO:
                flags.append(Flag.GAP_DOWN)

        return flags

    @staticmethod
    def _approaching(price: float, levels: Levels) -> bool:
        sign = 1 if levels.is_long else -1
        distance_pct = sign * (price - levels.entry) / levels.entry * 100
        return 0 < distance_pct <= config.APPROACHING_PCT


def check_entry_quality(close: float, entry: float, stop: float) -> Dict[str, Any]:
    """
    Grade how far a confirming close sits above the planned entry.

    Args:
        close: Confirming daily close
        entry: Planned entry level
        stop: Planned stop

    Returns:
        Dict with quality ('GOOD', 'EXTENDED' or 'OVEREXTENDED'), premium_pct,
        adjusted_rr (new risk as a multiple of planned risk) and recommendation

    Examples:
        >>> check_entry_quality(101, 100, 95)['quality']
        'GOOD'
        >>> check_entry_quality(104, 100, 95)['quality']
        'EXTENDED'
    """
    if entry <= 0:
        raise ValueError(f"Invalid entry: {entry}. Must be positive.")

    premium_pct = (close - entry) / entry * 100
    original_risk = entry - stop
    adjusted_rr = (close - stop) / original_risk if original_risk > 0 else None

    if premium_pct <= config.ENTRY_GOOD_MAX_PCT:
        quality = 'GOOD'
        recommendation = 'Entry confirmed. Close near entry level, ideal fill.'
    elif premium_pct <= config.ENTRY_EXTENDED_MAX_PCT:
        quality = 'EXTENDED'
        recommendation = 'Entry confirmed but extended. Reduce position size to keep risk constant.'
    else:
        quality = 'OVEREXTENDED'
        recommendation = 'Skip entry. Close too far above entry. Wait for a pullback.'

    return {
        'quality': quality,
        'premium_pct': round(premium_pct, 2),
        'adjusted_rr': round(adjusted_rr, 2) if adjusted_rr is not None else None,
        'recommendation': recommendation,
    }


def review_trigger(old_status: Optional[TrackingStatus], new_status: TrackingStatus,
                   old_flags: Sequence[Flag] = (), new_flags: Sequence[Flag] = (),
                   close: Optional[float] = None, levels: Optional[Levels] = None,
                   capital: float = config.DEFAULT_CAPITAL) -> Dict[str, Any]:
    """
    Decide whether today's change warrants a fresh review of the setup.

    Checked in order: a status transition listed in REVIEW_TRIGGERS, a close
    confirming entry after a below-entry status, then any flag that was not
    raised yesterday.

    Returns:
        Dict with 'trigger' (bool) and 'reason' (str or None)
    """
    if old_status != new_status:
        reason = REVIEW_TRIGGERS.get((old_status, new_status)) or REVIEW_TRIGGERS.get((None, new_status))
        if reason:
            return {'trigger': True, 'reason': reason}

    if (close is not None and levels is not None and levels.is_long
            and old_status in BELOW_ENTRY_STATUSES and close >= levels.entry):
        entry, stop = levels.entry, levels.stop
        quality = check_entry_quality(close, entry, stop)
        planned_qty = int(capital // entry)
        premium = quality['premium_pct']

        if quality['quality'] == 'OVEREXTENDED':
            reason = (f"Entry signal skipped. Close {close:.2f} is +{premium}% above entry "
                      f"{entry:.2f}. Too extended, wait for pullback.")
        elif quality['quality'] == 'EXTENDED':
            adjusted_qty = int(planned_qty * (entry - stop) // (close - stop))
            reason = (f"Entry signal confirmed (EXTENDED +{premium}%). Buy {adjusted_qty} shares "
                      f"(reduced from {planned_qty}) at next open. Stop: {stop:.2f}.")
        else:
            reason = (f"Entry signal confirmed (GOOD +{premium}%). Buy {planned_qty} shares "
                      f"at next open. Stop: {stop:.2f}.")
        logger.info("Entry signal on close %.2f >= entry %.2f (%s)", close, entry, quality['quality'])
        return {'trigger': True, 'reason': reason}

    for flag in new_flags:
        if flag not in old_flags and flag in FLAG_TRIGGERS:
            return {'trigger': True, 'reason': FLAG_TRIGGERS[flag]}

    return {'trigger': False, 'reason': None}


def status_from_simulation(simulation) -> Optional[TrackingStatus]:
    """
    Tracking status implied by a simulation's outcome, or None while the
    trade is not yet resolved past entry.

    The simulation is the source of truth for trade outcomes, so these
    override the price-based classification.
    """
    if simulation is None:
        return None

    status = simulation.status
    if status in (SimulationStatus.FULL_EXIT, SimulationStatus.STOPPED_OUT, SimulationStatus.EXPIRED):
        return TrackingStatus(status.value)
    if status == SimulationStatus.PARTIAL_EXIT:
        if simulation.has_event(EventType.T2_HIT):
            return TrackingStatus.TARGET2_HIT
        return TrackingStatus.TARGET1_HIT
    return None
