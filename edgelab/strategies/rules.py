"""
Rule-based signal detection.

Each named condition is a pure predicate over (indicators, config). A
direction fires only when its configured list is non-empty and every name in
it holds. Unknown names evaluate to False and never raise.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from edgelab.config.strategy_config import SignalConditions, StrategyConfig
from edgelab.core.enums import Direction, SignalType
from edgelab.core.models import IndicatorSnapshot, Signal

logger = logging.getLogger(__name__)

Condition = Callable[[IndicatorSnapshot, StrategyConfig], bool]

# RSI above this (and below overbought) counts as bullish momentum
RSI_BULLISH_FLOOR = 40.0


# ---------------------------------------------------------------------------
# MACD / VWAP helpers
# ---------------------------------------------------------------------------

def _macd_cross_up(ind: IndicatorSnapshot, cfg: StrategyConfig) -> bool:
    m = ind.macd
    if m is None or m.prev_macd is None or m.prev_signal is None:
        return False
    return m.prev_macd <= m.prev_signal and m.macd > m.signal


def _macd_cross_down(ind: IndicatorSnapshot, cfg: StrategyConfig) -> bool:
    m = ind.macd
    if m is None or m.prev_macd is None or m.prev_signal is None:
        return False
    return m.prev_macd >= m.prev_signal and m.macd < m.signal


def _macd_expanding(ind: IndicatorSnapshot, cfg: StrategyConfig) -> bool:
    m = ind.macd
    if m is None or m.prev_histogram is None:
        return False
    return abs(m.histogram) > abs(m.prev_histogram)


def _macd_shrinking(ind: IndicatorSnapshot, cfg: StrategyConfig) -> bool:
    """Three-bar shrink when the older bar is known, otherwise two-bar."""
    m = ind.macd
    if m is None or m.prev_histogram is None:
        return False
    if m.prev_prev_histogram is not None:
        return abs(m.histogram) < abs(m.prev_histogram) < abs(m.prev_prev_histogram)
    return abs(m.histogram) < abs(m.prev_histogram)


def _vwap_cross(ind: IndicatorSnapshot, upward: bool) -> bool:
    if ind.vwap is None or ind.prev_price is None:
        return False
    level = ind.vwap.vwap
    if upward:
        return ind.prev_price < level and ind.price > level
    return ind.prev_price > level and ind.price < level


# ---------------------------------------------------------------------------
# Condition table
# ---------------------------------------------------------------------------

CONDITIONS: Dict[str, Condition] = {
    # MA trend
    "ma_golden_cross": lambda ind, cfg: (
        ind.prev_ma_short is not None
        and ind.prev_ma_long is not None
        and ind.prev_ma_short <= ind.prev_ma_long
        and ind.ma_short > ind.ma_long
    ),
    "ma_death_cross": lambda ind, cfg: (
        ind.prev_ma_short is not None
        and ind.prev_ma_long is not None
        and ind.prev_ma_short >= ind.prev_ma_long
        and ind.ma_short < ind.ma_long
    ),
    "ma_bullish": lambda ind, cfg: ind.ma_short > ind.ma_long,
    "ma_bearish": lambda ind, cfg: ind.ma_short < ind.ma_long,

    # RSI
    "rsi_oversold": lambda ind, cfg: ind.rsi < cfg.strategy.rsi.oversold,
    "rsi_overbought": lambda ind, cfg: ind.rsi > cfg.strategy.rsi.overbought,
    "rsi_not_overbought": lambda ind, cfg: ind.rsi < cfg.strategy.rsi.overbought,
    "rsi_not_oversold": lambda ind, cfg: ind.rsi > cfg.strategy.rsi.oversold,
    "rsi_bullish_zone": lambda ind, cfg: RSI_BULLISH_FLOOR < ind.rsi < cfg.strategy.rsi.overbought,
    "rsi_overbought_exit": lambda ind, cfg: ind.rsi > cfg.strategy.rsi.overbought_exit,

    # MACD
    "macd_golden_cross": _macd_cross_up,
    "macd_death_cross": _macd_cross_down,
    "macd_bullish": lambda ind, cfg: (
        ind.macd is not None and ind.macd.macd > ind.macd.signal and ind.macd.histogram > 0
    ),
    "macd_bearish": lambda ind, cfg: (
        ind.macd is not None and ind.macd.macd < ind.macd.signal and ind.macd.histogram < 0
    ),
    "macd_histogram_expanding": _macd_expanding,
    "macd_histogram_shrinking": _macd_shrinking,

    # Volume
    "volume_surge": lambda ind, cfg: (
        ind.avg_volume > 0 and ind.volume >= ind.avg_volume * cfg.strategy.volume.surge_ratio
    ),
    "volume_low": lambda ind, cfg: (
        ind.avg_volume > 0 and ind.volume <= ind.avg_volume * cfg.strategy.volume.low_ratio
    ),

    # VWAP
    "price_above_vwap": lambda ind, cfg: ind.vwap is not None and ind.price > ind.vwap.vwap,
    "price_below_vwap": lambda ind, cfg: ind.vwap is not None and ind.price < ind.vwap.vwap,
    "vwap_bounce": lambda ind, cfg: _vwap_cross(ind, upward=True),
    "vwap_breakdown": lambda ind, cfg: _vwap_cross(ind, upward=False),
    "price_above_vwap_upper2": lambda ind, cfg: ind.vwap is not None and ind.price > ind.vwap.upper2,
    "price_below_vwap_lower2": lambda ind, cfg: ind.vwap is not None and ind.price < ind.vwap.lower2,

    # Order flow / derivatives / dominance (live-injected)
    "cvd_bullish": lambda ind, cfg: ind.cvd is not None and ind.cvd > 0,
    "cvd_bearish": lambda ind, cfg: ind.cvd is not None and ind.cvd < 0,
    "funding_rate_overlong": lambda ind, cfg: (
        ind.funding_rate is not None and ind.funding_rate > cfg.strategy.market.funding_overlong
    ),
    "funding_rate_overshort": lambda ind, cfg: (
        ind.funding_rate is not None and ind.funding_rate < cfg.strategy.market.funding_overshort
    ),
    "btc_dominance_rising": lambda ind, cfg: (
        ind.btc_dominance_change is not None
        and ind.btc_dominance_change > cfg.strategy.market.dominance_change
    ),
    "btc_dominance_falling": lambda ind, cfg: (
        ind.btc_dominance_change is not None
        and ind.btc_dominance_change < -cfg.strategy.market.dominance_change
    ),
}


def condition_names() -> List[str]:
    return sorted(CONDITIONS)


def evaluate_condition(name: str, indicators: IndicatorSnapshot, config: StrategyConfig) -> bool:
    """Evaluate one named condition; unknown names are False."""
    check = CONDITIONS.get(name)
    if check is None:
        logger.debug("Unknown condition '%s' evaluated as False", name)
        return False
    return bool(check(indicators, config))


def evaluate_all(
    names: Sequence[str], indicators: IndicatorSnapshot, config: StrategyConfig
) -> Tuple[bool, List[str]]:
    """(all held and list non-empty, names that held)."""
    satisfied = []
    for name in names:
        if not evaluate_condition(name, indicators, config):
            return False, satisfied
        satisfied.append(name)
    return bool(names), satisfied


def directions_to_check(current_side: Optional[Direction]) -> Tuple[SignalType, ...]:
    """
    Flat: buy then short. Long: sell only. Short: cover only.
    """
    if current_side == Direction.LONG:
        return (SignalType.SELL,)
    if current_side == Direction.SHORT:
        return (SignalType.COVER,)
    return (SignalType.BUY, SignalType.SHORT)


def detect_signal(
    symbol: str,
    indicators: IndicatorSnapshot,
    config: StrategyConfig,
    current_side: Optional[Direction] = None,
    conditions: Optional[SignalConditions] = None,
    timestamp=None,
) -> Signal:
    """
    Detect a signal from the configured condition lists.

    ``conditions`` replaces ``config.signals`` when given (used by the regime
    filter). The first direction whose list fully holds wins.
    """
    lists = conditions or config.signals
    for signal_type in directions_to_check(current_side):
        fired, reasons = evaluate_all(lists.for_type(signal_type), indicators, config)
        if fired:
            return Signal(
                symbol=symbol,
                type=signal_type,
                price=indicators.price,
                indicators=indicators,
                reason=tuple(reasons),
                timestamp=timestamp,
            )
    return Signal.none(symbol, indicators, timestamp)
