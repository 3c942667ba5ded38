"""
Channel breakout strategy (id ``breakout``).

Close above the highest close of the previous ``lookback`` candles with
volume at least ``volume_ratio`` times their average buys; close below the
lowest close sells an open long.
"""

import logging

from edgelab.core.enums import Direction, SignalType
from edgelab.strategies.base import Strategy, StrategyContext

logger = logging.getLogger(__name__)


class BreakoutStrategy(Strategy):
    id = "breakout"
    name = "Breakout"
    description = "Close breaks the N-bar high on volume: buy. Breaks the N-bar low: sell."

    def populate_signal(self, ctx: StrategyContext) -> SignalType:
        params = ctx.config.strategy.breakout
        candles = ctx.candles
        if len(candles) < params.lookback + 1:
            return SignalType.NONE

        window = candles[-(params.lookback + 1):-1]
        current = candles[-1]
        window_high = max(c.close for c in window)
        window_low = min(c.close for c in window)
        avg_volume = sum(c.volume for c in window) / len(window)

        if ctx.current_side == Direction.LONG:
            return SignalType.SELL if current.close < window_low else SignalType.NONE
        if ctx.current_side == Direction.SHORT:
            return SignalType.NONE

        if (
            current.close > window_high
            and avg_volume > 0
            and current.volume >= avg_volume * params.volume_ratio
        ):
            return SignalType.BUY
        return SignalType.NONE
