"""
RSI mean-reversion strategy (id ``rsi-reversal``).

RSI below oversold buys, RSI above overbought sells an open long. After
``max_consecutive_losses`` losing trades in a row (tracked per symbol in the
state store) it stops opening until a winner resets the streak.
"""

import logging

from edgelab.core.enums import Direction, SignalType
from edgelab.strategies.base import ClosedTradeInfo, Strategy, StrategyContext

logger = logging.getLogger(__name__)

LOSS_STREAK_KEY = "consecutive_losses"


class RsiReversalStrategy(Strategy):
    id = "rsi-reversal"
    name = "RSI reversal"
    description = "Buy oversold, sell overbought; pauses after a losing streak. Suited to ranges."

    def populate_signal(self, ctx: StrategyContext) -> SignalType:
        rsi_params = ctx.config.strategy.rsi
        rsi = ctx.indicators.rsi

        if ctx.current_side == Direction.LONG:
            return SignalType.SELL if rsi > rsi_params.overbought else SignalType.NONE
        if ctx.current_side == Direction.SHORT:
            return SignalType.NONE

        if ctx.state_store is not None:
            losses = ctx.state_store.get(LOSS_STREAK_KEY, 0)
            if losses >= ctx.config.strategy.rsi_reversal.max_consecutive_losses:
                logger.debug("%s: rsi-reversal paused after %d losses", ctx.symbol, losses)
                return SignalType.NONE

        if rsi < rsi_params.oversold:
            return SignalType.BUY
        return SignalType.NONE

    def on_trade_closed(self, trade: ClosedTradeInfo, ctx: StrategyContext) -> None:
        if ctx.state_store is None:
            return
        if trade.pnl < 0:
            ctx.state_store.set(LOSS_STREAK_KEY, ctx.state_store.get(LOSS_STREAK_KEY, 0) + 1)
        else:
            ctx.state_store.set(LOSS_STREAK_KEY, 0)
