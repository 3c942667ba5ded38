"""
Protection manager - behavioural circuit breakers.

Computed only from recently *closed* trades and measured in candle widths so
the same settings scale across timeframes:

- cooldown: no new entry on a symbol within N candles of its own stop-loss
- stoploss_guard: K or more stop-losses (per symbol or across all) inside the
  lookback window blocks entries for ``stop_duration_candles``
- max_drawdown: summed pnl ratio of trades in the window at or below the
  allowed drawdown blocks all entries
- low_profit_pairs: a symbol whose average pnl ratio in the window is below
  the required profit is blocked

A protection that fired at a trade's close stays in force for its
``stop_duration_candles`` afterwards. With no trade history nothing fires.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from edgelab.config.strategy_config import ProtectionParams
from edgelab.core.enums import Timeframe
from edgelab.core.models import TradeRecord

logger = logging.getLogger(__name__)


@dataclass
class ProtectionResult:
    allowed: bool
    reason: str = ""
    protection: str = ""


ALLOWED = ProtectionResult(True)

# (trades closed at or before t, t) -> reason when the protection holds at t
_Check = Callable[[List[TradeRecord], datetime], Optional[str]]


class ProtectionManager:
    """
    Usage:
        manager = ProtectionManager(cfg.protections, Timeframe.H1)
        result = manager.check("BTCUSDT", recent_trades, now=candle.close_time)
        if not result.allowed:
            skip entry
    """

    def __init__(self, config: ProtectionParams, timeframe: Timeframe = Timeframe.H1):
        self.config = config
        self.candle = timeframe.interval

    def _candles(self, count: int) -> timedelta:
        return self.candle * count

    def check(
        self,
        symbol: str,
        recent_trades: Optional[Sequence[TradeRecord]],
        now: datetime,
    ) -> ProtectionResult:
        if not recent_trades:
            return ALLOWED

        trades = sorted((t for t in recent_trades if t.closed_at <= now), key=lambda t: t.closed_at)
        if not trades:
            return ALLOWED

        cfg = self.config

        if cfg.cooldown.enabled:
            window_start = now - self._candles(cfg.cooldown.stop_duration_candles)
            if any(t.symbol == symbol and t.was_stop_loss and t.closed_at >= window_start for t in trades):
                return ProtectionResult(
                    False,
                    f"Cooldown: {symbol} stopped out within the last "
                    f"{cfg.cooldown.stop_duration_candles} candles",
                    "cooldown",
                )

        checks = []
        if cfg.stoploss_guard.enabled:
            checks.append(("stoploss_guard", cfg.stoploss_guard.stop_duration_candles,
                           self._stoploss_guard(symbol)))
        if cfg.max_drawdown.enabled:
            checks.append(("max_drawdown", cfg.max_drawdown.stop_duration_candles,
                           self._max_drawdown()))
        if cfg.low_profit_pairs.enabled:
            checks.append(("low_profit_pairs", cfg.low_profit_pairs.stop_duration_candles,
                           self._low_profit_pairs(symbol)))

        for name, stop_candles, check in checks:
            reason = self._in_force(trades, now, self._candles(stop_candles), check)
            if reason:
                logger.debug("Protection %s blocks %s: %s", name, symbol, reason)
                return ProtectionResult(False, reason, name)

        return ALLOWED

    @staticmethod
    def _in_force(
        trades: List[TradeRecord], now: datetime, stop_duration: timedelta, check: _Check
    ) -> Optional[str]:
        """Reason if the check holds now or held at a trade close within ``stop_duration``."""
        reason = check(trades, now)
        if reason:
            return reason
        for i, trade in enumerate(trades):
            if trade.closed_at < now - stop_duration:
                continue
            reason = check(trades[: i + 1], trade.closed_at)
            if reason:
                return f"{reason} (locked until {trade.closed_at + stop_duration:%Y-%m-%d %H:%M})"
        return None

    def _stoploss_guard(self, symbol: str) -> _Check:
        sg = self.config.stoploss_guard
        lookback = self._candles(sg.lookback_period_candles)

        def check(trades: List[TradeRecord], at: datetime) -> Optional[str]:
            stops = [
                t for t in trades
                if t.was_stop_loss
                and t.closed_at >= at - lookback
                and (not sg.only_per_pair or t.symbol == symbol)
            ]
            if len(stops) >= sg.trade_limit:
                scope = symbol if sg.only_per_pair else "all symbols"
                return (
                    f"StoplossGuard: {len(stops)} stop-losses on {scope} within "
                    f"{sg.lookback_period_candles} candles (limit {sg.trade_limit})"
                )
            return None

        return check

    def _max_drawdown(self) -> _Check:
        md = self.config.max_drawdown
        lookback = self._candles(md.lookback_period_candles)
        threshold = -abs(md.max_allowed_drawdown)

        def check(trades: List[TradeRecord], at: datetime) -> Optional[str]:
            window = [t for t in trades if t.closed_at >= at - lookback]
            if len(window) < md.trade_limit:
                return None
            total = sum(t.pnl_ratio for t in window)
            if total <= threshold:
                return (
                    f"MaxDrawdown: {total * 100:.1f}% over {md.lookback_period_candles} candles "
                    f"(limit {threshold * 100:.1f}%)"
                )
            return None

        return check

    def _low_profit_pairs(self, symbol: str) -> _Check:
        lp = self.config.low_profit_pairs
        lookback = self._candles(lp.lookback_period_candles)

        def check(trades: List[TradeRecord], at: datetime) -> Optional[str]:
            window = [t for t in trades if t.symbol == symbol and t.closed_at >= at - lookback]
            if len(window) < lp.trade_limit:
                return None
            avg = sum(t.pnl_ratio for t in window) / len(window)
            if avg < lp.required_profit:
                return (
                    f"LowProfitPairs: {symbol} averaged {avg * 100:.2f}% over "
                    f"{lp.lookback_period_candles} candles (required {lp.required_profit * 100:.2f}%)"
                )
            return None

        return check


def check_protections(
    symbol: str,
    config: ProtectionParams,
    recent_trades: Optional[Sequence[TradeRecord]],
    timeframe: Timeframe,
    now: datetime,
) -> ProtectionResult:
    return ProtectionManager(config, timeframe).check(symbol, recent_trades, now)
