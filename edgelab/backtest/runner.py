"""
Backtest runner.

Replays one or more symbols' candles in lockstep over the timestamps they
all share. On every candle, for every symbol:

1. Funding settlement, then exits for an open position: built-in exits
   (stop-loss, take-profit, ROI table, staged take-profit, trailing stop,
   time stop), then the strategy's should_exit, then a closing signal.
2. Entries: an opening signal that passed every filter opens a position
   sized at ``equity * position_ratio``.
3. Equity is sampled once all symbols were processed.

Fills happen at the signal candle's close (look-ahead biased, kept for
comparison) or, with ``costs.signal_to_next_open``, at the next candle's
open. Positions still open at the end are closed with ``end_of_data``.
"""

import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from edgelab.backtest.metrics import MetricsCalculator
from edgelab.backtest.models import BacktestResult, EquityPoint, Trade
from edgelab.config.strategy_config import RiskParams, StrategyConfig
from edgelab.core.enums import Direction, ExitReason, SignalType
from edgelab.core.models import Candle, ExternalContext, IndicatorSnapshot, TradeRecord
from edgelab.core.numeric import safe_pct
from edgelab.execution.position_manager import PositionManager, evaluate_exit
from edgelab.intelligence.indicators import required_bars
from edgelab.signal_engine import process_signal
from edgelab.strategies.base import ClosedTradeInfo, Strategy, StrategyContext
from edgelab.strategies.registry import DEFAULT_STRATEGY_ID, StrategyRegistry, default_registry, resolve_strategy
from edgelab.strategies.state_store import InMemoryStateProvider, StateStoreProvider

logger = logging.getLogger(__name__)

# Buy-and-hold reference when present, else the first symbol
BENCHMARK_SYMBOL = "BTCUSDT"

# Extra bars beyond the longest indicator lookback before trading starts
WARMUP_PADDING = 10


def warmup_bars(config: StrategyConfig) -> int:
    return required_bars(config.strategy) + WARMUP_PADDING


class BacktestRunner:
    """
    Usage:
        runner = BacktestRunner(config)
        result = runner.run({"BTCUSDT": candles})
        print(result.metrics.total_return_pct)
    """

    def __init__(
        self,
        config: StrategyConfig,
        registry: Optional[StrategyRegistry] = None,
        state_stores: Optional[StateStoreProvider] = None,
        initial_equity: Optional[float] = None,
    ):
        self.config = config
        self.registry = registry or default_registry()
        self.state_stores = state_stores or InMemoryStateProvider()
        self.initial_equity = initial_equity if initial_equity is not None else config.costs.initial_equity
        self.metrics = MetricsCalculator()

        # Fail fast on an unknown strategy id
        self.strategy: Optional[Strategy] = None
        if (config.strategy_id or DEFAULT_STRATEGY_ID) != DEFAULT_STRATEGY_ID:
            self.strategy = resolve_strategy(config, self.registry)

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def run(self, candles_by_symbol: Mapping[str, Sequence[Candle]]) -> BacktestResult:
        config = self.config
        pm = PositionManager(config.costs, self.initial_equity)
        equity_curve: List[EquityPoint] = []
        recent: List[TradeRecord] = []
        entry_risk: Dict[str, RiskParams] = {}
        last_indicators: Dict[str, IndicatorSnapshot] = {}

        timeline = self._common_timeline(candles_by_symbol)
        if not timeline:
            logger.warning("No shared timestamps across %s", sorted(candles_by_symbol))
            return self._result(pm, equity_curve)

        index = {
            symbol: {c.open_time: i for i, c in enumerate(candles)}
            for symbol, candles in candles_by_symbol.items()
        }
        warmup = warmup_bars(config)
        window_size = warmup * 2
        next_open = config.costs.signal_to_next_open

        for ts in timeline:
            windows: Dict[str, Sequence[Candle]] = {}
            for symbol, candles in candles_by_symbol.items():
                i = index[symbol][ts]
                windows[symbol] = candles[max(0, i + 1 - window_size):i + 1]

            for symbol, candles in candles_by_symbol.items():
                i = index[symbol][ts]
                window = windows[symbol]
                candle = candles[i]
                fill_candle = candles[i + 1] if next_open and i + 1 < len(candles) else None

                position = pm.positions.get(symbol)
                if position is not None:
                    pm.settle_funding(symbol, candle.close, candle.close_time)
                    decision = evaluate_exit(
                        position, candle, entry_risk.get(symbol, config.risk), config.minimal_roi
                    )
                    if decision is not None:
                        trade = pm.apply(decision, symbol, candle.close_time)
                        # A partial take-profit keeps the position open
                        if symbol not in pm.positions:
                            self._after_close(trade, window, last_indicators.get(symbol), recent)
                        continue

                if i + 1 < warmup:
                    continue

                held = {s: w for s, w in windows.items() if s != symbol and s in pm.positions}
                external = ExternalContext(current_side=pm.side_of(symbol), held_candles=held or None)
                result = process_signal(
                    symbol, window, config, external, recent,
                    registry=self.registry, state_stores=self.state_stores,
                )
                if result.indicators is None:
                    continue
                last_indicators[symbol] = result.indicators
                signal = result.signal.type

                if position is not None:
                    if self._strategy_exit(symbol, window, result.indicators, position):
                        reason = ExitReason.SIGNAL
                    elif signal.is_closing and (signal == SignalType.SELL) == position.is_long:
                        reason = ExitReason.SIGNAL
                    else:
                        continue
                    if next_open and fill_candle is None:
                        continue
                    price, when = self._fill(candle, fill_candle)
                    trade = pm.close(symbol, price, when, reason)
                    self._after_close(trade, window, result.indicators, recent)
                    continue

                if not signal.is_opening or result.rejected:
                    continue
                if next_open and fill_candle is None:
                    continue

                price, when = self._fill(candle, fill_candle)
                side = Direction.LONG if signal == SignalType.BUY else Direction.SHORT
                prices = {s: candles_by_symbol[s][index[s][ts]].close for s in candles_by_symbol}
                opened = pm.open(
                    symbol, side, price, when,
                    ratio=result.effective_position_ratio,
                    risk=result.effective_risk,
                    equity=pm.equity(prices),
                )
                if opened is not None:
                    entry_risk[symbol] = result.effective_risk

            prices = {s: candles_by_symbol[s][index[s][ts]].close for s in candles_by_symbol}
            first = next(iter(candles_by_symbol))
            sample_time = candles_by_symbol[first][index[first][ts]].close_time
            equity_curve.append(EquityPoint(sample_time, pm.equity(prices)))

        # Close whatever is still open at the last shared candle
        last_ts = timeline[-1]
        for symbol in list(pm.positions):
            candles = candles_by_symbol[symbol]
            i = index[symbol][last_ts]
            trade = pm.close(symbol, candles[i].close, candles[i].close_time, ExitReason.END_OF_DATA)
            window = candles[max(0, i + 1 - window_size):i + 1]
            self._after_close(trade, window, last_indicators.get(symbol), recent)
        if equity_curve:
            equity_curve[-1] = EquityPoint(equity_curve[-1].time, pm.equity({}))

        return self._result(pm, equity_curve, timeline, self._benchmark(candles_by_symbol, index, timeline))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _common_timeline(candles_by_symbol: Mapping[str, Sequence[Candle]]) -> List[datetime]:
        if not candles_by_symbol:
            return []
        shared = None
        for candles in candles_by_symbol.values():
            times = {c.open_time for c in candles}
            shared = times if shared is None else shared & times
        return sorted(shared)

    @staticmethod
    def _benchmark(candles_by_symbol, index, timeline: List[datetime]) -> Optional[float]:
        """Buy-and-hold return of BENCHMARK_SYMBOL (or the first symbol) over the timeline."""
        if len(timeline) < 2:
            return None
        symbol = BENCHMARK_SYMBOL if BENCHMARK_SYMBOL in candles_by_symbol else next(iter(candles_by_symbol))
        candles = candles_by_symbol[symbol]
        first = candles[index[symbol][timeline[0]]].close
        last = candles[index[symbol][timeline[-1]]].close
        return safe_pct(last - first, first)

    @staticmethod
    def _fill(candle: Candle, fill_candle: Optional[Candle]):
        if fill_candle is not None:
            return fill_candle.open, fill_candle.open_time
        return candle.close, candle.close_time

    def _strategy_exit(self, symbol, window, indicators, position) -> bool:
        if self.strategy is None:
            return False
        ctx = self._context(symbol, window, indicators, position.side)
        return bool(self.strategy.should_exit(ctx, position))

    def _context(self, symbol, window, indicators, side=None) -> StrategyContext:
        store = self.state_stores.for_strategy(self.strategy.id, symbol)
        return StrategyContext(symbol, window, self.config, indicators, side, store)

    def _after_close(
        self,
        trade: Optional[Trade],
        window: Sequence[Candle],
        indicators: Optional[IndicatorSnapshot],
        recent: List[TradeRecord],
    ) -> None:
        if trade is None:
            return
        recent.append(TradeRecord(
            symbol=trade.symbol,
            closed_at=trade.exit_time,
            pnl_ratio=trade.pnl_pct / 100,
            was_stop_loss=trade.was_stop_loss,
        ))
        if self.strategy is None or indicators is None:
            return
        info = ClosedTradeInfo(
            symbol=trade.symbol,
            side=trade.side,
            pnl=trade.pnl,
            pnl_pct=trade.pnl_pct,
            exit_reason=trade.exit_reason.value,
            closed_at=trade.exit_time,
        )
        self.strategy.on_trade_closed(info, self._context(trade.symbol, window, indicators))

    def _result(
        self,
        pm: PositionManager,
        equity_curve: List[EquityPoint],
        timeline: Optional[List[datetime]] = None,
        benchmark_return_pct: Optional[float] = None,
    ) -> BacktestResult:
        trades = list(pm.trades)
        metrics = self.metrics.calculate(trades, self.initial_equity, equity_curve)
        final_equity = equity_curve[-1].equity if equity_curve else pm.cash
        logger.info(
            "Backtest %s: %d trades, return %+.2f%%, max DD %.2f%%",
            self.config.name, metrics.total_trades, metrics.total_return_pct, metrics.max_drawdown_pct,
        )
        return BacktestResult(
            config=self.config,
            initial_equity=self.initial_equity,
            final_equity=final_equity,
            trades=trades,
            equity_curve=equity_curve,
            metrics=metrics,
            per_symbol=self.metrics.per_symbol(trades),
            start=timeline[0] if timeline else None,
            end=timeline[-1] if timeline else None,
            benchmark_return_pct=benchmark_return_pct,
            funding_by_symbol=dict(pm.funding_by_symbol),
        )


def run_backtest(
    candles_by_symbol: Mapping[str, Sequence[Candle]],
    config: StrategyConfig,
    registry: Optional[StrategyRegistry] = None,
    state_stores: Optional[StateStoreProvider] = None,
    initial_equity: Optional[float] = None,
) -> BacktestResult:
    """Run one backtest; see BacktestRunner."""
    return BacktestRunner(config, registry, state_stores, initial_equity).run(candles_by_symbol)
