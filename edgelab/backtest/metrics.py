"""
Backtest metrics.

Pure reduction over (trades, initial equity, equity curve):
- Win rate, profit factor, average win/loss percent, win/loss ratio
- Max drawdown (percent and currency) over the equity curve
- Sharpe and Sortino from per-step equity returns
- Best/worst trade, average holding time, exit-reason counts
- One-sample t-test on trade returns (is the mean > 0?)

Every figure has a defined neutral value on empty input.
"""

import logging
import math
from typing import Dict, List, Sequence, Tuple

import numpy as np
from scipy import stats as sp_stats

from edgelab.backtest.models import BacktestMetrics, EquityPoint, SymbolStats, Trade
from edgelab.core.numeric import safe_pct, safe_ratio

logger = logging.getLogger(__name__)


def profit_factor(gross_wins: float, gross_losses: float) -> float:
    """
    sum(wins) / sum(|losses|).

    inf when there are wins and no losses, 0 when there are no wins
    (including the empty ledger).
    """
    if gross_wins <= 0:
        return 0.0
    if gross_losses == 0:
        return math.inf
    return gross_wins / gross_losses


def max_drawdown(equity: Sequence[float]) -> Tuple[float, float]:
    """Largest peak-to-trough drop as (percent, currency)."""
    peak = None
    max_dd = 0.0
    max_dd_pct = 0.0
    for value in equity:
        if peak is None or value > peak:
            peak = value
        dd = peak - value
        if dd > max_dd:
            max_dd = dd
        dd_pct = safe_pct(dd, peak)
        if dd_pct > max_dd_pct:
            max_dd_pct = dd_pct
    return max_dd_pct, max_dd


def step_returns(equity: Sequence[float]) -> np.ndarray:
    arr = np.asarray(equity, dtype=float)
    if len(arr) < 2:
        return np.array([])
    prev = arr[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(prev != 0, (arr[1:] - prev) / prev, 0.0)
    return returns


def sharpe_ratio(equity: Sequence[float]) -> float:
    """mean / std of per-step returns scaled by sqrt(n); 0 when equity never changes."""
    returns = step_returns(equity)
    if len(returns) < 2:
        return 0.0
    std = float(np.std(returns, ddof=1))
    if std == 0 or not math.isfinite(std):
        return 0.0
    return float(np.mean(returns) / std * np.sqrt(len(returns)))


def sortino_ratio(equity: Sequence[float]) -> float:
    """Like Sharpe but only downside steps count as risk."""
    returns = step_returns(equity)
    if len(returns) < 2:
        return 0.0
    downside = returns[returns < 0]
    if len(downside) < 2:
        return 0.0
    std = float(np.std(downside, ddof=1))
    if std == 0:
        return 0.0
    return float(np.mean(returns) / std * np.sqrt(len(returns)))


class MetricsCalculator:
    """Calculate backtest metrics."""

    SIGNIFICANCE_LEVEL = 0.05

    def calculate(
        self,
        trades: Sequence[Trade],
        initial_equity: float,
        equity_curve: Sequence[EquityPoint] = (),
    ) -> BacktestMetrics:
        equity = [p.equity for p in equity_curve]
        max_dd_pct, max_dd = max_drawdown(equity) if equity else (0.0, 0.0)
        final_equity = equity[-1] if equity else initial_equity + sum(t.pnl for t in trades)

        if not trades:
            return self._empty_metrics(initial_equity, final_equity, equity, max_dd_pct, max_dd)

        total = len(trades)
        winning = [t for t in trades if t.is_winner]
        losing = [t for t in trades if t.pnl <= 0]

        avg_win_pct = float(np.mean([t.pnl_pct for t in winning])) if winning else 0.0
        avg_loss_pct = float(np.mean([t.pnl_pct for t in losing])) if losing else 0.0

        gross_wins = sum(t.pnl for t in winning)
        gross_losses = abs(sum(t.pnl for t in losing))

        pct = [t.pnl_pct for t in trades]
        t_stat, p_value = self._significance_test(pct)

        return BacktestMetrics(
            total_trades=total,
            wins=len(winning),
            losses=len(losing),
            win_rate=len(winning) / total,
            profit_factor=profit_factor(gross_wins, gross_losses),
            total_pnl=sum(t.pnl for t in trades),
            total_return_pct=safe_pct(final_equity - initial_equity, initial_equity),
            avg_win_pct=avg_win_pct,
            avg_loss_pct=avg_loss_pct,
            win_loss_ratio=safe_ratio(avg_win_pct, abs(avg_loss_pct)),
            best_trade_pct=max(pct),
            worst_trade_pct=min(pct),
            max_drawdown_pct=max_dd_pct,
            max_drawdown=max_dd,
            sharpe_ratio=sharpe_ratio(equity),
            sortino_ratio=sortino_ratio(equity),
            avg_holding_hours=float(np.mean([t.holding_hours for t in trades])),
            t_statistic=t_stat,
            p_value=p_value,
            is_significant=p_value < self.SIGNIFICANCE_LEVEL and t_stat > 0,
            exit_reasons=self.exit_reason_counts(trades),
        )

    @staticmethod
    def exit_reason_counts(trades: Sequence[Trade]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for t in trades:
            counts[t.exit_reason.value] = counts.get(t.exit_reason.value, 0) + 1
        return counts

    @staticmethod
    def per_symbol(trades: Sequence[Trade]) -> Dict[str, SymbolStats]:
        stats: Dict[str, SymbolStats] = {}
        for t in trades:
            entry = stats.setdefault(t.symbol, SymbolStats(t.symbol))
            entry.trades += 1
            entry.wins += 1 if t.is_winner else 0
            entry.pnl += t.pnl
        return stats

    @staticmethod
    def _significance_test(values: List[float]) -> Tuple[float, float]:
        """One-tailed t-test: is the mean trade return significantly > 0?"""
        if len(values) < 2 or np.std(values) == 0:
            return 0.0, 1.0

        t_stat, p_two = sp_stats.ttest_1samp(values, 0)
        p_one = p_two / 2 if t_stat > 0 else 1 - p_two / 2
        return float(t_stat), float(p_one)

    @staticmethod
    def _empty_metrics(initial_equity: float, final_equity: float, equity: List[float],
                       max_dd_pct: float, max_dd: float) -> BacktestMetrics:
        return BacktestMetrics(
            total_return_pct=safe_pct(final_equity - initial_equity, initial_equity),
            max_drawdown_pct=max_dd_pct,
            max_drawdown=max_dd,
            sharpe_ratio=sharpe_ratio(equity),
            sortino_ratio=sortino_ratio(equity),
        )


def calculate_metrics(
    trades: Sequence[Trade],
    initial_equity: float,
    equity_curve: Sequence[EquityPoint] = (),
) -> BacktestMetrics:
    return MetricsCalculator().calculate(trades, initial_equity, equity_curve)
