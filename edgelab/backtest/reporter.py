"""
Backtest Reporter

Plain-text reports from a BacktestResult.
"""

import math

from edgelab.backtest.models import BacktestResult
from edgelab.execution.roi_table import format_roi_table


class BacktestReporter:
    """Generate reports from backtest results."""

    def generate_summary(self, result: BacktestResult) -> str:
        m = result.metrics
        pf = "inf" if math.isinf(m.profit_factor) else f"{m.profit_factor:.2f}"
        period = f"{result.start:%Y-%m-%d} to {result.end:%Y-%m-%d}" if result.start and result.end else "n/a"

        lines = [
            "=" * 60,
            f"BACKTEST SUMMARY: {result.config.name}",
            "=" * 60,
            "",
            f"Period:            {period}",
            f"Starting Equity:   {result.initial_equity:>12,.2f}",
            f"Ending Equity:     {result.final_equity:>12,.2f}",
            f"Total Return:      {m.total_return_pct:>12.2f}%",
        ]
        if result.benchmark_return_pct is not None:
            lines.append(
                f"Buy & Hold:        {result.benchmark_return_pct:>12.2f}% "
                f"(excess {result.excess_return_pct:+.2f}%)"
            )
        lines += [
            f"Max Drawdown:      {m.max_drawdown:>12,.2f} ({m.max_drawdown_pct:.2f}%)",
            f"Sharpe / Sortino:  {m.sharpe_ratio:>6.2f} / {m.sortino_ratio:.2f}",
        ]
        if result.funding_by_symbol:
            lines.append(f"Funding Paid:      {result.total_funding:>12,.4f}")
        lines += [
            "",
            "## TRADES",
            f"Total Trades:      {m.total_trades:>12}",
            f"Wins / Losses:     {m.wins:>5} / {m.losses}",
            f"Win Rate:          {m.win_rate * 100:>12.1f}%",
            f"Profit Factor:     {pf:>12}",
            f"Avg Win / Loss:    {m.avg_win_pct:>+6.2f}% / {m.avg_loss_pct:+.2f}%",
            f"Best / Worst:      {m.best_trade_pct:>+6.2f}% / {m.worst_trade_pct:+.2f}%",
            f"Avg Hold:          {m.avg_holding_hours:>12.1f}h",
            f"t-stat / p-value:  {m.t_statistic:>6.2f} / {m.p_value:.3f}",
        ]

        if m.exit_reasons:
            lines.extend(["", "## EXIT REASONS"])
            for reason, count in sorted(m.exit_reasons.items(), key=lambda kv: -kv[1]):
                lines.append(f"{reason:<18} {count:>5}")

        roi = getattr(result.config, "minimal_roi", None)
        if roi:
            lines.extend(["", f"ROI table: {format_roi_table(roi)}"])

        return "\n".join(lines)

    def generate_symbol_report(self, result: BacktestResult) -> str:
        lines = ["", "=" * 60, "PERFORMANCE BY SYMBOL", "=" * 60]
        for symbol, stats in sorted(result.per_symbol.items(), key=lambda kv: kv[1].pnl, reverse=True):
            status = "[+]" if stats.pnl > 0 else "[-]"
            lines.append(
                f"{status} {symbol:<12} trades {stats.trades:>4}  "
                f"win {stats.win_rate * 100:>5.1f}%  pnl {stats.pnl:>+10.2f}"
            )
        return "\n".join(lines)

    def generate_full_report(self, result: BacktestResult) -> str:
        return "\n".join([self.generate_summary(result), self.generate_symbol_report(result)])
