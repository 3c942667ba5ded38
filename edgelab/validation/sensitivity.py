"""
Parameter sensitivity.

Re-runs the full backtest for each value of one dotted config path (for
example ``strategy.ma.short``). A strategy whose returns stay positive over
a wide band of values is less likely to be curve-fitted.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from edgelab.backtest.runner import run_backtest
from edgelab.config.strategy_config import StrategyConfig
from edgelab.core.exceptions import EdgeLabConfigError
from edgelab.core.models import Candle
from edgelab.strategies.registry import StrategyRegistry

logger = logging.getLogger(__name__)


@dataclass
class SensitivityParam:
    name: str
    path: str
    values: List[Any]


@dataclass
class SensitivityResult:
    param_name: str
    param_value: Any
    total_return_pct: float
    sharpe: float
    max_drawdown_pct: float
    total_trades: int


@dataclass
class SensitivityReport:
    param_name: str
    results: List[SensitivityResult] = field(default_factory=list)
    best_value: Any = None
    robust_pct: int = 0  # share of values with positive return, 0-100
    verdict: str = ""


DEFAULT_PARAMS = [
    SensitivityParam("MA Short Period", "strategy.ma.short", [12, 15, 18, 20, 22, 25, 30]),
    SensitivityParam("MA Long Period", "strategy.ma.long", [40, 50, 55, 60, 65, 70, 80]),
]


def robust_pct(results: Sequence[SensitivityResult]) -> int:
    if not results:
        return 0
    positive = sum(1 for r in results if r.total_return_pct > 0)
    return round(positive / len(results) * 100)


def run_sensitivity(
    candles: Sequence[Candle],
    config: StrategyConfig,
    symbol: str,
    param: SensitivityParam,
    registry: Optional[StrategyRegistry] = None,
) -> SensitivityReport:
    """Grid over ``param.values``; values the config rejects are skipped."""
    single = config.model_copy(update={"symbols": [symbol]})
    results: List[SensitivityResult] = []

    for value in param.values:
        try:
            cfg = single.with_override(param.path, value)
        except EdgeLabConfigError as e:
            logger.warning("Skipping %s=%r: %s", param.path, value, e)
            continue

        result = run_backtest({symbol: candles}, cfg, registry)
        m = result.metrics
        results.append(SensitivityResult(
            param_name=param.name,
            param_value=value,
            total_return_pct=m.total_return_pct,
            sharpe=m.sharpe_ratio,
            max_drawdown_pct=m.max_drawdown_pct,
            total_trades=m.total_trades,
        ))

    best = max(results, key=lambda r: r.sharpe) if results else None
    pct = robust_pct(results)

    if pct >= 70:
        verdict = f"STABLE: {pct}% of values profitable"
    elif pct >= 40:
        verdict = f"MODERATE: {pct}% of values profitable, prefer the middle of the stable band"
    else:
        verdict = f"FRAGILE: only {pct}% of values profitable, likely overfit"

    return SensitivityReport(
        param_name=param.name,
        results=results,
        best_value=best.param_value if best else (param.values[0] if param.values else None),
        robust_pct=pct,
        verdict=verdict,
    )


def format_sensitivity_report(report: SensitivityReport) -> str:
    lines = [f"SENSITIVITY: {report.param_name}", report.verdict, f"Best value: {report.best_value}", ""]
    for row in report.results:
        mark = "+" if row.total_return_pct > 0 else "-"
        lines.append(
            f"  {str(row.param_value):>6}: [{mark}] {row.total_return_pct:+.1f}%  "
            f"Sharpe {row.sharpe:.2f}  DD {row.max_drawdown_pct:.1f}%"
        )
    return "\n".join(lines)
