"""
Hyperopt objective.

Scores a parameter set by backtesting it:

    score = sharpe - 0.5 * max_drawdown_pct / 100

Invalid sets (short MA not below long MA, or values the config rejects)
score INVALID_SCORE instead of raising, so a search can keep going.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence

from edgelab.backtest.models import BacktestMetrics
from edgelab.backtest.runner import run_backtest
from edgelab.config.strategy_config import StrategyConfig
from edgelab.core.exceptions import EdgeLabConfigError
from edgelab.core.models import Candle
from edgelab.strategies.registry import StrategyRegistry

logger = logging.getLogger(__name__)

INVALID_SCORE = -999.0
DRAWDOWN_PENALTY = 0.5

# short name -> (config path, is integer)
PARAM_PATHS: Dict[str, tuple] = {
    "ma_short": ("strategy.ma.short", True),
    "ma_long": ("strategy.ma.long", True),
    "rsi_period": ("strategy.rsi.period", True),
    "rsi_overbought": ("strategy.rsi.overbought", False),
    "rsi_oversold": ("strategy.rsi.oversold", False),
    "stop_loss_pct": ("risk.stop_loss_percent", False),
    "take_profit_pct": ("risk.take_profit_percent", False),
    "position_ratio": ("risk.position_ratio", False),
}


@dataclass
class EvalResult:
    score: float
    metrics: BacktestMetrics


def objective_score(metrics: BacktestMetrics) -> float:
    return metrics.sharpe_ratio - DRAWDOWN_PENALTY * (metrics.max_drawdown_pct / 100)


def apply_params(params: Mapping[str, float], base: StrategyConfig) -> StrategyConfig:
    """Validated copy of ``base`` with the named parameters applied."""
    overrides = {}
    for name, value in params.items():
        if name not in PARAM_PATHS:
            raise EdgeLabConfigError(f"Unknown hyperopt parameter '{name}'")
        path, is_int = PARAM_PATHS[name]
        overrides[path] = int(round(value)) if is_int else value
    return base.with_overrides(overrides)


def evaluate_params(
    params: Mapping[str, float],
    candles_by_symbol: Mapping[str, Sequence[Candle]],
    base: StrategyConfig,
    registry: Optional[StrategyRegistry] = None,
) -> EvalResult:
    ma_short = params.get("ma_short", base.strategy.ma.short)
    ma_long = params.get("ma_long", base.strategy.ma.long)
    if ma_short >= ma_long:
        return EvalResult(INVALID_SCORE, BacktestMetrics())

    try:
        cfg = apply_params(params, base)
    except EdgeLabConfigError as e:
        logger.warning("Rejected parameter set %s: %s", dict(params), e)
        return EvalResult(INVALID_SCORE, BacktestMetrics())

    result = run_backtest(candles_by_symbol, cfg, registry)
    return EvalResult(objective_score(result.metrics), result.metrics)
