"""
Walk-forward validation.

Optimising and testing on the same history rewards overfitting. Walk-forward
splits one symbol's candles in time: an anchored training slice followed by
an unseen test slice, rolled forward one fold at a time. Only consistently
positive out-of-sample returns mean the strategy has an edge.

    |<------ train (70%) ------>|<- test ->|
    |<--------- train ----------------->|<- test ->|
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from edgelab.backtest.runner import run_backtest
from edgelab.config.settings import get_settings
from edgelab.config.strategy_config import StrategyConfig
from edgelab.core.models import Candle
from edgelab.strategies.registry import StrategyRegistry

logger = logging.getLogger(__name__)

MIN_TRAIN_BARS = 60
MIN_TEST_BARS = 10
ROBUST_CONSISTENCY = 0.6


@dataclass
class WalkForwardFold:
    fold_index: int
    train_bars: int
    test_bars: int
    in_sample_return: float
    out_of_sample_return: float
    out_of_sample_sharpe: float
    out_of_sample_trades: int
    out_of_sample_win_rate: float


@dataclass
class WalkForwardResult:
    symbol: str
    folds: List[WalkForwardFold] = field(default_factory=list)
    avg_in_sample_return: float = 0.0
    avg_out_of_sample_return: float = 0.0
    consistency: float = 0.0
    robust: bool = False
    verdict: str = ""

    @property
    def total_folds(self) -> int:
        return len(self.folds)


def is_robust(avg_out_of_sample: float, consistency: float) -> bool:
    """Positive average out-of-sample return and >= 60% of folds profitable."""
    return avg_out_of_sample > 0 and consistency >= ROBUST_CONSISTENCY


def summarize_folds(symbol: str, folds: List[WalkForwardFold]) -> WalkForwardResult:
    if folds:
        avg_oos = sum(f.out_of_sample_return for f in folds) / len(folds)
        avg_is = sum(f.in_sample_return for f in folds) / len(folds)
        consistency = sum(1 for f in folds if f.out_of_sample_return > 0) / len(folds)
    else:
        avg_oos = avg_is = consistency = 0.0

    robust = is_robust(avg_oos, consistency)
    if robust:
        verdict = f"ROBUST: avg OOS {avg_oos:+.1f}%, {consistency * 100:.0f}% of folds profitable"
    elif avg_oos > -3 and consistency >= 0.4:
        verdict = f"MARGINAL: avg OOS {avg_oos:+.1f}%, needs work"
    else:
        verdict = f"LIKELY OVERFIT: in-sample {avg_is:+.1f}% vs out-of-sample {avg_oos:+.1f}%"

    return WalkForwardResult(
        symbol=symbol,
        folds=folds,
        avg_in_sample_return=avg_is,
        avg_out_of_sample_return=avg_oos,
        consistency=consistency,
        robust=robust,
        verdict=verdict,
    )


def walk_forward(
    candles: Sequence[Candle],
    config: StrategyConfig,
    symbol: str,
    folds: Optional[int] = None,
    train_ratio: Optional[float] = None,
    registry: Optional[StrategyRegistry] = None,
) -> WalkForwardResult:
    """
    Run walk-forward analysis on one symbol.

    Args:
        candles: Full history, oldest first
        config: Strategy config (its symbol list is replaced by ``symbol``)
        folds: Number of folds (default from settings, 5)
        train_ratio: Share of the series used for the first training slice (0.7)
    """
    settings = get_settings()
    folds = folds or settings.walk_forward_folds
    train_ratio = train_ratio if train_ratio is not None else settings.walk_forward_train_ratio

    fold_size = len(candles) // folds
    train_size = int(fold_size * folds * train_ratio)
    test_size = fold_size
    single = config.model_copy(update={"symbols": [symbol]})

    results: List[WalkForwardFold] = []
    for i in range(folds - 1):
        train_end = train_size + i * test_size
        test_end = train_end + test_size
        if test_end > len(candles):
            break

        train = candles[:train_end]
        test = candles[train_end:test_end]
        if len(train) < MIN_TRAIN_BARS or len(test) < MIN_TEST_BARS:
            logger.debug("Fold %d skipped: %d train / %d test bars", i, len(train), len(test))
            continue

        train_result = run_backtest({symbol: train}, single, registry)
        test_result = run_backtest({symbol: test}, single, registry)
        oos = test_result.metrics

        results.append(WalkForwardFold(
            fold_index=i,
            train_bars=len(train),
            test_bars=len(test),
            in_sample_return=train_result.metrics.total_return_pct,
            out_of_sample_return=oos.total_return_pct,
            out_of_sample_sharpe=oos.sharpe_ratio,
            out_of_sample_trades=oos.total_trades,
            out_of_sample_win_rate=oos.win_rate,
        ))

    summary = summarize_folds(symbol, results)
    logger.info("Walk-forward %s: %d folds, %s", symbol, summary.total_folds, summary.verdict)
    return summary


def format_walk_forward_report(results: Sequence[WalkForwardResult]) -> str:
    lines = ["WALK-FORWARD REPORT", ""]
    for r in results:
        lines.append(f"{r.symbol}: {r.verdict}")
        lines.append(
            f"  in-sample avg {r.avg_in_sample_return:+.1f}% | "
            f"out-of-sample avg {r.avg_out_of_sample_return:+.1f}%"
        )
        for f in r.folds:
            mark = "+" if f.out_of_sample_return > 0 else "-"
            lines.append(
                f"  [{mark}] fold {f.fold_index + 1}: OOS {f.out_of_sample_return:+.1f}% "
                f"({f.out_of_sample_trades} trades, win {f.out_of_sample_win_rate * 100:.0f}%)"
            )
        lines.append("")
    return "\n".join(lines)
