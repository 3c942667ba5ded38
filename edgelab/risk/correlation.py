"""
Correlation filter - hidden concentration detector.

Compares the candidate symbol's recent log returns with every held symbol's
returns. A correlation at or above the threshold never rejects the signal;
it halves the position-size ratio instead.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from edgelab.core.models import Candle

logger = logging.getLogger(__name__)

MIN_RETURNS = 10
SIZE_REDUCTION = 0.5


def log_returns(candles: Sequence[Candle]) -> List[float]:
    """ln(close_t / close_t-1), skipping pairs with a non-positive close."""
    returns = []
    for prev, curr in zip(candles, candles[1:]):
        if prev.close > 0 and curr.close > 0:
            returns.append(math.log(curr.close / prev.close))
    return returns


def pearson_correlation(a: Sequence[float], b: Sequence[float]) -> float:
    """Pearson correlation of the tail-aligned series; NaN when undefined."""
    n = min(len(a), len(b))
    if n < 2:
        return math.nan
    x = np.asarray(a[-n:], dtype=float)
    y = np.asarray(b[-n:], dtype=float)
    dx = x - x.mean()
    dy = y - y.mean()
    denom = math.sqrt(float((dx * dx).sum()) * float((dy * dy).sum()))
    if denom == 0:
        return math.nan
    return float((dx * dy).sum()) / denom


@dataclass
class CorrelationResult:
    correlated: bool
    max_correlation: float = 0.0
    correlated_with: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "correlated": self.correlated,
            "max_correlation": round(self.max_correlation, 4),
            "correlated_with": self.correlated_with,
            "reason": self.reason,
        }


class CorrelationFilter:
    """
    Usage:
        corr = CorrelationFilter(threshold=0.7, lookback=60)
        result = corr.check("ETHUSDT", eth_candles, {"BTCUSDT": btc_candles})
        if result.correlated:
            ratio *= SIZE_REDUCTION
    """

    def __init__(self, threshold: float = 0.7, lookback: int = 60):
        self.threshold = threshold
        self.lookback = lookback

    def check(
        self,
        symbol: str,
        candles: Sequence[Candle],
        held: Optional[Dict[str, Sequence[Candle]]],
    ) -> CorrelationResult:
        if not held:
            return CorrelationResult(False)

        returns = log_returns(candles[-(self.lookback + 1):])
        if len(returns) < MIN_RETURNS:
            return CorrelationResult(False)

        best = -math.inf
        best_symbol = None
        for held_symbol, held_candles in held.items():
            if held_symbol == symbol:
                continue
            corr = pearson_correlation(returns, log_returns(held_candles[-(self.lookback + 1):]))
            if math.isnan(corr):
                continue
            if corr > best:
                best = corr
                best_symbol = held_symbol

        if best == -math.inf:
            return CorrelationResult(False)

        if best >= self.threshold:
            reason = (
                f"{symbol} correlates with held {best_symbol} at {best:.3f} "
                f"(threshold {self.threshold}), size halved"
            )
            logger.debug(reason)
            return CorrelationResult(True, best, best_symbol, reason)

        return CorrelationResult(False, best, best_symbol)


def check_correlation(
    symbol: str,
    candles: Sequence[Candle],
    held: Optional[Dict[str, Sequence[Candle]]],
    threshold: float = 0.7,
    lookback: int = 60,
) -> CorrelationResult:
    return CorrelationFilter(threshold, lookback).check(symbol, candles, held)
