"""
Risk-reward filter.

Estimates support/resistance from the recent window's low/high (or supplied
pivot levels) and rejects an opening signal whose reward distance divided by
risk distance is below ``min_rr``.

- ``min_rr <= 0``: filter disabled, passes with ratio inf
- fewer than MIN_CANDLES in the window: passes through, nothing to measure
- price at or beyond the estimated range: rejected with ratio 0
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

from edgelab.core.enums import Direction
from edgelab.core.models import Candle, RiskDecision

logger = logging.getLogger(__name__)

MIN_CANDLES = 5


@dataclass
class RiskRewardCheck:
    ratio: float
    passed: bool
    support: float
    resistance: float
    reason: str

    def to_decision(self) -> RiskDecision:
        return RiskDecision(
            passed=self.passed,
            reason=self.reason,
            details={"ratio": self.ratio, "support": self.support, "resistance": self.resistance},
        )


def check_risk_reward(
    candles: Sequence[Candle],
    price: float,
    side: Direction,
    min_rr: float,
    lookback: int = 20,
    support: Optional[float] = None,
    resistance: Optional[float] = None,
) -> RiskRewardCheck:
    """Risk-reward of entering ``side`` at ``price``; long = up/down, short = down/up."""
    if min_rr <= 0:
        return RiskRewardCheck(
            ratio=math.inf,
            passed=True,
            support=support if support is not None else price * 0.95,
            resistance=resistance if resistance is not None else price * 1.05,
            reason="R:R filter disabled (min_rr <= 0)",
        )

    window = list(candles[-lookback:])
    if len(window) < MIN_CANDLES:
        return RiskRewardCheck(
            ratio=math.inf,
            passed=True,
            support=price * 0.95,
            resistance=price * 1.05,
            reason=f"Only {len(window)} candles, R:R check skipped",
        )

    level_support = support if support is not None else min(c.low for c in window)
    level_resistance = resistance if resistance is not None else max(c.high for c in window)
    dist_up = level_resistance - price
    dist_down = price - level_support

    if dist_down <= 0 or dist_up <= 0:
        return RiskRewardCheck(
            ratio=0.0,
            passed=False,
            support=level_support,
            resistance=level_resistance,
            reason=(
                f"Price {price:.4f} outside recent range "
                f"({level_support:.4f} - {level_resistance:.4f})"
            ),
        )

    ratio = dist_up / dist_down if side == Direction.LONG else dist_down / dist_up
    passed = ratio >= min_rr
    if passed:
        reason = f"R:R={ratio:.2f} >= {min_rr} ({side.value})"
    else:
        reason = (
            f"R:R={ratio:.2f} < {min_rr} ({side.value}): "
            f"{dist_up:.4f} to resistance, {dist_down:.4f} to support"
        )
    return RiskRewardCheck(ratio, passed, level_support, level_resistance, reason)
