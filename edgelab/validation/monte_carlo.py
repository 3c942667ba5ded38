"""
Monte-Carlo trade-order simulation.

Shuffles realised trade returns N times and compounds each ordering from an
equity of 100. Only percentage returns are used, so the spread of outcomes
reflects sequence risk rather than position size.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from edgelab.config.settings import get_settings
from edgelab.core.exceptions import EdgeLabConfigError

logger = logging.getLogger(__name__)

START_EQUITY = 100.0


@dataclass
class MonteCarloResult:
    iterations: int = 0
    avg_return: float = 0.0
    median_return: float = 0.0
    p5_return: float = 0.0
    p95_return: float = 0.0
    p5_max_drawdown: float = 0.0
    verdict: str = "No trades to simulate"

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def _compound(returns_pct: np.ndarray):
    """Final return % and max drawdown % of one ordering."""
    equity = START_EQUITY * np.cumprod(1 + returns_pct / 100)
    peaks = np.maximum.accumulate(np.concatenate(([START_EQUITY], equity)))[1:]
    drawdowns = np.where(peaks > 0, (peaks - equity) / peaks, 0.0)
    return float(equity[-1] - START_EQUITY), float(drawdowns.max() * 100)


def run_monte_carlo(
    returns_pct: Sequence[float],
    iterations: Optional[int] = None,
    seed: Optional[int] = None,
) -> MonteCarloResult:
    """
    Args:
        returns_pct: Per-trade returns in percent (e.g. Trade.pnl_pct)
        iterations: Number of shuffles (default from settings, 1000)
        seed: RNG seed (default from settings) so runs are reproducible

    Raises:
        EdgeLabConfigError: iterations is negative.
    """
    if iterations is not None and iterations < 0:
        raise EdgeLabConfigError(f"Monte-Carlo iterations must not be negative, got {iterations}")
    if len(returns_pct) == 0:
        return MonteCarloResult()

    settings = get_settings()
    iterations = iterations or settings.monte_carlo_iterations
    seed = settings.monte_carlo_seed if seed is None else seed
    rng = np.random.default_rng(seed)
    base = np.asarray(returns_pct, dtype=float)

    finals = np.empty(iterations)
    drawdowns = np.empty(iterations)
    for i in range(iterations):
        finals[i], drawdowns[i] = _compound(rng.permutation(base))

    finals.sort()
    worst_first = np.sort(drawdowns)[::-1]
    n = iterations

    avg = float(finals.mean())
    median = float(finals[int(n * 0.5)])
    p5 = float(finals[int(n * 0.05)])
    p95 = float(finals[min(int(n * 0.95), n - 1)])
    p5_dd = float(worst_first[int(n * 0.05)])

    if p5 > -10 and p5_dd < 20:
        verdict = f"LOW RISK: worst 5% {p5:+.1f}%, drawdown {p5_dd:.1f}%"
    elif p5 > -20:
        verdict = f"MODERATE RISK: worst 5% {p5:+.1f}%, watch position sizing"
    else:
        verdict = f"HIGH RISK: worst 5% {p5:+.1f}%, not fit for live trading"

    logger.debug("Monte-Carlo %d iterations: %s", n, verdict)
    return MonteCarloResult(n, avg, median, p5, p95, p5_dd, verdict)


def format_monte_carlo_report(result: MonteCarloResult) -> str:
    return "\n".join([
        f"MONTE-CARLO ({result.iterations} iterations)",
        result.verdict,
        f"Mean {result.avg_return:+.1f}%  Median {result.median_return:+.1f}%",
        f"5th -> 95th: {result.p5_return:+.1f}% -> {result.p95_return:+.1f}%",
        f"Worst 5% max drawdown: {result.p5_max_drawdown:.1f}%",
    ])
