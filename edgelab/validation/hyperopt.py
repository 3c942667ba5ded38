"""
Hyperopt search.

Searches a bounded parameter space for the set with the best objective
score (see ``objective.py``). The first ``warmup`` trials are uniform
random; after that each trial is picked from a pool of random and
elite-perturbed candidates by a Parzen-estimator ratio:

    score(x) = sum over dims of log l(x) - log g(x)

where ``l`` is a Gaussian KDE over the top ``gamma`` share of observations
and ``g`` over the rest. Every search is seeded, so it is reproducible.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from edgelab.config.strategy_config import StrategyConfig
from edgelab.core.exceptions import EdgeLabConfigError
from edgelab.core.models import Candle
from edgelab.strategies.registry import StrategyRegistry
from edgelab.validation.objective import INVALID_SCORE, PARAM_PATHS, evaluate_params

logger = logging.getLogger(__name__)

DEFAULT_WARMUP = 20
DEFAULT_GAMMA = 0.25
CANDIDATE_POOL = 128
DENSITY_FLOOR = 1e-10


# ---------------------------------------------------------------------------
# Parameter space
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParamDef:
    """One searchable dimension. ``step`` aligns integer values."""

    name: str
    min: float
    max: float
    is_int: bool = False
    step: int = 1


DEFAULT_PARAM_SPACE: List[ParamDef] = [
    ParamDef("ma_short", 5, 50, is_int=True),
    ParamDef("ma_long", 20, 200, is_int=True, step=5),
    ParamDef("rsi_period", 7, 21, is_int=True),
    ParamDef("rsi_overbought", 60, 80),
    ParamDef("rsi_oversold", 20, 40),
    ParamDef("stop_loss_pct", 2, 10),
    ParamDef("take_profit_pct", 5, 30),
    ParamDef("position_ratio", 0.1, 0.4),
]


def decode_param(param: ParamDef, unit: float) -> float:
    """Map ``unit`` in [0, 1] onto the parameter's range."""
    raw = param.min + unit * (param.max - param.min)
    if param.is_int:
        return int(round(raw / param.step) * param.step)
    return raw


def encode_param(param: ParamDef, value: float) -> float:
    """Inverse of decode_param, clamped to [0, 1]."""
    span = param.max - param.min
    if span == 0:
        return 0.0
    return min(1.0, max(0.0, (value - param.min) / span))


def sample_random(space: Sequence[ParamDef], rng: np.random.Generator) -> Dict[str, float]:
    return {p.name: decode_param(p, rng.random()) for p in space}


def perturb_params(
    base: Mapping[str, float],
    space: Sequence[ParamDef],
    sigma: float,
    rng: np.random.Generator,
) -> Dict[str, float]:
    """Uniform noise of +/- ``sigma`` in unit space around ``base``."""
    params = {}
    for p in space:
        unit = encode_param(p, base.get(p.name, p.min))
        noise = (rng.random() - 0.5) * 2 * sigma
        params[p.name] = decode_param(p, min(1.0, max(0.0, unit + noise)))
    return params


def _kde_log(x: float, samples: np.ndarray) -> float:
    """Log density at ``x`` of a Gaussian KDE with Silverman's bandwidth."""
    n = len(samples)
    if n == 0:
        return math.log(DENSITY_FLOOR)
    std = float(np.std(samples, ddof=1)) if n > 1 else 0.0
    h = max(1e-4, 1.06 * std * n ** -0.2)
    z = (x - samples) / h
    density = float(np.exp(-0.5 * z * z).sum()) / (n * h * math.sqrt(2 * math.pi))
    return math.log(max(density, DENSITY_FLOOR))


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------

@dataclass
class Trial:
    params: Dict[str, float]
    score: float


class ParzenOptimizer:
    """
    Ask/tell optimizer over a ParamDef space.

    Usage:
        opt = ParzenOptimizer(DEFAULT_PARAM_SPACE, seed=42)
        for _ in range(100):
            params = opt.suggest()
            opt.observe(params, score_of(params))
        best = opt.best()
    """

    def __init__(
        self,
        space: Sequence[ParamDef],
        seed: Optional[int] = None,
        warmup: int = DEFAULT_WARMUP,
        gamma: float = DEFAULT_GAMMA,
        candidate_pool: int = CANDIDATE_POOL,
    ):
        if not space:
            raise EdgeLabConfigError("Hyperopt parameter space is empty")
        if not 0 < gamma <= 1:
            raise EdgeLabConfigError(f"gamma must be in (0, 1], got {gamma}")
        self.space = list(space)
        self.rng = np.random.default_rng(seed)
        self.warmup = warmup
        self.gamma = gamma
        self.candidate_pool = max(2, candidate_pool)
        self.history: List[Trial] = []

    def suggest(self) -> Dict[str, float]:
        if len(self.history) < self.warmup:
            return sample_random(self.space, self.rng)
        return self._suggest_by_density()

    def observe(self, params: Mapping[str, float], score: float) -> None:
        self.history.append(Trial(dict(params), score))

    def best(self) -> Optional[Trial]:
        """Highest-scoring trial so far; the earliest wins a tie."""
        if not self.history:
            return None
        top = self.history[0]
        for trial in self.history[1:]:
            if trial.score > top.score:
                top = trial
        return Trial(dict(top.params), top.score)

    def _suggest_by_density(self) -> Dict[str, float]:
        ranked = sorted(self.history, key=lambda t: t.score, reverse=True)
        n_good = max(1, int(len(ranked) * self.gamma))
        good, bad = ranked[:n_good], ranked[n_good:]

        half = self.candidate_pool // 2
        candidates = [sample_random(self.space, self.rng) for _ in range(half)]
        for i in range(self.candidate_pool - half):
            sigma = 0.1 + self.rng.random() * 0.1
            candidates.append(perturb_params(good[i % len(good)].params, self.space, sigma, self.rng))

        good_units = self._encode(good)
        bad_units = self._encode(bad)

        best_candidate, best_score = candidates[0], -math.inf
        for candidate in candidates:
            score = 0.0
            for d, p in enumerate(self.space):
                x = encode_param(p, candidate[p.name])
                score += _kde_log(x, good_units[d]) - _kde_log(x, bad_units[d])
            if score > best_score:
                best_candidate, best_score = candidate, score
        return best_candidate

    def _encode(self, trials: Sequence[Trial]) -> List[np.ndarray]:
        return [
            np.array([encode_param(p, t.params.get(p.name, p.min)) for t in trials])
            for p in self.space
        ]


# ---------------------------------------------------------------------------
# Search driver
# ---------------------------------------------------------------------------

@dataclass
class HyperoptResult:
    best_params: Dict[str, float] = field(default_factory=dict)
    best_score: float = INVALID_SCORE
    trials: List[Trial] = field(default_factory=list)

    @property
    def valid_trials(self) -> int:
        return sum(1 for t in self.trials if t.score > INVALID_SCORE)


def run_hyperopt(
    candles_by_symbol: Mapping[str, Sequence[Candle]],
    base: StrategyConfig,
    trials: int = 100,
    space: Optional[Sequence[ParamDef]] = None,
    seed: Optional[int] = None,
    registry: Optional[StrategyRegistry] = None,
    warmup: int = DEFAULT_WARMUP,
) -> HyperoptResult:
    """
    Run ``trials`` backtests, each with a suggested parameter set.

    Args:
        candles_by_symbol: Training candles per symbol
        base: Configuration the parameters are applied to
        trials: Number of parameter sets to evaluate
        space: Search space (default DEFAULT_PARAM_SPACE)
        seed: RNG seed so the search is reproducible

    Raises:
        EdgeLabConfigError: negative trial count or a dimension no config path maps to.
    """
    if trials < 0:
        raise EdgeLabConfigError(f"Hyperopt trials must not be negative, got {trials}")
    space = list(space or DEFAULT_PARAM_SPACE)
    unknown = [p.name for p in space if p.name not in PARAM_PATHS]
    if unknown:
        raise EdgeLabConfigError(f"Unknown hyperopt parameters: {unknown}")

    optimizer = ParzenOptimizer(space, seed=seed, warmup=warmup)
    for n in range(trials):
        params = optimizer.suggest()
        score = evaluate_params(params, candles_by_symbol, base, registry).score
        optimizer.observe(params, score)
        logger.debug("Hyperopt trial %d/%d score %.4f %s", n + 1, trials, score, params)

    best = optimizer.best()
    result = HyperoptResult(trials=list(optimizer.history))
    if best is not None:
        result.best_params = best.params
        result.best_score = best.score
    logger.info(
        "Hyperopt %s: %d trials (%d valid), best score %.4f",
        base.name, trials, result.valid_trials, result.best_score,
    )
    return result


def format_hyperopt_report(result: HyperoptResult) -> str:
    lines = [
        "=" * 60,
        f"HYPEROPT ({len(result.trials)} trials, {result.valid_trials} valid)",
        "=" * 60,
    ]
    if not result.best_params:
        lines.append("No trials run")
        return "\n".join(lines)
    lines.append(f"Best score:        {result.best_score:>12.4f}")
    for name, value in result.best_params.items():
        shown = f"{value:>12d}" if isinstance(value, int) else f"{value:>12.4f}"
        lines.append(f"{name + ':':<19}{shown}")
    return "\n".join(lines)
