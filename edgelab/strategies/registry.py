"""
Strategy registry.

An explicit registry object is built once and passed into the pipeline.
``get`` raises StrategyNotFoundError for an unknown id; ``resolve_strategy``
maps a config's ``strategy_id`` to a strategy instance.
"""

import logging
from typing import Dict, Iterator, List, Optional

from edgelab.config.strategy_config import StrategyConfig
from edgelab.core.exceptions import EdgeLabConfigError, StrategyNotFoundError
from edgelab.strategies.base import RuleBasedStrategy, Strategy
from edgelab.strategies.breakout import BreakoutStrategy
from edgelab.strategies.ensemble import EnsembleStrategy
from edgelab.strategies.rsi_reversal import RsiReversalStrategy

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY_ID = "default"
ENSEMBLE_STRATEGY_ID = "ensemble"


class StrategyRegistry:
    """
    Lookup-by-id for strategy plugins.

    Usage:
        registry = StrategyRegistry()
        registry.register(BreakoutStrategy())
        strategy = registry.get("breakout")
    """

    def __init__(self, strategies: Optional[List[Strategy]] = None):
        self._strategies: Dict[str, Strategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: Strategy, replace: bool = False) -> None:
        if not strategy.id:
            raise EdgeLabConfigError(f"{strategy!r} has no id")
        if strategy.id in self._strategies and not replace:
            raise EdgeLabConfigError(f"Strategy '{strategy.id}' is already registered")
        self._strategies[strategy.id] = strategy
        logger.debug("Registered strategy %s", strategy.id)

    def get(self, strategy_id: str) -> Strategy:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise StrategyNotFoundError(strategy_id, self._strategies.keys()) from None

    def find(self, strategy_id: str) -> Optional[Strategy]:
        return self._strategies.get(strategy_id)

    def ids(self) -> List[str]:
        return sorted(self._strategies)

    def __contains__(self, strategy_id: str) -> bool:
        return strategy_id in self._strategies

    def __iter__(self) -> Iterator[Strategy]:
        return iter(self._strategies.values())

    def __len__(self) -> int:
        return len(self._strategies)


def default_registry() -> StrategyRegistry:
    """Registry holding the built-in strategies."""
    return StrategyRegistry([RuleBasedStrategy(), RsiReversalStrategy(), BreakoutStrategy()])


def resolve_strategy(config: StrategyConfig, registry: StrategyRegistry) -> Strategy:
    """
    Strategy for ``config.strategy_id``.

    ``default`` is always the rule-based detector. ``ensemble`` builds an
    ensemble from ``config.ensemble`` unless a strategy with that id was
    registered explicitly. Anything else must be registered.
    """
    strategy_id = config.strategy_id or DEFAULT_STRATEGY_ID
    if strategy_id == DEFAULT_STRATEGY_ID:
        return RuleBasedStrategy()
    if strategy_id == ENSEMBLE_STRATEGY_ID and strategy_id not in registry:
        return EnsembleStrategy.from_config(config.ensemble, registry)
    return registry.get(strategy_id)
