"""
edgelab custom exceptions.
"""

from typing import Iterable


class EdgeLabError(Exception):
    """Base exception for edgelab."""

    pass


class EdgeLabConfigError(EdgeLabError):
    """Configuration error."""

    pass


class StrategyNotFoundError(EdgeLabConfigError):
    """Requested strategy id is not registered."""

    def __init__(self, strategy_id: str, available: Iterable[str] = ()):
        self.strategy_id = strategy_id
        self.available = sorted(available)
        listed = ", ".join(self.available) or "none"
        super().__init__(
            f"Strategy '{strategy_id}' not found. Registered strategies: {listed}"
        )


class EdgeLabDataError(EdgeLabError):
    """Malformed or unusable candle data."""

    pass


class EdgeLabStateError(EdgeLabError):
    """State store read/write failure."""

    pass
