"""
Strategy plugin contract.

A strategy turns a ``StrategyContext`` into a signal direction. Optional
hooks let it add indicator fields, override exits and react to closed
trades. Strategies are stateless objects; anything that must survive across
ticks goes through ``ctx.state_store``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from edgelab.config.strategy_config import StrategyConfig
from edgelab.core.enums import Direction, SignalType
from edgelab.core.models import Candle, IndicatorSnapshot
from edgelab.strategies.rules import detect_signal
from edgelab.strategies.state_store import StateStore


@dataclass
class StrategyContext:
    """Everything a strategy may look at for one symbol on one tick."""

    symbol: str
    candles: Sequence[Candle]
    config: StrategyConfig
    indicators: IndicatorSnapshot
    current_side: Optional[Direction] = None
    state_store: Optional[StateStore] = None


@dataclass
class ClosedTradeInfo:
    """What ``on_trade_closed`` gets told about a finished trade."""

    symbol: str
    side: Direction
    pnl: float
    pnl_pct: float
    exit_reason: str
    closed_at: datetime


class Strategy(ABC):
    """
    Abstract base class for signal strategies.

    Subclasses must set ``id`` and implement populate_signal(); the other
    hooks are optional.
    """

    id: str = ""
    name: str = ""
    description: str = ""

    @abstractmethod
    def populate_signal(self, ctx: StrategyContext) -> SignalType:
        """Return the direction for this tick (SignalType.NONE to abstain)."""
        ...

    def populate_indicators(self, ctx: StrategyContext) -> Dict[str, Any]:
        """Extra indicator fields; merged without overwriting built-ins."""
        return {}

    def should_exit(self, ctx: StrategyContext, position: Any) -> bool:
        """Custom exit override checked after the built-in exits."""
        return False

    def on_trade_closed(self, trade: ClosedTradeInfo, ctx: StrategyContext) -> None:
        """Called once per closed trade for this strategy and symbol."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id!r})"


class RuleBasedStrategy(Strategy):
    """The configured condition lists, wrapped as a strategy (id ``default``)."""

    id = "default"
    name = "Rule-based"
    description = "All configured conditions for a direction must hold."

    def populate_signal(self, ctx: StrategyContext) -> SignalType:
        signal = detect_signal(ctx.symbol, ctx.indicators, ctx.config, ctx.current_side)
        return signal.type
