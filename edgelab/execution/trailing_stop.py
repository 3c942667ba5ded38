"""
Trailing stop state machine.

    inactive ──(gain >= activation_percent)──> armed / active
    armed    ──(gain >= trailing_stop_positive_offset)──> active

The water mark (highest high for longs, lowest low for shorts) and the stop
price only ever move in the position's favour. Once the positive offset is
reached the tighter ``trailing_stop_positive`` callback takes over. With
``trailing_only_offset_is_reached`` an armed stop tracks price but never
triggers an exit.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from edgelab.config.strategy_config import RiskParams
from edgelab.core.enums import Direction, TrailingState
from edgelab.core.numeric import safe_ratio

logger = logging.getLogger(__name__)


@dataclass
class TrailingStopState:
    """
    Per-position trailing stop.

    Usage:
        ts = TrailingStopState.start(Direction.LONG, entry_price=100.0)
        if ts.update(candle.high, candle.low, cfg.risk):
            exit at ts.stop_price
    """

    side: Direction
    entry_price: float
    water_mark: float
    stop_price: Optional[float] = None
    state: TrailingState = TrailingState.INACTIVE
    offset_reached: bool = False

    @classmethod
    def start(cls, side: Direction, entry_price: float) -> "TrailingStopState":
        return cls(side=side, entry_price=entry_price, water_mark=entry_price)

    @property
    def is_long(self) -> bool:
        return self.side == Direction.LONG

    def best_profit_ratio(self) -> float:
        """Profit ratio at the water mark."""
        if self.is_long:
            return safe_ratio(self.water_mark - self.entry_price, self.entry_price)
        return safe_ratio(self.entry_price - self.water_mark, self.entry_price)

    def _move_water_mark(self, high: float, low: float) -> None:
        if self.is_long:
            self.water_mark = max(self.water_mark, high)
        else:
            self.water_mark = min(self.water_mark, low)

    def _move_stop(self, callback_percent: float) -> None:
        if self.is_long:
            candidate = self.water_mark * (1 - callback_percent / 100)
            self.stop_price = candidate if self.stop_price is None else max(self.stop_price, candidate)
        else:
            candidate = self.water_mark * (1 + callback_percent / 100)
            self.stop_price = candidate if self.stop_price is None else min(self.stop_price, candidate)

    def update(self, high: float, low: float, risk: RiskParams) -> bool:
        """Advance on one candle; True when the stop was hit inside it."""
        params = risk.trailing_stop
        if not params.enabled:
            return False

        self._move_water_mark(high, low)
        gain = self.best_profit_ratio()

        positive_mode = risk.trailing_stop_positive is not None
        if positive_mode and not self.offset_reached and gain >= risk.trailing_stop_positive_offset:
            self.offset_reached = True
            logger.debug("Trailing offset reached at %.2f%% gain", gain * 100)

        tracking = gain * 100 >= params.activation_percent or self.offset_reached
        if not tracking:
            return False

        if positive_mode and self.offset_reached:
            callback = risk.trailing_stop_positive * 100
        else:
            callback = params.callback_percent
        self._move_stop(callback)

        if positive_mode and not self.offset_reached:
            self.state = TrailingState.ARMED
        else:
            self.state = TrailingState.ACTIVE

        if self.state == TrailingState.ARMED and risk.trailing_only_offset_is_reached:
            return False

        if self.is_long:
            return low <= self.stop_price
        return high >= self.stop_price

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "water_mark": self.water_mark,
            "stop_price": self.stop_price,
            "offset_reached": self.offset_reached,
        }
