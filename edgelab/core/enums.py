"""
edgelab enumerations.
"""

from datetime import timedelta
from enum import Enum


class SignalType(str, Enum):
    """What a signal asks the lifecycle simulator to do."""

    BUY = "buy"
    SELL = "sell"
    SHORT = "short"
    COVER = "cover"
    NONE = "none"

    @property
    def is_opening(self) -> bool:
        return self in (SignalType.BUY, SignalType.SHORT)

    @property
    def is_closing(self) -> bool:
        return self in (SignalType.SELL, SignalType.COVER)


class Direction(str, Enum):
    """Position side."""

    LONG = "long"
    SHORT = "short"


class ExitReason(str, Enum):
    """Why a position was closed."""

    SIGNAL = "signal"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    ROI_TABLE = "roi_table"
    TIME_STOP = "time_stop"
    END_OF_DATA = "end_of_data"


class MarketRegime(str, Enum):
    """Market behaviour label produced by the regime classifier."""

    TRENDING_BULL = "trending_bull"
    TRENDING_BEAR = "trending_bear"
    RANGING_TIGHT = "ranging_tight"
    RANGING_WIDE = "ranging_wide"
    BREAKOUT_UP = "breakout_up"
    BREAKOUT_DOWN = "breakout_down"

    @property
    def label(self) -> str:
        labels = {
            "trending_bull": "Trending up (trend signals valid)",
            "trending_bear": "Trending down (trend signals valid)",
            "ranging_tight": "Tight range (waiting for breakout)",
            "ranging_wide": "Wide range (range reversals)",
            "breakout_up": "Upside breakout (confirming)",
            "breakout_down": "Downside breakout (confirming)",
        }
        return labels[self.value]


class SignalFilter(str, Enum):
    """How a regime gates or resizes opening signals."""

    ALL = "all"
    TREND_ONLY = "trend_only"
    REVERSAL_ONLY = "reversal_only"
    BREAKOUT_WATCH = "breakout_watch"
    REDUCED_SIZE = "reduced_size"


class PriceStructure(str, Enum):
    """Recent swing structure versus the prior window."""

    HIGHER_HIGHS = "higher_highs"
    LOWER_LOWS = "lower_lows"
    MIXED = "mixed"
    FLAT = "flat"


class TrailingState(str, Enum):
    """Trailing-stop state machine."""

    INACTIVE = "inactive"  # profit has not reached activation yet
    ARMED = "armed"        # tracking with base callback, offset not confirmed
    ACTIVE = "active"      # fully in force (offset reached when one is configured)


class Timeframe(str, Enum):
    """Candle intervals."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def minutes(self) -> int:
        """Get timeframe in minutes."""
        mapping = {
            "1m": 1,
            "5m": 5,
            "15m": 15,
            "30m": 30,
            "1h": 60,
            "4h": 240,
            "1d": 1440,
        }
        return mapping[self.value]

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.minutes)

    @classmethod
    def parse(cls, value: str) -> "Timeframe":
        """Unknown timeframe strings fall back to 1h."""
        try:
            return cls(value)
        except ValueError:
            return cls.H1
