"""
edgelab test configuration
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import numpy as np
import pytest

from edgelab.config.strategy_config import StrategyConfig
from edgelab.core.models import Candle

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_candles(
    closes: Sequence[float],
    start: datetime = START,
    interval: timedelta = timedelta(hours=1),
    volume: float = 1000.0,
    volumes: Optional[Sequence[float]] = None,
    wick: float = 0.005,
) -> List[Candle]:
    """Candles around ``closes``: open = previous close, high/low = close ± wick."""
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        open_time = start + interval * i
        open_ = prev
        candles.append(
            Candle(
                open_time=open_time,
                open=open_,
                high=max(open_, close) * (1 + wick),
                low=min(open_, close) * (1 - wick),
                close=close,
                volume=volumes[i] if volumes is not None else volume,
                close_time=open_time + interval,
            )
        )
        prev = close
    return candles


@pytest.fixture
def make_candles():
    """Factory for candle series (see build_candles)."""
    return build_candles


@pytest.fixture
def default_config() -> StrategyConfig:
    return StrategyConfig(name="test", symbols=["BTCUSDT"])


@pytest.fixture
def uptrend_candles() -> List[Candle]:
    return build_candles(np.linspace(100, 160, 120).tolist())


@pytest.fixture
def downtrend_candles() -> List[Candle]:
    return build_candles(np.linspace(160, 100, 120).tolist())


@pytest.fixture
def random_walk_candles() -> List[Candle]:
    rng = np.random.default_rng(7)
    closes = 100 * np.exp(np.cumsum(rng.normal(0, 0.01, 300)))
    return build_candles(closes.tolist())
