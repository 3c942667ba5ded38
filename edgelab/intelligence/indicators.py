"""
Indicator engine.

Derives moving averages, RSI, MACD and session VWAP bands from a candle
window. Every family is returned together with its previous-period value so
crossover conditions never need a history buffer.

Insufficient data is not an error: the scalar helpers return NaN (or None
for the composite ones) and ``calculate_indicators`` returns None.
"""

import logging
import math
from typing import List, Optional, Sequence

import numpy as np

from edgelab.config.strategy_config import StrategyParams
from edgelab.core.models import Candle, IndicatorSnapshot, MacdSnapshot, VwapBands

logger = logging.getLogger(__name__)


def sma(values: Sequence[float], period: int) -> float:
    """Simple moving average of the last ``period`` values."""
    if period <= 0 or len(values) < period:
        return math.nan
    return float(np.mean(np.asarray(values[-period:], dtype=float)))


def ema_series(values: Sequence[float], period: int) -> np.ndarray:
    """
    EMA for every index, NaN before the seed.

    The seed at index ``period - 1`` is the SMA of the first ``period`` values;
    after that ``ema = value * k + ema * (1 - k)`` with ``k = 2 / (period + 1)``.
    """
    arr = np.asarray(values, dtype=float)
    out = np.full(len(arr), np.nan)
    if period <= 0 or len(arr) < period:
        return out
    k = 2.0 / (period + 1)
    current = float(np.mean(arr[:period]))
    out[period - 1] = current
    for i in range(period, len(arr)):
        current = arr[i] * k + current * (1 - k)
        out[i] = current
    return out


def ema(values: Sequence[float], period: int) -> float:
    """Latest EMA value (NaN when fewer than ``period`` values)."""
    series = ema_series(values, period)
    if len(series) == 0:
        return math.nan
    return float(series[-1])


def rsi(closes: Sequence[float], period: int = 14) -> float:
    """
    RSI from simple average gain/loss over the last ``period`` changes.

    Returns 100 when there were no losses, NaN with fewer than period+1 closes.
    """
    if period <= 0 or len(closes) < period + 1:
        return math.nan
    changes = np.diff(np.asarray(closes[-(period + 1):], dtype=float))
    avg_gain = float(changes[changes > 0].sum()) / period
    avg_loss = float(-changes[changes < 0].sum()) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def macd(closes: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> Optional[MacdSnapshot]:
    """MACD line/signal/histogram with previous values; None when fewer than slow+signal closes."""
    if len(closes) < slow + signal:
        return None

    line = ema_series(closes, fast) - ema_series(closes, slow)
    valid_line = line[slow - 1:]
    signal_line = ema_series(valid_line, signal)
    hist = valid_line - signal_line

    def _at(arr: np.ndarray, back: int) -> Optional[float]:
        if len(arr) < back + 1:
            return None
        value = float(arr[-1 - back])
        return None if math.isnan(value) else value

    return MacdSnapshot(
        macd=float(valid_line[-1]),
        signal=float(signal_line[-1]),
        histogram=float(hist[-1]),
        prev_macd=_at(valid_line, 1),
        prev_signal=_at(signal_line, 1),
        prev_histogram=_at(hist, 1),
        prev_prev_histogram=_at(hist, 2),
    )


def average_volume(candles: Sequence[Candle], period: int) -> float:
    """Mean volume of the ``period`` candles before the latest one (0 when none)."""
    history = [c.volume for c in candles[:-1]][-period:]
    if not history:
        return 0.0
    return float(np.mean(history))


def calc_vwap(candles: Sequence[Candle]) -> Optional[VwapBands]:
    """
    Session VWAP with 1σ/2σ bands.

    The session is the UTC calendar day of the latest candle; earlier days are
    ignored. Bands use the volume-weighted variance of typical price around
    VWAP. Zero session volume falls back to the mean typical price with
    zero-width bands.
    """
    if not candles:
        return None

    session_day = candles[-1].open_time.date()
    session: List[Candle] = []
    for candle in reversed(candles):
        if candle.open_time.date() != session_day:
            break
        session.append(candle)

    tp = np.array([c.typical_price for c in session], dtype=float)
    vol = np.array([c.volume for c in session], dtype=float)
    total_volume = float(vol.sum())

    if total_volume <= 0:
        center = float(tp.mean())
        return VwapBands(center, center, center, center, center)

    vwap = float((tp * vol).sum() / total_volume)
    variance = float((vol * (tp - vwap) ** 2).sum() / total_volume)
    std = math.sqrt(max(variance, 0.0))
    return VwapBands(
        vwap=vwap,
        upper1=vwap + std,
        lower1=vwap - std,
        upper2=vwap + 2 * std,
        lower2=vwap - 2 * std,
    )


def required_bars(params: StrategyParams) -> int:
    """Minimum window length for calculate_indicators to return a snapshot."""
    needed = max(params.ma.long, params.rsi.period)
    if params.macd.enabled:
        needed = max(needed, params.macd.slow + params.macd.signal)
    return needed + 1


def calculate_indicators(candles: Sequence[Candle], params: StrategyParams) -> Optional[IndicatorSnapshot]:
    """
    Build the indicator snapshot for the latest candle.

    Returns None when the window is shorter than the longest lookback + 1.
    """
    if len(candles) < required_bars(params):
        return None

    closes = [c.close for c in candles]
    prev_closes = closes[:-1]

    ma_short = sma(closes, params.ma.short)
    ma_long = sma(closes, params.ma.long)
    rsi_value = rsi(closes, params.rsi.period)
    if math.isnan(ma_short) or math.isnan(ma_long) or math.isnan(rsi_value):
        return None

    prev_ma_short = sma(prev_closes, params.ma.short)
    prev_ma_long = sma(prev_closes, params.ma.long)

    macd_snapshot = None
    if params.macd.enabled:
        macd_snapshot = macd(closes, params.macd.fast, params.macd.slow, params.macd.signal)

    return IndicatorSnapshot(
        price=closes[-1],
        prev_price=prev_closes[-1] if prev_closes else None,
        ma_short=ma_short,
        ma_long=ma_long,
        prev_ma_short=None if math.isnan(prev_ma_short) else prev_ma_short,
        prev_ma_long=None if math.isnan(prev_ma_long) else prev_ma_long,
        rsi=rsi_value,
        volume=candles[-1].volume,
        avg_volume=average_volume(candles, params.ma.long),
        macd=macd_snapshot,
        vwap=calc_vwap(candles),
    )
