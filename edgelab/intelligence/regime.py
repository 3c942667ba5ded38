"""
Market Regime Classifier

Labels the current market behaviour from a candle window so the signal
pipeline can gate or resize opening signals.

Three readings are combined:
- ADX(14) with Wilder smoothing (trend strength: > 25 trending, < 20 ranging)
- Bollinger band width and its percentile (compression vs expansion)
- Price structure (higher highs / lower lows over the last 10 bars)

Only a classification with confidence >= settings.regime_confidence_threshold
(60 unless overridden by EDGELAB_REGIME_CONFIDENCE_THRESHOLD) may change
downstream behaviour; anything less is treated as unknown.
"""

import logging
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Sequence

import numpy as np

from edgelab.config.settings import get_settings
from edgelab.core.enums import MarketRegime, PriceStructure, SignalFilter
from edgelab.core.models import Candle

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# Condition partitions per filter mode
# ═══════════════════════════════════════════════════════════════════════

TREND_CONDITIONS: FrozenSet[str] = frozenset({
    "ma_golden_cross",
    "ma_death_cross",
    "ma_bullish",
    "ma_bearish",
    "macd_golden_cross",
    "macd_death_cross",
    "macd_bullish",
    "macd_bearish",
    "macd_histogram_expanding",
    "price_above_vwap",
    "price_below_vwap",
})

REVERSAL_CONDITIONS: FrozenSet[str] = frozenset({
    "rsi_oversold",
    "rsi_overbought",
    "rsi_overbought_exit",
    "macd_histogram_shrinking",
    "vwap_bounce",
    "vwap_breakdown",
    "price_above_vwap_upper2",
    "price_below_vwap_lower2",
})


def filter_conditions(conditions: Sequence[str], mode: SignalFilter) -> List[str]:
    """
    Drop the condition names that belong to the opposite family.

    trend_only removes reversal names, reversal_only removes trend names.
    Names in neither family (volume, order flow, funding) are kept. Other
    modes return the list unchanged.
    """
    if mode == SignalFilter.TREND_ONLY:
        return [name for name in conditions if name not in REVERSAL_CONDITIONS]
    if mode == SignalFilter.REVERSAL_ONLY:
        return [name for name in conditions if name not in TREND_CONDITIONS]
    return list(conditions)


# ═══════════════════════════════════════════════════════════════════════
# Readings
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class AdxReading:
    adx: float
    di_plus: float
    di_minus: float


@dataclass
class BollingerWidth:
    width: float
    percentile: float  # 0 = narrowest seen, 100 = widest
    history: List[float]  # oldest first, one per bar from period-1 onward


@dataclass
class RegimeAnalysis:
    """Regime label, confidence and the readings behind it."""

    regime: MarketRegime
    confidence: int
    signal_filter: SignalFilter
    adx: float
    bb_width: float
    bb_width_percentile: float
    structure: PriceStructure
    detail: str

    @property
    def label(self) -> str:
        return self.regime.label

    @property
    def is_confident(self) -> bool:
        return self.confidence >= get_settings().regime_confidence_threshold

    def to_dict(self) -> dict:
        return {
            "regime": self.regime.value,
            "label": self.label,
            "confidence": self.confidence,
            "signal_filter": self.signal_filter.value,
            "adx": round(self.adx, 2),
            "bb_width": round(self.bb_width, 5),
            "bb_width_percentile": self.bb_width_percentile,
            "structure": self.structure.value,
            "detail": self.detail,
        }


def _wilder_smooth(values: np.ndarray, period: int) -> np.ndarray:
    """First value is the plain sum of ``period`` values, then sum - sum/period + value."""
    total = float(values[:period].sum())
    out = [total]
    for value in values[period:]:
        total = total - total / period + float(value)
        out.append(total)
    return np.asarray(out)


def calc_adx(candles: Sequence[Candle], period: int = 14) -> AdxReading:
    """ADX with Wilder smoothing. Zeros when fewer than period*2+1 candles."""
    if len(candles) < period * 2 + 1:
        return AdxReading(0.0, 0.0, 0.0)

    high = np.array([c.high for c in candles], dtype=float)
    low = np.array([c.low for c in candles], dtype=float)
    close = np.array([c.close for c in candles], dtype=float)

    tr = np.maximum.reduce([
        high[1:] - low[1:],
        np.abs(high[1:] - close[:-1]),
        np.abs(low[1:] - close[:-1]),
    ])
    up_move = high[1:] - high[:-1]
    down_move = low[:-1] - low[1:]
    plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
    minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)

    smooth_tr = _wilder_smooth(tr, period)
    smooth_plus = _wilder_smooth(plus_dm, period)
    smooth_minus = _wilder_smooth(minus_dm, period)

    dx_values = []
    di_plus = di_minus = 0.0
    for s_tr, s_plus, s_minus in zip(smooth_tr, smooth_plus, smooth_minus):
        if s_tr == 0:
            dx_values.append(0.0)
            continue
        di_plus = 100 * s_plus / s_tr
        di_minus = 100 * s_minus / s_tr
        di_sum = di_plus + di_minus
        dx_values.append(0.0 if di_sum == 0 else 100 * abs(di_plus - di_minus) / di_sum)

    if len(dx_values) < period:
        return AdxReading(0.0, di_plus, di_minus)

    smooth_dx = _wilder_smooth(np.asarray(dx_values), period)
    return AdxReading(float(smooth_dx[-1]) / period, di_plus, di_minus)


def calc_bollinger_width(closes: Sequence[float], period: int = 20, std_mult: float = 2.0) -> BollingerWidth:
    """Relative band width (upper - lower) / middle and its rank among past widths."""
    if len(closes) < period:
        return BollingerWidth(0.0, 50.0, [])

    arr = np.asarray(closes, dtype=float)
    widths = []
    for end in range(period, len(arr) + 1):
        window = arr[end - period:end]
        mean = float(window.mean())
        std = float(window.std())
        widths.append((2 * std_mult * std) / mean if mean > 0 else 0.0)

    current = widths[-1]
    rank = sum(1 for w in widths if w <= current)
    percentile = round(rank / len(widths) * 100)
    return BollingerWidth(current, float(percentile), widths)


def analyze_price_structure(candles: Sequence[Candle], lookback: int = 10) -> PriceStructure:
    """Compare the last ``lookback`` bars' extremes with the ``lookback`` bars before them."""
    if len(candles) < lookback * 2:
        return PriceStructure.FLAT

    recent = candles[-lookback:]
    prior = candles[-lookback * 2:-lookback]
    recent_high = max(c.high for c in recent)
    recent_low = min(c.low for c in recent)
    prior_high = max(c.high for c in prior)
    prior_low = min(c.low for c in prior)

    if recent_high > prior_high and recent_low > prior_low:
        return PriceStructure.HIGHER_HIGHS
    if recent_low < prior_low and recent_high < prior_high:
        return PriceStructure.LOWER_LOWS
    if recent_high > prior_high or recent_low < prior_low:
        return PriceStructure.MIXED
    return PriceStructure.FLAT


# ═══════════════════════════════════════════════════════════════════════
# Classifier
# ═══════════════════════════════════════════════════════════════════════


class RegimeClassifier:
    """
    Combines ADX, band width and structure into one regime.

    Decision order:
    1. Breakout: width was in the narrowest 30% BREAKOUT_LOOKBACK bars ago and
       has since expanded by 30%+ (confidence 55, breakout_watch).
    2. ADX > 25: trending; high confidence only when structure agrees.
    3. ADX < 20: ranging; tight (breakout_watch) or wide (reversal_only).
    4. Otherwise a transition zone with reduced size.
    """

    ADX_PERIOD = 14
    BB_PERIOD = 20
    STRUCTURE_LOOKBACK = 10
    BREAKOUT_LOOKBACK = 10

    ADX_TREND = 25.0
    ADX_RANGE = 20.0
    NARROW_PERCENTILE = 30.0
    EXPANSION = 1.3
    TIGHT_PERCENTILE = 25.0

    def classify(self, candles: Sequence[Candle]) -> RegimeAnalysis:
        closes = [c.close for c in candles]
        adx = calc_adx(candles, self.ADX_PERIOD)
        bb = calc_bollinger_width(closes, self.BB_PERIOD)
        structure = analyze_price_structure(candles, self.STRUCTURE_LOOKBACK)
        bullish = adx.di_plus > adx.di_minus

        breakout_base = self._breakout_base(bb.history)

        if breakout_base is not None:
            regime = MarketRegime.BREAKOUT_UP if bullish else MarketRegime.BREAKOUT_DOWN
            confidence = 55.0
            signal_filter = SignalFilter.BREAKOUT_WATCH
            expansion = (bb.width / breakout_base - 1) * 100 if breakout_base > 0 else 0.0
            detail = f"Band width expanded {expansion:.0f}% from a compressed base"

        elif adx.adx > self.ADX_TREND:
            if bullish and structure == PriceStructure.HIGHER_HIGHS:
                regime = MarketRegime.TRENDING_BULL
                confidence = min(95.0, 60 + (adx.adx - self.ADX_TREND) * 1.5)
            elif not bullish and structure == PriceStructure.LOWER_LOWS:
                regime = MarketRegime.TRENDING_BEAR
                confidence = min(95.0, 60 + (adx.adx - self.ADX_TREND) * 1.5)
            else:
                # Strong ADX but structure disagrees: trend fading
                regime = MarketRegime.TRENDING_BULL if bullish else MarketRegime.TRENDING_BEAR
                confidence = 45.0
            signal_filter = SignalFilter.TREND_ONLY
            detail = f"ADX={adx.adx:.1f} (trending), DI+={adx.di_plus:.1f} DI-={adx.di_minus:.1f}"

        elif adx.adx < self.ADX_RANGE:
            if bb.percentile < self.TIGHT_PERCENTILE:
                regime = MarketRegime.RANGING_TIGHT
                confidence = 75.0
                signal_filter = SignalFilter.BREAKOUT_WATCH
                detail = f"ADX={adx.adx:.1f} (no trend), band width at {bb.percentile:.0f}th percentile"
            else:
                regime = MarketRegime.RANGING_WIDE
                confidence = 65.0
                signal_filter = SignalFilter.REVERSAL_ONLY
                detail = f"ADX={adx.adx:.1f} (no trend), wide range"

        else:
            if structure == PriceStructure.HIGHER_HIGHS and bullish:
                regime = MarketRegime.TRENDING_BULL
                confidence = 50.0
            elif structure == PriceStructure.LOWER_LOWS and not bullish:
                regime = MarketRegime.TRENDING_BEAR
                confidence = 50.0
            else:
                regime = MarketRegime.RANGING_TIGHT if bb.percentile < 40 else MarketRegime.RANGING_WIDE
                confidence = 45.0
            signal_filter = SignalFilter.REDUCED_SIZE
            detail = f"ADX={adx.adx:.1f} (transition), direction unclear"

        if (regime == MarketRegime.TRENDING_BULL and structure == PriceStructure.LOWER_LOWS) or (
            regime == MarketRegime.TRENDING_BEAR and structure == PriceStructure.HIGHER_HIGHS
        ):
            confidence = max(30.0, confidence - 20)

        return RegimeAnalysis(
            regime=regime,
            confidence=int(round(confidence)),
            signal_filter=signal_filter,
            adx=adx.adx,
            bb_width=bb.width,
            bb_width_percentile=bb.percentile,
            structure=structure,
            detail=detail,
        )

    def _breakout_base(self, widths: List[float]) -> Optional[float]:
        """Width BREAKOUT_LOOKBACK bars ago when it was compressed and has since expanded."""
        if len(widths) <= self.BREAKOUT_LOOKBACK:
            return None
        base = widths[-1 - self.BREAKOUT_LOOKBACK]
        rank = sum(1 for w in widths if w <= base) / len(widths) * 100
        if rank >= self.NARROW_PERCENTILE or base <= 0:
            return None
        if widths[-1] < base * self.EXPANSION:
            return None
        return base


_classifier = RegimeClassifier()


def classify_regime(candles: Sequence[Candle]) -> RegimeAnalysis:
    """Classify with the default thresholds."""
    return _classifier.classify(candles)


def format_regime_report(symbol: str, analysis: RegimeAnalysis) -> str:
    filled = int(round(analysis.confidence / 10))
    bar = "#" * filled + "." * (10 - filled)
    return "\n".join([
        f"{symbol} regime: {analysis.label}",
        f"Confidence: [{bar}] {analysis.confidence}%",
        f"Filter: {analysis.signal_filter.value}",
        analysis.detail,
    ])

