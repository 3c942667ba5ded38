"""
edgelab data models.

Runtime records are plain dataclasses (frozen where the record must never be
mutated after creation). Configuration lives in pydantic models under
``edgelab.config``.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from edgelab.core.enums import SignalType
from edgelab.core.exceptions import EdgeLabDataError

OHLCV_COLUMNS = ("open", "high", "low", "close", "volume")


@dataclass(frozen=True)
class Candle:
    """Fixed-interval OHLCV bar. Times are timezone-aware UTC."""

    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: datetime

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3


def _as_utc(ts: Any) -> datetime:
    stamp = pd.Timestamp(ts)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    else:
        stamp = stamp.tz_convert("UTC")
    return stamp.to_pydatetime()


def candles_from_frame(df: pd.DataFrame, interval: Optional[pd.Timedelta] = None) -> List[Candle]:
    """
    Convert an OHLCV DataFrame indexed by bar open time into candles.

    ``close_time`` comes from a ``close_time`` column when present, otherwise
    open time + ``interval`` (inferred from the index spacing when omitted).
    """
    missing = [c for c in OHLCV_COLUMNS if c not in df.columns]
    if missing:
        raise EdgeLabDataError(f"Candle frame missing columns: {missing}")
    if df.empty:
        return []

    frame = df.sort_index()
    if interval is None:
        if len(frame.index) > 1:
            interval = pd.Series(frame.index).diff().dropna().min()
        else:
            interval = pd.Timedelta(hours=1)

    candles = []
    for ts, row in frame.iterrows():
        open_time = _as_utc(ts)
        if "close_time" in frame.columns:
            close_time = _as_utc(row["close_time"])
        else:
            close_time = _as_utc(pd.Timestamp(open_time) + interval)
        candles.append(
            Candle(
                open_time=open_time,
                open=float(row["open"]),
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                volume=float(row["volume"]),
                close_time=close_time,
            )
        )
    return candles


def candles_to_frame(candles: List[Candle]) -> pd.DataFrame:
    """Inverse of candles_from_frame."""
    if not candles:
        return pd.DataFrame(columns=list(OHLCV_COLUMNS) + ["close_time"])
    return pd.DataFrame(
        {
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
            "close_time": [c.close_time for c in candles],
        },
        index=pd.DatetimeIndex([c.open_time for c in candles], name="open_time"),
    )


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MacdSnapshot:
    """MACD line, signal and histogram with the previous period's values."""

    macd: float
    signal: float
    histogram: float
    prev_macd: Optional[float] = None
    prev_signal: Optional[float] = None
    prev_histogram: Optional[float] = None
    prev_prev_histogram: Optional[float] = None


@dataclass(frozen=True)
class VwapBands:
    """Session VWAP with 1σ and 2σ bands."""

    vwap: float
    upper1: float
    lower1: float
    upper2: float
    lower2: float


@dataclass(frozen=True)
class IndicatorSnapshot:
    """
    Everything a rule condition may look at for one tick.

    Previous-period values are carried explicitly so crossover checks need no
    history buffer.
    """

    price: float
    ma_short: float
    ma_long: float
    rsi: float
    volume: float
    avg_volume: float
    prev_price: Optional[float] = None
    prev_ma_short: Optional[float] = None
    prev_ma_long: Optional[float] = None
    macd: Optional[MacdSnapshot] = None
    vwap: Optional[VwapBands] = None

    # Injected by live collaborators
    cvd: Optional[float] = None
    funding_rate: Optional[float] = None
    btc_dominance: Optional[float] = None
    btc_dominance_change: Optional[float] = None

    # Fields added by plugin strategies
    extra: Mapping[str, Any] = field(default_factory=dict)

    def with_external(self, external: "ExternalContext") -> "IndicatorSnapshot":
        """Copy with the live-only fields the context provides."""
        updates = {}
        for name in ("cvd", "funding_rate", "btc_dominance", "btc_dominance_change"):
            value = getattr(external, name)
            if value is not None:
                updates[name] = value
        return replace(self, **updates) if updates else self

    def with_extra(self, fields: Mapping[str, Any]) -> "IndicatorSnapshot":
        """Copy with plugin fields merged in. Built-in attributes are never overwritten."""
        merged = dict(self.extra)
        for key, value in fields.items():
            if hasattr(self, key) and key != "extra":
                continue
            merged.setdefault(key, value)
        return replace(self, extra=merged)

    def to_dict(self) -> dict:
        data = {
            "price": self.price,
            "ma_short": self.ma_short,
            "ma_long": self.ma_long,
            "rsi": self.rsi,
            "volume": self.volume,
            "avg_volume": self.avg_volume,
            "prev_price": self.prev_price,
            "prev_ma_short": self.prev_ma_short,
            "prev_ma_long": self.prev_ma_long,
        }
        if self.macd is not None:
            data["macd"] = asdict(self.macd)
        if self.vwap is not None:
            data["vwap"] = asdict(self.vwap)
        data.update(dict(self.extra))
        return data


# ---------------------------------------------------------------------------
# Signals and risk
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Signal:
    """One detection result for one symbol on one tick."""

    symbol: str
    type: SignalType
    price: float
    indicators: Optional[IndicatorSnapshot]
    reason: Tuple[str, ...] = ()
    timestamp: Optional[datetime] = None

    @classmethod
    def none(cls, symbol: str, indicators: Optional[IndicatorSnapshot] = None,
             timestamp: Optional[datetime] = None) -> "Signal":
        price = indicators.price if indicators is not None else 0.0
        return cls(symbol, SignalType.NONE, price, indicators, (), timestamp)


@dataclass
class RiskDecision:
    """Outcome of a risk filter. ``position_ratio`` is None when size is untouched."""

    passed: bool
    reason: str = ""
    position_ratio: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExternalContext:
    """Optional live inputs; every field may be absent."""

    cvd: Optional[float] = None
    funding_rate: Optional[float] = None
    btc_dominance: Optional[float] = None
    btc_dominance_change: Optional[float] = None
    current_side: Optional[Any] = None  # Direction of the open position, if any
    held_candles: Optional[Dict[str, List[Candle]]] = None
    support: Optional[float] = None
    resistance: Optional[float] = None


@dataclass(frozen=True)
class TradeRecord:
    """Recently closed trade as seen by the protection manager."""

    symbol: str
    closed_at: datetime
    pnl_ratio: float
    was_stop_loss: bool


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
