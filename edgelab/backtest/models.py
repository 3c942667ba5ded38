"""Backtest data models."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from edgelab.core.enums import Direction, ExitReason


@dataclass(frozen=True)
class Trade:
    """A closed position. Append-only ledger entry."""

    symbol: str
    side: Direction
    entry_time: datetime
    exit_time: datetime
    entry_price: float
    exit_price: float
    quantity: float
    cost: float       # cash locked at entry (spend for longs, margin for shorts)
    proceeds: float   # cash returned at exit
    pnl: float
    pnl_pct: float
    exit_reason: ExitReason
    fees: float = 0.0
    funding: float = 0.0  # net funding paid while held; negative when received

    @property
    def is_winner(self) -> bool:
        return self.pnl > 0

    @property
    def was_stop_loss(self) -> bool:
        return self.exit_reason == ExitReason.STOP_LOSS

    @property
    def holding_hours(self) -> float:
        return (self.exit_time - self.entry_time).total_seconds() / 3600


@dataclass(frozen=True)
class EquityPoint:
    time: datetime
    equity: float


@dataclass
class BacktestMetrics:
    """Reduction of a trade ledger plus equity curve."""

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0          # 0..1
    profit_factor: float = 0.0
    total_pnl: float = 0.0
    total_return_pct: float = 0.0
    avg_win_pct: float = 0.0
    avg_loss_pct: float = 0.0
    win_loss_ratio: float = 0.0
    best_trade_pct: float = 0.0
    worst_trade_pct: float = 0.0
    max_drawdown_pct: float = 0.0
    max_drawdown: float = 0.0      # currency
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    avg_holding_hours: float = 0.0
    t_statistic: float = 0.0
    p_value: float = 1.0
    is_significant: bool = False
    exit_reasons: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.__dict__)
        if math.isinf(self.profit_factor):
            data["profit_factor"] = "inf"
        return data


@dataclass
class SymbolStats:
    symbol: str
    trades: int = 0
    wins: int = 0
    pnl: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0


@dataclass
class BacktestResult:
    """Everything one backtest run produced."""

    config: Any
    initial_equity: float
    final_equity: float
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    metrics: BacktestMetrics = field(default_factory=BacktestMetrics)
    per_symbol: Dict[str, SymbolStats] = field(default_factory=dict)
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    benchmark_return_pct: Optional[float] = None  # buy-and-hold over the same period
    funding_by_symbol: Dict[str, float] = field(default_factory=dict)

    @property
    def total_return_pct(self) -> float:
        return self.metrics.total_return_pct

    @property
    def total_funding(self) -> float:
        return sum(self.funding_by_symbol.values())

    @property
    def excess_return_pct(self) -> Optional[float]:
        if self.benchmark_return_pct is None:
            return None
        return self.total_return_pct - self.benchmark_return_pct


def trades_to_dataframe(trades: List[Trade]) -> pd.DataFrame:
    """Convert a trade ledger to a DataFrame for analysis."""
    if not trades:
        return pd.DataFrame()

    rows = []
    for t in trades:
        rows.append(
            {
                "symbol": t.symbol,
                "side": t.side.value,
                "entry_time": t.entry_time,
                "exit_time": t.exit_time,
                "entry_price": t.entry_price,
                "exit_price": t.exit_price,
                "quantity": t.quantity,
                "cost": round(t.cost, 2),
                "proceeds": round(t.proceeds, 2),
                "pnl": round(t.pnl, 2),
                "pnl_pct": round(t.pnl_pct, 4),
                "fees": round(t.fees, 4),
                "funding": round(t.funding, 4),
                "exit_reason": t.exit_reason.value,
                "holding_hours": round(t.holding_hours, 2),
            }
        )

    return pd.DataFrame(rows)


def equity_to_dataframe(curve: List[EquityPoint]) -> pd.DataFrame:
    """Equity curve indexed by time."""
    if not curve:
        return pd.DataFrame(columns=["equity"])
    frame = pd.DataFrame({"time": [p.time for p in curve], "equity": [p.equity for p in curve]})
    return frame.set_index("time")
