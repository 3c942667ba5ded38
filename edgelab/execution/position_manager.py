"""
Position Manager - owns open positions for one backtest run.

- Opens long and short positions with fee, slippage and spread applied
- Evaluates exits every candle in a fixed priority:
    1. static stop-loss (possibly moved to break-even)
    2. static take-profit
    3. ROI table
    4. staged take-profit (may close only part of the position)
    5. trailing stop
    6. time stop (held too long without profit)
- Closes positions, in full or in part, into immutable Trade records
- Settles perpetual funding every 8h and enforces the daily loss limit

Stops are checked against the candle's high/low, assuming the adverse
extreme happened first. A break-even move is based on the close, so it
takes effect from the next candle.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, List, Mapping, Optional

from edgelab.backtest.models import Trade
from edgelab.config.strategy_config import CostParams, RiskParams
from edgelab.core.enums import Direction, ExitReason
from edgelab.core.models import Candle
from edgelab.core.numeric import long_profit_ratio, safe_pct, short_profit_ratio
from edgelab.execution.roi_table import get_minimal_roi_threshold
from edgelab.execution.trailing_stop import TrailingStopState

logger = logging.getLogger(__name__)

# Funding settles at 00:00, 08:00 and 16:00 UTC
FUNDING_INTERVAL_SECONDS = 8 * 3600


def _utc_day(when: datetime) -> date:
    return when.astimezone(timezone.utc).date() if when.tzinfo else when.date()


def _funding_slot(when: datetime) -> int:
    return math.floor(when.timestamp() / FUNDING_INTERVAL_SECONDS)


# ---------------------------------------------------------------------------
# Fills
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FillModel:
    """Trading costs applied to every fill."""

    fee_rate: float = 0.001
    slippage_percent: float = 0.05
    spread_bps: float = 0.0

    @classmethod
    def from_costs(cls, costs: CostParams) -> "FillModel":
        return cls(costs.fee_rate, costs.slippage_percent, costs.spread_bps)

    def _half_spread(self) -> float:
        return self.spread_bps / 2 / 10_000

    def buy_price(self, price: float) -> float:
        """Fill price when buying (long entry, short cover): slips up."""
        return price * (1 + self.slippage_percent / 100) * (1 + self._half_spread())

    def sell_price(self, price: float) -> float:
        """Fill price when selling (long exit, short entry): slips down."""
        return price * (1 - self.slippage_percent / 100) * (1 - self._half_spread())

    def fee(self, notional: float) -> float:
        return notional * self.fee_rate


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

@dataclass
class Position:
    """An open position. Stops, staged exits and funding mutate while it is held."""

    symbol: str
    side: Direction
    entry_time: datetime
    entry_price: float
    quantity: float
    cost: float
    stop_loss: float
    take_profit: float
    margin: float = 0.0  # shorts: margin net of the entry fee
    entry_fee: float = 0.0
    trailing: Optional[TrailingStopState] = None
    stages_hit: int = 0
    funding: float = 0.0  # net funding paid; negative when received
    last_funding: Optional[datetime] = None

    @property
    def is_long(self) -> bool:
        return self.side == Direction.LONG

    def profit_ratio(self, price: float) -> float:
        if self.is_long:
            return long_profit_ratio(self.entry_price, price)
        return short_profit_ratio(self.entry_price, price)

    def held_minutes(self, now: datetime) -> float:
        return (now - self.entry_time).total_seconds() / 60

    def market_value(self, price: float) -> float:
        """Cash the position would return at ``price`` before exit costs."""
        if self.is_long:
            return self.quantity * price
        return max(0.0, self.margin + (self.entry_price - price) * self.quantity)


@dataclass(frozen=True)
class ExitDecision:
    reason: ExitReason
    price: float
    fraction: float = 1.0        # share of the remaining quantity to close
    stage: Optional[int] = None  # take-profit stage index that fired


def break_even_stop(position: Position, price: float, risk: RiskParams) -> Optional[float]:
    """
    Stop price once profit at ``price`` reaches ``risk.break_even_profit``.

    None when break-even is off, not reached yet, or the new stop would not
    be strictly tighter than the current one. A stop never moves back.
    """
    if risk.break_even_profit is None:
        return None
    if position.profit_ratio(price) < risk.break_even_profit:
        return None
    if position.is_long:
        stop = position.entry_price * (1 + risk.break_even_stop)
        return stop if stop > position.stop_loss else None
    stop = position.entry_price * (1 - risk.break_even_stop)
    return stop if stop < position.stop_loss else None


def _stage_exit(position: Position, candle: Candle, risk: RiskParams) -> Optional[ExitDecision]:
    stages = risk.take_profit_stages
    if position.stages_hit >= len(stages):
        return None
    stage = stages[position.stages_hit]
    if position.is_long:
        price = position.entry_price * (1 + stage.at_percent / 100)
        reached = candle.high >= price
    else:
        price = position.entry_price * (1 - stage.at_percent / 100)
        reached = candle.low <= price
    if not reached:
        return None
    return ExitDecision(ExitReason.TAKE_PROFIT, price, fraction=stage.close_ratio, stage=position.stages_hit)


def evaluate_exit(
    position: Position,
    candle: Candle,
    risk: RiskParams,
    minimal_roi: Optional[Mapping[str, float]] = None,
) -> Optional[ExitDecision]:
    """Built-in exit for this candle, or None to keep holding."""
    trailing_hit = False
    if position.trailing is not None:
        trailing_hit = position.trailing.update(candle.high, candle.low, risk)

    now = candle.close_time
    held = position.held_minutes(now)
    roi = get_minimal_roi_threshold(dict(minimal_roi), held) if minimal_roi else None

    if position.is_long:
        if candle.low <= position.stop_loss:
            return ExitDecision(ExitReason.STOP_LOSS, position.stop_loss)
        if candle.high >= position.take_profit:
            return ExitDecision(ExitReason.TAKE_PROFIT, position.take_profit)
        if roi is not None:
            roi_price = position.entry_price * (1 + roi)
            if candle.high >= roi_price:
                return ExitDecision(ExitReason.ROI_TABLE, min(roi_price, candle.close))
    else:
        if candle.high >= position.stop_loss:
            return ExitDecision(ExitReason.STOP_LOSS, position.stop_loss)
        if candle.low <= position.take_profit:
            return ExitDecision(ExitReason.TAKE_PROFIT, position.take_profit)
        if roi is not None:
            roi_price = position.entry_price * (1 - roi)
            if candle.low <= roi_price:
                return ExitDecision(ExitReason.ROI_TABLE, max(roi_price, candle.close))

    staged = _stage_exit(position, candle, risk)
    if staged is not None:
        return staged

    if trailing_hit and position.trailing.stop_price:
        return ExitDecision(ExitReason.TRAILING_STOP, position.trailing.stop_price)

    if risk.time_stop_hours and held >= risk.time_stop_hours * 60:
        if position.profit_ratio(candle.close) <= 0:
            return ExitDecision(ExitReason.TIME_STOP, candle.close)

    moved = break_even_stop(position, candle.close, risk)
    if moved is not None:
        logger.debug("%s: stop moved to break-even %.6f", position.symbol, moved)
        position.stop_loss = moved
    return None


class PositionManager:
    """
    Cash plus open positions for a single run.

    Usage:
        pm = PositionManager(cfg.costs, initial_equity=1000)
        pm.open("BTCUSDT", Direction.LONG, price, when, ratio=0.2, risk=cfg.risk, equity=pm.equity(prices))
        pm.settle_funding("BTCUSDT", candle.close, candle.close_time)
        decision = evaluate_exit(pm.positions["BTCUSDT"], candle, cfg.risk, cfg.minimal_roi)
        if decision:
            trade = pm.apply(decision, "BTCUSDT", candle.close_time)
    """

    def __init__(self, costs: CostParams, initial_equity: Optional[float] = None):
        self.fills = FillModel.from_costs(costs)
        self.min_order_value = costs.min_order_value
        self.funding_rate = costs.funding_rate_per_8h
        self.cash = initial_equity if initial_equity is not None else costs.initial_equity
        self.positions: Dict[str, Position] = {}
        self.trades: List[Trade] = []
        self.daily_losses: Dict[date, float] = {}
        self.funding_by_symbol: Dict[str, float] = {}

    def side_of(self, symbol: str) -> Optional[Direction]:
        position = self.positions.get(symbol)
        return position.side if position else None

    def equity(self, prices: Mapping[str, float]) -> float:
        """Cash plus open positions marked at ``prices`` (entry price if missing)."""
        value = self.cash
        for symbol, position in self.positions.items():
            value += position.market_value(prices.get(symbol, position.entry_price))
        return value

    def daily_loss(self, when: datetime) -> float:
        """Realized losses on the UTC day of ``when`` (positive number)."""
        return self.daily_losses.get(_utc_day(when), 0.0)

    def open(
        self,
        symbol: str,
        side: Direction,
        price: float,
        when: datetime,
        ratio: float,
        risk: RiskParams,
        equity: float,
    ) -> Optional[Position]:
        """Open a position worth ``equity * ratio``; None when it cannot be filled."""
        if symbol in self.positions:
            return None
        if len(self.positions) >= risk.max_positions:
            logger.debug("%s: max positions (%d) reached", symbol, risk.max_positions)
            return None
        if risk.daily_loss_limit_percent is not None:
            lost_pct = safe_pct(self.daily_loss(when), equity, default=math.inf)
            if lost_pct >= risk.daily_loss_limit_percent:
                logger.info("%s: daily loss limit reached (%.2f%% >= %.2f%%)",
                            symbol, lost_pct, risk.daily_loss_limit_percent)
                return None

        spend = equity * ratio
        if spend < self.min_order_value or spend > self.cash:
            logger.debug("%s: order of %.2f not fillable (cash %.2f)", symbol, spend, self.cash)
            return None

        fee = self.fills.fee(spend)
        if side == Direction.LONG:
            fill = self.fills.buy_price(price)
            stop_loss = fill * (1 - risk.stop_loss_percent / 100)
            take_profit = fill * (1 + risk.take_profit_percent / 100)
            margin = 0.0
        else:
            fill = self.fills.sell_price(price)
            stop_loss = fill * (1 + risk.stop_loss_percent / 100)
            take_profit = fill * (1 - risk.take_profit_percent / 100)
            margin = spend - fee

        position = Position(
            symbol=symbol,
            side=side,
            entry_time=when,
            entry_price=fill,
            quantity=(spend - fee) / fill,
            cost=spend,
            stop_loss=stop_loss,
            take_profit=take_profit,
            margin=margin,
            entry_fee=fee,
            trailing=TrailingStopState.start(side, fill) if risk.trailing_stop.enabled else None,
            last_funding=when,
        )
        self.cash -= spend
        self.positions[symbol] = position
        logger.debug("Opened %s %s @ %.6f qty %.6f", side.value, symbol, fill, position.quantity)
        return position

    def settle_funding(self, symbol: str, price: float, now: datetime) -> float:
        """
        Settle every funding slot passed since the last settlement.

        Each slot moves ``rate * quantity * price`` of cash: longs pay it,
        shorts receive it. Returns the net amount paid (negative when received).
        """
        position = self.positions.get(symbol)
        if position is None or not self.funding_rate:
            return 0.0
        slots = _funding_slot(now) - _funding_slot(position.last_funding or position.entry_time)
        if slots <= 0:
            return 0.0
        position.last_funding = now
        amount = self.funding_rate * position.quantity * price * slots
        paid = amount if position.is_long else -amount
        self.cash -= paid
        position.funding += paid
        self.funding_by_symbol[symbol] = self.funding_by_symbol.get(symbol, 0.0) + paid
        logger.debug("%s: funding %+.4f over %d settlement(s)", symbol, -paid, slots)
        return paid

    def apply(self, decision: ExitDecision, symbol: str, when: datetime) -> Optional[Trade]:
        """Execute an ExitDecision, closing all or ``decision.fraction`` of the position."""
        if decision.fraction >= 1:
            return self.close(symbol, decision.price, when, decision.reason)
        trade = self.reduce(symbol, decision.fraction, decision.price, when, decision.reason)
        position = self.positions.get(symbol)
        if position is not None and decision.stage is not None:
            position.stages_hit = decision.stage + 1
        return trade

    def reduce(self, symbol: str, fraction: float, price: float, when: datetime,
               reason: ExitReason) -> Optional[Trade]:
        """Close ``fraction`` of the position; the rest stays open."""
        position = self.positions.get(symbol)
        if position is None:
            return None
        if fraction >= 1:
            return self.close(symbol, price, when, reason)
        return self._settle(position, fraction, price, when, reason)

    def close(self, symbol: str, price: float, when: datetime, reason: ExitReason) -> Optional[Trade]:
        position = self.positions.pop(symbol, None)
        if position is None:
            return None
        return self._settle(position, 1.0, price, when, reason)

    def close_all(self, prices: Mapping[str, float], when: datetime,
                  reason: ExitReason = ExitReason.END_OF_DATA) -> List[Trade]:
        closed = []
        for symbol in list(self.positions):
            price = prices.get(symbol, self.positions[symbol].entry_price)
            trade = self.close(symbol, price, when, reason)
            if trade:
                closed.append(trade)
        return closed

    def _settle(self, position: Position, fraction: float, price: float, when: datetime,
                reason: ExitReason) -> Trade:
        quantity = position.quantity * fraction
        cost = position.cost * fraction
        margin = position.margin * fraction
        entry_fee = position.entry_fee * fraction
        funding = position.funding * fraction

        if position.is_long:
            fill = self.fills.sell_price(price)
            gross = quantity * fill
            fee = self.fills.fee(gross)
            proceeds = gross - fee
        else:
            fill = self.fills.buy_price(price)
            fee = self.fills.fee(quantity * fill)
            proceeds = max(0.0, margin + (position.entry_price - fill) * quantity - fee)

        # Funding already moved cash while held, so it only enters pnl here
        pnl = proceeds - cost - funding
        self.cash += proceeds
        if fraction < 1:
            position.quantity -= quantity
            position.cost -= cost
            position.margin -= margin
            position.entry_fee -= entry_fee
            position.funding -= funding
        if pnl < 0:
            day = _utc_day(when)
            self.daily_losses[day] = self.daily_losses.get(day, 0.0) - pnl

        trade = Trade(
            symbol=position.symbol,
            side=position.side,
            entry_time=position.entry_time,
            exit_time=when,
            entry_price=position.entry_price,
            exit_price=fill,
            quantity=quantity,
            cost=cost,
            proceeds=proceeds,
            pnl=pnl,
            pnl_pct=safe_pct(pnl, cost),
            exit_reason=reason,
            fees=entry_fee + fee,
            funding=funding,
        )
        self.trades.append(trade)
        logger.debug("Closed %.0f%% of %s %s (%s) pnl %.2f",
                     fraction * 100, position.side.value, position.symbol, reason.value, pnl)
        return trade
