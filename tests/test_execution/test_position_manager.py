"""
Tests for the Position Manager.

Fills, cash accounting and the fixed exit priority evaluated every candle.
"""

from datetime import datetime, timedelta, timezone

import pytest

from edgelab.config.strategy_config import CostParams, RiskParams
from edgelab.core.enums import Direction, ExitReason
from edgelab.core.models import Candle
from edgelab.execution.position_manager import FillModel, PositionManager, break_even_stop, evaluate_exit

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _free_costs(**overrides) -> CostParams:
    values = dict(initial_equity=1000.0, fee_rate=0.0, slippage_percent=0.0, spread_bps=0.0,
                  min_order_value=10.0)
    values.update(overrides)
    return CostParams(**values)


def _candle(high: float, low: float, close: float, hours: int = 1) -> Candle:
    open_time = T0 + timedelta(hours=hours - 1)
    return Candle(open_time=open_time, open=close, high=high, low=low, close=close,
                  volume=1000.0, close_time=open_time + timedelta(hours=1))


def _open_long(risk: RiskParams = None, price: float = 100.0):
    pm = PositionManager(_free_costs())
    risk = risk or RiskParams()
    position = pm.open("BTCUSDT", Direction.LONG, price, T0, ratio=0.2, risk=risk, equity=1000.0)
    return pm, position


# ============== Fills ==============

class TestFillModel:
    def test_slippage_moves_against_trader(self):
        fills = FillModel(fee_rate=0.001, slippage_percent=0.1)
        assert fills.buy_price(100.0) == pytest.approx(100.1)
        assert fills.sell_price(100.0) == pytest.approx(99.9)

    def test_half_spread_each_side(self):
        fills = FillModel(fee_rate=0.0, slippage_percent=0.0, spread_bps=20)
        assert fills.buy_price(100.0) == pytest.approx(100.1)
        assert fills.sell_price(100.0) == pytest.approx(99.9)

    def test_fee_on_notional(self):
        assert FillModel(fee_rate=0.001).fee(200.0) == pytest.approx(0.2)


# ============== Opening ==============

class TestOpen:
    def test_long_sizes_from_equity(self):
        pm, position = _open_long()
        assert position.quantity == pytest.approx(2.0)
        assert position.stop_loss == pytest.approx(95.0)
        assert position.take_profit == pytest.approx(115.0)
        assert pm.cash == pytest.approx(800.0)
        assert pm.side_of("BTCUSDT") == Direction.LONG

    def test_fee_reduces_quantity(self):
        pm = PositionManager(_free_costs(fee_rate=0.001))
        position = pm.open("BTCUSDT", Direction.LONG, 100.0, T0, 0.2, RiskParams(), 1000.0)
        assert position.entry_fee == pytest.approx(0.2)
        assert position.quantity == pytest.approx(1.998)

    def test_short_levels_are_mirrored(self):
        pm = PositionManager(_free_costs())
        position = pm.open("BTCUSDT", Direction.SHORT, 100.0, T0, 0.2, RiskParams(), 1000.0)
        assert position.stop_loss == pytest.approx(105.0)
        assert position.take_profit == pytest.approx(85.0)
        assert position.margin == pytest.approx(200.0)

    def test_rejects_duplicate_symbol(self):
        pm, _ = _open_long()
        assert pm.open("BTCUSDT", Direction.LONG, 100.0, T0, 0.2, RiskParams(), 1000.0) is None

    def test_rejects_past_max_positions(self):
        pm, _ = _open_long(RiskParams(max_positions=1))
        assert pm.open("ETHUSDT", Direction.LONG, 10.0, T0, 0.2, RiskParams(max_positions=1), 1000.0) is None

    def test_rejects_below_min_order(self):
        pm = PositionManager(_free_costs())
        assert pm.open("BTCUSDT", Direction.LONG, 100.0, T0, 0.005, RiskParams(), 1000.0) is None

    def test_rejects_when_cash_short(self):
        pm = PositionManager(_free_costs(), initial_equity=100.0)
        assert pm.open("BTCUSDT", Direction.LONG, 100.0, T0, 0.5, RiskParams(), 1000.0) is None

    def test_trailing_state_only_when_enabled(self):
        _, plain = _open_long()
        assert plain.trailing is None
        _, trailing = _open_long(RiskParams(trailing_stop={"enabled": True}))
        assert trailing.trailing is not None


# ============== Closing ==============

class TestClose:
    def test_long_profit(self):
        pm, _ = _open_long()
        trade = pm.close("BTCUSDT", 110.0, T0 + timedelta(hours=5), ExitReason.SIGNAL)
        assert trade.pnl == pytest.approx(20.0)
        assert trade.pnl_pct == pytest.approx(10.0)
        assert trade.holding_hours == pytest.approx(5.0)
        assert pm.cash == pytest.approx(1020.0)
        assert pm.positions == {}

    def test_short_profit(self):
        pm = PositionManager(_free_costs())
        pm.open("BTCUSDT", Direction.SHORT, 100.0, T0, 0.2, RiskParams(), 1000.0)
        trade = pm.close("BTCUSDT", 90.0, T0 + timedelta(hours=1), ExitReason.TAKE_PROFIT)
        assert trade.proceeds == pytest.approx(220.0)
        assert trade.pnl == pytest.approx(20.0)

    def test_short_loss_capped_at_margin(self):
        pm = PositionManager(_free_costs())
        pm.open("BTCUSDT", Direction.SHORT, 100.0, T0, 0.2, RiskParams(), 1000.0)
        trade = pm.close("BTCUSDT", 250.0, T0 + timedelta(hours=1), ExitReason.STOP_LOSS)
        assert trade.proceeds == 0.0
        assert trade.pnl == pytest.approx(-200.0)
        assert trade.was_stop_loss

    def test_fees_are_recorded(self):
        pm = PositionManager(_free_costs(fee_rate=0.001))
        pm.open("BTCUSDT", Direction.LONG, 100.0, T0, 0.2, RiskParams(), 1000.0)
        trade = pm.close("BTCUSDT", 100.0, T0 + timedelta(hours=1), ExitReason.SIGNAL)
        assert trade.fees == pytest.approx(0.2 + 1.998 * 100 * 0.001)
        assert trade.pnl < 0

    def test_close_unknown_symbol(self):
        assert PositionManager(_free_costs()).close("NOPE", 1.0, T0, ExitReason.SIGNAL) is None

    def test_equity_marks_open_positions(self):
        pm, _ = _open_long()
        assert pm.equity({"BTCUSDT": 110.0}) == pytest.approx(1020.0)
        assert pm.equity({}) == pytest.approx(1000.0)

    def test_close_all(self):
        pm, _ = _open_long()
        trades = pm.close_all({"BTCUSDT": 105.0}, T0 + timedelta(hours=3))
        assert [t.exit_reason for t in trades] == [ExitReason.END_OF_DATA]
        assert pm.trades == trades


# ============== Exit priority ==============

class TestEvaluateExit:
    def test_stop_loss_beats_take_profit(self):
        _, position = _open_long()
        decision = evaluate_exit(position, _candle(high=116, low=94, close=100), RiskParams())
        assert decision.reason == ExitReason.STOP_LOSS
        assert decision.price == pytest.approx(95.0)

    def test_take_profit(self):
        _, position = _open_long()
        decision = evaluate_exit(position, _candle(high=116, low=99, close=112), RiskParams())
        assert decision.reason == ExitReason.TAKE_PROFIT
        assert decision.price == pytest.approx(115.0)

    def test_roi_exit_fills_at_close_when_lower(self):
        _, position = _open_long()
        decision = evaluate_exit(position, _candle(high=106, low=99, close=104), RiskParams(), {"0": 0.05})
        assert decision.reason == ExitReason.ROI_TABLE
        assert decision.price == pytest.approx(104.0)

    def test_roi_not_before_first_stage(self):
        _, position = _open_long()
        assert evaluate_exit(position, _candle(high=106, low=99, close=104), RiskParams(), {"120": 0.01}) is None

    def test_short_roi_price(self):
        pm = PositionManager(_free_costs())
        position = pm.open("BTCUSDT", Direction.SHORT, 100.0, T0, 0.2, RiskParams(), 1000.0)
        decision = evaluate_exit(position, _candle(high=101, low=94, close=97), RiskParams(), {"0": 0.05})
        assert decision.reason == ExitReason.ROI_TABLE
        assert decision.price == pytest.approx(97.0)

    def test_trailing_stop_exit(self):
        risk = RiskParams(trailing_stop={"enabled": True, "activation_percent": 5, "callback_percent": 2})
        _, position = _open_long(risk)
        assert evaluate_exit(position, _candle(high=110, low=108, close=109, hours=1), risk) is None
        decision = evaluate_exit(position, _candle(high=109, low=107, close=107.5, hours=2), risk)
        assert decision.reason == ExitReason.TRAILING_STOP
        assert decision.price == pytest.approx(107.8)

    def test_time_stop_only_without_profit(self):
        risk = RiskParams(time_stop_hours=2)
        _, position = _open_long(risk)
        losing = evaluate_exit(position, _candle(high=101, low=98, close=99, hours=3), risk)
        assert losing.reason == ExitReason.TIME_STOP
        assert losing.price == 99
        assert evaluate_exit(position, _candle(high=102, low=99, close=101, hours=3), risk) is None

    def test_holding_inside_range(self):
        _, position = _open_long()
        assert evaluate_exit(position, _candle(high=103, low=97, close=101), RiskParams()) is None


# ============== Break-even ==============

class TestBreakEven:
    def test_stop_moves_once_profit_reached(self):
        risk = RiskParams(break_even_profit=0.03)
        _, position = _open_long(risk)
        assert evaluate_exit(position, _candle(high=105, low=99, close=104), risk) is None
        assert position.stop_loss == pytest.approx(100.1)
        decision = evaluate_exit(position, _candle(high=101, low=100, close=100.5, hours=2), risk)
        assert decision.reason == ExitReason.STOP_LOSS
        assert decision.price == pytest.approx(100.1)

    def test_below_trigger_keeps_stop(self):
        risk = RiskParams(break_even_profit=0.03)
        _, position = _open_long(risk)
        assert evaluate_exit(position, _candle(high=103, low=99, close=102), risk) is None
        assert position.stop_loss == pytest.approx(95.0)

    def test_disabled_by_default(self):
        _, position = _open_long()
        assert break_even_stop(position, 150.0, RiskParams()) is None

    def test_never_loosens_stop(self):
        risk = RiskParams(break_even_profit=0.03, break_even_stop=0.0)
        _, position = _open_long(risk)
        position.stop_loss = 102.0
        assert break_even_stop(position, 110.0, risk) is None
        position.stop_loss = 100.0
        assert break_even_stop(position, 110.0, risk) is None

    def test_short_stop_moves_down(self):
        risk = RiskParams(break_even_profit=0.03)
        pm = PositionManager(_free_costs())
        position = pm.open("BTCUSDT", Direction.SHORT, 100.0, T0, 0.2, risk, 1000.0)
        assert evaluate_exit(position, _candle(high=101, low=95, close=96), risk) is None
        assert position.stop_loss == pytest.approx(99.9)


# ============== Staged take-profit ==============

class TestTakeProfitStages:
    def _risk(self) -> RiskParams:
        return RiskParams(
            take_profit_percent=50,
            take_profit_stages=[{"at_percent": 10, "close_ratio": 0.5}, {"at_percent": 5, "close_ratio": 0.5}],
        )

    def test_stages_sorted_by_level(self):
        assert [s.at_percent for s in self._risk().take_profit_stages] == [5, 10]

    def test_partial_exits_in_order(self):
        risk = self._risk()
        pm, position = _open_long(risk)

        first = evaluate_exit(position, _candle(high=106, low=100, close=105), risk)
        assert first.reason == ExitReason.TAKE_PROFIT
        assert (first.price, first.fraction, first.stage) == (pytest.approx(105.0), 0.5, 0)
        trade = pm.apply(first, "BTCUSDT", T0 + timedelta(hours=1))
        assert trade.quantity == pytest.approx(1.0)
        assert trade.cost == pytest.approx(100.0)
        assert trade.pnl == pytest.approx(5.0)
        assert pm.cash == pytest.approx(905.0)
        assert position.quantity == pytest.approx(1.0)
        assert position.stages_hit == 1

        second = evaluate_exit(position, _candle(high=111, low=104, close=110, hours=2), risk)
        assert second.stage == 1
        pm.apply(second, "BTCUSDT", T0 + timedelta(hours=2))
        assert position.quantity == pytest.approx(0.5)
        assert position.cost == pytest.approx(50.0)
        assert evaluate_exit(position, _candle(high=112, low=108, close=111, hours=3), risk) is None
        assert pm.equity({"BTCUSDT": 111.0}) == pytest.approx(905.0 + 55.0 + 55.5)

    def test_full_stage_closes_position(self):
        risk = RiskParams(take_profit_percent=50, take_profit_stages=[{"at_percent": 5}])
        pm, position = _open_long(risk)
        decision = evaluate_exit(position, _candle(high=106, low=100, close=105), risk)
        trade = pm.apply(decision, "BTCUSDT", T0 + timedelta(hours=1))
        assert pm.positions == {}
        assert trade.pnl == pytest.approx(10.0)

    def test_static_take_profit_wins_over_stage(self):
        risk = RiskParams(take_profit_percent=4, take_profit_stages=[{"at_percent": 5, "close_ratio": 0.5}])
        _, position = _open_long(risk)
        decision = evaluate_exit(position, _candle(high=106, low=100, close=105), risk)
        assert decision.fraction == 1.0
        assert decision.price == pytest.approx(104.0)

    def test_short_partial_reduce(self):
        risk = RiskParams(take_profit_percent=50, take_profit_stages=[{"at_percent": 10, "close_ratio": 0.5}])
        pm = PositionManager(_free_costs())
        position = pm.open("BTCUSDT", Direction.SHORT, 100.0, T0, 0.2, risk, 1000.0)
        decision = evaluate_exit(position, _candle(high=95, low=89, close=91), risk)
        assert decision.price == pytest.approx(90.0)
        trade = pm.apply(decision, "BTCUSDT", T0 + timedelta(hours=1))
        assert trade.proceeds == pytest.approx(110.0)
        assert trade.pnl == pytest.approx(10.0)
        assert position.margin == pytest.approx(100.0)
        assert position.quantity == pytest.approx(1.0)

    def test_reduce_unknown_symbol(self):
        assert PositionManager(_free_costs()).reduce("NOPE", 0.5, 1.0, T0, ExitReason.SIGNAL) is None


# ============== Funding ==============

class TestFunding:
    def test_long_pays_at_each_settlement(self):
        pm = PositionManager(_free_costs(funding_rate_per_8h=0.0001))
        position = pm.open("BTCUSDT", Direction.LONG, 100.0, T0, 0.2, RiskParams(), 1000.0)
        assert pm.settle_funding("BTCUSDT", 100.0, T0 + timedelta(hours=7)) == 0.0
        assert pm.settle_funding("BTCUSDT", 100.0, T0 + timedelta(hours=8)) == pytest.approx(0.02)
        assert pm.settle_funding("BTCUSDT", 100.0, T0 + timedelta(hours=9)) == 0.0
        # 16:00 and 00:00 both passed
        assert pm.settle_funding("BTCUSDT", 100.0, T0 + timedelta(hours=24)) == pytest.approx(0.04)
        assert position.funding == pytest.approx(0.06)
        assert pm.cash == pytest.approx(800.0 - 0.06)

        trade = pm.close("BTCUSDT", 100.0, T0 + timedelta(hours=25), ExitReason.SIGNAL)
        assert trade.funding == pytest.approx(0.06)
        assert trade.pnl == pytest.approx(-0.06)
        assert pm.cash == pytest.approx(1000.0 - 0.06)
        assert pm.funding_by_symbol == {"BTCUSDT": pytest.approx(0.06)}

    def test_short_receives(self):
        pm = PositionManager(_free_costs(funding_rate_per_8h=0.0001))
        pm.open("BTCUSDT", Direction.SHORT, 100.0, T0 + timedelta(hours=1), 0.2, RiskParams(), 1000.0)
        assert pm.settle_funding("BTCUSDT", 100.0, T0 + timedelta(hours=8)) == pytest.approx(-0.02)
        assert pm.cash == pytest.approx(800.02)
        trade = pm.close("BTCUSDT", 100.0, T0 + timedelta(hours=9), ExitReason.SIGNAL)
        assert trade.pnl == pytest.approx(0.02)
        assert pm.cash == pytest.approx(1000.02)

    def test_no_rate_no_funding(self):
        pm, _ = _open_long()
        assert pm.settle_funding("BTCUSDT", 100.0, T0 + timedelta(days=3)) == 0.0
        assert pm.settle_funding("ETHUSDT", 100.0, T0 + timedelta(days=3)) == 0.0
        assert pm.funding_by_symbol == {}


# ============== Daily loss limit ==============

class TestDailyLossLimit:
    def test_blocks_entries_for_rest_of_day(self):
        risk = RiskParams(daily_loss_limit_percent=2)
        pm, _ = _open_long(risk)
        pm.close("BTCUSDT", 90.0, T0 + timedelta(hours=1), ExitReason.STOP_LOSS)
        assert pm.daily_loss(T0 + timedelta(hours=2)) == pytest.approx(20.0)

        later = T0 + timedelta(hours=2)
        assert pm.open("ETHUSDT", Direction.LONG, 10.0, later, 0.2, risk, pm.equity({})) is None
        assert pm.open("ETHUSDT", Direction.LONG, 10.0, later, 0.2, RiskParams(), pm.equity({})) is not None

    def test_resets_next_utc_day(self):
        risk = RiskParams(daily_loss_limit_percent=2)
        pm, _ = _open_long(risk)
        pm.close("BTCUSDT", 90.0, T0 + timedelta(hours=1), ExitReason.STOP_LOSS)
        tomorrow = T0 + timedelta(days=1)
        assert pm.daily_loss(tomorrow) == 0.0
        assert pm.open("ETHUSDT", Direction.LONG, 10.0, tomorrow, 0.2, risk, pm.equity({})) is not None

    def test_below_limit_allows_entries(self):
        risk = RiskParams(daily_loss_limit_percent=5)
        pm, _ = _open_long(risk)
        pm.close("BTCUSDT", 90.0, T0 + timedelta(hours=1), ExitReason.STOP_LOSS)
        assert pm.open("ETHUSDT", Direction.LONG, 10.0, T0 + timedelta(hours=2), 0.2, risk, pm.equity({})) is not None

    def test_winning_trades_do_not_count(self):
        pm, _ = _open_long()
        pm.close("BTCUSDT", 110.0, T0 + timedelta(hours=1), ExitReason.SIGNAL)
        assert pm.daily_loss(T0) == 0.0
