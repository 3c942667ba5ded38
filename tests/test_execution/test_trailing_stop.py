"""Tests for the trailing stop state machine."""

import pytest

from edgelab.config.strategy_config import RiskParams
from edgelab.core.enums import Direction, TrailingState
from edgelab.execution.trailing_stop import TrailingStopState


def _risk(**overrides) -> RiskParams:
    values = {"trailing_stop": {"enabled": True, "activation_percent": 5, "callback_percent": 2}}
    values.update(overrides)
    return RiskParams.model_validate(values)


class TestBaseTrailing:
    def test_disabled_never_moves(self):
        ts = TrailingStopState.start(Direction.LONG, 100.0)
        assert not ts.update(120.0, 90.0, RiskParams())
        assert ts.water_mark == 100.0
        assert ts.state == TrailingState.INACTIVE

    def test_inactive_below_activation(self):
        ts = TrailingStopState.start(Direction.LONG, 100.0)
        assert not ts.update(103.0, 99.0, _risk())
        assert ts.state == TrailingState.INACTIVE
        assert ts.stop_price is None
        assert ts.water_mark == 103.0

    def test_long_stop_only_moves_up(self):
        ts = TrailingStopState.start(Direction.LONG, 100.0)
        assert not ts.update(110.0, 108.0, _risk())
        assert ts.state == TrailingState.ACTIVE
        assert ts.stop_price == pytest.approx(107.8)
        assert not ts.update(108.5, 107.9, _risk())
        assert ts.water_mark == 110.0
        assert ts.stop_price == pytest.approx(107.8)
        assert ts.update(109.0, 107.0, _risk())

    def test_short_mirror(self):
        ts = TrailingStopState.start(Direction.SHORT, 100.0)
        assert not ts.update(91.0, 90.0, _risk())
        assert ts.stop_price == pytest.approx(91.8)
        assert ts.best_profit_ratio() == pytest.approx(0.1)
        assert ts.update(92.0, 91.0, _risk())
        assert ts.stop_price == pytest.approx(91.8)


class TestPositiveOffset:
    def _positive(self, only_offset=False) -> RiskParams:
        return _risk(
            trailing_stop={"enabled": True, "activation_percent": 5, "callback_percent": 3},
            trailing_stop_positive=0.01,
            trailing_stop_positive_offset=0.08,
            trailing_only_offset_is_reached=only_offset,
        )

    def test_armed_then_active(self):
        ts = TrailingStopState.start(Direction.LONG, 100.0)
        assert not ts.update(106.0, 104.0, self._positive())
        assert ts.state == TrailingState.ARMED
        assert ts.stop_price == pytest.approx(102.82)

        assert not ts.update(109.0, 108.0, self._positive())
        assert ts.offset_reached
        assert ts.state == TrailingState.ACTIVE
        assert ts.stop_price == pytest.approx(107.91)

    def test_armed_stop_can_trigger(self):
        ts = TrailingStopState.start(Direction.LONG, 100.0)
        assert ts.update(106.0, 102.0, self._positive())

    def test_only_offset_suppresses_armed_exit(self):
        ts = TrailingStopState.start(Direction.LONG, 100.0)
        assert not ts.update(106.0, 100.0, self._positive(only_offset=True))
        assert ts.state == TrailingState.ARMED
        assert ts.stop_price == pytest.approx(102.82)

    def test_to_dict(self):
        ts = TrailingStopState.start(Direction.LONG, 100.0)
        ts.update(106.0, 104.0, self._positive())
        assert ts.to_dict()["state"] == "armed"
