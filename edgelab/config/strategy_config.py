"""
Strategy configuration models.

A ``StrategyConfig`` is the fully-resolved configuration handed to the
pipeline: indicator periods, condition lists, risk thresholds, trailing-stop
parameters, protections, the ROI table, ensemble members and trading costs.
Loading/merging YAML is a collaborator's job; this module only validates.
"""

import copy
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from edgelab.config.settings import get_settings
from edgelab.core.enums import SignalFilter, SignalType, Timeframe
from edgelab.core.exceptions import EdgeLabConfigError


class _Section(BaseModel):
    """Unknown keys are errors so a mistyped sensitivity path fails loudly."""

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Indicator parameters
# ---------------------------------------------------------------------------

class MaParams(_Section):
    short: int = Field(default=20, ge=1)
    long: int = Field(default=60, ge=1)


class RsiParams(_Section):
    period: int = Field(default=14, ge=1)
    oversold: float = 30.0
    overbought: float = 70.0
    overbought_exit: float = 75.0


class MacdParams(_Section):
    enabled: bool = False
    fast: int = Field(default=12, ge=1)
    slow: int = Field(default=26, ge=1)
    signal: int = Field(default=9, ge=1)


class VolumeParams(_Section):
    surge_ratio: float = 1.5
    low_ratio: float = 0.5


class MarketContextParams(_Section):
    """Thresholds for conditions on externally injected values."""

    funding_overlong: float = 0.03   # funding % above this: longs crowded
    funding_overshort: float = -0.03
    dominance_change: float = 0.5    # BTC dominance change in percentage points


class BreakoutParams(_Section):
    lookback: int = Field(default=20, ge=2)
    volume_ratio: float = 1.5


class RsiReversalParams(_Section):
    max_consecutive_losses: int = Field(default=3, ge=1)


class StrategyParams(_Section):
    ma: MaParams = Field(default_factory=MaParams)
    rsi: RsiParams = Field(default_factory=RsiParams)
    macd: MacdParams = Field(default_factory=MacdParams)
    volume: VolumeParams = Field(default_factory=VolumeParams)
    market: MarketContextParams = Field(default_factory=MarketContextParams)
    breakout: BreakoutParams = Field(default_factory=BreakoutParams)
    rsi_reversal: RsiReversalParams = Field(default_factory=RsiReversalParams)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

class SignalConditions(_Section):
    """Condition names per direction. Every name in a list must hold."""

    buy: List[str] = Field(default_factory=lambda: ["ma_golden_cross"])
    sell: List[str] = Field(default_factory=lambda: ["ma_death_cross"])
    short: List[str] = Field(default_factory=list)
    cover: List[str] = Field(default_factory=list)

    def for_type(self, signal_type: SignalType) -> List[str]:
        return list(getattr(self, signal_type.value))


class RegimeStrategyOverride(_Section):
    """Explicit condition lists used while a regime filter mode is in force."""

    signals: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator("signals")
    @classmethod
    def _known_directions(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        unknown = set(value) - {"buy", "sell", "short", "cover"}
        if unknown:
            raise ValueError(f"unknown signal directions: {sorted(unknown)}")
        return value


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

class TrailingStopParams(_Section):
    enabled: bool = False
    activation_percent: float = Field(default=5.0, ge=0)
    callback_percent: float = Field(default=2.0, gt=0)


class CorrelationFilterParams(_Section):
    enabled: bool = False
    threshold: float = Field(default=0.7, ge=0, le=1)
    lookback: int = Field(default=60, ge=2)


class TakeProfitStage(_Section):
    """Close ``close_ratio`` of the remaining position once profit reaches ``at_percent``."""

    at_percent: float = Field(gt=0)
    close_ratio: float = Field(default=1.0, gt=0, le=1)


class RiskParams(_Section):
    stop_loss_percent: float = Field(default=5.0, ge=0)
    take_profit_percent: float = Field(default=15.0, ge=0)
    trailing_stop: TrailingStopParams = Field(default_factory=TrailingStopParams)
    # Tighter callback (ratio, e.g. 0.01) once profit reaches the offset (ratio)
    trailing_stop_positive: Optional[float] = Field(default=None, gt=0)
    trailing_stop_positive_offset: float = Field(default=0.0, ge=0)
    trailing_only_offset_is_reached: bool = False
    position_ratio: float = Field(default=0.2, gt=0, le=1)
    max_positions: int = Field(default=4, ge=1)
    min_rr: float = 0.0
    rr_lookback: int = Field(default=20, ge=2)
    correlation_filter: CorrelationFilterParams = Field(default_factory=CorrelationFilterParams)
    time_stop_hours: Optional[float] = Field(default=None, gt=0)
    # Move the stop to entry * (1 + break_even_stop) once profit (ratio) reaches break_even_profit
    break_even_profit: Optional[float] = Field(default=None, gt=0)
    break_even_stop: float = Field(default=0.001, ge=0)
    take_profit_stages: List[TakeProfitStage] = Field(default_factory=list)
    # Realized losses today (UTC) as % of equity that block new entries
    daily_loss_limit_percent: Optional[float] = Field(default=None, gt=0)

    @field_validator("take_profit_stages")
    @classmethod
    def _stages_ascending(cls, value: List[TakeProfitStage]) -> List[TakeProfitStage]:
        return sorted(value, key=lambda stage: stage.at_percent)


# ---------------------------------------------------------------------------
# Protections
# ---------------------------------------------------------------------------

class CooldownProtection(_Section):
    enabled: bool = False
    stop_duration_candles: int = Field(default=4, ge=0)


class StoplossGuardProtection(_Section):
    enabled: bool = False
    lookback_period_candles: int = Field(default=24, ge=0)
    trade_limit: int = Field(default=3, ge=1)
    stop_duration_candles: int = Field(default=12, ge=0)
    only_per_pair: bool = False


class MaxDrawdownProtection(_Section):
    enabled: bool = False
    lookback_period_candles: int = Field(default=48, ge=0)
    trade_limit: int = Field(default=3, ge=1)
    max_allowed_drawdown: float = 0.15  # summed pnl ratio; sign is ignored
    stop_duration_candles: int = Field(default=24, ge=0)


class LowProfitPairsProtection(_Section):
    enabled: bool = False
    lookback_period_candles: int = Field(default=48, ge=0)
    trade_limit: int = Field(default=2, ge=1)
    required_profit: float = 0.0
    stop_duration_candles: int = Field(default=24, ge=0)


class ProtectionParams(_Section):
    cooldown: CooldownProtection = Field(default_factory=CooldownProtection)
    stoploss_guard: StoplossGuardProtection = Field(default_factory=StoplossGuardProtection)
    max_drawdown: MaxDrawdownProtection = Field(default_factory=MaxDrawdownProtection)
    low_profit_pairs: LowProfitPairsProtection = Field(default_factory=LowProfitPairsProtection)

    @property
    def any_enabled(self) -> bool:
        return any(
            section.enabled
            for section in (self.cooldown, self.stoploss_guard, self.max_drawdown, self.low_profit_pairs)
        )


# ---------------------------------------------------------------------------
# Ensemble and costs
# ---------------------------------------------------------------------------

class EnsembleMember(_Section):
    id: str
    weight: float = 1.0


class EnsembleParams(_Section):
    strategies: List[EnsembleMember] = Field(default_factory=list)
    threshold: float = 0.5
    unanimous: bool = False


class CostParams(_Section):
    """Trading-cost assumptions applied to every simulated fill."""

    initial_equity: float = Field(default_factory=lambda: get_settings().initial_equity, gt=0)
    fee_rate: float = Field(default_factory=lambda: get_settings().fee_rate, ge=0)
    slippage_percent: float = Field(default_factory=lambda: get_settings().slippage_percent, ge=0)
    spread_bps: float = Field(default_factory=lambda: get_settings().spread_bps, ge=0)
    min_order_value: float = Field(default_factory=lambda: get_settings().min_order_value, ge=0)
    signal_to_next_open: bool = False
    # Perpetual funding rate (ratio) settled every 8h at 00/08/16 UTC; shorts receive, longs pay
    funding_rate_per_8h: Optional[float] = None


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

class StrategyConfig(_Section):
    """Fully-resolved configuration for one pipeline/backtest run."""

    name: str = "default"
    strategy_id: str = "default"
    symbols: List[str] = Field(default_factory=list)
    timeframe: Timeframe = Timeframe.H1

    strategy: StrategyParams = Field(default_factory=StrategyParams)
    signals: SignalConditions = Field(default_factory=SignalConditions)
    risk: RiskParams = Field(default_factory=RiskParams)
    protections: ProtectionParams = Field(default_factory=ProtectionParams)
    minimal_roi: Dict[str, float] = Field(default_factory=dict)
    regime_strategies: Dict[SignalFilter, RegimeStrategyOverride] = Field(default_factory=dict)
    regime_overrides: Dict[SignalFilter, Dict[str, Any]] = Field(default_factory=dict)
    ensemble: EnsembleParams = Field(default_factory=EnsembleParams)
    costs: CostParams = Field(default_factory=CostParams)

    @field_validator("minimal_roi")
    @classmethod
    def _roi_keys_are_minutes(cls, value: Dict[str, float]) -> Dict[str, float]:
        for key in value:
            try:
                minutes = float(key)
            except ValueError:
                raise ValueError(f"minimal_roi key '{key}' is not a number of minutes") from None
            if minutes < 0:
                raise ValueError(f"minimal_roi key '{key}' is negative")
        return value

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyConfig":
        """Validate a plain mapping; validation errors become EdgeLabConfigError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise EdgeLabConfigError(f"Invalid strategy config: {e}") from e

    def with_override(self, path: str, value: Any) -> "StrategyConfig":
        """
        Return a validated copy with the dotted ``path`` set to ``value``.

        Example: ``cfg.with_override("strategy.rsi.oversold", 25)``.
        """
        data = copy.deepcopy(self.model_dump())
        keys = path.split(".")
        node = data
        for key in keys[:-1]:
            if not isinstance(node, dict) or key not in node:
                raise EdgeLabConfigError(f"Unknown config path '{path}'")
            node = node[key]
        if not isinstance(node, dict):
            raise EdgeLabConfigError(f"Unknown config path '{path}'")
        node[keys[-1]] = value
        return self.from_dict(data)

    def with_overrides(self, params: Dict[str, Any]) -> "StrategyConfig":
        cfg = self
        for path, value in params.items():
            cfg = cfg.with_override(path, value)
        return cfg

    def risk_for(self, mode: Optional[SignalFilter]) -> RiskParams:
        """Risk section with the regime override for ``mode`` merged in."""
        override = self.regime_overrides.get(mode) if mode is not None else None
        if not override:
            return self.risk
        merged = self.risk.model_dump()
        merged.update(override)
        try:
            return RiskParams.model_validate(merged)
        except ValidationError as e:
            raise EdgeLabConfigError(f"Invalid regime override for {mode.value}: {e}") from e

