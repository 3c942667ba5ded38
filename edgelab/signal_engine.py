"""
Single-tick signal pipeline.

    indicators -> signal detection -> regime -> R:R -> correlation -> protections

The same call serves live monitoring loops and the backtest runner, and
gives identical results for identical inputs (timestamps come from the
candles, never from the wall clock unless the caller passes ``now``).

Closing signals (sell/cover) and ``none`` bypass every filter. Only an
unknown strategy id raises; every other problem is reported through
``rejected`` / ``rejection_reason``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from edgelab.config.strategy_config import RiskParams, SignalConditions, StrategyConfig
from edgelab.core.enums import Direction, SignalFilter, SignalType
from edgelab.core.models import Candle, ExternalContext, IndicatorSnapshot, Signal, TradeRecord
from edgelab.intelligence.indicators import calculate_indicators
from edgelab.intelligence.regime import RegimeAnalysis, classify_regime, filter_conditions
from edgelab.risk.correlation import SIZE_REDUCTION, CorrelationFilter
from edgelab.risk.protections import ProtectionManager
from edgelab.risk.rr_filter import check_risk_reward
from edgelab.strategies.base import StrategyContext
from edgelab.strategies.registry import DEFAULT_STRATEGY_ID, StrategyRegistry, default_registry, resolve_strategy
from edgelab.strategies.rules import detect_signal
from edgelab.strategies.state_store import StateStoreProvider

logger = logging.getLogger(__name__)

REGIME_SIZE_REDUCTION = 0.5


@dataclass
class SignalEngineResult:
    """Outcome of one pipeline pass for one symbol."""

    indicators: Optional[IndicatorSnapshot]
    signal: Signal
    effective_risk: RiskParams
    rejected: bool = False
    rejection_reason: str = ""
    position_ratio: Optional[float] = None  # set only when a filter shrank size
    regime_label: Optional[str] = None
    regime: Optional[RegimeAnalysis] = None
    notes: List[str] = field(default_factory=list)

    @property
    def effective_position_ratio(self) -> float:
        if self.position_ratio is not None:
            return self.position_ratio
        return self.effective_risk.position_ratio

    def to_dict(self) -> dict:
        return {
            "symbol": self.signal.symbol,
            "signal": self.signal.type.value,
            "price": self.signal.price,
            "reason": list(self.signal.reason),
            "rejected": self.rejected,
            "rejection_reason": self.rejection_reason,
            "position_ratio": self.effective_position_ratio,
            "regime": self.regime.to_dict() if self.regime else None,
        }


def _min_ratio(current: Optional[float], candidate: float) -> float:
    return candidate if current is None else min(current, candidate)


def regime_conditions(config: StrategyConfig, regime: Optional[RegimeAnalysis]) -> SignalConditions:
    """
    Condition lists in force under ``regime``.

    A confident trend_only / reversal_only regime drops the opposite family
    from the opening lists, unless ``regime_strategies`` names explicit lists
    for that mode. Closing lists are only changed by an explicit override.
    """
    base = config.signals
    if regime is None or not regime.is_confident:
        return base

    mode = regime.signal_filter
    override = config.regime_strategies.get(mode)
    if override is not None and override.signals:
        return base.model_copy(update={k: list(v) for k, v in override.signals.items()})

    if mode in (SignalFilter.TREND_ONLY, SignalFilter.REVERSAL_ONLY):
        return base.model_copy(update={
            "buy": filter_conditions(base.buy, mode),
            "short": filter_conditions(base.short, mode),
        })
    return base


def process_signal(
    symbol: str,
    candles: Sequence[Candle],
    config: StrategyConfig,
    external: Optional[ExternalContext] = None,
    recent_trades: Optional[Sequence[TradeRecord]] = None,
    registry: Optional[StrategyRegistry] = None,
    state_stores: Optional[StateStoreProvider] = None,
    now: Optional[datetime] = None,
) -> SignalEngineResult:
    """
    Run the full pipeline for one symbol on the latest candle.

    Raises:
        StrategyNotFoundError: config.strategy_id is not registered.
    """
    external = external or ExternalContext()
    timestamp = candles[-1].close_time if candles else None

    indicators = calculate_indicators(candles, config.strategy)
    if indicators is None:
        return SignalEngineResult(
            indicators=None,
            signal=Signal.none(symbol, None, timestamp),
            effective_risk=config.risk,
            rejected=True,
            rejection_reason=f"Insufficient data: {len(candles)} candles",
        )
    indicators = indicators.with_external(external)

    regime = classify_regime(candles)
    confident = regime.is_confident

    # ── Detection ───────────────────────────────────────────────
    strategy_id = config.strategy_id or DEFAULT_STRATEGY_ID
    if strategy_id == DEFAULT_STRATEGY_ID:
        conditions = regime_conditions(config, regime if confident else None)
        signal = detect_signal(
            symbol, indicators, config, external.current_side, conditions, timestamp
        )
    else:
        strategy = resolve_strategy(config, registry or default_registry())
        store = state_stores.for_strategy(strategy.id, symbol) if state_stores else None
        ctx = StrategyContext(symbol, candles, config, indicators, external.current_side, store)
        extra = strategy.populate_indicators(ctx)
        if extra:
            indicators = indicators.with_extra(extra)
            ctx.indicators = indicators
        signal = Signal(
            symbol=symbol,
            type=strategy.populate_signal(ctx),
            price=indicators.price,
            indicators=indicators,
            reason=(f"strategy:{strategy.id}",),
            timestamp=timestamp,
        )

    result = SignalEngineResult(
        indicators=indicators, signal=signal, effective_risk=config.risk, regime=regime
    )
    if not signal.type.is_opening:
        return result

    # ── Opening-signal filters ──────────────────────────────────
    side = Direction.LONG if signal.type == SignalType.BUY else Direction.SHORT

    if confident:
        result.regime_label = regime.label
        if regime.signal_filter == SignalFilter.BREAKOUT_WATCH:
            return _reject(result, f"Regime filter [{regime.label}]: {regime.detail}")
        result.effective_risk = config.risk_for(regime.signal_filter)
        if regime.signal_filter == SignalFilter.REDUCED_SIZE:
            result.position_ratio = result.effective_risk.position_ratio * REGIME_SIZE_REDUCTION

    risk = result.effective_risk

    if risk.min_rr > 0:
        rr = check_risk_reward(
            candles, indicators.price, side, risk.min_rr, risk.rr_lookback,
            external.support, external.resistance,
        )
        if not rr.passed:
            return _reject(result, f"R:R filter: {rr.reason}")

    if risk.correlation_filter.enabled and external.held_candles:
        corr = CorrelationFilter(risk.correlation_filter.threshold, risk.correlation_filter.lookback)
        check = corr.check(symbol, candles, external.held_candles)
        if check.correlated:
            result.position_ratio = _min_ratio(
                result.position_ratio, risk.position_ratio * SIZE_REDUCTION
            )
            result.notes.append(check.reason)

    if recent_trades and config.protections.any_enabled:
        manager = ProtectionManager(config.protections, config.timeframe)
        protection = manager.check(symbol, recent_trades, now or timestamp)
        if not protection.allowed:
            return _reject(result, f"Protection: {protection.reason}")

    return result


def _reject(result: SignalEngineResult, reason: str) -> SignalEngineResult:
    logger.debug("%s %s rejected: %s", result.signal.symbol, result.signal.type.value, reason)
    result.rejected = True
    result.rejection_reason = reason
    return result
