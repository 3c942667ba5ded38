"""
Tests for walk-forward, sensitivity, Monte-Carlo and hyperopt.
"""

from unittest.mock import patch

import numpy as np
import pytest

from edgelab.backtest.models import BacktestMetrics
from edgelab.config.settings import settings
from edgelab.config.strategy_config import StrategyConfig
from edgelab.core.exceptions import EdgeLabConfigError
from edgelab.validation.hyperopt import (
    DEFAULT_PARAM_SPACE,
    HyperoptResult,
    ParamDef,
    ParzenOptimizer,
    decode_param,
    encode_param,
    format_hyperopt_report,
    perturb_params,
    run_hyperopt,
    sample_random,
)
from edgelab.validation.monte_carlo import MonteCarloResult, format_monte_carlo_report, run_monte_carlo
from edgelab.validation.objective import (
    INVALID_SCORE,
    EvalResult,
    apply_params,
    evaluate_params,
    objective_score,
)
from edgelab.validation.sensitivity import (
    SensitivityParam,
    SensitivityReport,
    SensitivityResult,
    format_sensitivity_report,
    robust_pct,
    run_sensitivity,
)
from edgelab.validation.walk_forward import (
    WalkForwardFold,
    format_walk_forward_report,
    is_robust,
    summarize_folds,
    walk_forward,
)


def _fold(index: int, oos: float, in_sample: float = 5.0) -> WalkForwardFold:
    return WalkForwardFold(
        fold_index=index,
        train_bars=100,
        test_bars=50,
        in_sample_return=in_sample,
        out_of_sample_return=oos,
        out_of_sample_sharpe=0.0,
        out_of_sample_trades=3,
        out_of_sample_win_rate=0.5,
    )


def _sens(value, ret: float, sharpe: float = 0.0) -> SensitivityResult:
    return SensitivityResult("MA Short", value, ret, sharpe, 5.0, 4)


# =============================================================================
# Walk-forward
# =============================================================================


class TestWalkForward:
    """Test walk-forward splitting and verdicts."""

    def test_is_robust_threshold(self):
        assert is_robust(1.0, 0.6)
        assert not is_robust(1.0, 0.59)
        assert not is_robust(0.0, 1.0)

    def test_summary_robust(self):
        result = summarize_folds("BTCUSDT", [_fold(0, 2.0), _fold(1, 3.0), _fold(2, -1.0)])
        assert result.avg_out_of_sample_return == pytest.approx(4 / 3)
        assert result.consistency == pytest.approx(2 / 3)
        assert result.robust
        assert result.verdict.startswith("ROBUST")

    def test_summary_marginal_and_overfit(self):
        marginal = summarize_folds("BTCUSDT", [_fold(0, 1.0), _fold(1, -2.0)])
        assert marginal.verdict.startswith("MARGINAL")
        overfit = summarize_folds("BTCUSDT", [_fold(0, -6.0, 20.0), _fold(1, -4.0, 20.0)])
        assert not overfit.robust
        assert overfit.verdict.startswith("LIKELY OVERFIT")

    def test_no_folds(self):
        result = summarize_folds("BTCUSDT", [])
        assert result.total_folds == 0
        assert not result.robust

    def test_anchored_splits(self, random_walk_candles, default_config):
        result = walk_forward(random_walk_candles, default_config, "BTCUSDT", folds=5, train_ratio=0.2)
        # 300 bars: 60-bar folds, first train slice 60 bars, then rolled by 60
        assert [f.train_bars for f in result.folds] == [60, 120, 180, 240]
        assert all(f.test_bars == 60 for f in result.folds)

    def test_short_history_skips_folds(self, make_candles, default_config):
        result = walk_forward(make_candles([100.0] * 50), default_config, "BTCUSDT", folds=5)
        assert result.folds == []
        assert result.verdict.startswith("LIKELY OVERFIT")

    def test_report(self):
        report = format_walk_forward_report([summarize_folds("BTCUSDT", [_fold(0, 2.0)])])
        assert "BTCUSDT: ROBUST" in report
        assert "[+] fold 1" in report


# =============================================================================
# Sensitivity
# =============================================================================


class TestSensitivity:
    """Test the one-parameter grid."""

    def test_robust_pct(self):
        assert robust_pct([]) == 0
        assert robust_pct([_sens(1, 2.0), _sens(2, -1.0), _sens(3, 0.0)]) == 33

    def test_invalid_values_are_skipped(self, random_walk_candles, default_config):
        param = SensitivityParam("MA Short", "strategy.ma.short", [10, 0, 20])
        report = run_sensitivity(random_walk_candles, default_config, "BTCUSDT", param)
        assert [r.param_value for r in report.results] == [10, 20]
        assert report.best_value in (10, 20)
        assert 0 <= report.robust_pct <= 100

    def test_unknown_path_yields_empty_report(self, random_walk_candles, default_config):
        param = SensitivityParam("Nope", "strategy.nope", [1, 2])
        report = run_sensitivity(random_walk_candles, default_config, "BTCUSDT", param)
        assert report.results == []
        assert report.best_value == 1
        assert report.verdict.startswith("FRAGILE")

    def test_report_marks_profitable_values(self):
        report = SensitivityReport("MA Short", [_sens(10, 3.0, 1.2), _sens(20, -1.0)], 10, 50, "MODERATE")
        text = format_sensitivity_report(report)
        assert "Best value: 10" in text
        assert "[+]" in text and "[-]" in text


# =============================================================================
# Monte-Carlo
# =============================================================================


class TestMonteCarlo:
    """Test trade-order shuffling."""

    def test_no_trades(self):
        result = run_monte_carlo([])
        assert result == MonteCarloResult()
        assert result.verdict == "No trades to simulate"

    def test_percentiles_are_ordered(self):
        returns = [5.0, -3.0, 8.0, -6.0, 2.0, -1.0, 4.0, -7.0, 6.0, 3.0]
        result = run_monte_carlo(returns, iterations=500, seed=1)
        assert result.iterations == 500
        assert result.p5_return <= result.median_return <= result.p95_return
        assert result.p5_max_drawdown > 0

    def test_seed_reproducible(self):
        returns = [5.0, -3.0, 8.0, -6.0, 2.0]
        first = run_monte_carlo(returns, iterations=200, seed=7)
        second = run_monte_carlo(returns, iterations=200, seed=7)
        assert first == second

    def test_order_does_not_change_final_return(self):
        result = run_monte_carlo([10.0, 10.0, 10.0], iterations=50, seed=3)
        assert result.p5_return == pytest.approx(33.1)
        assert result.p95_return == pytest.approx(33.1)
        assert result.p5_max_drawdown == 0.0
        assert result.verdict.startswith("LOW RISK")

    def test_negative_iterations_rejected(self):
        with pytest.raises(EdgeLabConfigError, match="negative"):
            run_monte_carlo([1.0, -1.0], iterations=-5)
        with pytest.raises(EdgeLabConfigError):
            run_monte_carlo([], iterations=-1)

    def test_zero_iterations_uses_default(self):
        result = run_monte_carlo([1.0, -1.0], iterations=0, seed=1)
        assert result.iterations == settings.monte_carlo_iterations

    def test_losing_sequence_is_high_risk(self):
        result = run_monte_carlo([-10.0] * 5, iterations=20, seed=3)
        assert result.median_return == pytest.approx(-40.951)
        assert result.verdict.startswith("HIGH RISK")
        assert "MONTE-CARLO (20 iterations)" in format_monte_carlo_report(result)


# =============================================================================
# Objective
# =============================================================================


class TestObjective:
    """Test the hyperopt objective."""

    def test_score(self):
        assert objective_score(BacktestMetrics(sharpe_ratio=1.5, max_drawdown_pct=20.0)) == pytest.approx(1.4)

    def test_apply_params_rounds_integers(self, default_config):
        cfg = apply_params({"ma_short": 10.6, "stop_loss_pct": 3.5}, default_config)
        assert cfg.strategy.ma.short == 11
        assert cfg.risk.stop_loss_percent == 3.5
        assert default_config.strategy.ma.short == 20

    def test_apply_params_unknown_name(self, default_config):
        with pytest.raises(EdgeLabConfigError):
            apply_params({"leverage": 10}, default_config)

    def test_inverted_moving_averages_are_invalid(self, default_config, make_candles):
        result = evaluate_params({"ma_short": 60, "ma_long": 30}, {"BTCUSDT": make_candles([100.0] * 10)},
                                 default_config)
        assert result.score == INVALID_SCORE

    def test_rejected_value_is_invalid(self, default_config, make_candles):
        result = evaluate_params({"position_ratio": 2.0}, {"BTCUSDT": make_candles([100.0] * 10)},
                                 default_config)
        assert result.score == INVALID_SCORE

    def test_valid_set_scores_backtest(self, make_candles):
        base = StrategyConfig(name="opt", symbols=["BTCUSDT"])
        result = evaluate_params({"ma_short": 5, "ma_long": 20}, {"BTCUSDT": make_candles([100.0] * 40)}, base)
        assert result.score == pytest.approx(objective_score(result.metrics))
        assert result.metrics.total_trades == 0


# =============================================================================
# Hyperopt
# =============================================================================

RSI_SPACE = [ParamDef("rsi_oversold", 20, 40), ParamDef("rsi_period", 7, 21, is_int=True)]


def _distance_from_30(params, *args, **kwargs) -> EvalResult:
    return EvalResult(-abs(params["rsi_oversold"] - 30), BacktestMetrics())


class TestParamSpace:
    """Test encoding and sampling of the search space."""

    def test_decode_aligns_integers_to_step(self):
        ma_long = ParamDef("ma_long", 20, 200, is_int=True, step=5)
        assert decode_param(ma_long, 0.0) == 20
        assert decode_param(ma_long, 0.5) == 110
        assert decode_param(ma_long, 0.51) == 110
        assert isinstance(decode_param(ma_long, 0.3), int)
        assert decode_param(ParamDef("ratio", 0.1, 0.4), 0.5) == pytest.approx(0.25)

    def test_encode_clamps(self):
        param = ParamDef("stop_loss_pct", 2, 10)
        assert encode_param(param, 6) == pytest.approx(0.5)
        assert encode_param(param, 50) == 1.0
        assert encode_param(param, -5) == 0.0
        assert encode_param(ParamDef("fixed", 3, 3), 3) == 0.0

    def test_samples_stay_in_bounds(self):
        rng = np.random.default_rng(1)
        for _ in range(50):
            params = sample_random(DEFAULT_PARAM_SPACE, rng)
            perturbed = perturb_params(params, DEFAULT_PARAM_SPACE, 0.5, rng)
            for p in DEFAULT_PARAM_SPACE:
                assert p.min <= params[p.name] <= p.max
                assert p.min <= perturbed[p.name] <= p.max

    def test_default_space_maps_to_config(self, default_config):
        params = sample_random(DEFAULT_PARAM_SPACE, np.random.default_rng(2))
        params["ma_short"], params["ma_long"] = 10, 50
        cfg = apply_params(params, default_config)
        assert cfg.strategy.ma.long == 50


class TestParzenOptimizer:
    """Test the ask/tell optimizer."""

    def _run(self, seed: int, trials: int = 30) -> ParzenOptimizer:
        opt = ParzenOptimizer(RSI_SPACE, seed=seed, warmup=10)
        for _ in range(trials):
            params = opt.suggest()
            opt.observe(params, _distance_from_30(params).score)
        return opt

    def test_seed_reproducible(self):
        first, second = self._run(seed=5), self._run(seed=5)
        assert [t.params for t in first.history] == [t.params for t in second.history]
        assert [t.params for t in self._run(seed=6).history] != [t.params for t in first.history]

    def test_best_is_highest_score(self):
        opt = self._run(seed=3)
        best = opt.best()
        assert best.score == max(t.score for t in opt.history)
        best.params["rsi_oversold"] = 0.0
        assert opt.best().params["rsi_oversold"] != 0.0

    def test_guided_suggestions_stay_in_bounds(self):
        opt = self._run(seed=4, trials=40)
        for trial in opt.history[10:]:
            assert 20 <= trial.params["rsi_oversold"] <= 40
            assert 7 <= trial.params["rsi_period"] <= 21

    def test_empty_history(self):
        assert ParzenOptimizer(RSI_SPACE, seed=1).best() is None

    def test_rejects_bad_setup(self):
        with pytest.raises(EdgeLabConfigError):
            ParzenOptimizer([])
        with pytest.raises(EdgeLabConfigError):
            ParzenOptimizer(RSI_SPACE, gamma=0)


class TestRunHyperopt:
    """Test the search driver."""

    def test_calls_objective_per_trial(self, default_config):
        with patch("edgelab.validation.hyperopt.evaluate_params", side_effect=_distance_from_30) as evaluate:
            result = run_hyperopt({}, default_config, trials=25, space=RSI_SPACE, seed=3, warmup=10)
        assert evaluate.call_count == 25
        assert len(result.trials) == 25
        assert result.best_score == max(t.score for t in result.trials)
        assert result.best_score > -5
        assert result.valid_trials == 25

    def test_backtests_parameter_sets(self, make_candles):
        base = StrategyConfig(name="opt", symbols=["BTCUSDT"])
        space = [ParamDef("ma_short", 5, 10, is_int=True), ParamDef("ma_long", 20, 30, is_int=True, step=5)]
        result = run_hyperopt({"BTCUSDT": make_candles([100.0] * 50)}, base, trials=3, space=space, seed=1)
        assert len(result.trials) == 3
        assert all(t.score > INVALID_SCORE for t in result.trials)

    def test_zero_trials(self, default_config):
        result = run_hyperopt({}, default_config, trials=0)
        assert result == HyperoptResult()
        assert "No trials run" in format_hyperopt_report(result)

    def test_rejects_bad_arguments(self, default_config):
        with pytest.raises(EdgeLabConfigError, match="negative"):
            run_hyperopt({}, default_config, trials=-1)
        with pytest.raises(EdgeLabConfigError, match="leverage"):
            run_hyperopt({}, default_config, trials=1, space=[ParamDef("leverage", 1, 10)])

    def test_report(self, default_config):
        with patch("edgelab.validation.hyperopt.evaluate_params", side_effect=_distance_from_30):
            result = run_hyperopt({}, default_config, trials=5, space=RSI_SPACE, seed=1)
        report = format_hyperopt_report(result)
        assert "HYPEROPT (5 trials, 5 valid)" in report
        assert "rsi_oversold:" in report
        assert "Best score:" in report
