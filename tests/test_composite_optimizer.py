import numpy as np
import pytest

from signal_allocator.backtest import simulate_batch
from signal_allocator.backtest.simulator import DEFAULT_REBALANCE_FREQ, DEFAULT_TX_COST
from signal_allocator.constraints import AllocationConstraints
from signal_allocator.mapping import step_weights
from signal_allocator.objective import ObjectiveSpec, composite_objective
from signal_allocator.optimizer import STATUS_COMPUTED, STATUS_NEUTRAL, CompositeConfig, optimize_composite

pytestmark = pytest.mark.slow


def test_weights_on_simplex_and_step_parameters(market, informative_signals) -> None:
    res = optimize_composite(informative_signals, market, {"refine": False})
    assert res.feasible
    assert res.mapping_method == "Step"
    assert res.weights.sum() == pytest.approx(1.0, abs=1e-6)
    assert np.all(res.weights >= -1e-12)
    assert len(res.thresholds) == 3
    assert res.thresholds == sorted(res.thresholds)
    assert len(res.levels) == 4
    assert all(0.0 <= lv <= 1.0 for lv in res.levels)
    assert res.split_index == 420
    assert np.isfinite(res.objective)
    assert res.in_sample is not None and res.out_of_sample is not None
    assert len(res.in_sample_backtest) == 420
    assert res.curve["signal"].shape == (200,)
    assert set(np.unique(res.equity_weights)).issubset(set(res.levels))
    assert np.all(res.status == STATUS_COMPUTED)


def test_signal_weight_bounds_respected_with_refinement(market, informative_signals) -> None:
    cons = AllocationConstraints(sig_wt_min=0.3, sig_wt_max=0.7)
    res = optimize_composite(informative_signals, market, CompositeConfig(refine=True), constraints=cons)
    assert res.weights.sum() == pytest.approx(1.0, abs=1e-6)
    assert np.all(res.weights >= 0.3 - 1e-6)
    assert np.all(res.weights <= 0.7 + 1e-6)


def test_equity_bounds_clamp_final_allocation(market, informative_signals) -> None:
    cons = AllocationConstraints(eq_min=0.25, eq_max=0.75)
    res = optimize_composite(informative_signals, market, {"refine": False}, constraints=cons)
    assert res.equity_weights.min() >= 0.25
    assert res.equity_weights.max() <= 0.75


def test_deterministic_for_fixed_seed(market, informative_signals) -> None:
    a = optimize_composite(informative_signals, market, {"refine": False, "seed": 3})
    b = optimize_composite(informative_signals, market, {"refine": False, "seed": 3, "max_workers": 3})
    assert np.array_equal(a.weights, b.weights)
    assert a.thresholds == b.thresholds
    assert a.levels == b.levels
    assert a.objective == b.objective


def test_nan_rows_are_marked_neutral(market, informative_signals) -> None:
    sig = np.array(informative_signals, copy=True)
    sig[:30] = np.nan
    res = optimize_composite(sig, market, {"refine": False})
    assert np.all(res.status[:30] == STATUS_NEUTRAL)
    assert np.all(res.equity_weights[:30] == 0.5)
    assert np.all(res.status[30:] == STATUS_COMPUTED)


def test_insufficient_data_returns_neutral_result(market) -> None:
    sig = np.full((len(market), 2), np.nan)
    res = optimize_composite(sig, market)
    assert not res.feasible
    assert res.objective == float("-inf")
    assert np.all(res.equity_weights == 0.5)
    assert np.allclose(res.weights, [0.5, 0.5])
    assert "valid" in res.message
    assert res.to_dict()["neutral_days"] == len(market)


def test_signal_length_mismatch(market, informative_signals) -> None:
    with pytest.raises(ValueError, match="must match"):
        optimize_composite(informative_signals[:-1], market)


def test_reported_objective_matches_final_parameters(market, informative_signals) -> None:
    res = optimize_composite(informative_signals, market, CompositeConfig(refine=True))
    split = res.split_index
    comp_in = np.asarray(informative_signals)[:split] @ res.weights
    batch = simulate_batch(
        step_weights(comp_in, res.thresholds, res.levels),
        market.risk_return[:split],
        market.cash_return[:split],
        rebalance_freq=DEFAULT_REBALANCE_FREQ,
        tx_cost=DEFAULT_TX_COST,
    )
    expected = composite_objective(batch.returns, ObjectiveSpec(), AllocationConstraints(), signal_weights=res.weights)
    assert res.objective == pytest.approx(float(expected[0]), rel=1e-9)


def test_unreachable_hard_drawdown_limit_is_infeasible(market, informative_signals) -> None:
    cons = AllocationConstraints(eq_min=0.5, max_dd=0.001, priority="Drawdown")
    res = optimize_composite(informative_signals, market, {"refine": False}, constraints=cons)
    assert not res.feasible
    assert res.objective == float("-inf")
    assert "finite objective" in res.message
    assert np.allclose(res.weights, [0.5, 0.5])
    assert res.thresholds == pytest.approx([-0.5, 0.0, 0.5])
