import numpy as np
import pytest

from signal_allocator.backtest.metrics import annualized_return, annualized_vol, max_drawdown
from signal_allocator.constraints import AllocationConstraints
from signal_allocator.objective import (
    ObjectiveSpec,
    composite_objective,
    quick_metrics,
    regularized_objective,
)


@pytest.fixture
def returns() -> np.ndarray:
    rng = np.random.default_rng(42)
    return rng.normal(0.0004, 0.01, size=(3, 300))


def test_base_objective_blend(returns) -> None:
    spec = ObjectiveSpec(alpha=1.0, beta=2.0, gamma=0.5)
    obj = composite_objective(returns, spec)
    sharpe = annualized_return(returns) / annualized_vol(returns)
    expected = sharpe + 2.0 * annualized_return(returns) - 0.5 * max_drawdown(returns)
    assert np.allclose(obj, expected)


def test_optional_terms_are_added(returns) -> None:
    base = composite_objective(returns, ObjectiveSpec())
    calmar = composite_objective(returns, ObjectiveSpec(use_calmar=True))
    assert np.allclose(calmar - base, annualized_return(returns) / max_drawdown(returns))
    minvol = composite_objective(returns, ObjectiveSpec(min_vol=True))
    assert np.allclose(base - minvol, annualized_vol(returns))
    sortino = composite_objective(returns, ObjectiveSpec(use_sortino=True))
    assert np.all(np.isfinite(sortino))


def test_risk_parity_penalizes_uneven_contributions(returns) -> None:
    spec = ObjectiveSpec(risk_parity=True)
    even = composite_objective(returns[:1], spec, signal_weights=np.array([[0.5, 0.5]]))
    skewed = composite_objective(returns[:1], spec, signal_weights=np.array([[0.9, 0.1]]))
    assert even[0] > skewed[0]


def test_drawdown_penalty_soft_and_hard() -> None:
    r = np.concatenate([np.full(20, 0.01), np.full(10, -0.03), np.full(20, 0.005)])[None, :]
    mdd = float(max_drawdown(r)[0])
    assert mdd > 0.1
    base = composite_objective(r, ObjectiveSpec())
    soft = composite_objective(r, ObjectiveSpec(), AllocationConstraints(max_dd=0.1))
    assert soft[0] == pytest.approx(base[0] - 10.0 * (mdd - 0.1))
    hard = composite_objective(r, ObjectiveSpec(), AllocationConstraints(max_dd=0.1, priority="Drawdown"))
    assert hard[0] == float("-inf")


def test_regularized_objective_penalties(returns) -> None:
    spec = ObjectiveSpec(lambda_l2=0.1, kappa_turnover=0.05)
    eq = np.tile(np.linspace(0.2, 0.8, returns.shape[1]), (3, 1))
    w_equal = np.full((3, 2), 0.5)
    w_tilt = np.tile([0.8, 0.2], (3, 1))
    base = composite_objective(returns, spec)
    reg_equal = regularized_objective(returns, w_equal, eq, spec)
    reg_tilt = regularized_objective(returns, w_tilt, eq, spec)
    daily = np.abs(np.diff(eq, axis=-1)).mean(axis=-1)
    assert np.allclose(reg_equal, base - 0.05 * daily)
    assert np.allclose(reg_equal - reg_tilt, 0.1 * (0.09 + 0.09))


def test_regularized_turnover_cap(returns) -> None:
    eq = np.tile(np.resize([0.0, 1.0], returns.shape[1]), (3, 1))
    w = np.full((3, 2), 0.5)
    spec = ObjectiveSpec()
    free = regularized_objective(returns, w, eq, spec)
    capped = regularized_objective(returns, w, eq, spec, AllocationConstraints(max_turnover=10.0))
    annual = np.abs(np.diff(eq, axis=-1)).sum(axis=-1) * 252 / returns.shape[1]
    assert np.allclose(free - capped, 5.0 * (annual - 10.0))


def test_short_paths_score_negative_infinity() -> None:
    r = np.full((2, 9), 0.001)
    out = regularized_objective(r, np.full((2, 1), 1.0), np.full((2, 9), 0.5))
    assert np.all(out == float("-inf"))
    assert np.isnan(quick_metrics(np.zeros(5))["sharpe"])


def test_nan_objective_becomes_negative_infinity() -> None:
    r = np.full((1, 20), np.nan)
    assert composite_objective(r)[0] == float("-inf")
