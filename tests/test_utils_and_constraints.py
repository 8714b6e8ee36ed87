import numpy as np
import pytest

from signal_allocator.constraints import AllocationConstraints, ConstraintPriority
from signal_allocator.utils import canonical_name, resolve_method, round_half_up, sample_std


def test_round_half_up() -> None:
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.4999) == 2
    assert round_half_up(-2.5) == -3


def test_resolve_method_ignores_case_and_separators() -> None:
    assert canonical_name("Robust_Z") == "robustz"
    assert resolve_method("piecewise-linear", ("Step", "PiecewiseLinear")) == "PiecewiseLinear"
    assert resolve_method("nope", ("Step",)) is None


def test_sample_std_short_series_is_zero() -> None:
    assert sample_std(np.array([1.0])) == 0.0
    assert np.allclose(sample_std(np.array([[1.0, 3.0], [2.0, 2.0]])), [np.sqrt(2.0), 0.0])


def test_priority_parsing() -> None:
    assert ConstraintPriority.parse("drawdown") is ConstraintPriority.DRAWDOWN
    assert ConstraintPriority.parse(None) is ConstraintPriority.NONE
    assert ConstraintPriority.parse("Equity_Bounds") is ConstraintPriority.EQUITY_BOUNDS
    with pytest.raises(ValueError):
        ConstraintPriority.parse("whatever")


def test_constraints_validation() -> None:
    with pytest.raises(ValueError):
        AllocationConstraints(eq_min=0.8, eq_max=0.2)
    with pytest.raises(ValueError):
        AllocationConstraints(max_dd=1.5)
    with pytest.raises(ValueError):
        AllocationConstraints.from_overrides({"max_turnover": -1.0})


def test_hard_drawdown_and_stop_level() -> None:
    assert AllocationConstraints().drawdown_stop == float("inf")
    cons = AllocationConstraints(max_dd=0.2, priority="Drawdown")
    assert cons.drawdown_stop == 0.2
    assert cons.hard_drawdown


def test_signal_weight_filter() -> None:
    grid = np.array([[1.0, 0.0], [0.6, 0.4], [0.5, 0.5], [0.0, 1.0]])
    cons = AllocationConstraints(sig_wt_min=0.4, sig_wt_max=0.6)
    kept = cons.filter_signal_weights(grid)
    assert kept.tolist() == [[0.6, 0.4], [0.5, 0.5]]

    tight = AllocationConstraints(sig_wt_min=0.45, sig_wt_max=0.46)
    assert np.allclose(tight.filter_signal_weights(grid), [[0.5, 0.5]])
