import logging

import numpy as np
import pytest

from signal_allocator.constraints import AllocationConstraints
from signal_allocator.optimizer import STATUS_NEUTRAL
from signal_allocator.robust import RobustConfig, build_mapping_params, cv_folds, robust_optimize


@pytest.mark.parametrize("n_obs,n_folds", [(600, 5), (100, 5), (37, 3), (1000, 10)])
def test_cv_fold_boundaries(n_obs: int, n_folds: int) -> None:
    folds = cv_folds(n_obs, n_folds)
    assert folds
    prev_train, prev_stop = 0, 0
    for fold, train_rows, test_stop in folds:
        train_end, test_start, test_end = train_rows - 1, train_rows, test_stop - 1
        assert train_end < test_start <= test_end <= n_obs - 1
        assert train_rows >= prev_train and test_stop >= prev_stop
        prev_train, prev_stop = train_rows, test_stop
    assert folds[-1][2] == n_obs


def test_cv_folds_match_rounded_boundaries() -> None:
    assert cv_folds(100, 5) == [(1, 17, 33), (2, 33, 50), (3, 50, 67), (4, 67, 83), (5, 83, 100)]


def test_cv_folds_drop_tiny_segments() -> None:
    assert cv_folds(5, 5) == []


def test_step_params_for_robust_search() -> None:
    params = build_mapping_params("Step", n_thresholds=3)
    assert params.thresholds == [-0.5, 0.0, 0.5]
    assert params.levels == pytest.approx([0.0, 1 / 3, 2 / 3, 1.0])
    assert build_mapping_params("Sigmoid", sigmoid_k=3.0).k == 3.0


@pytest.mark.slow
def test_cross_validation_result(market, informative_signals) -> None:
    res = robust_optimize(informative_signals, market, {"n_folds": 5})
    assert res.feasible
    assert res.mapping_method == "Sigmoid"
    assert res.weights.sum() == pytest.approx(1.0)
    assert [f.fold for f in res.folds] == [1, 2, 3, 4, 5]
    for rec in res.folds:
        assert rec.train_end < rec.test_start <= rec.test_end <= len(market) - 1
        assert np.isfinite(rec.oos_sharpe)
    assert res.split_index == 500
    assert res.regularization == {"lambda": 0.1, "kappa": 0.05}
    assert res.curve["signal"][0] == -1.0 and res.curve["signal"][-1] == 1.0
    assert np.all((res.equity_weights >= 0.0) & (res.equity_weights <= 1.0))
    assert res.weight_stability is None


@pytest.mark.slow
def test_cross_validation_respects_signal_bounds(market, informative_signals) -> None:
    cons = AllocationConstraints(sig_wt_min=0.2, sig_wt_max=0.8)
    res = robust_optimize(informative_signals, market, {"mapping_method": "linear"}, constraints=cons)
    assert res.mapping_method == "Linear"
    assert np.all(res.weights >= 0.2 - 1e-9) and np.all(res.weights <= 0.8 + 1e-9)


@pytest.mark.slow
def test_walk_forward_neutral_prefix_and_segments(market, informative_signals) -> None:
    res = robust_optimize(
        informative_signals, market, RobustConfig(walk_forward=True, reopt_freq=100, max_workers=2)
    )
    assert np.all(res.equity_weights[:100] == 0.5)
    assert np.all(res.status[:100] == STATUS_NEUTRAL)
    assert [rec.train_end for rec in res.reoptimizations] == [100, 200, 300, 400, 500, 600]
    for rec in res.reoptimizations:
        assert rec.segment_start == rec.train_end
        assert rec.segment_end == min(rec.train_end + 100, len(market))
        assert rec.weights.sum() == pytest.approx(1.0)
    assert res.split_index == 420


@pytest.mark.slow
def test_walk_forward_has_no_look_ahead(market, informative_signals) -> None:
    cfg = RobustConfig(walk_forward=True, reopt_freq=150)
    base = robust_optimize(informative_signals, market, cfg)
    shocked = np.array(informative_signals, copy=True)
    shocked[450:] = -shocked[450:]
    alt = robust_optimize(shocked, market, cfg)
    assert np.array_equal(base.equity_weights[:450], alt.equity_weights[:450])


def test_walk_forward_too_short_is_neutral(make_market) -> None:
    mkt = make_market(n_obs=80)
    sig = np.zeros((80, 2))
    res = robust_optimize(sig, mkt, {"walk_forward": True, "reopt_freq": 100})
    assert not res.feasible
    assert np.all(res.equity_weights == 0.5)


def test_cv_without_usable_folds_is_neutral(make_market) -> None:
    mkt = make_market(n_obs=5)
    res = robust_optimize(np.zeros((5, 1)), mkt, {"n_folds": 5})
    assert not res.feasible
    assert "CV" in res.message


@pytest.mark.slow
def test_bootstrap_sensitivity_statistics(market, informative_signals) -> None:
    cfg = RobustConfig(sensitivity=True, n_boot=12, seed=5)
    res = robust_optimize(informative_signals, market, cfg)
    stab = res.weight_stability
    assert stab is not None
    assert stab.samples.shape == (12, 2)
    assert np.allclose(stab.samples.sum(axis=1), 1.0)
    assert np.allclose(stab.mean, stab.samples.mean(axis=0))
    assert np.allclose(stab.std, stab.samples.std(axis=0, ddof=1))
    assert np.all(stab.pct5 <= stab.mean + 1e-12)
    assert np.all(stab.mean <= stab.pct95 + 1e-12)

    again = robust_optimize(informative_signals, market, cfg)
    assert np.array_equal(again.weight_stability.samples, stab.samples)


def test_unknown_mapping_warns(caplog, make_market) -> None:
    mkt = make_market(n_obs=5)
    with caplog.at_level(logging.WARNING, logger="signal_allocator.robust"):
        res = robust_optimize(np.zeros((5, 1)), mkt, {"mapping_method": "Cubic"})
    assert "Unknown mapping method" in caplog.text
    assert res.mapping_method == "Sigmoid"
