import numpy as np
import pytest

from signal_allocator.backtest import simulate, simulate_batch
from signal_allocator.constraints import AllocationConstraints
from signal_allocator.data import MarketSeries, SignalMatrix
from signal_allocator.mapping import map_signal_to_weight


def test_simulate_is_bit_identical_on_rerun(market) -> None:
    rng = np.random.default_rng(3)
    target = rng.uniform(0.0, 1.0, size=len(market))
    first = simulate(target, market, rebalance_freq=5, tx_cost=0.001)
    second = simulate(target, market, rebalance_freq=5, tx_cost=0.001)
    assert np.array_equal(first.portfolio_return, second.portfolio_return)
    assert np.array_equal(first.equity_weight, second.equity_weight)
    assert np.array_equal(first.turnover, second.turnover)


def test_length_mismatch_is_rejected(market) -> None:
    with pytest.raises(ValueError, match="length"):
        simulate(np.full(len(market) - 1, 0.5), market)


def test_non_finite_targets_are_rejected(market) -> None:
    target = np.full(len(market), 0.5)
    target[10] = np.nan
    with pytest.raises(ValueError, match="finite"):
        simulate(target, market)


def test_turnover_only_on_rebalance_days(market) -> None:
    rng = np.random.default_rng(5)
    target = rng.uniform(0.0, 1.0, size=len(market))
    res = simulate(target, market, rebalance_freq=21, tx_cost=0.001)
    days = np.arange(len(market))
    off_calendar = days % 21 != 0
    assert np.all(res.turnover[off_calendar] == 0.0)
    assert np.count_nonzero(res.turnover) <= int(np.ceil(len(market) / 21))


def test_rebalance_turnover_equals_gap_to_drifted_weight() -> None:
    risk = np.array([0.02, 0.01, -0.01, 0.03])
    cash = np.full(4, 0.001)
    mkt = MarketSeries.from_arrays(risk, cash)
    res = simulate(np.array([0.5, 0.5, 0.8, 0.8]), mkt, rebalance_freq=2, tx_cost=0.0)

    w1 = 0.5 * 1.01 / (0.5 * 1.01 + 0.5 * 1.001)
    assert res.equity_weight[1] == pytest.approx(w1)
    drifted = w1 * 0.99 / (w1 * 0.99 + (1.0 - w1) * 1.001)
    assert res.turnover[2] == pytest.approx(abs(0.8 - drifted))
    assert res.turnover[1] == 0.0
    assert res.turnover[3] == 0.0


def test_full_equity_target_stays_fully_invested(market) -> None:
    res = simulate(np.ones(len(market)), market, rebalance_freq=21, tx_cost=0.001)
    assert np.allclose(res.equity_weight, 1.0)
    assert np.count_nonzero(res.turnover) == 0
    assert np.allclose(res.portfolio_return, market.risk_return)


def test_zero_signal_sigmoid_weight_and_drift() -> None:
    risk = np.array([0.02, 0.01, -0.01])
    cash = np.full(3, 0.001)
    mkt = MarketSeries.from_arrays(risk, cash)
    target = map_signal_to_weight(np.zeros(3), "Sigmoid")
    assert np.all(target == 0.5)

    res = simulate(target, mkt, rebalance_freq=21, tx_cost=0.0)
    w1 = 0.5 * 1.01 / (0.5 * 1.01 + 0.5 * 1.001)
    w2 = w1 * 0.99 / (w1 * 0.99 + (1.0 - w1) * 1.001)
    assert res.equity_weight[0] == 0.5
    assert res.equity_weight[1] == pytest.approx(w1)
    assert res.equity_weight[2] == pytest.approx(w2)
    assert res.portfolio_return[1] == pytest.approx(0.5 * 0.01 + 0.5 * 0.001)
    assert res.portfolio_return[2] == pytest.approx(w1 * -0.01 + (1.0 - w1) * 0.001)


def test_drawdown_stop_hysteresis() -> None:
    risk = np.array([0.0, -0.15, 0.0, 0.0, 0.0, 0.0])
    cash = np.array([0.0, 0.0, 0.05, 0.05, 0.05, 0.0])
    mkt = MarketSeries.from_arrays(risk, cash)
    cons = AllocationConstraints(max_dd=0.1)
    res = simulate(np.ones(6), mkt, rebalance_freq=1, tx_cost=0.0, constraints=cons)

    # day 1 breaches 10%, day 3 sits inside the 5%-10% band, day 4 recovers below 5%
    assert res.stopped.tolist() == [False, True, True, True, False, False]
    assert res.equity_weight.tolist() == [1.0, 0.0, 0.0, 0.0, 1.0, 1.0]


def test_targets_are_clamped_to_equity_bounds(market) -> None:
    cons = AllocationConstraints(eq_min=0.2, eq_max=0.6)
    res = simulate(np.linspace(0.0, 1.0, len(market)), market, rebalance_freq=1, constraints=cons)
    assert res.equity_weight.min() >= 0.2 - 1e-12
    assert res.equity_weight.max() <= 0.6 + 1e-12


def test_batch_rows_match_single_runs(market) -> None:
    rng = np.random.default_rng(9)
    targets = rng.uniform(0.0, 1.0, size=(3, len(market)))
    batch = simulate_batch(targets, market.risk_return, market.cash_return, rebalance_freq=10)
    for i in range(3):
        single = simulate(targets[i], market, rebalance_freq=10)
        assert np.allclose(batch.returns[i], single.portfolio_return)


def test_benchmarks_ignore_rebalancing(market) -> None:
    res = simulate(np.full(len(market), 0.3), market)
    expected = 0.6 * market.risk_return + 0.4 * market.cash_return
    assert np.allclose(res.bench_60_40_return, expected)
    assert np.allclose(res.equity_wealth, np.cumprod(1.0 + market.risk_return))


def test_market_series_coerces_non_finite_returns() -> None:
    mkt = MarketSeries.from_arrays([0.01, np.nan, np.inf], [0.0, 0.0, 0.0])
    assert mkt.risk_return.tolist() == [0.01, 0.0, 0.0]


@pytest.mark.parametrize(
    ("method", "eq_max", "level"),
    [
        ("Linear", 1.0, 1.0),
        ("Step", 1.0, 1.0),
        ("Sigmoid", 1.0, 1.0 / (1.0 + np.exp(-5.0))),
        ("Sigmoid", 0.9, 0.9),
    ],
)
def test_constant_bullish_signal_through_mapping(make_market, method, eq_max, level) -> None:
    mkt = make_market(n_obs=600)
    signals = SignalMatrix(values=np.ones((600, 1)), names=["bull"])
    target = map_signal_to_weight(signals.values[:, 0], method)
    cons = AllocationConstraints(eq_max=eq_max)
    res = simulate(target, mkt, rebalance_freq=21, tx_cost=0.001, constraints=cons)

    assert np.count_nonzero(res.turnover) <= int(np.ceil(600 / 21))
    # a day counter that resets on each trade fires on t = 0, 21, 42, ...
    counter_days = np.arange(600) % 21 == 0
    assert np.all(res.turnover[~counter_days] == 0.0)
    assert np.allclose(res.equity_weight[counter_days], level)
    last_rebalance = np.flatnonzero(counter_days)[-1]
    if level == 1.0:
        assert np.allclose(res.equity_weight, 1.0)
    else:
        assert res.equity_weight[last_rebalance] == pytest.approx(level)
        assert abs(res.equity_weight[-1] - level) < 0.05


def test_market_slice_is_half_open(market) -> None:
    part = market.slice(100, 163)
    assert len(part) == 63
    assert part.dates[0] == market.dates[100]
    assert part.dates[-1] == market.dates[162]
    assert np.array_equal(part.risk_return, market.risk_return[100:163])
    assert np.array_equal(part.cash_return, market.cash_return[100:163])
