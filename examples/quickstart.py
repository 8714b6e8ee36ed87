import numpy as np
import pandas as pd

from signal_allocator import (
    AllocationConstraints,
    MarketSeries,
    ObjectiveSpec,
    compute_performance,
    normalize_signals,
    optimize_composite,
    robust_optimize,
    simulate,
    stress_test,
)
from signal_allocator.utils import set_seed

rng = set_seed(42)
T = 1500
dates = pd.bdate_range("2016-01-01", periods=T)
risk = rng.normal(0.0004, 0.011, T)
cash = np.full(T, 0.00008)
market = MarketSeries.from_arrays(risk, cash, dates)

# two raw indicators: a noisy lead of the risk return and a random walk
raw = pd.DataFrame(
    {
        "lead": pd.Series(np.roll(risk, -5)).rolling(20, min_periods=1).mean().to_numpy(),
        "walk": np.cumsum(rng.normal(size=T)),
    },
    index=dates,
)
signals = normalize_signals(raw, method="RobustZ", min_history=63)

constraints = AllocationConstraints(eq_min=0.1, eq_max=0.9, max_dd=0.25)
objective = ObjectiveSpec(alpha=1.0, gamma=0.5, use_sortino=True)

comp = optimize_composite(signals, market, {"refine": False}, objective, constraints)
print("Composite weights:", dict(zip(comp.signal_names, np.round(comp.weights, 3))))
print("Thresholds:", np.round(comp.thresholds, 3), "| Levels:", comp.levels)

rob = robust_optimize(signals, market, {"mapping_method": "Sigmoid", "n_folds": 5}, objective, constraints)
print("Robust weights:", dict(zip(rob.signal_names, np.round(rob.weights, 3))))
for fold in rob.folds:
    print(f"  fold {fold.fold}: OOS Sharpe {fold.oos_sharpe:.2f}")

bt = simulate(rob.equity_weights, market, 21, 0.001, constraints)
print(compute_performance(bt).table.round(2))
print(stress_test(bt)[["episode", "strategy_pct", "equity_pct"]])
