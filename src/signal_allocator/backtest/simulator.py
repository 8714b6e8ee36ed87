"""Equity/cash backtest with drift, periodic rebalancing and a drawdown stop.

The day loop runs once for a whole batch of candidate target-weight paths
(rows of a ``(C, T)`` array), so grid searches pay the Python loop cost once
per search instead of once per candidate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from ..constraints import AllocationConstraints
from ..data.market import MarketSeries

logger = logging.getLogger(__name__)

DEFAULT_REBALANCE_FREQ = 21
DEFAULT_TX_COST = 0.001
BENCH_RISK_SHARE = 0.6
DRIFT_EPS = 1e-12
STOP_RELEASE_FRACTION = 0.5


@dataclass
class SimulationState:
    """Per-candidate state threaded through the day loop.

    ``days_since_rebalance`` is shared: the rebalance calendar does not
    depend on the weights.
    """

    held_weight: np.ndarray
    days_since_rebalance: int
    wealth: np.ndarray
    running_max: np.ndarray
    stopped: np.ndarray

    @classmethod
    def start(cls, initial_weight: np.ndarray) -> "SimulationState":
        n = initial_weight.shape[0]
        return cls(
            held_weight=initial_weight.astype(float, copy=True),
            days_since_rebalance=0,
            wealth=np.ones(n),
            running_max=np.ones(n),
            stopped=np.zeros(n, dtype=bool),
        )


@dataclass
class BatchSimulation:
    returns: np.ndarray
    weights: np.ndarray
    turnover: np.ndarray
    stopped: np.ndarray


def simulate_batch(
    targets: np.ndarray,
    risk_return: np.ndarray,
    cash_return: np.ndarray,
    rebalance_freq: int = DEFAULT_REBALANCE_FREQ,
    tx_cost: float = DEFAULT_TX_COST,
    eq_min: float = 0.0,
    eq_max: float = 1.0,
    drawdown_stop: float = float("inf"),
) -> BatchSimulation:
    """Simulate every row of ``targets`` against the same return series.

    Each day: realize the return on the held weight, update wealth and the
    drawdown, drift the weight, update the stop state, then either rebalance
    to the clamped target (charging ``turnover * tx_cost``) or carry the
    drifted weight.
    """

    tgt = np.atleast_2d(np.asarray(targets, dtype=float))
    risk = np.asarray(risk_return, dtype=float)
    cash = np.asarray(cash_return, dtype=float)
    n_cand, n_days = tgt.shape
    if n_days != risk.size or risk.size != cash.size:
        raise ValueError(
            f"target weight length ({n_days}) must match return length ({risk.size})"
        )
    if not np.all(np.isfinite(tgt)):
        raise ValueError("target weights must be finite")
    if rebalance_freq < 1:
        raise ValueError("rebalance_freq must be at least 1")

    clamped = np.clip(tgt, eq_min, eq_max)
    returns = np.zeros((n_cand, n_days))
    weights = np.zeros((n_cand, n_days))
    turnover = np.zeros((n_cand, n_days))
    stopped_path = np.zeros((n_cand, n_days), dtype=bool)
    if n_days == 0:
        return BatchSimulation(returns, weights, turnover, stopped_path)

    has_stop = bool(np.isfinite(drawdown_stop))
    state = SimulationState.start(clamped[:, 0])
    for t in range(n_days):
        w = state.held_weight
        gross_risk = w * (1.0 + risk[t])
        denom = gross_risk + (1.0 - w) * (1.0 + cash[t])
        day_ret = w * risk[t] + (1.0 - w) * cash[t]

        state.wealth = state.wealth * (1.0 + day_ret)
        state.running_max = np.maximum(state.running_max, state.wealth)
        drawdown = 1.0 - state.wealth / state.running_max

        safe = np.abs(denom) > DRIFT_EPS
        drifted = np.where(safe, gross_risk / np.where(safe, denom, 1.0), w)
        state.days_since_rebalance += 1

        if has_stop:
            release = drawdown < drawdown_stop * STOP_RELEASE_FRACTION
            state.stopped = (drawdown >= drawdown_stop) | (state.stopped & ~release)

        target = np.where(state.stopped, eq_min, clamped[:, t])
        if state.days_since_rebalance >= rebalance_freq or t == 0:
            traded = np.abs(target - drifted)
            turnover[:, t] = traded
            day_ret = day_ret - traded * tx_cost
            state.held_weight = target
            state.days_since_rebalance = 0
        else:
            state.held_weight = drifted

        returns[:, t] = day_ret
        weights[:, t] = state.held_weight
        stopped_path[:, t] = state.stopped
    return BatchSimulation(returns, weights, turnover, stopped_path)


@dataclass
class BacktestResult:
    """Daily record of a single simulation plus its passive benchmarks."""

    dates: pd.Index
    portfolio_return: np.ndarray
    wealth: np.ndarray
    equity_weight: np.ndarray
    target_weight: np.ndarray
    turnover: np.ndarray
    stopped: np.ndarray
    bench_60_40_return: np.ndarray
    bench_60_40_wealth: np.ndarray
    equity_return: np.ndarray
    equity_wealth: np.ndarray

    def __post_init__(self) -> None:
        for name in (
            "portfolio_return",
            "wealth",
            "equity_weight",
            "target_weight",
            "turnover",
            "bench_60_40_return",
            "bench_60_40_wealth",
            "equity_return",
            "equity_wealth",
        ):
            arr = np.array(getattr(self, name), dtype=float)
            arr.setflags(write=False)
            setattr(self, name, arr)
        stopped = np.array(self.stopped, dtype=bool)
        stopped.setflags(write=False)
        self.stopped = stopped

    def __len__(self) -> int:
        return int(self.portfolio_return.size)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "portfolio_return": self.portfolio_return,
                "wealth": self.wealth,
                "equity_weight": self.equity_weight,
                "target_weight": self.target_weight,
                "turnover": self.turnover,
                "stopped": self.stopped,
                "bench_60_40_wealth": self.bench_60_40_wealth,
                "equity_wealth": self.equity_wealth,
            },
            index=self.dates,
        )

    def summary(self) -> Dict[str, Any]:
        if len(self) == 0:
            return {"days": 0}
        return {
            "days": len(self),
            "final_wealth": float(self.wealth[-1]),
            "final_60_40": float(self.bench_60_40_wealth[-1]),
            "final_equity": float(self.equity_wealth[-1]),
            "total_turnover": float(self.turnover.sum()),
            "rebalances": int(np.count_nonzero(self.turnover)),
        }


def simulate(
    target_weights: Any,
    market: MarketSeries,
    rebalance_freq: int = DEFAULT_REBALANCE_FREQ,
    tx_cost: float = DEFAULT_TX_COST,
    constraints: Optional[AllocationConstraints] = None,
) -> BacktestResult:
    """Run one equity/cash backtest of ``target_weights`` over ``market``."""

    cons = constraints or AllocationConstraints()
    target = np.asarray(target_weights, dtype=float).reshape(-1)
    if target.size != len(market):
        raise ValueError(
            f"target weight length ({target.size}) must match return length ({len(market)})"
        )
    if tx_cost < 0.0:
        raise ValueError("tx_cost must be non-negative")
    batch = simulate_batch(
        target[None, :],
        market.risk_return,
        market.cash_return,
        rebalance_freq=rebalance_freq,
        tx_cost=tx_cost,
        eq_min=cons.eq_min,
        eq_max=cons.eq_max,
        drawdown_stop=cons.drawdown_stop,
    )
    port = batch.returns[0]
    bench_ret = BENCH_RISK_SHARE * market.risk_return + (1.0 - BENCH_RISK_SHARE) * market.cash_return
    result = BacktestResult(
        dates=market.dates,
        portfolio_return=port,
        wealth=np.cumprod(1.0 + port),
        equity_weight=batch.weights[0],
        target_weight=target,
        turnover=batch.turnover[0],
        stopped=batch.stopped[0],
        bench_60_40_return=bench_ret,
        bench_60_40_wealth=np.cumprod(1.0 + bench_ret),
        equity_return=market.risk_return,
        equity_wealth=np.cumprod(1.0 + market.risk_return),
    )
    summary = result.summary()
    if summary["days"]:
        logger.info(
            "Backtest: %d days, final wealth=%.2f, 60/40=%.2f, equity=%.2f",
            summary["days"],
            summary["final_wealth"],
            summary["final_60_40"],
            summary["final_equity"],
        )
    return result


__all__ = [
    "BacktestResult",
    "BatchSimulation",
    "DEFAULT_REBALANCE_FREQ",
    "DEFAULT_TX_COST",
    "SimulationState",
    "simulate",
    "simulate_batch",
]
