"""Backtest simulation and performance reporting."""

from .simulator import BacktestResult, SimulationState, simulate, simulate_batch
from .metrics import PerformanceReport, compute_performance, max_drawdown, series_metrics

__all__ = [
    "BacktestResult",
    "PerformanceReport",
    "SimulationState",
    "compute_performance",
    "max_drawdown",
    "series_metrics",
    "simulate",
    "simulate_batch",
]
