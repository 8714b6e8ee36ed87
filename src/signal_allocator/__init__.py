"""Signal allocator public API."""
from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:  # runtime package version
    __version__ = version("signal-allocator")
except PackageNotFoundError:  # editable/dev env
    __version__ = "0.0.0+local"

from .backtest import BacktestResult, PerformanceReport, compute_performance, simulate
from .constraints import AllocationConstraints, ConstraintPriority
from .data import MarketSeries, SignalMatrix, load_market_csv, load_signal_csv
from .mapping import MappingParams, map_signal_to_weight
from .normalization import NormalizationConfig, normalize_signals
from .objective import ObjectiveSpec
from .optimizer import CompositeConfig, OptimizationResult, optimize_composite
from .robust import RobustConfig, robust_optimize
from .scenario import DEFAULT_EPISODES, stress_test
from .signals import build_signal, generate_demo_signals

__all__ = [
    "AllocationConstraints",
    "BacktestResult",
    "CompositeConfig",
    "ConstraintPriority",
    "DEFAULT_EPISODES",
    "MappingParams",
    "MarketSeries",
    "NormalizationConfig",
    "ObjectiveSpec",
    "OptimizationResult",
    "PerformanceReport",
    "RobustConfig",
    "SignalMatrix",
    "__version__",
    "build_signal",
    "compute_performance",
    "generate_demo_signals",
    "load_market_csv",
    "load_signal_csv",
    "map_signal_to_weight",
    "normalize_signals",
    "optimize_composite",
    "robust_optimize",
    "simulate",
    "stress_test",
]
