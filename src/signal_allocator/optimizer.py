from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .backtest.metrics import PerformanceReport, compute_performance
from .backtest.simulator import (
    DEFAULT_REBALANCE_FREQ,
    DEFAULT_TX_COST,
    BacktestResult,
    simulate,
    simulate_batch,
)
from .constraints import AllocationConstraints
from .data.market import MarketSeries, SignalMatrix
from .mapping import NEUTRAL_WEIGHT, MappingParams, step_weights
from .objective import ObjectiveSpec, composite_objective
from .parallel import first_best, run_tasks
from .portfolio.grid import level_combinations, weight_grid
from .refine import refine_slsqp
from .utils import round_half_up

logger = logging.getLogger(__name__)

STATUS_COMPUTED = "computed"
STATUS_NEUTRAL = "neutral"
THRESHOLD_BOUND = 3.0
THRESHOLD_GAP = 0.01


@dataclass
class CompositeConfig:
    """Configuration container for :func:`optimize_composite`."""

    n_thresholds: int = 3
    in_sample_pct: float = 0.7
    rebalance_freq: int = DEFAULT_REBALANCE_FREQ
    tx_cost: float = DEFAULT_TX_COST
    weight_step: float = 0.1
    min_valid_obs: int = 50
    refine: bool = True
    stop_loss_in_search: bool = False
    seed: int = 42
    max_workers: Optional[int] = None
    curve_points: int = 200

    def __post_init__(self) -> None:
        if self.n_thresholds <= 0:
            raise ValueError("n_thresholds must be positive")
        if not (0.0 < self.in_sample_pct <= 1.0):
            raise ValueError("in_sample_pct must lie in (0, 1]")
        if self.rebalance_freq < 1:
            raise ValueError("rebalance_freq must be at least 1")
        if self.tx_cost < 0.0:
            raise ValueError("tx_cost must be non-negative")
        if not (0.0 < self.weight_step <= 1.0):
            raise ValueError("weight_step must lie in (0, 1]")
        if self.min_valid_obs <= 0:
            raise ValueError("min_valid_obs must be positive")
        if self.max_workers is not None and self.max_workers <= 0:
            raise ValueError("max_workers must be positive when given")
        if self.curve_points < 2:
            raise ValueError("curve_points must be at least 2")

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None) -> "CompositeConfig":
        if overrides is None:
            return cls()
        base = asdict(cls())
        base.update(overrides)
        return cls(**base)


@dataclass
class FoldRecord:
    """Out-of-sample metrics of the chosen weights on one CV fold.

    ``train_end``, ``test_start`` and ``test_end`` are inclusive row positions.
    """

    fold: int
    train_end: int
    test_start: int
    test_end: int
    oos_sharpe: float = float("nan")
    oos_return: float = float("nan")
    oos_max_dd: float = float("nan")


@dataclass
class ReoptRecord:
    """One walk-forward re-optimization; the segment is the half-open row range it governs."""

    train_end: int
    segment_start: int
    segment_end: int
    weights: np.ndarray
    objective: float


@dataclass
class WeightStability:
    mean: np.ndarray
    std: np.ndarray
    pct5: np.ndarray
    pct95: np.ndarray
    n_boot: int
    samples: np.ndarray

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean": self.mean.tolist(),
            "std": self.std.tolist(),
            "pct5": self.pct5.tolist(),
            "pct95": self.pct95.tolist(),
            "n_boot": self.n_boot,
        }


@dataclass
class OptimizationResult:
    """Structured result returned by the composite and robust optimizers."""

    weights: np.ndarray
    signal_names: List[str]
    mapping_method: str
    mapping_params: MappingParams
    composite: np.ndarray
    equity_weights: np.ndarray
    status: np.ndarray
    split_index: int
    objective: float
    feasible: bool
    message: str
    in_sample: Optional[PerformanceReport] = None
    out_of_sample: Optional[PerformanceReport] = None
    in_sample_backtest: Optional[BacktestResult] = None
    out_of_sample_backtest: Optional[BacktestResult] = None
    curve: Dict[str, np.ndarray] = field(default_factory=dict)
    folds: List[FoldRecord] = field(default_factory=list)
    reoptimizations: List[ReoptRecord] = field(default_factory=list)
    weight_stability: Optional[WeightStability] = None
    regularization: Dict[str, float] = field(default_factory=dict)
    optimization_time: float = 0.0

    def __post_init__(self) -> None:
        self.weights = np.asarray(self.weights, dtype=float)
        self.composite = np.asarray(self.composite, dtype=float)
        self.equity_weights = np.asarray(self.equity_weights, dtype=float)
        self.status = np.asarray(self.status, dtype=object)
        self.feasible = bool(self.feasible)
        self.split_index = int(self.split_index)

    @property
    def thresholds(self) -> List[float]:
        return list(self.mapping_params.thresholds) if self.mapping_method == "Step" else []

    @property
    def levels(self) -> List[float]:
        return list(self.mapping_params.levels) if self.mapping_method == "Step" else []

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready summary (per-day series excluded)."""

        payload: Dict[str, Any] = {
            "weights": dict(zip(self.signal_names, self.weights.tolist())),
            "mapping_method": self.mapping_method,
            "mapping_params": asdict(self.mapping_params),
            "split_index": self.split_index,
            "objective": self.objective,
            "feasible": self.feasible,
            "message": self.message,
            "neutral_days": int(np.sum(self.status == STATUS_NEUTRAL)),
            "in_sample": self.in_sample.to_dict() if self.in_sample else None,
            "out_of_sample": self.out_of_sample.to_dict() if self.out_of_sample else None,
            "folds": [asdict(fold) for fold in self.folds],
            "reoptimizations": [
                {
                    "train_end": rec.train_end,
                    "segment_start": rec.segment_start,
                    "segment_end": rec.segment_end,
                    "weights": rec.weights.tolist(),
                    "objective": rec.objective,
                }
                for rec in self.reoptimizations
            ],
            "regularization": dict(self.regularization),
            "optimization_time": self.optimization_time,
        }
        if self.weight_stability is not None:
            payload["weight_stability"] = self.weight_stability.to_dict()
        return payload

    def daily_frame(self, dates: Optional[pd.Index] = None) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "composite": self.composite,
                "equity_weight": self.equity_weights,
                "status": self.status,
            },
            index=dates,
        )


def coerce_signals(signals: Any, market: MarketSeries) -> SignalMatrix:
    """Accept a SignalMatrix, DataFrame or array and check it lines up with ``market``."""

    if isinstance(signals, SignalMatrix):
        matrix = signals
    elif isinstance(signals, pd.DataFrame):
        matrix = SignalMatrix.from_frame(signals)
    else:
        matrix = SignalMatrix(values=np.asarray(signals, dtype=float))
    if matrix.n_obs != len(market):
        raise ValueError(
            f"signal rows ({matrix.n_obs}) must match market length ({len(market)})"
        )
    if matrix.n_signals == 0:
        raise ValueError("at least one signal column is required")
    return matrix


def day_status(composite: np.ndarray) -> np.ndarray:
    return np.where(np.isfinite(composite), STATUS_COMPUTED, STATUS_NEUTRAL).astype(object)


def report_split(
    equity_weights: np.ndarray,
    market: MarketSeries,
    split_index: int,
    rebalance_freq: int,
    tx_cost: float,
    constraints: AllocationConstraints,
) -> Tuple[
    Optional[BacktestResult], Optional[PerformanceReport], Optional[BacktestResult], Optional[PerformanceReport]
]:
    """Backtest and report the in-sample ``[0, split)`` and out-of-sample ``[split, T)`` ranges."""

    n = len(market)
    bt_in = perf_in = bt_out = perf_out = None
    if split_index > 0:
        bt_in = simulate(equity_weights[:split_index], market.slice(0, split_index), rebalance_freq, tx_cost, constraints)
        perf_in = compute_performance(bt_in)
    if split_index < n:
        bt_out = simulate(equity_weights[split_index:], market.slice(split_index, n), rebalance_freq, tx_cost, constraints)
        perf_out = compute_performance(bt_out)
    return bt_in, perf_in, bt_out, perf_out


def neutral_result(
    matrix: SignalMatrix,
    market: MarketSeries,
    method: str,
    params: MappingParams,
    split_index: int,
    message: str,
) -> OptimizationResult:
    """Flat 0.5 allocation returned when the search has nothing to train on."""

    logger.warning("Optimization infeasible: %s", message)
    n = matrix.n_signals
    t = len(market)
    return OptimizationResult(
        weights=np.full(n, 1.0 / n),
        signal_names=list(matrix.names),
        mapping_method=method,
        mapping_params=params,
        composite=np.full(t, np.nan),
        equity_weights=np.full(t, NEUTRAL_WEIGHT),
        status=np.full(t, STATUS_NEUTRAL, dtype=object),
        split_index=split_index,
        objective=float("-inf"),
        feasible=False,
        message=message,
    )


def _level_targets(composite: np.ndarray, thresholds: np.ndarray, levels: np.ndarray) -> np.ndarray:
    """Step weights for every row of ``levels`` at once: ``(L, K+1) -> (L, M)``."""

    finite = np.isfinite(composite)
    idx = np.searchsorted(thresholds, np.where(finite, composite, 0.0), side="right")
    targets = levels[:, idx]
    targets[:, ~finite] = NEUTRAL_WEIGHT
    return targets


class CompositeOptimizer:
    """Grid search over signal weights, step thresholds and equity levels."""

    def __init__(
        self,
        config: Optional[Dict[str, Any] | CompositeConfig] = None,
        objective: Optional[ObjectiveSpec] = None,
        constraints: Optional[AllocationConstraints] = None,
    ):
        if isinstance(config, CompositeConfig):
            self.cfg = config
        else:
            self.cfg = CompositeConfig.from_overrides(config)
        self.objective = objective or ObjectiveSpec()
        self.constraints = constraints or AllocationConstraints()

    def _search_stop(self) -> float:
        return self.constraints.drawdown_stop if self.cfg.stop_loss_in_search else float("inf")

    def _score_levels(
        self, targets: np.ndarray, market_in: MarketSeries, weights: np.ndarray
    ) -> np.ndarray:
        cons = self.constraints
        batch = simulate_batch(
            cons.clamp_equity(targets),
            market_in.risk_return,
            market_in.cash_return,
            rebalance_freq=self.cfg.rebalance_freq,
            tx_cost=self.cfg.tx_cost,
            eq_min=cons.eq_min,
            eq_max=cons.eq_max,
            drawdown_stop=self._search_stop(),
        )
        return composite_objective(batch.returns, self.objective, cons, signal_weights=weights)

    def _score_params(
        self,
        sig_in: np.ndarray,
        market_in: MarketSeries,
        weights: np.ndarray,
        thresholds: np.ndarray,
        levels: np.ndarray,
    ) -> float:
        targets = _level_targets(sig_in @ weights, thresholds, np.asarray(levels)[None, :])
        return float(self._score_levels(targets, market_in, weights)[0])

    def _refine(
        self,
        sig_in: np.ndarray,
        market_in: MarketSeries,
        weights: np.ndarray,
        thresholds: np.ndarray,
        levels: np.ndarray,
    ) -> Optional[Tuple[np.ndarray, np.ndarray, np.ndarray, float]]:
        n, k = weights.size, thresholds.size
        cons = self.constraints

        def unpack(x: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
            return x[:n], np.sort(x[n : n + k]), x[n + k :]

        def score(x: np.ndarray) -> float:
            w, thr, lv = unpack(x)
            return self._score_params(sig_in, market_in, w, thr, lv)

        x0 = np.concatenate([weights, thresholds, levels])
        bounds = (
            [(cons.sig_wt_min, cons.sig_wt_max)] * n
            + [(-THRESHOLD_BOUND, THRESHOLD_BOUND)] * k
            + [(0.0, 1.0)] * (k + 1)
        )
        Aeq = np.zeros((1, x0.size))
        Aeq[0, :n] = 1.0
        Aineq = bineq = None
        if k > 1:
            Aineq = np.zeros((k - 1, x0.size))
            for i in range(k - 1):
                Aineq[i, n + i] = 1.0
                Aineq[i, n + i + 1] = -1.0
            bineq = np.full(k - 1, -THRESHOLD_GAP)
        x, value, res = refine_slsqp(score, x0, bounds, Aeq, np.ones(1), Aineq, bineq)
        if not np.isfinite(value):
            return None
        w, thr, lv = unpack(x)
        total = w.sum()
        if total <= 0:
            return None
        w = w / total
        if np.any(w < cons.sig_wt_min - 1e-6) or np.any(w > cons.sig_wt_max + 1e-6):
            return None
        # SLSQP holds sum(w) == 1 only to tolerance
        value = self._score_params(sig_in, market_in, w, thr, lv)
        logger.debug("SLSQP refinement finished: %s", res.message)
        if not np.isfinite(value):
            return None
        return w, thr, lv, value

    def optimize(self, signals: Any, market: MarketSeries) -> OptimizationResult:
        """Run the grid search (and optional refinement) and report the winner."""

        start_time = perf_counter()
        cfg = self.cfg
        cons = self.constraints
        matrix = coerce_signals(signals, market)
        t_obs, n = matrix.n_obs, matrix.n_signals
        k = cfg.n_thresholds
        split = min(max(round_half_up(t_obs * cfg.in_sample_pct), 0), t_obs)
        rng = np.random.default_rng(cfg.seed)

        default_params = MappingParams(
            thresholds=np.linspace(-0.5, 0.5, k), levels=np.linspace(0.0, 1.0, k + 1)
        )
        candidates = cons.filter_signal_weights(weight_grid(n, cfg.weight_step, rng))
        level_sets = level_combinations(k + 1, rng=rng)
        sig_in = matrix.values[:split]
        market_in = market.slice(0, split)
        pctiles = np.linspace(10.0, 90.0, k + 2)[1:-1]
        logger.info(
            "Optimizing composite signal: %d signals, %d thresholds, %d weight vectors x %d level sets",
            n,
            k,
            candidates.shape[0],
            level_sets.shape[0],
        )

        def evaluate(i: int) -> Optional[Tuple[float, int, np.ndarray]]:
            w = candidates[i]
            comp_in = sig_in @ w
            valid = comp_in[np.isfinite(comp_in)]
            if valid.size < cfg.min_valid_obs:
                return None
            thr = np.sort(np.percentile(valid, pctiles, method="hazen"))
            scores = self._score_levels(_level_targets(comp_in, thr, level_sets), market_in, w)
            j, value = first_best(scores)
            return value, j, thr

        outcomes = run_tasks(evaluate, range(candidates.shape[0]), cfg.max_workers)
        if all(outcome is None for outcome in outcomes):
            return neutral_result(
                matrix,
                market,
                "Step",
                default_params,
                split,
                f"fewer than {cfg.min_valid_obs} valid in-sample composite values for every weight vector",
            )

        best_obj = float("-inf")
        best_w = np.full(n, 1.0 / n)
        best_thr = np.asarray(default_params.thresholds)
        best_lv = np.asarray(default_params.levels)
        for i, outcome in enumerate(outcomes):
            if outcome is None:
                continue
            value, j, thr = outcome
            if j >= 0 and value > best_obj:
                best_obj, best_w, best_thr, best_lv = value, candidates[i], thr, level_sets[j]
        message = "OK"
        if not np.isfinite(best_obj):
            message = "no candidate produced a finite objective; using default parameters"
            logger.warning(message)

        if cfg.refine and np.isfinite(best_obj):
            refined = self._refine(sig_in, market_in, best_w, best_thr, best_lv)
            if refined is not None and refined[3] > best_obj:
                logger.info("SLSQP improved objective: %.4f -> %.4f", best_obj, refined[3])
                best_w, best_thr, best_lv, best_obj = refined

        params = MappingParams(thresholds=best_thr, levels=best_lv)
        composite = matrix.values @ best_w
        equity = cons.clamp_equity(step_weights(composite, params.thresholds, params.levels))
        bt_in, perf_in, bt_out, perf_out = report_split(
            equity, market, split, cfg.rebalance_freq, cfg.tx_cost, cons
        )
        finite = composite[np.isfinite(composite)]
        lo, hi = (finite.min() - 0.5, finite.max() + 0.5) if finite.size else (-1.5, 1.5)
        grid = np.linspace(lo, hi, cfg.curve_points)
        result = OptimizationResult(
            weights=best_w,
            signal_names=list(matrix.names),
            mapping_method="Step",
            mapping_params=params,
            composite=composite,
            equity_weights=equity,
            status=day_status(composite),
            split_index=split,
            objective=best_obj,
            feasible=bool(np.isfinite(best_obj)),
            message=message,
            in_sample=perf_in,
            out_of_sample=perf_out,
            in_sample_backtest=bt_in,
            out_of_sample_backtest=bt_out,
            curve={"signal": grid, "weight": step_weights(grid, params.thresholds, params.levels)},
            optimization_time=perf_counter() - start_time,
        )
        logger.info(
            "Composite optimized: IS Sharpe=%.2f, OOS Sharpe=%.2f",
            perf_in.sharpe if perf_in else float("nan"),
            perf_out.sharpe if perf_out else float("nan"),
        )
        return result


def optimize_composite(
    signals: Any,
    market: MarketSeries,
    config: Optional[Dict[str, Any] | CompositeConfig] = None,
    objective: Optional[ObjectiveSpec] = None,
    constraints: Optional[AllocationConstraints] = None,
) -> OptimizationResult:
    return CompositeOptimizer(config, objective, constraints).optimize(signals, market)


__all__ = [
    "CompositeConfig",
    "CompositeOptimizer",
    "FoldRecord",
    "OptimizationResult",
    "ReoptRecord",
    "STATUS_COMPUTED",
    "STATUS_NEUTRAL",
    "WeightStability",
    "coerce_signals",
    "day_status",
    "neutral_result",
    "optimize_composite",
    "report_split",
]
