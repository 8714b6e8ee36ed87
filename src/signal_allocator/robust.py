"""Regularized signal-weight search with cross-validation or walk-forward refits.

Two protocols share one candidate scorer:

* expanding K-fold CV: fold ``f`` tests rows ``round(T*f/(K+1))`` up to
  ``round(T*(f+1)/(K+1))`` and the winner maximizes the mean fold objective;
* walk-forward: every ``reopt_freq`` days the grid is re-searched on all rows
  seen so far and the winner drives only the following segment.

The optional bootstrap resamples in-sample rows i.i.d. with replacement. It
measures how stable the *selection* is under resampling; it does not
preserve serial dependence and is not a time-series bootstrap.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .backtest.simulator import DEFAULT_REBALANCE_FREQ, DEFAULT_TX_COST, simulate, simulate_batch
from .constraints import AllocationConstraints
from .data.market import MarketSeries, SignalMatrix
from .mapping import MAPPING_METHODS, NEUTRAL_WEIGHT, MappingParams, map_signal_to_weight, mapping_curve
from .objective import ObjectiveSpec, quick_metrics, regularized_objective
from .optimizer import (
    STATUS_COMPUTED,
    STATUS_NEUTRAL,
    FoldRecord,
    OptimizationResult,
    ReoptRecord,
    WeightStability,
    coerce_signals,
    day_status,
    neutral_result,
    report_split,
)
from .parallel import DEFAULT_BATCH_SIZE, first_best, run_tasks, score_candidates
from .portfolio.grid import weight_grid
from .utils import resolve_method, round_half_up

logger = logging.getLogger(__name__)


@dataclass
class RobustConfig:
    """Configuration container for :func:`robust_optimize`."""

    mapping_method: str = "Sigmoid"
    sigmoid_k: float = 5.0
    n_thresholds: int = 3
    n_folds: int = 5
    walk_forward: bool = False
    reopt_freq: int = 252
    walk_forward_split_pct: float = 0.7
    sensitivity: bool = False
    n_boot: int = 100
    rebalance_freq: int = DEFAULT_REBALANCE_FREQ
    tx_cost: float = DEFAULT_TX_COST
    weight_step: float = 0.1
    stop_loss_in_search: bool = False
    seed: int = 42
    max_workers: Optional[int] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    curve_points: int = 200

    def __post_init__(self) -> None:
        if self.sigmoid_k <= 0.0:
            raise ValueError("sigmoid_k must be positive")
        if self.n_thresholds <= 0:
            raise ValueError("n_thresholds must be positive")
        if self.n_folds <= 0:
            raise ValueError("n_folds must be positive")
        if self.reopt_freq <= 0:
            raise ValueError("reopt_freq must be positive")
        if not (0.0 < self.walk_forward_split_pct <= 1.0):
            raise ValueError("walk_forward_split_pct must lie in (0, 1]")
        if self.n_boot <= 0:
            raise ValueError("n_boot must be positive")
        if self.rebalance_freq < 1:
            raise ValueError("rebalance_freq must be at least 1")
        if self.tx_cost < 0.0:
            raise ValueError("tx_cost must be non-negative")
        if not (0.0 < self.weight_step <= 1.0):
            raise ValueError("weight_step must lie in (0, 1]")
        if self.max_workers is not None and self.max_workers <= 0:
            raise ValueError("max_workers must be positive when given")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None) -> "RobustConfig":
        if overrides is None:
            return cls()
        base = asdict(cls())
        base.update(overrides)
        return cls(**base)


def build_mapping_params(method: str, sigmoid_k: float = 5.0, n_thresholds: int = 3) -> MappingParams:
    """Mapping parameters used by the robust search for each method."""

    if method == "Sigmoid":
        return MappingParams(k=sigmoid_k)
    if method == "Step":
        return MappingParams(
            thresholds=np.linspace(-0.5, 0.5, n_thresholds),
            levels=np.linspace(0.0, 1.0, n_thresholds + 1),
        )
    if method == "Power":
        return MappingParams(p=1.0)
    return MappingParams()


def cv_folds(n_obs: int, n_folds: int) -> List[Tuple[int, int, int]]:
    """Expanding-window folds as ``(fold, train_rows, test_stop)``.

    Training covers rows ``[0, train_rows)`` and testing ``[train_rows, test_stop)``.
    Folds whose test range holds fewer than two rows are dropped.
    """

    folds = []
    for fold in range(1, n_folds + 1):
        train_rows = round_half_up(n_obs * fold / (n_folds + 1))
        test_stop = min(round_half_up(n_obs * (fold + 1) / (n_folds + 1)), n_obs)
        if test_stop - train_rows < 2:
            continue
        folds.append((fold, train_rows, test_stop))
    return folds


class RobustOptimizer:
    """Regularized grid search scored out-of-sample."""

    def __init__(
        self,
        config: Optional[Dict[str, Any] | RobustConfig] = None,
        objective: Optional[ObjectiveSpec] = None,
        constraints: Optional[AllocationConstraints] = None,
    ):
        if isinstance(config, RobustConfig):
            self.cfg = config
        else:
            self.cfg = RobustConfig.from_overrides(config)
        self.objective = objective or ObjectiveSpec()
        self.constraints = constraints or AllocationConstraints()
        method = resolve_method(self.cfg.mapping_method, MAPPING_METHODS)
        if method is None:
            logger.warning("Unknown mapping method '%s', defaulting to Sigmoid", self.cfg.mapping_method)
            method = "Sigmoid"
        self.method = method
        self.params = build_mapping_params(method, self.cfg.sigmoid_k, self.cfg.n_thresholds)

    def _equity(self, composite: np.ndarray) -> np.ndarray:
        return self.constraints.clamp_equity(map_signal_to_weight(composite, self.method, self.params))

    def _score(
        self,
        candidates: np.ndarray,
        signals: np.ndarray,
        risk: np.ndarray,
        cash: np.ndarray,
        max_workers: Optional[int],
    ) -> np.ndarray:
        """Regularized objective of every candidate weight vector on one sample."""

        cons = self.constraints
        stop = cons.drawdown_stop if self.cfg.stop_loss_in_search else float("inf")

        def score_rows(rows: np.ndarray) -> np.ndarray:
            w = candidates[rows]
            targets = self._equity((signals @ w.T).T)
            batch = simulate_batch(
                targets,
                risk,
                cash,
                rebalance_freq=self.cfg.rebalance_freq,
                tx_cost=self.cfg.tx_cost,
                eq_min=cons.eq_min,
                eq_max=cons.eq_max,
                drawdown_stop=stop,
            )
            return regularized_objective(batch.returns, w, targets, self.objective, cons)

        return score_candidates(score_rows, candidates.shape[0], max_workers, self.cfg.batch_size)

    def _segment_metrics(self, signals: np.ndarray, market: MarketSeries, weights: np.ndarray) -> Dict[str, float]:
        cons = self.constraints
        search_cons = cons if self.cfg.stop_loss_in_search else AllocationConstraints(
            eq_min=cons.eq_min, eq_max=cons.eq_max
        )
        bt = simulate(
            self._equity(signals @ weights), market, self.cfg.rebalance_freq, self.cfg.tx_cost, search_cons
        )
        return quick_metrics(bt.portfolio_return)

    def _candidates(self, n_signals: int, rng: np.random.Generator) -> np.ndarray:
        return self.constraints.filter_signal_weights(weight_grid(n_signals, self.cfg.weight_step, rng))

    def optimize(self, signals: Any, market: MarketSeries) -> OptimizationResult:
        start_time = perf_counter()
        matrix = coerce_signals(signals, market)
        rng = np.random.default_rng(self.cfg.seed)
        candidates = self._candidates(matrix.n_signals, rng)
        if self.cfg.walk_forward:
            result = self._walk_forward(matrix, market, candidates)
        else:
            result = self._cross_validate(matrix, market, candidates, rng)
        result.regularization = {
            "lambda": self.objective.lambda_l2,
            "kappa": self.objective.kappa_turnover,
        }
        result.curve = mapping_curve(self.method, self.params, self.cfg.curve_points)
        result.optimization_time = perf_counter() - start_time
        return result

    def _cross_validate(
        self,
        matrix: SignalMatrix,
        market: MarketSeries,
        candidates: np.ndarray,
        rng: np.random.Generator,
    ) -> OptimizationResult:
        cfg = self.cfg
        t_obs = matrix.n_obs
        values = matrix.values
        folds = cv_folds(t_obs, cfg.n_folds)
        logger.info(
            "Robust optimization: %d-fold CV, %d signals, %d weight vectors, mapping=%s",
            cfg.n_folds,
            matrix.n_signals,
            candidates.shape[0],
            self.method,
        )
        if not folds:
            return neutral_result(
                matrix, market, self.method, self.params, t_obs,
                f"{t_obs} observations leave no usable {cfg.n_folds}-fold CV test segment",
            )
        skipped = cfg.n_folds - len(folds)
        if skipped:
            logger.warning("Skipped %d CV folds with fewer than two test rows", skipped)

        fold_scores = np.column_stack(
            [
                self._score(
                    candidates,
                    values[train_rows:test_stop],
                    market.risk_return[train_rows:test_stop],
                    market.cash_return[train_rows:test_stop],
                    cfg.max_workers,
                )
                for _, train_rows, test_stop in folds
            ]
        )
        mean_scores = fold_scores.mean(axis=1)
        best_idx, best_obj = first_best(mean_scores)
        message = "OK"
        if best_idx < 0:
            best_idx = 0
            message = "no candidate produced a finite mean CV objective; using the first grid vector"
            logger.warning(message)
        best_w = candidates[best_idx]

        records = []
        for fold, train_rows, test_stop in folds:
            metrics = self._segment_metrics(
                values[train_rows:test_stop], market.slice(train_rows, test_stop), best_w
            )
            records.append(
                FoldRecord(
                    fold=fold,
                    train_end=train_rows - 1,
                    test_start=train_rows,
                    test_end=test_stop - 1,
                    oos_sharpe=metrics["sharpe"],
                    oos_return=metrics["ann_return"],
                    oos_max_dd=metrics["max_dd"],
                )
            )

        split = folds[-1][1]
        composite = values @ best_w
        equity = self._equity(composite)
        bt_in, perf_in, bt_out, perf_out = report_split(
            equity, market, split, cfg.rebalance_freq, cfg.tx_cost, self.constraints
        )
        stability = None
        if cfg.sensitivity:
            stability = self.sensitivity(matrix, market, candidates, split, rng)

        cv_sharpes = np.array([rec.oos_sharpe for rec in records], dtype=float)
        logger.info(
            "Robust optimize: IS Sharpe=%.2f, OOS Sharpe=%.2f, avg CV Sharpe=%.2f",
            perf_in.sharpe if perf_in else float("nan"),
            perf_out.sharpe if perf_out else float("nan"),
            float(np.nanmean(cv_sharpes)) if np.isfinite(cv_sharpes).any() else float("nan"),
        )
        return OptimizationResult(
            weights=best_w,
            signal_names=list(matrix.names),
            mapping_method=self.method,
            mapping_params=self.params,
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
            folds=records,
            weight_stability=stability,
        )

    def _walk_forward(
        self, matrix: SignalMatrix, market: MarketSeries, candidates: np.ndarray
    ) -> OptimizationResult:
        cfg = self.cfg
        t_obs, n = matrix.n_obs, matrix.n_signals
        values = matrix.values
        reopt_points = list(range(cfg.reopt_freq, t_obs + 1, cfg.reopt_freq))
        logger.info(
            "Walk-forward optimization: reopt every %d days, %d refits, %d signals",
            cfg.reopt_freq,
            len(reopt_points),
            n,
        )
        split = min(round_half_up(t_obs * cfg.walk_forward_split_pct), t_obs)
        if not reopt_points:
            return neutral_result(
                matrix, market, self.method, self.params, split,
                f"{t_obs} observations never reach the first re-optimization point ({cfg.reopt_freq})",
            )

        def refit(train_rows: int) -> Tuple[int, float]:
            scores = self._score(
                candidates,
                values[:train_rows],
                market.risk_return[:train_rows],
                market.cash_return[:train_rows],
                None,
            )
            return first_best(scores)

        fits = run_tasks(refit, reopt_points, cfg.max_workers)

        equity = np.full(t_obs, np.nan)
        equity[: cfg.reopt_freq] = NEUTRAL_WEIGHT
        computed = np.zeros(t_obs, dtype=bool)
        current_w = np.full(n, 1.0 / n)
        current_obj = float("-inf")
        records = []
        for train_rows, (idx, value) in zip(reopt_points, fits):
            if idx >= 0:
                current_w, current_obj = candidates[idx], value
            seg_stop = min(train_rows + cfg.reopt_freq, t_obs)
            if train_rows < seg_stop:
                comp = values[train_rows:seg_stop] @ current_w
                equity[train_rows:seg_stop] = self._equity(comp)
                computed[train_rows:seg_stop] = np.isfinite(comp)
            records.append(
                ReoptRecord(
                    train_end=train_rows,
                    segment_start=train_rows,
                    segment_end=seg_stop,
                    weights=np.array(current_w, copy=True),
                    objective=float(value),
                )
            )
        equity[np.isnan(equity)] = NEUTRAL_WEIGHT

        composite = values @ current_w
        bt_in, perf_in, bt_out, perf_out = report_split(
            equity, market, split, cfg.rebalance_freq, cfg.tx_cost, self.constraints
        )
        logger.info(
            "Walk-forward done: IS Sharpe=%.2f, OOS Sharpe=%.2f",
            perf_in.sharpe if perf_in else float("nan"),
            perf_out.sharpe if perf_out else float("nan"),
        )
        return OptimizationResult(
            weights=current_w,
            signal_names=list(matrix.names),
            mapping_method=self.method,
            mapping_params=self.params,
            composite=composite,
            equity_weights=equity,
            status=np.where(computed, STATUS_COMPUTED, STATUS_NEUTRAL).astype(object),
            split_index=split,
            objective=current_obj,
            feasible=True,
            message="OK",
            in_sample=perf_in,
            out_of_sample=perf_out,
            in_sample_backtest=bt_in,
            out_of_sample_backtest=bt_out,
            reoptimizations=records,
        )

    def sensitivity(
        self,
        matrix: SignalMatrix,
        market: MarketSeries,
        candidates: np.ndarray,
        split: int,
        rng: np.random.Generator,
    ) -> WeightStability:
        """Re-run the in-sample selection on ``n_boot`` i.i.d. row resamples."""

        cfg = self.cfg
        n = matrix.n_signals
        draws = rng.integers(0, split, size=(cfg.n_boot, split))
        sig_in = matrix.values[:split]
        risk_in = market.risk_return[:split]
        cash_in = market.cash_return[:split]

        def replicate(idx: np.ndarray) -> np.ndarray:
            scores = self._score(candidates, sig_in[idx], risk_in[idx], cash_in[idx], None)
            best, _ = first_best(scores)
            return candidates[best] if best >= 0 else np.full(n, 1.0 / n)

        samples = np.vstack(run_tasks(replicate, list(draws), cfg.max_workers))
        std = np.std(samples, axis=0, ddof=1) if cfg.n_boot > 1 else np.zeros(n)
        stability = WeightStability(
            mean=samples.mean(axis=0),
            std=std,
            pct5=np.percentile(samples, 5, axis=0, method="hazen"),
            pct95=np.percentile(samples, 95, axis=0, method="hazen"),
            n_boot=cfg.n_boot,
            samples=samples,
        )
        logger.info("Sensitivity: weight std range [%.3f, %.3f]", std.min(), std.max())
        return stability


def robust_optimize(
    signals: Any,
    market: MarketSeries,
    config: Optional[Dict[str, Any] | RobustConfig] = None,
    objective: Optional[ObjectiveSpec] = None,
    constraints: Optional[AllocationConstraints] = None,
) -> OptimizationResult:
    return RobustOptimizer(config, objective, constraints).optimize(signals, market)


__all__ = ["RobustConfig", "RobustOptimizer", "build_mapping_params", "cv_folds", "robust_optimize"]
