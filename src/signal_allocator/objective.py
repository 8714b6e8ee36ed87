"""Scoring of simulated return paths.

All functions take returns shaped ``(..., M)`` and score along the last axis,
so one call ranks a whole batch of candidates. NaN scores are reported as
``-inf`` so they can never be selected.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .backtest.metrics import annualized_return, annualized_vol, max_drawdown
from .constraints import AllocationConstraints
from .utils import sample_std

RATIO_FLOOR = 1e-12
CALMAR_FLOOR = 1e-8
MIN_DOWNSIDE_OBS = 5
MIN_SCORED_DAYS = 10
DRAWDOWN_PENALTY = 10.0
TURNOVER_PENALTY = 5.0
RISK_PARITY_PENALTY = 10.0


@dataclass
class ObjectiveSpec:
    """Linear blend ``alpha*Sharpe + beta*annReturn - gamma*maxDD`` plus optional terms.

    ``lambda_l2`` and ``kappa_turnover`` only enter the regularized objective.
    """

    alpha: float = 1.0
    beta: float = 0.0
    gamma: float = 0.5
    use_sortino: bool = False
    use_calmar: bool = False
    min_vol: bool = False
    risk_parity: bool = False
    lambda_l2: float = 0.1
    kappa_turnover: float = 0.05
    ann_factor: int = 252

    def __post_init__(self) -> None:
        if self.lambda_l2 < 0.0:
            raise ValueError("lambda_l2 must be non-negative")
        if self.kappa_turnover < 0.0:
            raise ValueError("kappa_turnover must be non-negative")
        if self.ann_factor <= 0:
            raise ValueError("ann_factor must be positive")

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None) -> "ObjectiveSpec":
        if overrides is None:
            return cls()
        base = asdict(cls())
        base.update(overrides)
        return cls(**base)


def _downside_std(r: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    mask = r < 0
    count = mask.sum(axis=-1)
    safe = np.maximum(count, 1)
    mean = np.where(mask, r, 0.0).sum(axis=-1) / safe
    dev = np.where(mask, r - mean[..., None], 0.0)
    var = (dev**2).sum(axis=-1) / np.maximum(count - 1, 1)
    return np.sqrt(var), count


def _core(
    returns: np.ndarray,
    spec: ObjectiveSpec,
    signal_weights: Optional[np.ndarray],
) -> Dict[str, np.ndarray]:
    r = np.asarray(returns, dtype=float)
    k = spec.ann_factor
    ann_ret = annualized_return(r, k)
    ann_vol = annualized_vol(r, k)
    sharpe = ann_ret / np.maximum(RATIO_FLOOR, ann_vol)
    mdd = max_drawdown(r)
    obj = spec.alpha * sharpe + spec.beta * ann_ret - spec.gamma * mdd

    if spec.use_sortino:
        down_std, down_n = _downside_std(r)
        sortino = ann_ret / np.maximum(RATIO_FLOOR, down_std * math.sqrt(k))
        obj = obj + np.where(down_n > MIN_DOWNSIDE_OBS, sortino, 0.0)
    if spec.use_calmar:
        obj = obj + ann_ret / np.maximum(CALMAR_FLOOR, mdd)
    if spec.min_vol:
        obj = obj - ann_vol
    if spec.risk_parity and signal_weights is not None:
        w = np.asarray(signal_weights, dtype=float)
        if w.shape[-1] > 1:
            sigma_w = w * np.asarray(ann_vol)[..., None]
            total = np.maximum(sigma_w.sum(axis=-1, keepdims=True), CALMAR_FLOOR)
            contrib = sigma_w / total
            obj = obj - RISK_PARITY_PENALTY * np.var(contrib, axis=-1, ddof=1)
    return {"objective": obj, "ann_return": ann_ret, "ann_vol": ann_vol, "max_dd": mdd}


def _drawdown_penalty(
    obj: np.ndarray, mdd: np.ndarray, constraints: Optional[AllocationConstraints]
) -> np.ndarray:
    if constraints is None or constraints.max_dd is None:
        return obj
    excess = mdd - constraints.max_dd
    if constraints.hard_drawdown:
        return np.where(excess > 0, -np.inf, obj)
    return np.where(excess > 0, obj - DRAWDOWN_PENALTY * excess, obj)


def _finalize(obj: np.ndarray) -> np.ndarray:
    return np.where(np.isnan(obj), -np.inf, obj)


def composite_objective(
    returns: np.ndarray,
    spec: Optional[ObjectiveSpec] = None,
    constraints: Optional[AllocationConstraints] = None,
    signal_weights: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Base objective with extensions and the drawdown-limit penalty."""

    sp = spec or ObjectiveSpec()
    terms = _core(returns, sp, signal_weights)
    return _finalize(_drawdown_penalty(terms["objective"], terms["max_dd"], constraints))


def regularized_objective(
    returns: np.ndarray,
    signal_weights: np.ndarray,
    equity_weights: np.ndarray,
    spec: Optional[ObjectiveSpec] = None,
    constraints: Optional[AllocationConstraints] = None,
) -> np.ndarray:
    """Base objective minus the L2 pull toward equal weights and the turnover penalty.

    Paths shorter than ten days score ``-inf``.
    """

    sp = spec or ObjectiveSpec()
    r = np.asarray(returns, dtype=float)
    m = r.shape[-1]
    if m < MIN_SCORED_DAYS:
        return np.full(r.shape[:-1], -np.inf)
    w = np.asarray(signal_weights, dtype=float)
    eq = np.asarray(equity_weights, dtype=float)
    terms = _core(r, sp, w)
    n = w.shape[-1]
    l2 = np.sum((w - 1.0 / n) ** 2, axis=-1)
    daily_change = np.abs(np.diff(eq, axis=-1))
    obj = terms["objective"] - sp.lambda_l2 * l2 - sp.kappa_turnover * daily_change.mean(axis=-1)
    if constraints is not None and constraints.max_turnover is not None:
        annual = daily_change.sum(axis=-1) * sp.ann_factor / m
        obj = obj - TURNOVER_PENALTY * np.maximum(0.0, annual - constraints.max_turnover)
    return _finalize(_drawdown_penalty(obj, terms["max_dd"], constraints))


def quick_metrics(returns: np.ndarray, ann_factor: int = 252) -> Dict[str, float]:
    """Sharpe, annualized return and max drawdown; NaN below ten observations."""

    r = np.asarray(returns, dtype=float).reshape(-1)
    if r.size < MIN_SCORED_DAYS:
        nan = float("nan")
        return {"sharpe": nan, "ann_return": nan, "max_dd": nan}
    ann_ret = float(annualized_return(r, ann_factor))
    ann_vol = float(sample_std(r) * math.sqrt(ann_factor))
    return {
        "sharpe": ann_ret / max(RATIO_FLOOR, ann_vol),
        "ann_return": ann_ret,
        "max_dd": float(max_drawdown(r)),
    }


__all__ = ["ObjectiveSpec", "composite_objective", "quick_metrics", "regularized_objective"]
