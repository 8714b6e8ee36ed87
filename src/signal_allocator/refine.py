from __future__ import annotations

from typing import Callable, Iterable, Optional, Tuple

import numpy as np
from scipy.optimize import OptimizeResult, minimize

REFINE_MAXITER = 200


def refine_slsqp(
    score_fn: Callable[[np.ndarray], float],
    x0: np.ndarray,
    bounds: Iterable[Tuple[float, float]],
    Aeq: Optional[np.ndarray] = None,
    beq: Optional[np.ndarray] = None,
    Aineq: Optional[np.ndarray] = None,
    bineq: Optional[np.ndarray] = None,
    maxiter: int = REFINE_MAXITER,
) -> Tuple[np.ndarray, float, OptimizeResult]:
    """
    SLSQP polish of a parameter vector under box, ``Aeq x = beq`` and
    ``Aineq x <= bineq`` constraints. Maximizes ``score_fn``; non-finite
    scores are treated as a large loss so the solver backs away from them.
    Returns the (clipped) solution, its score and the raw solver result.
    """

    bounds = list(bounds)
    lb = np.array([b[0] for b in bounds], dtype=float)
    ub = np.array([b[1] for b in bounds], dtype=float)

    def proj(x: np.ndarray) -> np.ndarray:
        return np.clip(x, lb, ub)

    def obj(x: np.ndarray) -> float:
        score = float(score_fn(proj(x)))
        return -score if np.isfinite(score) else 1e6

    cons = []
    if Aeq is not None and beq is not None:
        cons.append({"type": "eq", "fun": lambda x, A=Aeq, b=beq: A @ x - b})
    if Aineq is not None and bineq is not None:
        cons.append({"type": "ineq", "fun": lambda x, A=Aineq, b=bineq: b - A @ x})

    res = minimize(
        obj,
        proj(np.asarray(x0, dtype=float)),
        method="SLSQP",
        bounds=bounds,
        constraints=cons,
        options=dict(maxiter=maxiter, ftol=1e-9, disp=False),
    )
    x = proj(res.x if res.success else np.asarray(x0, dtype=float))
    return x, float(score_fn(x)), res


__all__ = ["refine_slsqp"]
