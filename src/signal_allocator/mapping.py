"""Mapping functions from a bounded signal to an equity weight in [0, 1]."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy.interpolate import PchipInterpolator, make_interp_spline
from scipy.special import expit

from .utils import resolve_method

logger = logging.getLogger(__name__)

MAPPING_METHODS = ("Step", "Linear", "Sigmoid", "PiecewiseLinear", "Spline", "Power")
NEUTRAL_WEIGHT = 0.5

DEFAULT_THRESHOLDS = (-0.3, 0.0, 0.3)
DEFAULT_LEVELS = (0.0, 0.3, 0.7, 1.0)
DEFAULT_BREAKPOINTS = ((-1.0, 0.0), (-0.3, 0.2), (0.0, 0.5), (0.3, 0.8), (1.0, 1.0))


@dataclass
class MappingParams:
    """Method-specific mapping parameters.

    ``thresholds``/``levels`` drive Step, ``k`` drives Sigmoid, ``breakpoints``
    (rows of ``[signal, weight]``) drive PiecewiseLinear and Spline, ``p``
    drives Power.
    """

    thresholds: List[float] = field(default_factory=lambda: list(DEFAULT_THRESHOLDS))
    levels: List[float] = field(default_factory=lambda: list(DEFAULT_LEVELS))
    k: float = 5.0
    breakpoints: List[List[float]] = field(
        default_factory=lambda: [list(bp) for bp in DEFAULT_BREAKPOINTS]
    )
    p: float = 1.0

    def __post_init__(self) -> None:
        self.thresholds = [float(v) for v in np.asarray(self.thresholds, dtype=float).reshape(-1)]
        self.levels = [float(v) for v in np.asarray(self.levels, dtype=float).reshape(-1)]
        if len(self.levels) != len(self.thresholds) + 1:
            raise ValueError("levels must have exactly one more entry than thresholds")
        bp = np.asarray(self.breakpoints, dtype=float)
        if bp.ndim != 2 or bp.shape[1] != 2 or bp.shape[0] < 2:
            raise ValueError("breakpoints must be an (M, 2) array with M >= 2")
        if np.unique(bp[:, 0]).size != bp.shape[0]:
            raise ValueError("breakpoint signal values must be distinct")
        self.breakpoints = bp.tolist()
        if self.p <= 0.0:
            raise ValueError("p must be positive")

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None) -> "MappingParams":
        if overrides is None:
            return cls()
        base = asdict(cls())
        base.update(overrides)
        if "thresholds" in overrides and "levels" not in overrides:
            k = len(np.asarray(overrides["thresholds"]).reshape(-1))
            base["levels"] = np.linspace(0.0, 1.0, k + 1).tolist()
        return cls(**base)


def step_weights(signal: np.ndarray, thresholds: Sequence[float], levels: Sequence[float]) -> np.ndarray:
    """Level of the first ascending threshold the signal falls below.

    Works on any array shape; thresholds are sorted before use.
    """

    thr = np.sort(np.asarray(thresholds, dtype=float))
    lv = np.asarray(levels, dtype=float)
    sig = np.asarray(signal, dtype=float)
    idx = np.searchsorted(thr, np.where(np.isfinite(sig), sig, 0.0), side="right")
    return np.where(np.isfinite(sig), lv[idx], NEUTRAL_WEIGHT)


def _sorted_breakpoints(breakpoints: Sequence[Sequence[float]]) -> np.ndarray:
    bp = np.asarray(breakpoints, dtype=float)
    return bp[np.argsort(bp[:, 0], kind="stable")]


def _piecewise_linear(signal: np.ndarray, breakpoints: Sequence[Sequence[float]]) -> np.ndarray:
    bp = _sorted_breakpoints(breakpoints)
    return make_interp_spline(bp[:, 0], bp[:, 1], k=1)(signal, extrapolate=True)


def _spline(signal: np.ndarray, breakpoints: Sequence[Sequence[float]]) -> np.ndarray:
    bp = _sorted_breakpoints(breakpoints)
    return PchipInterpolator(bp[:, 0], bp[:, 1], extrapolate=True)(signal)


def map_signal_to_weight(
    signal: Any, method: str = "Sigmoid", params: Optional[MappingParams] = None
) -> np.ndarray:
    """Map signal values to equity weights; NaN signals map to 0.5."""

    prm = params or MappingParams()
    sig = np.asarray(signal, dtype=float)
    resolved = resolve_method(method, MAPPING_METHODS)
    if resolved is None:
        logger.warning("Unknown mapping method '%s', defaulting to Sigmoid", method)
        resolved = "Sigmoid"
        prm = MappingParams()
    with np.errstate(invalid="ignore", over="ignore"):
        if resolved == "Step":
            weights = step_weights(sig, prm.thresholds, prm.levels)
        elif resolved == "Linear":
            weights = (sig + 1.0) / 2.0
        elif resolved == "PiecewiseLinear":
            weights = _piecewise_linear(sig, prm.breakpoints)
        elif resolved == "Spline":
            weights = _spline(sig, prm.breakpoints)
        elif resolved == "Power":
            weights = 0.5 + 0.5 * np.sign(sig) * np.abs(sig) ** prm.p
        else:
            weights = expit(prm.k * sig)
    weights = np.where(np.isfinite(weights), weights, NEUTRAL_WEIGHT)
    return np.clip(weights, 0.0, 1.0)


def mapping_curve(
    method: str, params: Optional[MappingParams] = None, n_points: int = 200, lo: float = -1.0, hi: float = 1.0
) -> Dict[str, np.ndarray]:
    """Sample the mapping on an evenly spaced signal grid for plotting."""

    grid = np.linspace(lo, hi, n_points)
    return {"signal": grid, "weight": map_signal_to_weight(grid, method, params)}


__all__ = [
    "DEFAULT_BREAKPOINTS",
    "MAPPING_METHODS",
    "MappingParams",
    "NEUTRAL_WEIGHT",
    "map_signal_to_weight",
    "mapping_curve",
    "step_weights",
]
