"""Point-in-time normalization of raw signal columns into [-1, 1].

Every statistic at day ``t`` uses observations ``0..t`` only. Days with fewer
than ``min_history`` finite observations in the look-back are NaN.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .kernels import MAD_SCALE, SCALE_FLOOR
from .utils import resolve_method

logger = logging.getLogger(__name__)

NORMALIZATION_METHODS = ("RobustZ", "StandardZ", "RollingZ", "Percentile", "MinMax")
RANGE_FLOOR = 1e-12


@dataclass
class NormalizationConfig:
    """Parameters shared by the normalization methods."""

    method: str = "RobustZ"
    window: int = 252
    tanh_scale: float = 2.0
    min_history: int = 63

    def __post_init__(self) -> None:
        if self.window <= 0:
            raise ValueError("window must be positive")
        if self.tanh_scale <= 0.0:
            raise ValueError("tanh_scale must be positive")
        if self.min_history <= 0:
            raise ValueError("min_history must be positive")

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None) -> "NormalizationConfig":
        if overrides is None:
            return cls()
        base = asdict(cls())
        base.update(overrides)
        return cls(**base)


def _expanding(x: np.ndarray, min_history: int, stat: Callable[[np.ndarray, float], float]) -> np.ndarray:
    out = np.full(x.size, np.nan)
    for t in range(min_history - 1, x.size):
        hist = x[: t + 1]
        valid = hist[np.isfinite(hist)]
        if valid.size < min_history:
            continue
        out[t] = stat(valid, x[t])
    return out


def _rolling(
    x: np.ndarray, window: int, min_history: int, stat: Callable[[np.ndarray, float], float]
) -> np.ndarray:
    out = np.full(x.size, np.nan)
    start = max(min_history, window) - 1
    for t in range(start, x.size):
        hist = x[max(0, t - window + 1) : t + 1]
        valid = hist[np.isfinite(hist)]
        if valid.size < min_history:
            continue
        out[t] = stat(valid, x[t])
    return out


def _mean_std_z(valid: np.ndarray, value: float) -> float:
    sigma = float(np.std(valid, ddof=1)) if valid.size > 1 else 0.0
    return (value - float(valid.mean())) / max(sigma, SCALE_FLOOR)


def _median_mad_z(valid: np.ndarray, value: float) -> float:
    med = float(np.median(valid))
    mad = float(np.median(np.abs(valid - med)))
    return (value - med) / (MAD_SCALE * max(mad, SCALE_FLOOR))


def robust_z(x: np.ndarray, tanh_scale: float = 2.0, min_history: int = 63) -> np.ndarray:
    return np.tanh(_expanding(x, min_history, _median_mad_z) / tanh_scale)


def standard_z(x: np.ndarray, tanh_scale: float = 2.0, min_history: int = 63) -> np.ndarray:
    return np.tanh(_expanding(x, min_history, _mean_std_z) / tanh_scale)


def rolling_z(
    x: np.ndarray, window: int = 252, tanh_scale: float = 2.0, min_history: int = 63
) -> np.ndarray:
    return np.tanh(_rolling(x, window, min_history, _mean_std_z) / tanh_scale)


def _rank(valid: np.ndarray, value: float) -> float:
    if not np.isfinite(value):
        return np.nan
    return 2.0 * float(np.mean(valid <= value)) - 1.0


def percentile_rank(x: np.ndarray, min_history: int = 63) -> np.ndarray:
    """Expanding empirical rank mapped to ``2*rank - 1``."""

    return _expanding(x, min_history, _rank)


def _min_max(valid: np.ndarray, value: float) -> float:
    lo = float(valid.min())
    rng = float(valid.max()) - lo
    if rng < RANGE_FLOOR:
        return 0.0
    return 2.0 * (value - lo) / rng - 1.0


def min_max(x: np.ndarray, window: int = 252, min_history: int = 63) -> np.ndarray:
    """Rolling min/max rescaling; a degenerate window range maps to exactly 0."""

    return _rolling(x, window, min_history, _min_max)


def normalize_column(x: Sequence[float], config: Optional[NormalizationConfig] = None) -> np.ndarray:
    cfg = config or NormalizationConfig()
    arr = np.asarray(x, dtype=float).reshape(-1)
    method = resolve_method(cfg.method, NORMALIZATION_METHODS)
    if method is None:
        logger.warning("Unknown normalization method '%s', defaulting to RobustZ", cfg.method)
        method = "RobustZ"
    if method == "StandardZ":
        return standard_z(arr, cfg.tanh_scale, cfg.min_history)
    if method == "RollingZ":
        return rolling_z(arr, cfg.window, cfg.tanh_scale, cfg.min_history)
    if method == "Percentile":
        return percentile_rank(arr, cfg.min_history)
    if method == "MinMax":
        return min_max(arr, cfg.window, cfg.min_history)
    return robust_z(arr, cfg.tanh_scale, cfg.min_history)


def normalize_signals(raw: Any, config: Optional[NormalizationConfig] = None, **overrides: Any) -> Any:
    """Normalize each column of ``raw`` independently.

    Accepts a 1-D/2-D array or a DataFrame; a DataFrame comes back with the
    same index and columns.
    """

    cfg = config or NormalizationConfig.from_overrides(overrides or None)
    if isinstance(raw, pd.DataFrame):
        values = raw.to_numpy(dtype=float)
    else:
        values = np.asarray(raw, dtype=float)
    squeeze = values.ndim == 1
    matrix = values.reshape(-1, 1) if squeeze else values
    out = np.full(matrix.shape, np.nan)
    for j in range(matrix.shape[1]):
        out[:, j] = normalize_column(matrix[:, j], cfg)
    logger.info(
        "Signals normalized (%s): %d signals, %d observations", cfg.method, matrix.shape[1], matrix.shape[0]
    )
    if isinstance(raw, pd.DataFrame):
        return pd.DataFrame(out, index=raw.index, columns=raw.columns)
    return out[:, 0] if squeeze else out


__all__ = [
    "NORMALIZATION_METHODS",
    "NormalizationConfig",
    "min_max",
    "normalize_column",
    "normalize_signals",
    "percentile_rank",
    "robust_z",
    "rolling_z",
    "standard_z",
]
