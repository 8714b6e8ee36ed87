"""Stateless numeric kernels shared by signal construction and normalization."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import numpy as np
import pandas as pd
from scipy.special import ndtr

from .utils import resolve_method

logger = logging.getLogger(__name__)

MAD_SCALE = 1.4826
SCALE_FLOOR = 1e-8
VOL_FLOOR_WINDOW = 504
VOL_FLOOR_MIN_OBS = 20
ACTIVATIONS = ("tanh", "sigmoid", "revert_sigmoid")


def robust_zscore(value: float, history: np.ndarray) -> float:
    """Median/MAD z-score of ``value`` against ``history`` (NaNs ignored)."""

    hist = np.asarray(history, dtype=float)
    hist = hist[np.isfinite(hist)]
    if hist.size == 0:
        return float("nan")
    med = float(np.median(hist))
    mad = float(np.median(np.abs(hist - med)))
    return float((value - med) / (MAD_SCALE * max(mad, SCALE_FLOOR)))


def ewma_vol(returns: np.ndarray, halflife: float) -> np.ndarray:
    """Recursive EWMA volatility seeded with the first squared return."""

    if halflife <= 0:
        raise ValueError("halflife must be positive")
    ret = np.asarray(returns, dtype=float)
    out = np.full(ret.size, np.nan)
    if ret.size == 0:
        return out
    lam = float(np.exp(-np.log(2.0) / halflife))
    var = ret[0] ** 2
    out[0] = np.sqrt(var)
    for t in range(1, ret.size):
        var = lam * var + (1.0 - lam) * ret[t] ** 2
        out[t] = np.sqrt(var)
    return out


def apply_vol_floor(vol: np.ndarray, floor: float = 0.0) -> np.ndarray:
    """Floor a volatility series.

    A positive ``floor`` is applied directly. Zero selects an automatic floor:
    the 5th percentile of the trailing 504-day window, which itself includes
    already-floored values.
    """

    out = np.array(vol, dtype=float, copy=True)
    if floor > 0:
        return np.maximum(out, floor)
    for t in range(out.size):
        window = out[max(0, t - VOL_FLOOR_WINDOW + 1) : t + 1]
        window = window[np.isfinite(window)]
        if window.size >= VOL_FLOOR_MIN_OBS:
            out[t] = max(out[t], float(np.percentile(window, 5, method="hazen")))
    return out


def apply_activation(z: Any, scale: float = 2.0, kind: str = "tanh") -> np.ndarray:
    """Squash z-scores into [-1, 1]."""

    arr = np.asarray(z, dtype=float)
    mode = resolve_method(kind, ACTIVATIONS)
    if mode == "sigmoid":
        return 2.0 * ndtr(arr / scale) - 1.0
    if mode == "revert_sigmoid":
        c = (1.0 + 2.0 / scale**2) ** 0.75
        y = c * (arr / scale) * np.exp(-(arr**2) / (2.0 * scale**2))
        return np.clip(y, -1.0, 1.0)
    if mode is None:
        logger.warning("Unknown activation '%s', defaulting to tanh", kind)
    return np.tanh(arr / scale)


def forward_fill_align(
    source_dates: Sequence[Any], values: Sequence[float], target_dates: Sequence[Any]
) -> np.ndarray:
    """Last value observed at or before each target date."""

    series = pd.Series(np.asarray(values, dtype=float), index=pd.Index(source_dates))
    series = series[~series.index.duplicated(keep="last")].sort_index()
    aligned = series.reindex(pd.Index(target_dates), method="ffill")
    return aligned.to_numpy(dtype=float)


__all__ = [
    "ACTIVATIONS",
    "MAD_SCALE",
    "SCALE_FLOOR",
    "apply_activation",
    "apply_vol_floor",
    "ewma_vol",
    "forward_fill_align",
    "robust_zscore",
]
