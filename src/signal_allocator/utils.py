from __future__ import annotations

import math
from typing import Iterable, Optional

import numpy as np


def set_seed(seed: int) -> np.random.Generator:
    """Seed numpy's legacy global state and return a fresh generator."""

    np.random.seed(seed)
    return np.random.default_rng(seed)


def canonical_name(name: str) -> str:
    """Lower-case a method name and strip separators (``Robust_Z`` -> ``robustz``)."""

    return "".join(ch for ch in str(name).lower() if ch not in "_- ")


def resolve_method(name: str, choices: Iterable[str]) -> Optional[str]:
    key = canonical_name(name)
    for choice in choices:
        if canonical_name(choice) == key:
            return choice
    return None


def round_half_up(value: float) -> int:
    """Round .5 away from zero instead of to even."""

    return int(math.floor(value + 0.5)) if value >= 0 else -int(math.floor(-value + 0.5))


def sample_std(x: np.ndarray, axis: int = -1) -> np.ndarray:
    """Sample standard deviation (ddof=1); zero where fewer than two observations."""

    arr = np.asarray(x, dtype=float)
    ax = axis % arr.ndim
    if arr.shape[ax] < 2:
        return np.zeros(tuple(s for i, s in enumerate(arr.shape) if i != ax))
    return np.std(arr, axis=ax, ddof=1)


__all__ = ["canonical_name", "resolve_method", "round_half_up", "sample_std", "set_seed"]
