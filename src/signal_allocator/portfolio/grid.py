"""Candidate generators for signal-weight and equity-level grids."""

from __future__ import annotations

from itertools import product
from typing import Optional, Sequence

import numpy as np

EXACT_GRID_MAX_SIGNALS = 5
RANDOM_GRID_SAMPLES = 500
EXACT_LEVEL_MAX = 4
RANDOM_LEVEL_SAMPLES = 500
LEVEL_CANDIDATES = (0.0, 0.25, 0.5, 0.75, 1.0)


def _grid_product(n: int, values: Sequence[float]) -> np.ndarray:
    # first column varies fastest
    rows = [tuple(reversed(combo)) for combo in product(values, repeat=n)]
    return np.asarray(rows, dtype=float).reshape(-1, n)


def weight_grid(
    n_signals: int, step: float = 0.1, rng: Optional[np.random.Generator] = None
) -> np.ndarray:
    """Non-negative weight vectors on a ``step`` lattice that sum to one.

    Up to five signals the lattice is enumerated exactly; beyond that 500
    Dirichlet(1) draws are snapped to the lattice and de-duplicated.
    """

    if n_signals < 1:
        raise ValueError("n_signals must be positive")
    if not (0.0 < step <= 1.0):
        raise ValueError("step must lie in (0, 1]")
    if n_signals == 1:
        return np.ones((1, 1))
    units = int(round(1.0 / step))
    if n_signals <= EXACT_GRID_MAX_SIGNALS:
        lattice = _grid_product(n_signals, range(units + 1))
        return lattice[lattice.sum(axis=1) == units] / units
    gen = rng if rng is not None else np.random.default_rng()
    draws = -np.log(gen.random((RANDOM_GRID_SAMPLES, n_signals)))
    snapped = np.round(draws / draws.sum(axis=1, keepdims=True) / step) * step
    totals = snapped.sum(axis=1, keepdims=True)
    # rows that snap to all zeros fall back to equal weights
    rows = np.where(totals > 0, snapped / np.where(totals > 0, totals, 1.0), 1.0 / n_signals)
    return np.unique(rows, axis=0)


def level_combinations(
    n_levels: int,
    candidates: Sequence[float] = LEVEL_CANDIDATES,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Equity-level vectors drawn from ``candidates``: full product up to four levels, else sampled."""

    cand = np.asarray(candidates, dtype=float)
    if n_levels <= EXACT_LEVEL_MAX:
        return _grid_product(n_levels, cand)
    gen = rng if rng is not None else np.random.default_rng()
    n_samples = int(min(RANDOM_LEVEL_SAMPLES, cand.size**n_levels))
    picks = cand[gen.integers(0, cand.size, size=(n_samples, n_levels))]
    return np.unique(picks, axis=0)


__all__ = ["LEVEL_CANDIDATES", "level_combinations", "weight_grid"]
