"""Order-preserving task dispatch for candidate evaluation.

Every task is a pure function of its inputs, so results are reduced in
submission order and ties always resolve to the earliest candidate.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 256


def run_tasks(fn: Callable[[T], R], items: Iterable[T], max_workers: Optional[int] = None) -> List[R]:
    """Apply ``fn`` to each item; serial when ``max_workers`` is None or 1."""

    work = list(items)
    if max_workers is None or max_workers <= 1 or len(work) <= 1:
        return [fn(item) for item in work]
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(fn, item) for item in work]
        return [fut.result() for fut in futures]


def batch_slices(n_items: int, batch_size: int = DEFAULT_BATCH_SIZE) -> List[slice]:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return [slice(start, min(start + batch_size, n_items)) for start in range(0, n_items, batch_size)]


def score_candidates(
    score_fn: Callable[[np.ndarray], np.ndarray],
    n_candidates: int,
    max_workers: Optional[int] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> np.ndarray:
    """Score candidate indices ``0..n-1`` in batches and concatenate the scores."""

    if n_candidates == 0:
        return np.empty(0)
    chunks = run_tasks(
        lambda sl: np.asarray(score_fn(np.arange(sl.start, sl.stop)), dtype=float),
        batch_slices(n_candidates, batch_size),
        max_workers,
    )
    return np.concatenate(chunks)


def first_best(scores: Sequence[float]) -> Tuple[int, float]:
    """Index and value of the maximum; the first index wins ties, NaN never wins.

    Returns ``(-1, -inf)`` when nothing beats ``-inf``.
    """

    arr = np.asarray(scores, dtype=float)
    if arr.size == 0:
        return -1, float("-inf")
    clean = np.where(np.isnan(arr), -np.inf, arr)
    idx = int(np.argmax(clean))
    if not np.isfinite(clean[idx]) and clean[idx] < 0:
        return -1, float("-inf")
    return idx, float(clean[idx])


__all__ = ["DEFAULT_BATCH_SIZE", "batch_slices", "first_best", "run_tasks", "score_candidates"]
