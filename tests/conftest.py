"""Pytest configuration helpers for the test suite."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import numpy as np
import pandas as pd
import pytest

_HERE = Path(__file__).resolve()
_PKG_ROOT = _HERE.parents[1]
_SRC = _PKG_ROOT / "src"

if _SRC.is_dir():
    p = str(_SRC)
    if p not in sys.path:
        sys.path.insert(0, p)

from signal_allocator.data import MarketSeries  # noqa: E402


def _market(n_obs: int = 600, seed: int = 7, mu: float = 0.0004, sigma: float = 0.01) -> MarketSeries:
    rng = np.random.default_rng(seed)
    dates = pd.bdate_range("2015-01-01", periods=n_obs)
    risk = rng.normal(mu, sigma, size=n_obs)
    cash = np.full(n_obs, 0.0001)
    return MarketSeries.from_arrays(risk, cash, dates)


@pytest.fixture
def make_market() -> Callable[..., MarketSeries]:
    return _market


@pytest.fixture
def market() -> MarketSeries:
    return _market()


@pytest.fixture
def informative_signals(market: MarketSeries) -> np.ndarray:
    """Two bounded signals: one that peeks at the next return sign, one noise."""

    rng = np.random.default_rng(11)
    nxt = np.roll(market.risk_return, -1)
    good = np.tanh(nxt / 0.01)
    noise = np.tanh(rng.normal(size=len(market)))
    return np.column_stack([good, noise])
