"""Property-based regression tests for the bounded-output invariants."""

from __future__ import annotations

import numpy as np
import pytest

hypothesis = pytest.importorskip("hypothesis")
from hypothesis import given, settings  # type: ignore
from hypothesis import strategies as st  # type: ignore


HYPOTHESIS_EXAMPLES = 50

from signal_allocator.backtest import simulate
from signal_allocator.data import MarketSeries
from signal_allocator.mapping import MAPPING_METHODS, map_signal_to_weight
from signal_allocator.normalization import NORMALIZATION_METHODS, NormalizationConfig, normalize_column

_signal_values = st.one_of(
    st.floats(min_value=-5.0, max_value=5.0, allow_nan=False, allow_infinity=False),
    st.just(float("nan")),
)


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(
    st.lists(_signal_values, min_size=1, max_size=64),
    st.sampled_from(MAPPING_METHODS),
)
def test_mapping_output_in_unit_interval(values: list[float], method: str) -> None:
    sig = np.asarray(values, dtype=float)
    out = map_signal_to_weight(sig, method)
    assert np.all((out >= 0.0) & (out <= 1.0))
    assert np.all(out[np.isnan(sig)] == 0.5)


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(
    st.lists(
        st.floats(min_value=-1e3, max_value=1e3, allow_nan=False, allow_infinity=False),
        min_size=5,
        max_size=120,
    ),
    st.sampled_from(NORMALIZATION_METHODS),
)
def test_normalization_output_bounded(values: list[float], method: str) -> None:
    x = np.asarray(values, dtype=float)
    out = normalize_column(x, NormalizationConfig(method=method, window=10, min_history=5))
    finite = out[np.isfinite(out)]
    assert np.all((finite >= -1.0) & (finite <= 1.0))
    assert np.all(np.isnan(out[:4]))


@settings(max_examples=HYPOTHESIS_EXAMPLES, deadline=None)
@given(
    st.lists(
        st.tuples(
            st.floats(min_value=-0.1, max_value=0.1, allow_nan=False, allow_infinity=False),
            st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_infinity=False),
        ),
        min_size=1,
        max_size=200,
    ),
    st.integers(min_value=1, max_value=30),
)
def test_simulated_weights_stay_in_unit_interval(rows: list[tuple[float, float]], freq: int) -> None:
    risk = np.array([r for r, _ in rows])
    target = np.array([w for _, w in rows])
    mkt = MarketSeries.from_arrays(risk, np.zeros(risk.size))
    res = simulate(target, mkt, rebalance_freq=freq, tx_cost=0.001)
    assert np.all((res.equity_weight >= -1e-12) & (res.equity_weight <= 1.0 + 1e-12))
    off = np.arange(risk.size) % freq != 0
    assert np.all(res.turnover[off] == 0.0)
