import numpy as np
import pandas as pd
import pytest

from signal_allocator.data import MarketSeries
from signal_allocator.signals import SIGNAL_TYPES, build_signal, generate_demo_signals


@pytest.fixture
def macro(market) -> pd.DataFrame:
    rng = np.random.default_rng(21)
    # weekly macro prints, forward-filled onto trading days
    dates = market.dates[::5]
    return pd.DataFrame(
        {
            "VIX": 20.0 + np.cumsum(rng.normal(size=len(dates))),
            "HY_Spread": 4.0 + np.cumsum(rng.normal(scale=0.1, size=len(dates))),
        },
        index=dates,
    )


def test_unknown_signal_type_is_fatal(market) -> None:
    with pytest.raises(ValueError, match="Unknown signal type"):
        build_signal("Carry", None, market)


def test_unknown_parameter_is_rejected(market) -> None:
    with pytest.raises(ValueError, match="lookbak"):
        build_signal("Momentum", {"lookbak": 10}, market)


@pytest.mark.parametrize("kind", SIGNAL_TYPES)
def test_signals_are_bounded_and_aligned(kind: str, market, macro) -> None:
    params = {"variable": "VIX"} if kind == "MacroZ" else None
    sig, meta = build_signal(kind, params, market, macro)
    assert sig.shape == (len(market),)
    finite = sig[np.isfinite(sig)]
    assert finite.size > 0
    assert np.all(np.abs(finite) <= 1.0)
    assert meta.type == kind


def test_momentum_warm_up_and_causality(market) -> None:
    sig, meta = build_signal("Momentum", {"lookback": 60, "min_history": 120}, market)
    assert meta.name == "SPX_Mom_60d"
    assert np.all(np.isnan(sig[:59]))
    assert np.all(np.isfinite(sig[59:]))

    shocked = np.array(market.risk_return, copy=True)
    shocked[400:] = -0.05
    alt = MarketSeries.from_arrays(shocked, market.cash_return, market.dates)
    sig_alt, _ = build_signal("Momentum", {"lookback": 60, "min_history": 120}, alt)
    assert np.array_equal(sig[:400], sig_alt[:400], equal_nan=True)


def test_missing_macro_column_gives_nan_signal(market) -> None:
    sig, meta = build_signal("MacroZ", {"variable": "PMI"}, market, None)
    assert np.all(np.isnan(sig))
    assert "not available" in meta.description


def test_macro_negation_flips_sign(market, macro) -> None:
    pos, _ = build_signal("MacroZ", {"variable": "VIX"}, market, macro)
    neg, meta = build_signal("MacroZ", {"variable": "VIX", "negate": True}, market, macro)
    assert meta.name == "VIX_Z_Neg"
    assert np.array_equal(pos, -neg, equal_nan=True)
    assert np.all(np.isnan(pos[:125]))


def test_single_variable_composite_matches_macro_z(market, macro) -> None:
    comp, _ = build_signal("Composite", {"variables": ["HY_Spread"]}, market, macro)
    single, _ = build_signal("MacroZ", {"variable": "HY_Spread"}, market, macro)
    assert np.allclose(comp, single, equal_nan=True)


def test_demo_signals_without_macro(market) -> None:
    demo = generate_demo_signals(market)
    assert demo.names == ["YieldSlope_Z", "VIX_Z", "CreditSpread_Z", "SPX_Mom_6m", "MacroComposite"]
    assert demo.values.shape == (len(market), 5)
    assert np.all(np.isnan(demo.values[:, :3]))
    mom = demo.values[:, 3]
    assert np.all(np.isnan(mom[:125]))
    assert np.isfinite(mom[-1])


def test_demo_signals_with_macro(market, macro) -> None:
    demo = generate_demo_signals(market, macro)
    vix = demo.values[:, 1]
    assert np.all(np.isnan(vix[:251]))
    assert np.all(np.isfinite(vix[251:]))
    assert np.all(np.abs(vix[251:]) <= 1.0)
