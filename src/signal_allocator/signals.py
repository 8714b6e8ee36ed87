"""Construction of bounded trading signals from market and macro data.

Every builder returns a T-length column in [-1, 1] (NaN while history is
insufficient) aligned to the market dates, plus a :class:`SignalMetadata`
record. Z-scores at day ``t`` only use readings up to ``t``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .data.market import MarketSeries, SignalMatrix
from .kernels import SCALE_FLOOR, apply_activation, apply_vol_floor, ewma_vol, forward_fill_align, robust_zscore
from .utils import resolve_method

logger = logging.getLogger(__name__)

SIGNAL_TYPES = ("Momentum", "EWMAC", "Ensemble", "MacroZ", "MeanReversion", "Composite")
MIN_MACRO_OBS = 20
RISK_PARITY_TRAIL = 252
RISK_PARITY_MIN_OBS = 20
RISK_PARITY_STD_FLOOR = 1e-4
DEMO_START = 252
DEMO_MOM_LOOKBACK = 126


class _Overridable:
    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None):
        if overrides is None:
            return cls()
        base = asdict(cls())
        unknown = set(overrides) - set(base)
        if unknown:
            raise ValueError(f"Unknown {cls.__name__} fields: {', '.join(sorted(unknown))}")
        base.update(overrides)
        return cls(**base)


@dataclass
class MomentumParams(_Overridable):
    lookback: int = 126
    min_history: int = 252
    vol_halflife: float = 32.0
    skip_days: int = 0
    vol_floor: float = 0.0
    activation: str = "tanh"
    tanh_scale: float = 2.0

    def __post_init__(self) -> None:
        if self.lookback <= 0:
            raise ValueError("lookback must be positive")
        if self.skip_days < 0:
            raise ValueError("skip_days must be non-negative")
        if self.vol_floor < 0.0:
            raise ValueError("vol_floor must be non-negative")


@dataclass
class EWMACParams(_Overridable):
    fast_span: int = 16
    slow_span: int = 64
    vol_halflife: float = 32.0
    vol_floor: float = 0.0
    activation: str = "tanh"
    tanh_scale: float = 2.0

    def __post_init__(self) -> None:
        if not (0 < self.fast_span < self.slow_span):
            raise ValueError("spans must satisfy 0 < fast_span < slow_span")


@dataclass
class EnsembleParams(_Overridable):
    lookbacks: List[int] = field(default_factory=lambda: [21, 63, 126, 252])
    method: str = "equal"
    vol_halflife: float = 32.0
    skip_days: int = 0
    vol_floor: float = 0.0
    activation: str = "tanh"
    tanh_scale: float = 2.0

    def __post_init__(self) -> None:
        self.lookbacks = [int(lb) for lb in self.lookbacks]
        if not self.lookbacks or min(self.lookbacks) <= 0:
            raise ValueError("lookbacks must be a non-empty list of positive windows")
        if self.method not in ("equal", "riskparity"):
            raise ValueError("method must be 'equal' or 'riskparity'")


@dataclass
class MacroZParams(_Overridable):
    variable: str = "VIX"
    min_window: int = 126
    negate: bool = False
    tanh_scale: float = 2.0


@dataclass
class MeanReversionParams(_Overridable):
    lookback: int = 63
    min_history: int = 126
    tanh_scale: float = 2.0

    def __post_init__(self) -> None:
        if self.lookback <= 0:
            raise ValueError("lookback must be positive")


@dataclass
class CompositeSignalParams(_Overridable):
    variables: List[str] = field(default_factory=lambda: ["VIX", "HY_Spread"])
    weights: Optional[List[float]] = None
    negate: Optional[List[bool]] = None
    min_window: int = 126
    tanh_scale: float = 2.0

    def __post_init__(self) -> None:
        n = len(self.variables)
        self.weights = [1.0] * n if self.weights is None else [float(w) for w in self.weights]
        self.negate = [False] * n if self.negate is None else [bool(f) for f in self.negate]
        if len(self.weights) != n or len(self.negate) != n:
            raise ValueError("weights and negate must match the number of variables")


@dataclass
class SignalMetadata:
    name: str
    description: str
    type: str
    params: Dict[str, Any]


def _expanding_robust(raw: np.ndarray, first: int, min_history: int) -> np.ndarray:
    """Robust z of ``raw[t]`` against ``raw[first..t]`` once ``t+1 >= min_history``; raw value before."""

    z = np.full(raw.size, np.nan)
    for t in range(first, raw.size):
        if not np.isfinite(raw[t]):
            continue
        if t + 1 >= min_history:
            z[t] = robust_zscore(raw[t], raw[first : t + 1])
        else:
            z[t] = raw[t]
    return z


def _vol_adjusted_momentum(
    returns: np.ndarray, vol: np.ndarray, lookback: int, skip_days: int
) -> Tuple[np.ndarray, int]:
    """Cumulative return over the window ending ``skip_days`` ago, scaled by vol * sqrt(lookback)."""

    total = lookback + skip_days
    csum = np.concatenate([[0.0], np.cumsum(returns)])
    raw = np.full(returns.size, np.nan)
    first = total - 1
    if first >= returns.size:
        return raw, first
    t = np.arange(first, returns.size)
    win_start = t - total + 1
    win_end = t - skip_days
    cum = csum[win_end + 1] - csum[win_start]
    raw[first:] = cum / (np.maximum(vol[win_end], SCALE_FLOOR) * math.sqrt(lookback))
    return raw, first


def _floored_vol(returns: np.ndarray, halflife: float, floor: float) -> np.ndarray:
    return apply_vol_floor(ewma_vol(returns, halflife), floor)


def _momentum(market: MarketSeries, macro: Dict[str, np.ndarray], params: Dict[str, Any]):
    prm = MomentumParams.from_overrides(params)
    ret = market.risk_return
    vol = _floored_vol(ret, prm.vol_halflife, prm.vol_floor)
    raw, first = _vol_adjusted_momentum(ret, vol, prm.lookback, prm.skip_days)
    z = _expanding_robust(raw, first, prm.min_history)
    sig = apply_activation(z, prm.tanh_scale, prm.activation)
    meta = SignalMetadata(
        name=f"SPX_Mom_{prm.lookback}d",
        description=(
            f"Momentum: {prm.lookback}d lookback, skip={prm.skip_days}, "
            f"volHL={prm.vol_halflife:g}, act={prm.activation}"
        ),
        type="Momentum",
        params=asdict(prm),
    )
    return sig, meta


def _ewmac(market: MarketSeries, macro: Dict[str, np.ndarray], params: Dict[str, Any]):
    prm = EWMACParams.from_overrides(params)
    ret = market.risk_return
    price = pd.Series(np.cumprod(1.0 + ret))
    fast = price.ewm(alpha=2.0 / (prm.fast_span + 1), adjust=False).mean().to_numpy()
    slow = price.ewm(alpha=2.0 / (prm.slow_span + 1), adjust=False).mean().to_numpy()
    vol = _floored_vol(ret, prm.vol_halflife, prm.vol_floor)
    raw = (fast - slow) / np.maximum(vol * price.to_numpy(), SCALE_FLOOR)
    min_history = max(prm.slow_span * 2, 126)
    z = _expanding_robust(raw, prm.slow_span - 1, min_history)
    sig = apply_activation(z, prm.tanh_scale, prm.activation)
    meta = SignalMetadata(
        name=f"EWMAC_{prm.fast_span}_{prm.slow_span}",
        description=(
            f"EWMAC: fast={prm.fast_span}, slow={prm.slow_span}, "
            f"volHL={prm.vol_halflife:g}, act={prm.activation}"
        ),
        type="EWMAC",
        params=asdict(prm),
    )
    return sig, meta


def _ensemble(market: MarketSeries, macro: Dict[str, np.ndarray], params: Dict[str, Any]):
    prm = EnsembleParams.from_overrides(params)
    ret = market.risk_return
    vol = _floored_vol(ret, prm.vol_halflife, prm.vol_floor)
    columns = []
    for lb in prm.lookbacks:
        raw, first = _vol_adjusted_momentum(ret, vol, lb, prm.skip_days)
        columns.append(_expanding_robust(raw, first, max(lb * 2, 126)))
    raw_sigs = np.column_stack(columns)

    combined = np.full(ret.size, np.nan)
    for t in range(ret.size):
        valid = np.isfinite(raw_sigs[t])
        if not valid.any():
            continue
        vals = raw_sigs[t, valid]
        if prm.method == "riskparity" and valid.sum() > 1:
            trail = raw_sigs[max(0, t - RISK_PARITY_TRAIL + 1) : t + 1][:, valid]
            wts = np.ones(vals.size)
            for k in range(vals.size):
                col = trail[:, k]
                col = col[np.isfinite(col)]
                if col.size >= RISK_PARITY_MIN_OBS:
                    wts[k] = 1.0 / max(float(np.std(col, ddof=1)), RISK_PARITY_STD_FLOOR)
            combined[t] = float(np.sum(vals * wts / wts.sum()))
        else:
            combined[t] = float(vals.mean())
    sig = apply_activation(combined, prm.tanh_scale, prm.activation)
    tag = "RP" if prm.method == "riskparity" else "EW"
    meta = SignalMetadata(
        name=f"Ensemble_{len(prm.lookbacks)}lb_{tag}",
        description=(
            f"Ensemble: {prm.lookbacks}, method={prm.method}, skip={prm.skip_days}, "
            f"volHL={prm.vol_halflife:g}, act={prm.activation}"
        ),
        type="Ensemble",
        params=asdict(prm),
    )
    return sig, meta


def _macro_z(series: np.ndarray, t: int) -> float:
    if not np.isfinite(series[t]):
        return float("nan")
    window = series[: t + 1]
    if np.isfinite(window).sum() < MIN_MACRO_OBS:
        return float("nan")
    return robust_zscore(series[t], window)


def _macroz(market: MarketSeries, macro: Dict[str, np.ndarray], params: Dict[str, Any]):
    prm = MacroZParams.from_overrides(params)
    sig = np.full(len(market), np.nan)
    suffix = "_Neg" if prm.negate else ""
    if prm.variable not in macro:
        meta = SignalMetadata(
            name=f"{prm.variable}_Z",
            description=f"MacroZ: {prm.variable} not available",
            type="MacroZ",
            params=asdict(prm),
        )
        return sig, meta
    series = macro[prm.variable]
    flip = -1.0 if prm.negate else 1.0
    for t in range(prm.min_window - 1, series.size):
        z = _macro_z(series, t)
        if np.isfinite(z):
            sig[t] = math.tanh(flip * z / prm.tanh_scale)
    meta = SignalMetadata(
        name=f"{prm.variable}_Z{suffix}",
        description=f"MacroZ: {prm.variable}, {prm.min_window}d min window, negate={int(prm.negate)}",
        type="MacroZ",
        params=asdict(prm),
    )
    return sig, meta


def _mean_reversion(market: MarketSeries, macro: Dict[str, np.ndarray], params: Dict[str, Any]):
    prm = MeanReversionParams.from_overrides(params)
    price = pd.Series(np.cumprod(1.0 + market.risk_return))
    ma = price.rolling(prm.lookback).mean().to_numpy()
    dist = (price.to_numpy() - ma) / np.maximum(ma, SCALE_FLOOR)
    first = prm.lookback - 1
    z = np.full(dist.size, np.nan)
    for t in range(first, dist.size):
        if t + 1 >= prm.min_history:
            z[t] = robust_zscore(dist[t], dist[first : t + 1])
        else:
            z[t] = dist[t] * 100.0
    sig = np.tanh(-z / prm.tanh_scale)
    meta = SignalMetadata(
        name=f"MeanRev_{prm.lookback}d",
        description=f"MeanReversion: {prm.lookback}d MA, {prm.min_history}d min history",
        type="MeanReversion",
        params=asdict(prm),
    )
    return sig, meta


def _composite(market: MarketSeries, macro: Dict[str, np.ndarray], params: Dict[str, Any]):
    prm = CompositeSignalParams.from_overrides(params)
    weights = np.asarray(prm.weights, dtype=float)
    weights = weights / max(float(np.abs(weights).sum()), SCALE_FLOOR)
    missing = [name for name in prm.variables if name not in macro]
    if missing:
        logger.warning("Composite signal skipping unavailable macro columns: %s", ", ".join(missing))
    sig = np.full(len(market), np.nan)
    for t in range(prm.min_window - 1, len(market)):
        z_sum = w_sum = 0.0
        for k, name in enumerate(prm.variables):
            if name not in macro:
                continue
            z = _macro_z(macro[name], t)
            if not np.isfinite(z):
                continue
            if prm.negate[k]:
                z = -z
            z_sum += weights[k] * z
            w_sum += abs(weights[k])
        if w_sum > 0:
            sig[t] = math.tanh(z_sum / w_sum / prm.tanh_scale)
    meta = SignalMetadata(
        name=f"Composite_{len(prm.variables)}vars",
        description=f"Composite: {'+'.join(prm.variables)}",
        type="Composite",
        params=asdict(prm),
    )
    return sig, meta


_BUILDERS: Dict[str, Callable[..., Tuple[np.ndarray, SignalMetadata]]] = {
    "Momentum": _momentum,
    "EWMAC": _ewmac,
    "Ensemble": _ensemble,
    "MacroZ": _macroz,
    "MeanReversion": _mean_reversion,
    "Composite": _composite,
}


def align_macro(macro: Optional[pd.DataFrame], dates: pd.Index) -> Dict[str, np.ndarray]:
    """Forward-fill every macro column onto ``dates``."""

    if macro is None or macro.empty:
        return {}
    return {
        str(col): forward_fill_align(macro.index, macro[col].to_numpy(dtype=float), dates)
        for col in macro.columns
    }


def build_signal(
    signal_type: str,
    params: Optional[Dict[str, Any]],
    market: MarketSeries,
    macro: Optional[pd.DataFrame] = None,
) -> Tuple[np.ndarray, SignalMetadata]:
    """Build one bounded signal column; unknown types raise ``ValueError``."""

    resolved = resolve_method(signal_type, SIGNAL_TYPES)
    if resolved is None:
        raise ValueError(f"Unknown signal type: {signal_type}")
    sig, meta = _BUILDERS[resolved](market, align_macro(macro, market.dates), dict(params or {}))
    sig = np.clip(np.asarray(sig, dtype=float), -1.0, 1.0)
    logger.info("Built signal %s (%d valid of %d days)", meta.name, int(np.isfinite(sig).sum()), sig.size)
    return sig, meta


def _expanding_tanh_z(series: np.ndarray, start: int, negate: bool = False) -> np.ndarray:
    out = np.full(series.size, np.nan)
    flip = -1.0 if negate else 1.0
    for t in range(start, series.size):
        out[t] = math.tanh(flip * robust_zscore(series[t], series[: t + 1]) / 2.0)
    return out


def generate_demo_signals(market: MarketSeries, macro: Optional[pd.DataFrame] = None) -> SignalMatrix:
    """Five example columns: yield slope, VIX, credit spread, 6m momentum, macro composite.

    Macro-driven columns stay NaN when their inputs are absent.
    """

    names = ["YieldSlope_Z", "VIX_Z", "CreditSpread_Z", "SPX_Mom_6m", "MacroComposite"]
    n_obs = len(market)
    aligned = align_macro(macro, market.dates)
    data = np.full((n_obs, len(names)), np.nan)
    start = DEMO_START - 1

    if "YieldSlope" in aligned:
        data[:, 0] = _expanding_tanh_z(aligned["YieldSlope"], start)
    if "VIX" in aligned:
        data[:, 1] = _expanding_tanh_z(aligned["VIX"], start, negate=True)
    if "HY_Spread" in aligned:
        data[:, 2] = _expanding_tanh_z(aligned["HY_Spread"], start, negate=True)

    ret = market.risk_return
    expanding_std = pd.Series(ret).expanding().std(ddof=1).fillna(0.0).to_numpy()
    raw, first = _vol_adjusted_momentum(ret, expanding_std, DEMO_MOM_LOOKBACK, 0)
    data[:, 3] = np.tanh(_expanding_robust(raw, first, DEMO_START) / 2.0)

    macro_cols = [aligned[name] for name in ("GDP_YoY", "RetailSales_YoY") if name in aligned]
    if "GDP_YoY" in aligned:
        for t in range(start, n_obs):
            zs = [z for z in (_macro_z(col, t) for col in macro_cols) if np.isfinite(z)]
            if zs:
                data[t, 4] = math.tanh(sum(zs) / len(zs) / 2.0)

    logger.info("Demo signals generated: %d signals x %d days", len(names), n_obs)
    return SignalMatrix(values=np.clip(data, -1.0, 1.0), names=names)


__all__ = [
    "CompositeSignalParams",
    "EWMACParams",
    "EnsembleParams",
    "MacroZParams",
    "MeanReversionParams",
    "MomentumParams",
    "SIGNAL_TYPES",
    "SignalMetadata",
    "align_macro",
    "build_signal",
    "generate_demo_signals",
]
