"""Aligned two-asset market series and bounded signal matrices."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence

import numpy as np
import pandas as pd

_SIGNAL_TOLERANCE = 1e-9


def _coerce_returns(values: Any) -> np.ndarray:
    arr = np.array(values, dtype=float).reshape(-1)
    arr[~np.isfinite(arr)] = 0.0
    return arr


@dataclass(frozen=True)
class MarketSeries:
    """Daily risk-asset and cash returns on a shared date index.

    Non-finite returns are coerced to zero at construction so the simulator
    never sees NaN on the return side.
    """

    dates: pd.Index
    risk_return: np.ndarray
    cash_return: np.ndarray

    def __post_init__(self) -> None:
        risk = _coerce_returns(self.risk_return)
        cash = _coerce_returns(self.cash_return)
        if risk.shape != cash.shape:
            raise ValueError(
                f"risk_return length ({risk.size}) must match cash_return length ({cash.size})"
            )
        dates = self.dates
        if dates is None:
            dates = pd.RangeIndex(risk.size)
        elif not isinstance(dates, pd.Index):
            dates = pd.Index(dates)
        if len(dates) != risk.size:
            raise ValueError(
                f"dates length ({len(dates)}) must match return length ({risk.size})"
            )
        risk.setflags(write=False)
        cash.setflags(write=False)
        object.__setattr__(self, "risk_return", risk)
        object.__setattr__(self, "cash_return", cash)
        object.__setattr__(self, "dates", dates)

    def __len__(self) -> int:
        return int(self.risk_return.size)

    @classmethod
    def from_arrays(
        cls,
        risk_return: Sequence[float],
        cash_return: Sequence[float],
        dates: Optional[Sequence[Any]] = None,
    ) -> "MarketSeries":
        risk = np.asarray(risk_return, dtype=float)
        if dates is None:
            index: pd.Index = pd.RangeIndex(risk.size)
        else:
            index = pd.Index(dates)
        return cls(dates=index, risk_return=risk, cash_return=np.asarray(cash_return, dtype=float))

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        risk_col: str = "risk",
        cash_col: str = "cash",
    ) -> "MarketSeries":
        missing = [col for col in (risk_col, cash_col) if col not in frame.columns]
        if missing:
            raise ValueError(f"market frame is missing columns: {', '.join(missing)}")
        return cls(
            dates=frame.index,
            risk_return=frame[risk_col].to_numpy(dtype=float),
            cash_return=frame[cash_col].to_numpy(dtype=float),
        )

    def slice(self, start: int, stop: int) -> "MarketSeries":
        """Return the half-open row range ``[start, stop)``."""

        return MarketSeries(
            dates=self.dates[start:stop],
            risk_return=self.risk_return[start:stop],
            cash_return=self.cash_return[start:stop],
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"risk": self.risk_return, "cash": self.cash_return}, index=self.dates
        )


@dataclass(frozen=True)
class SignalMatrix:
    """T x N matrix of bounded signals; NaN marks insufficient history."""

    values: np.ndarray
    names: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        arr = np.array(self.values, dtype=float, copy=True)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2:
            raise ValueError("signal matrix must be two dimensional")
        finite = arr[np.isfinite(arr)]
        if finite.size and (
            finite.min() < -1.0 - _SIGNAL_TOLERANCE or finite.max() > 1.0 + _SIGNAL_TOLERANCE
        ):
            raise ValueError("signal values must lie in [-1, 1] or be NaN")
        arr[np.isinf(arr)] = np.nan
        names = list(self.names) or [f"signal_{idx + 1}" for idx in range(arr.shape[1])]
        if len(names) != arr.shape[1]:
            raise ValueError(
                f"expected {arr.shape[1]} signal names, received {len(names)}"
            )
        arr.setflags(write=False)
        object.__setattr__(self, "values", arr)
        object.__setattr__(self, "names", names)

    @property
    def n_obs(self) -> int:
        return int(self.values.shape[0])

    @property
    def n_signals(self) -> int:
        return int(self.values.shape[1])

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> "SignalMatrix":
        return cls(values=frame.to_numpy(dtype=float), names=[str(c) for c in frame.columns])

    def to_frame(self, index: Optional[Sequence[Any]] = None) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=index, columns=self.names)


def _read_dated_csv(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Missing input file: {path}")
    frame = pd.read_csv(path)
    if frame.empty:
        raise ValueError(f"CSV {path} contains no rows")
    date_col = "date" if "date" in frame.columns else frame.columns[0]
    frame[date_col] = pd.to_datetime(frame[date_col])
    return frame.set_index(date_col).sort_index()


def load_market_csv(
    path: Path, risk_col: str = "risk", cash_col: str = "cash"
) -> MarketSeries:
    """Read a dated CSV of daily risk/cash returns."""

    return MarketSeries.from_frame(_read_dated_csv(Path(path)), risk_col, cash_col)


def load_signal_csv(path: Path, market: Optional[MarketSeries] = None) -> pd.DataFrame:
    """Read raw signal columns, reindexed onto ``market`` dates when given."""

    frame = _read_dated_csv(Path(path)).astype(float)
    if market is not None:
        frame = frame.reindex(market.dates)
    return frame


__all__ = ["MarketSeries", "SignalMatrix", "load_market_csv", "load_signal_csv"]
