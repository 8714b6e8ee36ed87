"""Annualized performance statistics for backtest results.

The scalar helpers operate along the last axis, so the same code scores a
single return series or a ``(C, M)`` batch of candidate series.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List

import numpy as np
import pandas as pd
from scipy import stats

from ..utils import sample_std
from .simulator import BacktestResult

logger = logging.getLogger(__name__)

TRADING_DAYS = 252
ROLLING_VOL_WINDOW = 63
ROLLING_SHARPE_WINDOW = 252
VOL_FLOOR = 1e-12

TABLE_ROWS = (
    "Ann. Return (%)",
    "Ann. Vol (%)",
    "Sharpe",
    "Sortino",
    "Calmar",
    "Max DD (%)",
    "Hit Rate (%)",
    "Skewness",
    "Kurtosis",
)


def annualized_return(returns: np.ndarray, ann_factor: int = TRADING_DAYS) -> np.ndarray:
    """Geometric annualized return ``prod(1 + r) ** (k / M) - 1`` along the last axis."""

    r = np.asarray(returns, dtype=float)
    m = r.shape[-1]
    if m == 0:
        return np.full(r.shape[:-1], np.nan)
    with np.errstate(invalid="ignore", over="ignore"):
        return np.prod(1.0 + r, axis=-1) ** (ann_factor / m) - 1.0


def annualized_vol(returns: np.ndarray, ann_factor: int = TRADING_DAYS) -> np.ndarray:
    return sample_std(returns, axis=-1) * math.sqrt(ann_factor)


def drawdown_series(returns: np.ndarray) -> np.ndarray:
    """``wealth / running_max - 1`` (non-positive)."""

    wealth = np.cumprod(1.0 + np.asarray(returns, dtype=float), axis=-1)
    peak = np.maximum.accumulate(wealth, axis=-1)
    return np.divide(wealth, peak, out=np.ones_like(wealth), where=peak > 0) - 1.0


def max_drawdown(returns: np.ndarray) -> np.ndarray:
    """Largest peak-to-trough decline of the compounded return path, as a positive fraction."""

    r = np.asarray(returns, dtype=float)
    if r.shape[-1] == 0:
        return np.zeros(r.shape[:-1])
    return np.abs(np.min(drawdown_series(r), axis=-1))


@dataclass
class SeriesMetrics:
    ann_return: float
    ann_vol: float
    sharpe: float
    sortino: float
    calmar: float
    max_dd: float
    hit_rate: float
    skewness: float
    kurtosis: float
    drawdown: np.ndarray

    def table_values(self) -> List[float]:
        return [
            self.ann_return * 100.0,
            self.ann_vol * 100.0,
            self.sharpe,
            self.sortino,
            self.calmar,
            self.max_dd * 100.0,
            self.hit_rate * 100.0,
            self.skewness,
            self.kurtosis,
        ]

    def as_dict(self) -> Dict[str, float]:
        return {
            "ann_return": self.ann_return,
            "ann_vol": self.ann_vol,
            "sharpe": self.sharpe,
            "sortino": self.sortino,
            "calmar": self.calmar,
            "max_dd": self.max_dd,
            "hit_rate": self.hit_rate,
            "skewness": self.skewness,
            "kurtosis": self.kurtosis,
        }


def series_metrics(returns: np.ndarray, ann_factor: int = TRADING_DAYS) -> SeriesMetrics:
    r = np.asarray(returns, dtype=float).reshape(-1)
    if r.size == 0:
        nan = float("nan")
        return SeriesMetrics(nan, nan, nan, nan, nan, nan, nan, nan, nan, np.empty(0))
    ann_ret = float(annualized_return(r, ann_factor))
    ann_vol = float(annualized_vol(r, ann_factor))
    downside = r[r < 0]
    downside_vol = float(np.sqrt(np.mean(downside**2)) * math.sqrt(ann_factor)) if downside.size else 0.0
    dd = drawdown_series(r)
    mdd = float(abs(dd.min()))
    with np.errstate(invalid="ignore", divide="ignore"):
        skew = float(stats.skew(r, bias=True)) if r.size > 1 else float("nan")
        kurt = float(stats.kurtosis(r, fisher=True, bias=True)) if r.size > 1 else float("nan")
    return SeriesMetrics(
        ann_return=ann_ret,
        ann_vol=ann_vol,
        sharpe=ann_ret / max(VOL_FLOOR, ann_vol),
        sortino=ann_ret / max(VOL_FLOOR, downside_vol),
        calmar=ann_ret / max(VOL_FLOOR, mdd),
        max_dd=mdd,
        hit_rate=float(np.mean(r > 0)),
        skewness=skew,
        kurtosis=kurt,
        drawdown=dd,
    )


def rolling_vol(returns: np.ndarray, window: int = ROLLING_VOL_WINDOW, ann_factor: int = TRADING_DAYS) -> np.ndarray:
    r = pd.Series(np.asarray(returns, dtype=float))
    return (r.rolling(window).std(ddof=1 if window > 1 else 0) * math.sqrt(ann_factor)).to_numpy()


def rolling_sharpe(
    returns: np.ndarray, window: int = ROLLING_SHARPE_WINDOW, ann_factor: int = TRADING_DAYS
) -> np.ndarray:
    """Rolling geometric-return Sharpe; the window shrinks to the sample length when shorter."""

    r = pd.Series(np.asarray(returns, dtype=float))
    win = min(window, len(r))
    if win == 0:
        return np.empty(0)
    with np.errstate(divide="ignore", invalid="ignore"):
        growth = np.exp(np.log1p(r).rolling(win).sum() * (ann_factor / win)) - 1.0
    vol = r.rolling(win).std(ddof=1 if win > 1 else 0) * math.sqrt(ann_factor)
    return (growth / vol.clip(lower=VOL_FLOOR)).to_numpy()


def monthly_returns(returns: np.ndarray, dates: pd.Index) -> pd.DataFrame:
    """Compounded calendar-month returns stamped with each month's last date."""

    if not isinstance(dates, pd.DatetimeIndex) or len(dates) == 0:
        return pd.DataFrame(columns=["date", "return"])
    series = pd.Series(np.asarray(returns, dtype=float), index=dates)
    grouped = series.groupby(dates.to_period("M"))
    frame = pd.DataFrame(
        {
            "date": grouped.apply(lambda chunk: chunk.index[-1]),
            "return": grouped.apply(lambda chunk: float(np.prod(1.0 + chunk.to_numpy()) - 1.0)),
        }
    )
    frame.index.name = "month"
    return frame


def monthly_matrix(monthly: pd.DataFrame) -> pd.DataFrame:
    """Year x month (1..12) matrix of monthly returns, NaN where absent."""

    if monthly.empty:
        return pd.DataFrame(columns=list(range(1, 13)), dtype=float)
    periods = monthly.index
    frame = pd.DataFrame(
        {"year": periods.year, "month": periods.month, "return": monthly["return"].to_numpy()}
    )
    matrix = frame.pivot(index="year", columns="month", values="return")
    return matrix.reindex(columns=list(range(1, 13)))


@dataclass
class PerformanceReport:
    strategy: SeriesMetrics
    bench_60_40: SeriesMetrics
    equity_100: SeriesMetrics
    table: pd.DataFrame
    rolling_vol: np.ndarray
    rolling_sharpe: np.ndarray
    monthly_returns: pd.DataFrame
    monthly_matrix: pd.DataFrame

    @property
    def sharpe(self) -> float:
        return self.strategy.sharpe

    @property
    def ann_return(self) -> float:
        return self.strategy.ann_return

    @property
    def max_dd(self) -> float:
        return self.strategy.max_dd

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.as_dict(),
            "bench_60_40": self.bench_60_40.as_dict(),
            "equity_100": self.equity_100.as_dict(),
        }


def compute_performance(result: BacktestResult, ann_factor: int = TRADING_DAYS) -> PerformanceReport:
    strat = series_metrics(result.portfolio_return, ann_factor)
    bench = series_metrics(result.bench_60_40_return, ann_factor)
    equity = series_metrics(result.equity_return, ann_factor)
    table = pd.DataFrame(
        {
            "Strategy": strat.table_values(),
            "Bench_60_40": bench.table_values(),
            "Equity_100": equity.table_values(),
        },
        index=pd.Index(TABLE_ROWS, name="Metric"),
    )
    monthly = monthly_returns(result.portfolio_return, result.dates)
    report = PerformanceReport(
        strategy=strat,
        bench_60_40=bench,
        equity_100=equity,
        table=table,
        rolling_vol=rolling_vol(result.portfolio_return, ann_factor=ann_factor),
        rolling_sharpe=rolling_sharpe(result.portfolio_return, ann_factor=ann_factor),
        monthly_returns=monthly,
        monthly_matrix=monthly_matrix(monthly),
    )
    logger.info(
        "Strategy perf: return=%.2f%%, vol=%.2f%%, sharpe=%.2f, max DD=%.2f%%",
        strat.ann_return * 100.0,
        strat.ann_vol * 100.0,
        strat.sharpe,
        strat.max_dd * 100.0,
    )
    return report


__all__ = [
    "PerformanceReport",
    "SeriesMetrics",
    "annualized_return",
    "annualized_vol",
    "compute_performance",
    "drawdown_series",
    "max_drawdown",
    "monthly_matrix",
    "monthly_returns",
    "rolling_sharpe",
    "rolling_vol",
    "series_metrics",
]
