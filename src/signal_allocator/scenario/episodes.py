"""Strategy behaviour over named historical stress episodes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

from ..backtest.metrics import max_drawdown
from ..backtest.simulator import BacktestResult

logger = logging.getLogger(__name__)

MIN_EPISODE_DAYS = 2


@dataclass(frozen=True)
class StressEpisode:
    """Inclusive calendar window."""

    name: str
    start: pd.Timestamp
    end: pd.Timestamp

    @classmethod
    def from_strings(cls, name: str, start: str, end: str) -> "StressEpisode":
        return cls(name=name, start=pd.Timestamp(start), end=pd.Timestamp(end))


DEFAULT_EPISODES = (
    StressEpisode.from_strings("GFC", "2007-10-01", "2009-03-31"),
    StressEpisode.from_strings("Euro Crisis", "2011-07-01", "2011-10-31"),
    StressEpisode.from_strings("Taper Tantrum", "2013-05-01", "2013-09-30"),
    StressEpisode.from_strings("2018 Q4", "2018-10-01", "2018-12-31"),
    StressEpisode.from_strings("COVID", "2020-02-19", "2020-03-23"),
    StressEpisode.from_strings("Rate Shock", "2022-01-01", "2022-10-31"),
)

STRESS_COLUMNS = [
    "episode",
    "start",
    "end",
    "strategy_pct",
    "bench_60_40_pct",
    "equity_pct",
    "avg_eq_weight_pct",
    "strategy_max_dd_pct",
]


def _compounded(returns: np.ndarray) -> float:
    return float(np.prod(1.0 + returns) - 1.0)


def stress_test(
    result: BacktestResult, episodes: Sequence[StressEpisode] = DEFAULT_EPISODES
) -> pd.DataFrame:
    """One row per episode, in percent; episodes with fewer than two days in range are NaN."""

    dates = result.dates
    rows = []
    for episode in episodes:
        row = {"episode": episode.name, "start": episode.start, "end": episode.end}
        if isinstance(dates, pd.DatetimeIndex):
            mask = np.asarray((dates >= episode.start) & (dates <= episode.end))
        else:
            mask = np.zeros(len(result), dtype=bool)
        if mask.sum() < MIN_EPISODE_DAYS:
            row.update({col: np.nan for col in STRESS_COLUMNS[3:]})
        else:
            port = result.portfolio_return[mask]
            row.update(
                {
                    "strategy_pct": _compounded(port) * 100.0,
                    "bench_60_40_pct": _compounded(result.bench_60_40_return[mask]) * 100.0,
                    "equity_pct": _compounded(result.equity_return[mask]) * 100.0,
                    "avg_eq_weight_pct": float(result.equity_weight[mask].mean()) * 100.0,
                    "strategy_max_dd_pct": float(max_drawdown(port)) * 100.0,
                }
            )
        rows.append(row)
    logger.info("Stress test: %d episodes analyzed", len(rows))
    return pd.DataFrame(rows, columns=STRESS_COLUMNS)


__all__ = ["DEFAULT_EPISODES", "StressEpisode", "stress_test"]
