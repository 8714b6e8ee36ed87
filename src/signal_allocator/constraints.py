from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from .utils import canonical_name

SIGNAL_WEIGHT_TOLERANCE = 1e-9


class ConstraintPriority(Enum):
    NONE = "None"
    EQUITY_BOUNDS = "EquityBounds"
    TURNOVER = "Turnover"
    DRAWDOWN = "Drawdown"

    @classmethod
    def parse(cls, value: Any) -> "ConstraintPriority":
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.NONE
        key = canonical_name(value)
        for member in cls:
            if canonical_name(member.value) == key or canonical_name(member.name) == key:
                return member
        raise ValueError(f"Unknown constraint priority: {value}")


@dataclass
class AllocationConstraints:
    """Bounds on the equity weight and the signal-weight vector.

    ``max_turnover`` (annualized) and ``max_dd`` are optional; ``None`` leaves
    them inactive. ``max_dd`` also arms the simulator's drawdown stop.
    """

    eq_min: float = 0.0
    eq_max: float = 1.0
    sig_wt_min: float = 0.0
    sig_wt_max: float = 1.0
    max_turnover: Optional[float] = None
    max_dd: Optional[float] = None
    priority: ConstraintPriority = ConstraintPriority.NONE

    def __post_init__(self) -> None:
        self.priority = ConstraintPriority.parse(self.priority)
        if not (0.0 <= self.eq_min <= self.eq_max <= 1.0):
            raise ValueError("equity bounds must satisfy 0 <= eq_min <= eq_max <= 1")
        if not (0.0 <= self.sig_wt_min <= self.sig_wt_max <= 1.0):
            raise ValueError("signal weight bounds must satisfy 0 <= sig_wt_min <= sig_wt_max <= 1")
        if self.max_turnover is not None and self.max_turnover < 0.0:
            raise ValueError("max_turnover must be non-negative")
        if self.max_dd is not None and not (0.0 < self.max_dd <= 1.0):
            raise ValueError("max_dd must lie in (0, 1]")

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None) -> "AllocationConstraints":
        if overrides is None:
            return cls()
        base = asdict(cls())
        base.update(overrides)
        return cls(**base)

    @property
    def drawdown_stop(self) -> float:
        return float("inf") if self.max_dd is None else float(self.max_dd)

    @property
    def hard_drawdown(self) -> bool:
        return self.priority is ConstraintPriority.DRAWDOWN

    def has_signal_bounds(self) -> bool:
        return self.sig_wt_min > 0.0 or self.sig_wt_max < 1.0

    def clamp_equity(self, weights: np.ndarray) -> np.ndarray:
        return np.clip(np.asarray(weights, dtype=float), self.eq_min, self.eq_max)

    def filter_signal_weights(self, candidates: np.ndarray) -> np.ndarray:
        """Keep rows within the signal-weight bounds; equal weights if none survive."""

        cand = np.atleast_2d(np.asarray(candidates, dtype=float))
        if not self.has_signal_bounds():
            return cand
        keep = np.all(cand >= self.sig_wt_min - SIGNAL_WEIGHT_TOLERANCE, axis=1) & np.all(
            cand <= self.sig_wt_max + SIGNAL_WEIGHT_TOLERANCE, axis=1
        )
        if not keep.any():
            n = cand.shape[1]
            return np.full((1, n), 1.0 / n)
        return cand[keep]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        return data


__all__ = ["AllocationConstraints", "ConstraintPriority"]
