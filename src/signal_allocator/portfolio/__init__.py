"""Simplex lattices and level grids used by the weight searches."""

from .grid import LEVEL_CANDIDATES, level_combinations, weight_grid

__all__ = ["LEVEL_CANDIDATES", "level_combinations", "weight_grid"]
