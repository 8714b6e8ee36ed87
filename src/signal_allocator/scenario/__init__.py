"""Scenario and stress testing helpers."""

from .episodes import DEFAULT_EPISODES, StressEpisode, stress_test

__all__ = ["DEFAULT_EPISODES", "StressEpisode", "stress_test"]
