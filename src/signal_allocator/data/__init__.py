"""Input containers shared by the normalization, simulation and optimizer layers."""

from .market import MarketSeries, SignalMatrix, load_market_csv, load_signal_csv

__all__ = ["MarketSeries", "SignalMatrix", "load_market_csv", "load_signal_csv"]
