"""edgelab - signal-and-risk pipeline with backtest and robustness validation."""

__version__ = "0.1.0"
