"""Backtest runner, trade ledger models and metrics."""
