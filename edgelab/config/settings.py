"""
edgelab configuration - loaded from environment (EDGELAB_*).

These are process-wide defaults. Per-run strategy parameters live in
``edgelab.config.strategy_config.StrategyConfig``.
"""

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment."""

    model_config = SettingsConfigDict(
        env_prefix="EDGELAB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    # Backtest cost defaults
    initial_equity: float = 1000.0
    fee_rate: float = 0.001
    slippage_percent: float = 0.05
    spread_bps: float = 0.0
    min_order_value: float = 10.0

    # Regime gating
    regime_confidence_threshold: float = 60.0

    # Validators
    monte_carlo_iterations: int = 1000
    monte_carlo_seed: int = 42
    walk_forward_folds: int = 5
    walk_forward_train_ratio: float = 0.7

    # File-backed strategy state (JsonFileStateStore)
    state_dir: str = "./state"


settings = Settings()


def get_settings() -> Settings:
    """Return application settings (for dependency injection)."""
    return settings


def configure_logging(level: str = "") -> None:
    """Set root logging format and level from settings."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=settings.log_format,
    )
