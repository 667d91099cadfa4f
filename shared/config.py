"""Configuration management for the binary-options desk."""
import logging
import os

from pydantic import BaseModel, model_validator

from strategy.thresholds import PAYOUT_MAX, PAYOUT_MIN, TRADE_DURATION_SECONDS

DEFAULT_CURRENCY_PAIRS = "EUR/USD,GBP/USD,USD/JPY,AUD/USD,USD/CHF,USD/CAD"


class Config(BaseModel):
    """Application configuration loaded from environment variables."""
    DB_PATH: str = "data/trades.db"
    DASHBOARD_HOST: str = "0.0.0.0"
    DASHBOARD_PORT: int = 8080
    TRADE_DURATION_SECONDS: float = TRADE_DURATION_SECONDS
    PAYOUT_MIN: float = PAYOUT_MIN
    PAYOUT_MAX: float = PAYOUT_MAX
    DEMO_BALANCE: float = 10000.0
    CURRENCY_PAIRS: str = DEFAULT_CURRENCY_PAIRS
    QUOTE_INTERVAL_SECONDS: float = 1.0
    SETTLEMENT_RETRY_SECONDS: float = 5.0
    LOG_LEVEL: str = "INFO"

    @model_validator(mode="after")
    def _check_ranges(self) -> "Config":
        if not 0 <= self.PAYOUT_MIN < self.PAYOUT_MAX:
            raise ValueError("PAYOUT_MIN must be non-negative and below PAYOUT_MAX")
        if self.TRADE_DURATION_SECONDS <= 0:
            raise ValueError("TRADE_DURATION_SECONDS must be positive")
        return self

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(
            DB_PATH=os.getenv("DB_PATH", "data/trades.db"),
            DASHBOARD_HOST=os.getenv("DASHBOARD_HOST", "0.0.0.0"),
            DASHBOARD_PORT=int(os.getenv("DASHBOARD_PORT", "8080")),
            TRADE_DURATION_SECONDS=float(os.getenv("TRADE_DURATION_SECONDS", str(TRADE_DURATION_SECONDS))),
            PAYOUT_MIN=float(os.getenv("PAYOUT_MIN", str(PAYOUT_MIN))),
            PAYOUT_MAX=float(os.getenv("PAYOUT_MAX", str(PAYOUT_MAX))),
            DEMO_BALANCE=float(os.getenv("DEMO_BALANCE", "10000")),
            CURRENCY_PAIRS=os.getenv("CURRENCY_PAIRS", DEFAULT_CURRENCY_PAIRS),
            QUOTE_INTERVAL_SECONDS=float(os.getenv("QUOTE_INTERVAL_SECONDS", "1.0")),
            SETTLEMENT_RETRY_SECONDS=float(os.getenv("SETTLEMENT_RETRY_SECONDS", "5.0")),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
        )

    @property
    def currency_pairs_list(self) -> list[str]:
        return [p.strip().upper() for p in self.CURRENCY_PAIRS.split(",") if p.strip()]

    @property
    def log_level_value(self) -> int:
        level = getattr(logging, self.LOG_LEVEL.upper(), None)
        return level if isinstance(level, int) else logging.INFO
