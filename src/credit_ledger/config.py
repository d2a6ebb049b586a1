"""
Ledger configuration using Pydantic Settings.

Values come from ``CREDIT_``-prefixed environment variables or a local
``.env`` file, e.g. ``CREDIT_MONGO_URI=mongodb://localhost:27017``.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Settings for the credit ledger and its default wiring."""

    # Database
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "credit_ledger"

    # Operation log
    LEDGER_LOG_PATH: Path = Path("logs/credit_ledger.log")

    # Caching / concurrency
    BALANCE_CACHE_TTL_SECONDS: int = 300
    MAX_WRITE_RETRIES: int = 5

    # Billing
    BILLING_INTERVAL_DAYS: int = 30

    # Pricing: plan price in local currency, converted to credits.
    PLAN_PRICES: Dict[str, float] = {"starter": 75, "pro": 180, "premium": 375}
    CURRENCY_TO_USD: float = 0.27
    USD_PER_CREDIT: float = 0.01

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_", env_file=".env", extra="ignore", case_sensitive=True
    )


@lru_cache(maxsize=1)
def get_settings() -> LedgerSettings:
    return LedgerSettings()
