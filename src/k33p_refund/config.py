"""Configuration surface for the refund monitor."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

from .constants import (
    Amounts,
    CacheTTL,
    FetchCounts,
    IndexerRetry,
    Timeouts,
    TransactionAge,
)


class K33PSettings(BaseSettings):
    """Main refund monitor configuration."""

    environment: Literal["dev", "staging", "prod"] = "dev"

    # Chain indexer (Blockfrost-compatible)
    blockfrost_url: str = "https://cardano-preprod.blockfrost.io/api/v0"
    blockfrost_api_key: str = ""
    indexer_timeout_seconds: float = Timeouts.HTTP_DEFAULT
    indexer_max_attempts: int = IndexerRetry.MAX_ATTEMPTS
    indexer_backoff_base_seconds: float = IndexerRetry.BACKOFF_BASE

    # Watched script address
    deposit_address: str = ""

    # Amounts (lovelace)
    required_amount_lovelace: int = Amounts.REQUIRED_DEPOSIT
    refund_amount_lovelace: int = Amounts.REFUND

    # Refund transaction builder, "package.module:callable"; required outside dev
    refund_builder: Optional[str] = None

    # Reconciliation loop
    auto_refund_enabled: bool = False
    polling_interval_seconds: float = Timeouts.POLLING_INTERVAL
    tx_fetch_count: int = FetchCounts.MONITOR
    adaptive_polling_enabled: bool = False
    min_polling_interval_seconds: float = Timeouts.MIN_POLLING_INTERVAL
    max_polling_interval_seconds: float = Timeouts.MAX_POLLING_INTERVAL
    max_transaction_age_seconds: int = TransactionAge.MONITOR_MAX_AGE
    payment_error_cooldown_seconds: float = Timeouts.PAYMENT_ERROR_COOLDOWN
    inter_item_delay_seconds: float = Timeouts.INTER_ITEM_DELAY
    retry_sweep_every_ticks: int = 10
    stalled_poll_seconds: float = Timeouts.STALLED_POLL

    # Synchronous verification
    verification_max_tx_age_seconds: int = TransactionAge.VERIFICATION_MAX_AGE
    cache_positive_ttl_seconds: int = CacheTTL.POSITIVE
    cache_negative_ttl_seconds: int = CacheTTL.NEGATIVE
    cache_default_ttl_seconds: int = CacheTTL.DEFAULT

    # Persistence - empty means in-memory (dev only)
    database_url: str = ""

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    class Config:
        env_prefix = "K33P_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("blockfrost_api_key")
    @classmethod
    def validate_api_key(cls, v: str, info) -> str:
        env = info.data.get("environment", "dev")
        if env != "dev" and not v:
            raise ValueError("K33P_BLOCKFROST_API_KEY is required outside dev")
        return v

    @field_validator("blockfrost_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("required_amount_lovelace", "refund_amount_lovelace", "tx_fetch_count")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("indexer_max_attempts")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("indexer_max_attempts must be at least 1")
        return v

    @field_validator("max_polling_interval_seconds")
    @classmethod
    def check_polling_bounds(cls, v: float, info) -> float:
        low = info.data.get("min_polling_interval_seconds")
        if low is not None and v < low:
            raise ValueError(
                "max_polling_interval_seconds must be >= min_polling_interval_seconds"
            )
        return v

    @field_validator("database_url")
    @classmethod
    def normalise_database_url(cls, v: str) -> str:
        # Heroku/Railway style URLs
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> K33PSettings:
    """Load K33PSettings once per process to keep services consistent."""
    if env_file:
        return K33PSettings(_env_file=Path(env_file))
    return K33PSettings()
