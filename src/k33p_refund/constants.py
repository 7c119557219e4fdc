"""
Centralized constants for the K33P refund monitor.

All amounts are integers in lovelace (1 ADA = 1_000_000 lovelace).
All durations are in seconds unless specified.

Usage:
    from k33p_refund.constants import Amounts, CacheTTL, Timeouts
"""
from __future__ import annotations

from typing import Final


LOVELACE_UNIT: Final[str] = "lovelace"
LOVELACE_PER_ADA: Final[int] = 1_000_000


class Amounts:
    """Deposit and refund amounts."""

    REQUIRED_DEPOSIT: Final[int] = 2_000_000  # 2 ADA
    REFUND: Final[int] = 2_000_000


class Timeouts:
    """Network and scheduling timeouts."""

    HTTP_DEFAULT: Final[float] = 30.0
    HTTP_CONNECT: Final[float] = 10.0
    WEBHOOK_DELIVERY: Final[float] = 10.0

    POLLING_INTERVAL: Final[float] = 30.0
    MIN_POLLING_INTERVAL: Final[float] = 30.0
    MAX_POLLING_INTERVAL: Final[float] = 300.0
    ADAPTIVE_GROWTH_FACTOR: Final[float] = 1.5

    PAYMENT_ERROR_COOLDOWN: Final[float] = 300.0
    INTER_ITEM_DELAY: Final[float] = 1.0
    STALLED_POLL: Final[float] = 600.0


class TransactionAge:
    """Recency windows for qualifying transactions."""

    MONITOR_MAX_AGE: Final[int] = 3600  # 1 hour
    VERIFICATION_MAX_AGE: Final[int] = 86400  # 24 hours


class IndexerRetry:
    """Retry policy for transient indexer failures."""

    MAX_ATTEMPTS: Final[int] = 3
    BACKOFF_BASE: Final[float] = 2.0
    EXPONENTIAL_BASE: Final[float] = 2.0
    MAX_DELAY: Final[float] = 60.0


class CacheTTL:
    """Wallet verification cache lifetimes."""

    DEFAULT: Final[int] = 300
    POSITIVE: Final[int] = 600
    NEGATIVE: Final[int] = 120
    MAX_ITEMS: Final[int] = 10_000


class FetchCounts:
    """Page sizes for indexer listings."""

    MONITOR: Final[int] = 20
    DEPOSIT_VERIFICATION: Final[int] = 20
    WALLET_VERIFICATION: Final[int] = 10


class StateKeys:
    """Keys in the persisted monitor_state table."""

    LAST_SEEN_TX_HASH: Final[str] = "last_seen_tx_hash"


QUOTA_STATUS_CODES: Final[frozenset[int]] = frozenset({402, 429})
