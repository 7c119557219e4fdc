"""Exception hierarchy for the K33P refund monitor.

All errors inherit from K33PError, which carries a machine-readable
``error_code`` and an optional ``details`` dict so that the surrounding API
layer can render them consistently.

Indexer failures are split three ways because the reconciliation loop reacts
to each differently:

- IndexerTransientError: network problems, 5xx, unexpected 4xx. Retried.
- IndexerQuotaError: HTTP 402 / 429. Trips the circuit breaker, never retried.
- IndexerUnavailableError: the circuit is open or retries were exhausted.
"""
from __future__ import annotations

from typing import Any, Optional


class K33PError(Exception):
    """Base exception for all refund monitor errors."""

    error_code: str = "K33P_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(K33PError):
    """Missing or invalid configuration."""

    error_code = "CONFIGURATION_ERROR"


# =============================================================================
# Indexer
# =============================================================================

class IndexerError(K33PError):
    """Base class for chain indexer failures."""

    error_code = "INDEXER_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        if url:
            details["url"] = url
        super().__init__(message, details=details)
        self.status_code = status_code
        self.url = url


class IndexerTransientError(IndexerError):
    """Network error or server-side failure that is worth retrying."""

    error_code = "INDEXER_TRANSIENT"


class IndexerQuotaError(IndexerError):
    """Quota exhausted or payment required (HTTP 402 / 429)."""

    error_code = "INDEXER_QUOTA"


class IndexerNotFoundError(IndexerError):
    """Resource does not exist on the indexer (HTTP 404)."""

    error_code = "INDEXER_NOT_FOUND"


class IndexerUnavailableError(IndexerError):
    """Indexer calls are currently refused (circuit open or retries exhausted)."""

    error_code = "INDEXER_UNAVAILABLE"


# =============================================================================
# Store
# =============================================================================

class StoreError(K33PError):
    """Persistent store failure."""

    error_code = "STORE_ERROR"


class DuplicateDepositError(StoreError):
    """A deposit record already exists for this depositor address."""

    error_code = "DUPLICATE_DEPOSIT"

    def __init__(self, user_address: str) -> None:
        super().__init__(
            f"Deposit record already exists for {user_address}",
            details={"user_address": user_address},
        )
        self.user_address = user_address


class DepositNotFoundError(StoreError):
    """No deposit record for this depositor address."""

    error_code = "DEPOSIT_NOT_FOUND"

    def __init__(self, user_address: str) -> None:
        super().__init__(
            f"No deposit found for {user_address}",
            details={"user_address": user_address},
        )
        self.user_address = user_address


class AlreadyRefundedError(StoreError):
    """The deposit has already been refunded."""

    error_code = "ALREADY_REFUNDED"

    def __init__(self, user_address: str, refund_tx_hash: Optional[str] = None) -> None:
        details: dict[str, Any] = {"user_address": user_address}
        if refund_tx_hash:
            details["refund_tx_hash"] = refund_tx_hash
        super().__init__(
            f"Deposit for {user_address} has already been refunded",
            details=details,
        )
        self.user_address = user_address
        self.refund_tx_hash = refund_tx_hash


# =============================================================================
# Refunds and verification
# =============================================================================

class RefundError(K33PError):
    """Refund could not be issued."""

    error_code = "REFUND_ERROR"


class RefundSubmissionError(RefundError):
    """Building or submitting the refund transaction failed."""

    error_code = "REFUND_SUBMISSION_FAILED"


class VerificationError(K33PError):
    """A verification request could not be completed."""

    error_code = "VERIFICATION_ERROR"


__all__ = [
    "K33PError",
    "ConfigurationError",
    "IndexerError",
    "IndexerTransientError",
    "IndexerQuotaError",
    "IndexerNotFoundError",
    "IndexerUnavailableError",
    "StoreError",
    "DuplicateDepositError",
    "DepositNotFoundError",
    "AlreadyRefundedError",
    "RefundError",
    "RefundSubmissionError",
    "VerificationError",
]
