"""
Domain models for the refund monitor.

Chain facts (AddressTransaction, UtxoEntry, TransactionDetail,
IncomingTransaction) are frozen once fetched. DepositRecord is the only
mutable entity and is always changed through the store's read-modify-write
path.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    """Kind of entry in the transaction log."""
    DEPOSIT = "deposit"
    REFUND = "refund"
    SIGNUP = "signup"


class TransactionStatus(str, Enum):
    """Confirmation status of a logged transaction."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class MonitorState(str, Enum):
    """Reconciliation loop state."""
    STOPPED = "stopped"
    RUNNING = "running"
    CIRCUIT_OPEN = "circuit_open"


# =============================================================================
# Chain facts
# =============================================================================

@dataclass(frozen=True)
class AddressTransaction:
    """One row of the indexer's address transaction listing."""
    tx_hash: str
    block_height: Optional[int] = None
    block_time: Optional[int] = None


@dataclass(frozen=True)
class UtxoEntry:
    """A transaction input or output, lovelace only."""
    address: str
    amount: int


@dataclass(frozen=True)
class TransactionDetail:
    """Inputs, outputs and block metadata for one transaction."""
    tx_hash: str
    inputs: Tuple[UtxoEntry, ...]
    outputs: Tuple[UtxoEntry, ...]
    block_time: int
    block_height: Optional[int] = None


@dataclass(frozen=True)
class IncomingTransaction:
    """A qualifying transaction observed on-chain."""
    tx_hash: str
    from_address: str
    to_address: str
    amount: int
    block_timestamp: int
    block_height: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "from_address": self.from_address,
            "to_address": self.to_address,
            # Decimal string in JSON output
            "amount": str(self.amount),
            "block_timestamp": self.block_timestamp,
            "block_height": self.block_height,
        }


# =============================================================================
# Ledger entities
# =============================================================================

@dataclass
class DepositRecord:
    """
    One deposit per depositor address.

    ``refunded`` flips from False to True at most once and always together
    with ``refund_tx_hash``.
    """
    user_address: str
    user_id: str
    tx_hash: Optional[str] = None
    amount: int = 0
    sender_wallet_address: Optional[str] = None
    phone_hash: Optional[str] = None
    verified: bool = False
    signup_completed: bool = False
    refunded: bool = False
    refund_tx_hash: Optional[str] = None
    refund_timestamp: Optional[datetime] = None
    verification_attempts: int = 0
    last_verification_attempt: Optional[datetime] = None
    timestamp: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def mark_refunded(self, refund_tx_hash: str) -> None:
        if not refund_tx_hash:
            raise ValueError("refund_tx_hash is required")
        self.refunded = True
        self.refund_tx_hash = refund_tx_hash
        self.refund_timestamp = utc_now()
        self.updated_at = self.refund_timestamp

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        for key in ("refund_timestamp", "last_verification_attempt", "timestamp", "created_at", "updated_at"):
            value = data.get(key)
            data[key] = value.isoformat() if value else None
        return data


@dataclass
class TransactionLogEntry:
    """Entry in the transaction log (deposits, refunds, signups)."""
    tx_hash: str
    from_address: str
    to_address: str
    amount: int
    transaction_type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    user_id: Optional[str] = None
    confirmations: int = 0
    created_at: datetime = field(default_factory=utc_now)


# =============================================================================
# Operation results
# =============================================================================

@dataclass(frozen=True)
class RefundRequest:
    """Input to a refund submitter."""
    user_address: str
    refund_to_address: str
    amount: int
    deposit_tx_hash: Optional[str] = None


@dataclass
class RefundClaim:
    """
    Hold on the refund of one deposit transaction.

    At most one claim exists per deposit tx hash. ``refund_tx_hash`` stays
    None until the claimant has submitted its refund.
    """
    deposit_tx_hash: str
    user_address: str
    refund_tx_hash: Optional[str] = None
    claimed_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


@dataclass
class RefundResult:
    """Outcome of a refund attempt."""
    success: bool
    message: str
    tx_hash: Optional[str] = None
    already_processed: bool = False
    # Another caller holds the claim and has not recorded its refund yet
    in_progress: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VerificationResult:
    """Outcome of a synchronous verification lookup."""
    verified: bool
    message: str
    tx_hash: Optional[str] = None
    amount: Optional[int] = None
    transaction: Optional[IncomingTransaction] = None


@dataclass
class TickResult:
    """Summary of one reconciliation tick."""
    skipped: bool = False
    reason: Optional[str] = None
    candidates: int = 0
    detected: int = 0
    refunds_issued: int = 0
    refund_failures: int = 0
    errors: int = 0
    cursor_advanced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
