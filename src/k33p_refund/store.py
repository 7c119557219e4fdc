"""Durable store for deposit records, processed markers and monitor state.

The ledger and the refund issuer only talk to this protocol. Every change to
a deposit record goes through ``modify_deposit`` so that it is applied to the
latest persisted state, never as a blind overwrite.

A refund is submitted only by the caller whose ``claim_refund`` returned
True for the deposit tx hash. Only claims without a refund tx hash can be
released.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Protocol

from .models import DepositRecord, RefundClaim, TransactionLogEntry, TransactionType

# Mutates the record in place; raising aborts the write.
DepositMutator = Callable[[DepositRecord], None]


class DepositStore(Protocol):
    async def initialize(self) -> None: ...
    async def close(self) -> None: ...

    # Processed transaction markers
    async def is_processed(self, tx_hash: str) -> bool: ...
    async def mark_processed(self, tx_hash: str) -> bool: ...
    async def list_processed(self) -> List[str]: ...

    # Deposit records
    async def get_deposit(self, user_address: str) -> Optional[DepositRecord]: ...
    async def create_deposit(self, record: DepositRecord) -> DepositRecord: ...
    async def modify_deposit(self, user_address: str, mutator: DepositMutator) -> DepositRecord: ...
    async def list_deposits(
        self,
        verified: Optional[bool] = None,
        refunded: Optional[bool] = None,
    ) -> List[DepositRecord]: ...

    # Refund claims, one per deposit tx hash
    async def claim_refund(self, deposit_tx_hash: str, user_address: str) -> bool: ...
    async def get_refund_claim(self, deposit_tx_hash: str) -> Optional[RefundClaim]: ...
    async def complete_refund_claim(self, deposit_tx_hash: str, refund_tx_hash: str) -> None: ...
    async def release_refund_claim(self, deposit_tx_hash: str) -> bool: ...

    # Transaction log
    async def record_transaction(self, entry: TransactionLogEntry) -> bool: ...
    async def list_transactions(
        self,
        transaction_type: Optional[TransactionType] = None,
    ) -> List[TransactionLogEntry]: ...

    # Key/value monitor state (poll cursor)
    async def get_state(self, key: str) -> Optional[str]: ...
    async def set_state(self, key: str, value: str) -> None: ...
