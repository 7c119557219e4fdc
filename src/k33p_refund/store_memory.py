"""In-memory deposit store (dev/tests)."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .exceptions import DepositNotFoundError, DuplicateDepositError
from .models import DepositRecord, RefundClaim, TransactionLogEntry, TransactionType
from .store import DepositMutator, DepositStore


class InMemoryDepositStore(DepositStore):
    """
    Process-local store. Nothing survives a restart unless the same
    instance is handed to the new monitor (which is how tests simulate one).
    Use PostgresDepositStore in production.
    """

    def __init__(self) -> None:
        self._processed: Dict[str, datetime] = {}
        self._deposits: Dict[str, DepositRecord] = {}
        self._transactions: Dict[str, TransactionLogEntry] = {}
        self._claims: Dict[str, RefundClaim] = {}
        self._state: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def is_processed(self, tx_hash: str) -> bool:
        return tx_hash in self._processed

    async def mark_processed(self, tx_hash: str) -> bool:
        if tx_hash in self._processed:
            return False
        self._processed[tx_hash] = datetime.now(timezone.utc)
        return True

    async def list_processed(self) -> List[str]:
        return list(self._processed)

    async def get_deposit(self, user_address: str) -> Optional[DepositRecord]:
        record = self._deposits.get(user_address)
        # Callers get a snapshot; changes go through modify_deposit
        return copy.deepcopy(record) if record else None

    async def create_deposit(self, record: DepositRecord) -> DepositRecord:
        async with self._lock:
            if record.user_address in self._deposits:
                raise DuplicateDepositError(record.user_address)
            self._deposits[record.user_address] = copy.deepcopy(record)
            return copy.deepcopy(record)

    async def modify_deposit(self, user_address: str, mutator: DepositMutator) -> DepositRecord:
        async with self._lock:
            current = self._deposits.get(user_address)
            if current is None:
                raise DepositNotFoundError(user_address)
            working = copy.deepcopy(current)
            mutator(working)
            working.updated_at = datetime.now(timezone.utc)
            self._deposits[user_address] = working
            return copy.deepcopy(working)

    async def list_deposits(
        self,
        verified: Optional[bool] = None,
        refunded: Optional[bool] = None,
    ) -> List[DepositRecord]:
        records = sorted(self._deposits.values(), key=lambda r: r.created_at)
        return [
            copy.deepcopy(r)
            for r in records
            if (verified is None or r.verified == verified)
            and (refunded is None or r.refunded == refunded)
        ]

    async def claim_refund(self, deposit_tx_hash: str, user_address: str) -> bool:
        if deposit_tx_hash in self._claims:
            return False
        self._claims[deposit_tx_hash] = RefundClaim(deposit_tx_hash, user_address)
        return True

    async def get_refund_claim(self, deposit_tx_hash: str) -> Optional[RefundClaim]:
        claim = self._claims.get(deposit_tx_hash)
        return copy.deepcopy(claim) if claim else None

    async def complete_refund_claim(self, deposit_tx_hash: str, refund_tx_hash: str) -> None:
        claim = self._claims.get(deposit_tx_hash)
        if claim is not None:
            claim.refund_tx_hash = refund_tx_hash
            claim.completed_at = datetime.now(timezone.utc)

    async def release_refund_claim(self, deposit_tx_hash: str) -> bool:
        claim = self._claims.get(deposit_tx_hash)
        if claim is None or claim.refund_tx_hash is not None:
            return False
        del self._claims[deposit_tx_hash]
        return True

    async def record_transaction(self, entry: TransactionLogEntry) -> bool:
        if entry.tx_hash in self._transactions:
            return False
        self._transactions[entry.tx_hash] = copy.deepcopy(entry)
        return True

    async def list_transactions(
        self,
        transaction_type: Optional[TransactionType] = None,
    ) -> List[TransactionLogEntry]:
        return [
            copy.deepcopy(e)
            for e in self._transactions.values()
            if transaction_type is None or e.transaction_type == transaction_type
        ]

    async def get_state(self, key: str) -> Optional[str]:
        return self._state.get(key)

    async def set_state(self, key: str, value: str) -> None:
        self._state[key] = value
