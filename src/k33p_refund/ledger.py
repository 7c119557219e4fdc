"""
Idempotency ledger.

Keeps the set of processed transaction hashes (mirrored from the durable
store), the per-depositor deposit records and the poll cursor.

On startup ``rehydrate()`` reloads the markers and additionally re-derives
settled deposit hashes from refund log entries and refunded deposit records,
so a partially lost marker table cannot cause a second refund.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from .constants import StateKeys
from .exceptions import DuplicateDepositError, VerificationError
from .models import DepositRecord, IncomingTransaction, TransactionType, utc_now
from .store import DepositStore

logger = logging.getLogger(__name__)


def auto_user_id() -> str:
    return f"auto_{int(time.time() * 1000)}"


class IdempotencyLedger:
    def __init__(self, store: DepositStore):
        self._store = store
        self._processed: Set[str] = set()
        self._last_seen_tx_hash: Optional[str] = None
        self._rehydrated = False

    @property
    def store(self) -> DepositStore:
        return self._store

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    @property
    def last_seen_tx_hash(self) -> Optional[str]:
        return self._last_seen_tx_hash

    @property
    def is_rehydrated(self) -> bool:
        return self._rehydrated

    async def rehydrate(self) -> int:
        """Reload processed hashes and the cursor; returns the processed count."""
        markers = set(await self._store.list_processed())

        deposits = await self._store.list_deposits()
        by_address: Dict[str, DepositRecord] = {}
        for record in deposits:
            by_address[record.user_address] = record
            if record.sender_wallet_address:
                by_address.setdefault(record.sender_wallet_address, record)

        derived: Set[str] = set()
        for entry in await self._store.list_transactions(TransactionType.REFUND):
            record = by_address.get(entry.to_address)
            if record and record.tx_hash:
                derived.add(record.tx_hash)
        for record in deposits:
            if record.refunded and record.tx_hash:
                derived.add(record.tx_hash)

        missing = derived - markers
        for tx_hash in missing:
            # Repair the marker store so the next cold start sees them directly
            await self._store.mark_processed(tx_hash)
        if missing:
            logger.warning(f"Restored {len(missing)} processed markers from refund history")

        self._processed = markers | derived
        self._last_seen_tx_hash = await self._store.get_state(StateKeys.LAST_SEEN_TX_HASH)
        self._rehydrated = True

        logger.info(
            f"Ledger rehydrated: {len(self._processed)} processed transactions, "
            f"cursor={self._last_seen_tx_hash or 'none'}"
        )
        return len(self._processed)

    # ------------------------------------------------------------------
    # Processed markers
    # ------------------------------------------------------------------

    async def is_processed(self, tx_hash: str) -> bool:
        if tx_hash in self._processed:
            return True
        if await self._store.is_processed(tx_hash):
            self._processed.add(tx_hash)
            return True
        return False

    async def mark_processed(self, tx_hash: str) -> bool:
        """Claim ``tx_hash``; False means another path already claimed it."""
        if tx_hash in self._processed:
            return False
        claimed = await self._store.mark_processed(tx_hash)
        self._processed.add(tx_hash)
        return claimed

    # ------------------------------------------------------------------
    # Poll cursor
    # ------------------------------------------------------------------

    async def set_last_seen_tx_hash(self, tx_hash: str) -> None:
        await self._store.set_state(StateKeys.LAST_SEEN_TX_HASH, tx_hash)
        self._last_seen_tx_hash = tx_hash

    # ------------------------------------------------------------------
    # Deposit records
    # ------------------------------------------------------------------

    async def get_deposit_record(self, user_address: str) -> Optional[DepositRecord]:
        return await self._store.get_deposit(user_address)

    async def create_or_update_deposit_record(
        self,
        incoming: IncomingTransaction,
        user_id: Optional[str] = None,
    ) -> DepositRecord:
        """Record a verified deposit for ``incoming.from_address``."""
        address = incoming.from_address
        if await self._store.get_deposit(address) is None:
            record = DepositRecord(
                user_address=address,
                user_id=user_id or auto_user_id(),
                tx_hash=incoming.tx_hash,
                amount=incoming.amount,
                sender_wallet_address=address,
                verified=True,
                timestamp=datetime.fromtimestamp(incoming.block_timestamp, tz=timezone.utc),
            )
            try:
                created = await self._store.create_deposit(record)
                logger.info(f"Created deposit record for {address} (user {record.user_id})")
                return created
            except DuplicateDepositError:
                logger.debug(f"Deposit record for {address} created concurrently, updating instead")

        def apply(record: DepositRecord) -> None:
            # A settled deposit keeps its original tx hash
            if record.refunded:
                return
            record.tx_hash = incoming.tx_hash
            record.amount = incoming.amount
            record.sender_wallet_address = record.sender_wallet_address or address
            record.verified = True
            if user_id and record.user_id.startswith("auto_"):
                record.user_id = user_id

        return await self._store.modify_deposit(address, apply)

    async def mark_verified(
        self,
        user_address: str,
        tx_hash: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> DepositRecord:
        def apply(record: DepositRecord) -> None:
            record.verified = True
            if tx_hash:
                record.tx_hash = tx_hash
            if amount is not None:
                record.amount = amount
            record.last_verification_attempt = utc_now()

        return await self._store.modify_deposit(user_address, apply)

    async def increment_verification_attempts(self, user_address: str) -> DepositRecord:
        def apply(record: DepositRecord) -> None:
            record.verification_attempts += 1
            record.last_verification_attempt = utc_now()

        return await self._store.modify_deposit(user_address, apply)

    async def mark_signup_completed(self, user_address: str) -> DepositRecord:
        """Out-of-band signup completion; the deposit must be verified first."""

        def apply(record: DepositRecord) -> None:
            if not record.verified:
                raise VerificationError(
                    f"Deposit for {user_address} is not verified",
                    details={"user_address": user_address},
                )
            record.signup_completed = True

        return await self._store.modify_deposit(user_address, apply)

    async def list_unrefunded_deposits(self) -> List[DepositRecord]:
        return await self._store.list_deposits(verified=True, refunded=False)

    async def list_unverified_deposits(self) -> List[DepositRecord]:
        return await self._store.list_deposits(verified=False)
