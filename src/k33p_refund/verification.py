"""
Synchronous verification requests.

Answers "has this wallet sent the deposit yet?" and "does this caller
control this wallet?" for the surrounding API layer. Verdicts are cached
with asymmetric TTLs; indexer failures are never cached.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .cache import VerificationCache
from .constants import FetchCounts, TransactionAge
from .exceptions import DepositNotFoundError, IndexerError, IndexerNotFoundError
from .indexer import ResilientIndexer
from .ledger import IdempotencyLedger
from .matcher import is_recent, match_deposit_to_script, match_wallet_ownership
from .models import IncomingTransaction, TransactionDetail, VerificationResult

logger = logging.getLogger(__name__)

Matcher = Callable[[TransactionDetail], Optional[IncomingTransaction]]


class DepositVerifier:
    def __init__(
        self,
        indexer: ResilientIndexer,
        cache: VerificationCache,
        ledger: IdempotencyLedger,
        script_address: str,
        required_amount: int,
        max_age: int = TransactionAge.VERIFICATION_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        self._indexer = indexer
        self._cache = cache
        self._ledger = ledger
        self._script_address = script_address
        self._required_amount = required_amount
        self._max_age = max_age
        self._clock = clock

    @property
    def cache(self) -> VerificationCache:
        return self._cache

    async def _scan(self, address: str, count: int, match: Matcher) -> Optional[IncomingTransaction]:
        """Walk the address history newest first; IndexerError propagates."""
        listing = await self._indexer.list_address_transactions(address, count=count)
        now = self._clock()
        for item in listing:
            if item.block_time is not None and not is_recent(item.block_time, self._max_age, now):
                # Listing is newest first, everything after is older
                break
            try:
                detail = await self._indexer.get_transaction_detail(
                    item.tx_hash,
                    block_time=item.block_time,
                    block_height=item.block_height,
                )
            except IndexerNotFoundError:
                continue
            if not is_recent(detail.block_time, self._max_age, now):
                continue
            found = match(detail)
            if found is not None:
                return found
        return None

    def _deposit_matcher(self, sender_wallet: str) -> Matcher:
        def match(detail: TransactionDetail) -> Optional[IncomingTransaction]:
            return match_deposit_to_script(
                detail,
                self._script_address,
                self._required_amount,
                sender=sender_wallet,
            )
        return match

    async def find_deposit(self, sender_wallet: str) -> VerificationResult:
        """Uncached lookup of a qualifying deposit sent by ``sender_wallet``."""
        try:
            found = await self._scan(
                sender_wallet,
                FetchCounts.DEPOSIT_VERIFICATION,
                self._deposit_matcher(sender_wallet),
            )
        except IndexerError as e:
            logger.warning(f"Deposit lookup for {sender_wallet} failed: {e.message}")
            return VerificationResult(verified=False, message=f"Indexer unavailable: {e.message}")

        if found is None:
            return VerificationResult(
                verified=False,
                message=f"No qualifying deposit found from {sender_wallet}",
            )
        return VerificationResult(
            verified=True,
            message="Deposit found",
            tx_hash=found.tx_hash,
            amount=found.amount,
            transaction=found,
        )

    async def verify_deposit(self, sender_wallet: str) -> bool:
        key = VerificationCache.deposit_key(sender_wallet)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            found = await self._scan(
                sender_wallet,
                FetchCounts.DEPOSIT_VERIFICATION,
                self._deposit_matcher(sender_wallet),
            )
        except IndexerError as e:
            logger.warning(f"Deposit verification for {sender_wallet} not cached: {e.message}")
            return False

        verdict = found is not None
        self._cache.set_verdict(key, verdict)
        return verdict

    async def verify_wallet_ownership(self, wallet_address: str) -> bool:
        """Round-trip self-payment check used when linking a wallet."""
        cached = self._cache.get(wallet_address)
        if cached is not None:
            return cached

        try:
            found = await self._scan(
                wallet_address,
                FetchCounts.WALLET_VERIFICATION,
                lambda detail: match_wallet_ownership(detail, wallet_address, self._required_amount),
            )
        except IndexerError as e:
            logger.warning(f"Ownership verification for {wallet_address} not cached: {e.message}")
            return False

        verdict = found is not None
        self._cache.set_verdict(wallet_address, verdict)
        return verdict

    async def retry_verification(self, user_address: str) -> VerificationResult:
        record = await self._ledger.get_deposit_record(user_address)
        if record is None:
            return VerificationResult(verified=False, message="No deposit found for this address")

        if record.verified:
            return VerificationResult(
                verified=True,
                message="User is already verified",
                tx_hash=record.tx_hash,
                amount=record.amount,
            )

        if not record.sender_wallet_address:
            return VerificationResult(
                verified=False,
                message="No sender wallet address available for verification",
            )

        result = await self.find_deposit(record.sender_wallet_address)
        try:
            if result.verified:
                await self._ledger.mark_verified(user_address, tx_hash=result.tx_hash, amount=result.amount)
                self._cache.set_verdict(VerificationCache.deposit_key(record.sender_wallet_address), True)
                return VerificationResult(
                    verified=True,
                    message="Verification successful",
                    tx_hash=result.tx_hash,
                    amount=result.amount,
                    transaction=result.transaction,
                )
            await self._ledger.increment_verification_attempts(user_address)
        except DepositNotFoundError:
            return VerificationResult(verified=False, message="No deposit found for this address")

        return VerificationResult(verified=False, message=f"Verification failed: {result.message}")

    async def auto_verify_deposits(self) -> int:
        """Retry verification for every unverified deposit; returns the number verified."""
        pending = await self._ledger.list_unverified_deposits()
        logger.info(f"Auto-verifying {len(pending)} unverified deposits")

        verified = 0
        for record in pending:
            if not record.sender_wallet_address:
                continue
            try:
                result = await self.retry_verification(record.user_address)
            except Exception as e:
                logger.error(f"Auto-verification for {record.user_address} failed: {e}", exc_info=True)
                continue
            if result.verified:
                verified += 1
                logger.info(f"Verified deposit for user {record.user_id}")
            else:
                logger.info(f"Could not verify deposit for user {record.user_id}: {result.message}")
        return verified
