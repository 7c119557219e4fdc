"""
Refund issuer.

A refund is issued at most once per deposit transaction. Before submitting,
the issuer takes the store's refund claim on the deposit tx hash; the claim
is shared by every record naming that deposit and by every process using
the same store. Within one process, calls for the same depositor also run
under one asyncio.Lock, and the final ``refunded`` write re-checks the flag
against the latest persisted row.

A claim is released only when the submitter reports a definite failure. An
unexpected error leaves it held, since the refund may have reached the
chain; ``k33p-refund release-claim`` frees it after an operator has checked.
"""
from __future__ import annotations

import asyncio
import importlib
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional

from .exceptions import (
    AlreadyRefundedError,
    ConfigurationError,
    IndexerError,
    RefundSubmissionError,
)
from .indexer import BlockfrostIndexerClient
from .models import (
    DepositRecord,
    RefundRequest,
    RefundResult,
    TransactionLogEntry,
    TransactionStatus,
    TransactionType,
)
from .store import DepositStore

logger = logging.getLogger(__name__)

# Builds and signs the refund transaction, returning CBOR bytes.
RefundTransactionBuilder = Callable[[RefundRequest], Awaitable[bytes]]


def load_refund_builder(path: str) -> RefundTransactionBuilder:
    """Import a builder given as ``package.module:callable``."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            f"Refund builder must look like 'package.module:callable', got {path!r}"
        )
    try:
        builder = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load refund builder {path!r}: {e}") from e
    if not callable(builder):
        raise ConfigurationError(f"Refund builder {path!r} is not callable")
    return builder


class RefundSubmitter(ABC):
    """Abstract interface for refund submission."""

    @abstractmethod
    async def submit_refund(self, request: RefundRequest) -> str:
        """Submit the refund transaction and return its hash."""
        pass


class SimulatedRefundSubmitter(RefundSubmitter):
    """Simulated submitter for development and tests."""

    def __init__(self, fail_times: int = 0, failure_message: str = "Insufficient funds"):
        self._fail_times = fail_times
        self._failure_message = failure_message
        self.submissions: List[RefundRequest] = []

    async def submit_refund(self, request: RefundRequest) -> str:
        if self._fail_times > 0:
            self._fail_times -= 1
            raise RefundSubmissionError(self._failure_message)
        self.submissions.append(request)
        return "sim_refund_" + secrets.token_hex(28)


class BlockfrostRefundSubmitter(RefundSubmitter):
    """Submits a caller-built signed transaction through the indexer.

    Submission is never retried here. A builder failure or an HTTP 4xx
    rejection raises RefundSubmissionError and is left for the
    unrefunded-deposit sweep. Timeouts, transport errors and 5xx responses
    propagate unchanged, which leaves the refund claim held.
    """

    def __init__(self, indexer_client: BlockfrostIndexerClient, builder: RefundTransactionBuilder):
        self._client = indexer_client
        self._builder = builder

    async def submit_refund(self, request: RefundRequest) -> str:
        try:
            cbor = await self._builder(request)
        except Exception as e:
            raise RefundSubmissionError(f"Failed to build refund transaction: {e}") from e
        try:
            return await self._client.submit_transaction(cbor)
        except IndexerError as e:
            if e.status_code is not None and 400 <= e.status_code < 500:
                raise RefundSubmissionError(f"Failed to submit refund transaction: {e.message}") from e
            raise


class RefundIssuer:
    def __init__(
        self,
        store: DepositStore,
        submitter: RefundSubmitter,
        deposit_address: str,
        refund_amount: int,
    ):
        self._store = store
        self._submitter = submitter
        self._deposit_address = deposit_address
        self._refund_amount = refund_amount
        self._locks: Dict[str, asyncio.Lock] = {}
        # Submitted refunds whose record update failed: address -> refund tx hash
        self._unrecorded: Dict[str, str] = {}

    @property
    def submitter(self) -> RefundSubmitter:
        return self._submitter

    def _lock_for(self, user_address: str) -> asyncio.Lock:
        lock = self._locks.get(user_address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_address] = lock
        return lock

    async def process_refund(
        self,
        user_address: str,
        refund_to_address: Optional[str] = None,
    ) -> RefundResult:
        """Refund the deposit of ``user_address``; safe to call repeatedly."""
        async with self._lock_for(user_address):
            return await self._process_locked(user_address, refund_to_address)

    async def _process_locked(
        self,
        user_address: str,
        refund_to_address: Optional[str],
    ) -> RefundResult:
        record = await self._store.get_deposit(user_address)
        if record is None:
            return RefundResult(success=False, message="No deposit found for this address")

        if record.refunded:
            return RefundResult(
                success=True,
                message="Deposit has already been refunded",
                tx_hash=record.refund_tx_hash,
                already_processed=True,
            )

        if not record.verified:
            return RefundResult(success=False, message="Deposit has not been verified")

        claim_key = record.tx_hash or user_address
        destination = refund_to_address or record.sender_wallet_address or user_address
        request = RefundRequest(
            user_address=user_address,
            refund_to_address=destination,
            amount=self._refund_amount,
            deposit_tx_hash=record.tx_hash,
        )

        refund_tx_hash = self._unrecorded.get(user_address)
        if refund_tx_hash is not None:
            logger.info(f"Reusing submitted refund {refund_tx_hash} for {user_address}")
        else:
            if not await self._store.claim_refund(claim_key, user_address):
                return await self._resolve_claimed(user_address, claim_key)
            try:
                refund_tx_hash = await self._submitter.submit_refund(request)
            except RefundSubmissionError as e:
                logger.error(f"Refund for {user_address} failed: {e.message}")
                await self._release(claim_key)
                return RefundResult(success=False, message=e.message)
            except Exception as e:
                # Outcome unknown; the claim stays until an operator releases it
                logger.error(
                    f"Refund for {user_address} failed unexpectedly: {e}; "
                    f"claim on deposit {claim_key} kept",
                    exc_info=True,
                )
                return RefundResult(success=False, message=f"Refund failed: {e}")

        try:
            await self._store.complete_refund_claim(claim_key, refund_tx_hash)
            settled = await self._settle(user_address, refund_tx_hash)
        except Exception as e:
            self._unrecorded[user_address] = refund_tx_hash
            logger.error(
                f"Refund {refund_tx_hash} submitted for {user_address} but the record "
                f"update failed: {e}",
                exc_info=True,
            )
            return RefundResult(
                success=False,
                message="Refund submitted but not recorded",
                tx_hash=refund_tx_hash,
            )

        self._unrecorded.pop(user_address, None)
        if settled != refund_tx_hash:
            logger.error(
                f"Deposit for {user_address} was settled concurrently with "
                f"{settled}; submitted refund {refund_tx_hash} is a duplicate"
            )
            return RefundResult(
                success=True,
                message="Deposit has already been refunded",
                tx_hash=settled,
                already_processed=True,
            )

        entry = TransactionLogEntry(
            tx_hash=refund_tx_hash,
            from_address=self._deposit_address,
            to_address=destination,
            amount=self._refund_amount,
            transaction_type=TransactionType.REFUND,
            status=TransactionStatus.PENDING,
            user_id=record.user_id,
        )
        try:
            if not await self._store.record_transaction(entry):
                logger.debug(f"Refund log entry {refund_tx_hash} already present")
        except Exception as e:
            # Record already settled
            logger.error(f"Failed to log refund {refund_tx_hash}: {e}", exc_info=True)

        logger.info(f"Refund issued for {user_address} -> {destination}: {refund_tx_hash}")
        return RefundResult(success=True, message="Refund processed successfully", tx_hash=refund_tx_hash)

    async def _settle(self, user_address: str, refund_tx_hash: str) -> str:
        """Mark the record refunded; returns the refund hash the record ends up with."""

        def settle(current: DepositRecord) -> None:
            if current.refunded:
                raise AlreadyRefundedError(user_address, current.refund_tx_hash)
            current.mark_refunded(refund_tx_hash)

        try:
            await self._store.modify_deposit(user_address, settle)
        except AlreadyRefundedError as e:
            return e.refund_tx_hash
        return refund_tx_hash

    async def _resolve_claimed(self, user_address: str, claim_key: str) -> RefundResult:
        """Another record or process owns the refund of this deposit."""
        claim = await self._store.get_refund_claim(claim_key)
        if claim is None or claim.refund_tx_hash is None:
            owner = claim.user_address if claim else "unknown"
            logger.warning(
                f"Refund of deposit {claim_key} for {user_address} is already claimed "
                f"by {owner}; skipping"
            )
            return RefundResult(
                success=False,
                message="Refund already in progress for this deposit",
                in_progress=True,
            )

        if claim.user_address != user_address:
            logger.warning(
                f"Deposit {claim_key} of {user_address} was already refunded for "
                f"{claim.user_address} with {claim.refund_tx_hash}"
            )
        settled = await self._settle(user_address, claim.refund_tx_hash)
        return RefundResult(
            success=True,
            message="Deposit has already been refunded",
            tx_hash=settled,
            already_processed=True,
        )

    async def _release(self, claim_key: str) -> None:
        try:
            await self._store.release_refund_claim(claim_key)
        except Exception as e:
            logger.error(f"Could not release refund claim on {claim_key}: {e}", exc_info=True)
