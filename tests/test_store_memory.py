"""
Tests for k33p_refund.store_memory.
"""
from __future__ import annotations

import pytest

from k33p_refund.exceptions import DepositNotFoundError, DuplicateDepositError
from k33p_refund.models import DepositRecord, TransactionLogEntry, TransactionType


class TestProcessedMarkers:
    @pytest.mark.asyncio
    async def test_claim_once(self, store):
        assert await store.mark_processed("tx_1") is True
        assert await store.mark_processed("tx_1") is False
        assert await store.is_processed("tx_1")
        assert await store.list_processed() == ["tx_1"]



class TestRefundClaims:
    @pytest.mark.asyncio
    async def test_one_claim_per_deposit(self, store):
        assert await store.claim_refund("tx_1", "addr_a") is True
        assert await store.claim_refund("tx_1", "addr_b") is False

        claim = await store.get_refund_claim("tx_1")
        assert claim.user_address == "addr_a"
        assert claim.refund_tx_hash is None

    @pytest.mark.asyncio
    async def test_completed_claim_cannot_be_released(self, store):
        await store.claim_refund("tx_1", "addr_a")
        await store.complete_refund_claim("tx_1", "tx_refund")

        assert await store.release_refund_claim("tx_1") is False
        assert (await store.get_refund_claim("tx_1")).refund_tx_hash == "tx_refund"

    @pytest.mark.asyncio
    async def test_release_allows_new_claim(self, store):
        await store.claim_refund("tx_1", "addr_a")

        assert await store.release_refund_claim("tx_1") is True
        assert await store.release_refund_claim("tx_1") is False
        assert await store.claim_refund("tx_1", "addr_b") is True

class TestDeposits:
    @pytest.mark.asyncio
    async def test_one_record_per_address(self, store):
        await store.create_deposit(DepositRecord(user_address="addr_a", user_id="user_1"))

        with pytest.raises(DuplicateDepositError):
            await store.create_deposit(DepositRecord(user_address="addr_a", user_id="user_2"))

    @pytest.mark.asyncio
    async def test_get_returns_snapshot(self, store):
        await store.create_deposit(DepositRecord(user_address="addr_a", user_id="user_1"))

        snapshot = await store.get_deposit("addr_a")
        snapshot.verified = True

        assert (await store.get_deposit("addr_a")).verified is False

    @pytest.mark.asyncio
    async def test_raising_mutator_leaves_record_untouched(self, store):
        await store.create_deposit(DepositRecord(user_address="addr_a", user_id="user_1"))

        def mutate(record):
            record.verified = True
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await store.modify_deposit("addr_a", mutate)

        assert (await store.get_deposit("addr_a")).verified is False

    @pytest.mark.asyncio
    async def test_modify_missing(self, store):
        with pytest.raises(DepositNotFoundError):
            await store.modify_deposit("addr_missing", lambda record: None)

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        await store.create_deposit(DepositRecord(user_address="addr_a", user_id="u1", verified=True))
        await store.create_deposit(DepositRecord(user_address="addr_b", user_id="u2"))
        refunded = DepositRecord(user_address="addr_c", user_id="u3", verified=True)
        refunded.mark_refunded("tx_refund")
        await store.create_deposit(refunded)

        pending = await store.list_deposits(verified=True, refunded=False)
        unverified = await store.list_deposits(verified=False)

        assert [r.user_address for r in pending] == ["addr_a"]
        assert [r.user_address for r in unverified] == ["addr_b"]
        assert len(await store.list_deposits()) == 3


class TestTransactionLogAndState:
    @pytest.mark.asyncio
    async def test_log_is_keyed_by_hash(self, store):
        entry = TransactionLogEntry(
            tx_hash="tx_refund",
            from_address="addr_script",
            to_address="addr_a",
            amount=2_000_000,
            transaction_type=TransactionType.REFUND,
        )

        assert await store.record_transaction(entry) is True
        assert await store.record_transaction(entry) is False
        assert len(await store.list_transactions(TransactionType.REFUND)) == 1
        assert await store.list_transactions(TransactionType.DEPOSIT) == []

    @pytest.mark.asyncio
    async def test_state(self, store):
        assert await store.get_state("last_seen_tx_hash") is None
        await store.set_state("last_seen_tx_hash", "tx_9")
        assert await store.get_state("last_seen_tx_hash") == "tx_9"
