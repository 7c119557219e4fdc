"""
Tests for k33p_refund.refund.

Tests cover:
- Successful refund settles the record and logs a pending refund
- Repeated and concurrent calls refund at most once
- Failures leave the record unrefunded and retryable
- Refund claims shared across issuers and across records of one deposit
- Blockfrost submission path and builder loading
"""
from __future__ import annotations

import asyncio

import pytest

from k33p_refund.exceptions import (
    ConfigurationError,
    IndexerTransientError,
    RefundSubmissionError,
)
from k33p_refund.models import (
    DepositRecord,
    RefundRequest,
    TransactionStatus,
    TransactionType,
)
from k33p_refund.refund import (
    BlockfrostRefundSubmitter,
    RefundIssuer,
    SimulatedRefundSubmitter,
    load_refund_builder,
)

SCRIPT = "addr_script"
USER = "addr_user"
WALLET = "addr_wallet"


async def seed(store, verified=True, sender=WALLET):
    await store.create_deposit(
        DepositRecord(
            user_address=USER,
            user_id="user_1",
            tx_hash="tx_dep",
            amount=2_000_000,
            sender_wallet_address=sender,
            verified=verified,
        )
    )


def make_issuer(store, submitter):
    return RefundIssuer(store, submitter, deposit_address=SCRIPT, refund_amount=2_000_000)


class TestRefundIssuer:
    """Tests for RefundIssuer.process_refund."""

    @pytest.mark.asyncio
    async def test_successful_refund(self, store, submitter):
        await seed(store)
        issuer = make_issuer(store, submitter)

        result = await issuer.process_refund(USER)

        assert result.success
        assert not result.already_processed
        assert result.tx_hash.startswith("sim_refund_")

        record = await store.get_deposit(USER)
        assert record.refunded
        assert record.refund_tx_hash == result.tx_hash
        assert record.refund_timestamp is not None
        assert record.tx_hash == "tx_dep"

        [entry] = await store.list_transactions(TransactionType.REFUND)
        assert entry.tx_hash == result.tx_hash
        assert entry.status == TransactionStatus.PENDING
        assert entry.from_address == SCRIPT
        assert entry.to_address == WALLET
        assert entry.amount == 2_000_000
        assert entry.user_id == "user_1"

        [request] = submitter.submissions
        assert request.refund_to_address == WALLET
        assert request.deposit_tx_hash == "tx_dep"

    @pytest.mark.asyncio
    async def test_second_call_is_noop(self, store, submitter):
        await seed(store)
        issuer = make_issuer(store, submitter)

        first = await issuer.process_refund(USER)
        second = await issuer.process_refund(USER)

        assert second.success
        assert second.already_processed
        assert second.tx_hash == first.tx_hash
        assert second.message == "Deposit has already been refunded"
        assert len(submitter.submissions) == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_refund_once(self, store, submitter):
        await seed(store)
        issuer = make_issuer(store, submitter)

        results = await asyncio.gather(*(issuer.process_refund(USER) for _ in range(5)))

        assert all(r.success for r in results)
        assert sum(1 for r in results if not r.already_processed) == 1
        assert len(submitter.submissions) == 1
        assert len(await store.list_transactions(TransactionType.REFUND)) == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_record_unrefunded(self, store):
        await seed(store)
        submitter = SimulatedRefundSubmitter(fail_times=1, failure_message="Insufficient funds")
        issuer = make_issuer(store, submitter)

        failed = await issuer.process_refund(USER)

        assert not failed.success
        assert failed.message == "Insufficient funds"
        record = await store.get_deposit(USER)
        assert not record.refunded
        assert record.refund_tx_hash is None
        assert await store.list_transactions(TransactionType.REFUND) == []

        assert await store.get_refund_claim("tx_dep") is None

        retried = await issuer.process_refund(USER)
        assert retried.success
        assert (await store.get_deposit(USER)).refunded

    @pytest.mark.asyncio
    async def test_unexpected_submitter_error(self, store):
        class Broken(SimulatedRefundSubmitter):
            async def submit_refund(self, request):
                raise RuntimeError("ledger build failed")

        await seed(store)
        result = await make_issuer(store, Broken()).process_refund(USER)

        assert not result.success
        assert "ledger build failed" in result.message
        assert not (await store.get_deposit(USER)).refunded
        claim = await store.get_refund_claim("tx_dep")
        assert claim.user_address == USER
        assert claim.refund_tx_hash is None

    @pytest.mark.asyncio
    async def test_no_deposit(self, store, submitter):
        result = await make_issuer(store, submitter).process_refund(USER)
        assert not result.success
        assert result.message == "No deposit found for this address"

    @pytest.mark.asyncio
    async def test_unverified_deposit(self, store, submitter):
        await seed(store, verified=False)
        result = await make_issuer(store, submitter).process_refund(USER)
        assert not result.success
        assert submitter.submissions == []

    @pytest.mark.asyncio
    async def test_explicit_destination(self, store, submitter):
        await seed(store)
        await make_issuer(store, submitter).process_refund(USER, refund_to_address="addr_other")
        assert submitter.submissions[0].refund_to_address == "addr_other"

    @pytest.mark.asyncio
    async def test_falls_back_to_depositor_address(self, store, submitter):
        await seed(store, sender=None)
        await make_issuer(store, submitter).process_refund(USER)
        assert submitter.submissions[0].refund_to_address == USER

    @pytest.mark.asyncio
    async def test_record_update_failure_reuses_submitted_refund(self, store, submitter):
        """A refund whose record write failed is not submitted twice."""
        await seed(store)
        issuer = make_issuer(store, submitter)
        original = store.modify_deposit
        calls = {"n": 0}

        async def flaky_modify(address, mutator):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("database went away")
            return await original(address, mutator)

        store.modify_deposit = flaky_modify

        first = await issuer.process_refund(USER)
        second = await issuer.process_refund(USER)

        assert not first.success
        assert second.success
        assert second.tx_hash == first.tx_hash
        assert len(submitter.submissions) == 1


class SlowSubmitter(SimulatedRefundSubmitter):
    async def submit_refund(self, request):
        await asyncio.sleep(0.01)
        return await super().submit_refund(request)


class TestRefundClaims:
    """Tests for the per-deposit refund claim."""

    @pytest.mark.asyncio
    async def test_two_issuers_sharing_store_refund_once(self, store):
        await seed(store)
        submitter = SlowSubmitter()
        first = make_issuer(store, submitter)
        second = make_issuer(store, submitter)

        a, b = await asyncio.gather(first.process_refund(USER), second.process_refund(USER))

        assert len(submitter.submissions) == 1
        assert a.success and not a.already_processed
        assert not b.success
        assert b.in_progress
        assert b.message == "Refund already in progress for this deposit"

        again = await second.process_refund(USER)
        assert again.already_processed
        assert again.tx_hash == a.tx_hash
        assert len(submitter.submissions) == 1

    @pytest.mark.asyncio
    async def test_claim_records_refund_hash(self, store, submitter):
        await seed(store)

        result = await make_issuer(store, submitter).process_refund(USER)

        claim = await store.get_refund_claim("tx_dep")
        assert claim.user_address == USER
        assert claim.refund_tx_hash == result.tx_hash
        assert claim.completed_at is not None
        assert not await store.release_refund_claim("tx_dep")

    @pytest.mark.asyncio
    async def test_second_record_for_same_deposit_is_not_refunded_again(self, store, submitter):
        await seed(store)
        await store.create_deposit(
            DepositRecord(
                user_address="addr_signup",
                user_id="user_2",
                tx_hash="tx_dep",
                amount=2_000_000,
                sender_wallet_address=WALLET,
                verified=True,
            )
        )
        issuer = make_issuer(store, submitter)

        first = await issuer.process_refund(USER)
        second = await issuer.process_refund("addr_signup")

        assert len(submitter.submissions) == 1
        assert second.success
        assert second.already_processed
        assert second.tx_hash == first.tx_hash
        record = await store.get_deposit("addr_signup")
        assert record.refunded
        assert record.refund_tx_hash == first.tx_hash
        assert await store.list_deposits(verified=True, refunded=False) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_holds_claim_until_released(self, store):
        class TimesOutOnce(SimulatedRefundSubmitter):
            def __init__(self):
                super().__init__()
                self.calls = 0

            async def submit_refund(self, request):
                self.calls += 1
                if self.calls == 1:
                    raise TimeoutError("submit timed out")
                return await super().submit_refund(request)

        await seed(store)
        submitter = TimesOutOnce()
        issuer = make_issuer(store, submitter)

        failed = await issuer.process_refund(USER)
        held = await issuer.process_refund(USER)

        assert not failed.success
        assert held.in_progress
        assert submitter.calls == 1

        assert await store.release_refund_claim("tx_dep")
        retried = await issuer.process_refund(USER)
        assert retried.success
        assert len(submitter.submissions) == 1


class TestBlockfrostRefundSubmitter:
    """Tests for BlockfrostRefundSubmitter."""

    @pytest.mark.asyncio
    async def test_submits_built_transaction(self, blockfrost):
        built = []

        async def builder(request: RefundRequest) -> bytes:
            built.append(request)
            return b"signed-cbor"

        submitter = BlockfrostRefundSubmitter(blockfrost.client(), builder)
        request = RefundRequest(user_address=USER, refund_to_address=WALLET, amount=2_000_000)

        tx_hash = await submitter.submit_refund(request)

        assert tx_hash == "submitted_1"
        assert built == [request]
        assert blockfrost.submitted == [b"signed-cbor"]

    @pytest.mark.asyncio
    async def test_submit_failure(self, blockfrost):
        async def builder(request):
            return b"signed-cbor"

        blockfrost.fail_queue = [400]
        submitter = BlockfrostRefundSubmitter(blockfrost.client(), builder)

        with pytest.raises(RefundSubmissionError):
            await submitter.submit_refund(RefundRequest(USER, WALLET, 2_000_000))

    @pytest.mark.asyncio
    async def test_server_error_is_not_a_definite_failure(self, blockfrost):
        async def builder(request):
            return b"signed-cbor"

        blockfrost.fail_queue = [503]
        submitter = BlockfrostRefundSubmitter(blockfrost.client(), builder)

        with pytest.raises(IndexerTransientError):
            await submitter.submit_refund(RefundRequest(USER, WALLET, 2_000_000))

    @pytest.mark.asyncio
    async def test_ambiguous_submit_keeps_claim(self, blockfrost, store):
        async def builder(request):
            return b"signed-cbor"

        await seed(store)
        blockfrost.fail_queue = [503]
        issuer = make_issuer(store, BlockfrostRefundSubmitter(blockfrost.client(), builder))

        failed = await issuer.process_refund(USER)
        held = await issuer.process_refund(USER)

        assert not failed.success
        assert held.in_progress
        assert (await store.get_refund_claim("tx_dep")).refund_tx_hash is None
        assert blockfrost.submitted == []

    @pytest.mark.asyncio
    async def test_builder_failure(self, blockfrost):
        async def builder(request):
            raise ValueError("insufficient balance")

        submitter = BlockfrostRefundSubmitter(blockfrost.client(), builder)

        with pytest.raises(RefundSubmissionError):
            await submitter.submit_refund(RefundRequest(USER, WALLET, 2_000_000))
        assert blockfrost.submitted == []


async def build_signed_refund(request: RefundRequest) -> bytes:
    return b"signed-cbor"


class TestLoadRefundBuilder:
    """Tests for load_refund_builder."""

    def test_loads_callable(self):
        assert load_refund_builder(f"{__name__}:build_signed_refund") is build_signed_refund

    @pytest.mark.parametrize(
        "path",
        [
            "build_signed_refund",
            f"{__name__}:",
            f"{__name__}:missing",
            f"{__name__}:USER",
            "no_such_module_k33p:build",
        ],
    )
    def test_invalid_paths(self, path):
        with pytest.raises(ConfigurationError):
            load_refund_builder(path)
