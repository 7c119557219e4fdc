"""
Tests for k33p_refund.matcher.

Tests cover:
- Exact-amount deposit-to-script matching
- Sender resolution with and without a known sender
- Wallet-ownership round-trip pattern
- Recency filter boundaries
"""
from __future__ import annotations

import pytest

from k33p_refund.matcher import is_recent, match_deposit_to_script, match_wallet_ownership
from k33p_refund.models import TransactionDetail, UtxoEntry

SCRIPT = "addr_script"
ALICE = "addr_alice"
BOB = "addr_bob"
REQUIRED = 2_000_000


def detail(inputs, outputs, tx_hash="tx1", block_time=1_700_000_000, block_height=42):
    return TransactionDetail(
        tx_hash=tx_hash,
        inputs=tuple(UtxoEntry(a, q) for a, q in inputs),
        outputs=tuple(UtxoEntry(a, q) for a, q in outputs),
        block_time=block_time,
        block_height=block_height,
    )


class TestDepositToScript:
    """Tests for the deposit-to-script pattern."""

    def test_exact_amount_matches(self):
        """Exactly the required amount to the script address matches."""
        tx = detail([(ALICE, 5_000_000)], [(SCRIPT, REQUIRED), (ALICE, 2_800_000)])

        incoming = match_deposit_to_script(tx, SCRIPT, REQUIRED)

        assert incoming is not None
        assert incoming.tx_hash == "tx1"
        assert incoming.from_address == ALICE
        assert incoming.to_address == SCRIPT
        assert incoming.amount == REQUIRED
        assert incoming.block_timestamp == 1_700_000_000
        assert incoming.block_height == 42

    @pytest.mark.parametrize("amount", [REQUIRED - 1, REQUIRED + 1, 0, 2 * REQUIRED])
    def test_inexact_amounts_never_match(self, amount):
        """One lovelace off in either direction does not match."""
        tx = detail([(ALICE, 5_000_000)], [(SCRIPT, amount)])
        assert match_deposit_to_script(tx, SCRIPT, REQUIRED) is None

    def test_no_output_to_script(self):
        """Payments elsewhere are ignored."""
        tx = detail([(ALICE, 5_000_000)], [(BOB, REQUIRED)])
        assert match_deposit_to_script(tx, SCRIPT, REQUIRED) is None

    def test_any_matching_output_is_enough(self):
        """A second output with the exact amount still matches."""
        tx = detail([(ALICE, 9_000_000)], [(SCRIPT, 1_000_000), (SCRIPT, REQUIRED)])
        incoming = match_deposit_to_script(tx, SCRIPT, REQUIRED)
        assert incoming is not None
        assert incoming.amount == REQUIRED

    def test_inputs_from_script_are_not_the_sender(self):
        """The depositor is the first input not spending from the script."""
        tx = detail([(SCRIPT, 3_000_000), (BOB, 5_000_000)], [(SCRIPT, REQUIRED)])
        incoming = match_deposit_to_script(tx, SCRIPT, REQUIRED)
        assert incoming is not None
        assert incoming.from_address == BOB

    def test_only_script_inputs_never_match(self):
        """A refund leaving the script is not a deposit."""
        tx = detail([(SCRIPT, 5_000_000)], [(SCRIPT, REQUIRED), (ALICE, 2_800_000)])
        assert match_deposit_to_script(tx, SCRIPT, REQUIRED) is None

    def test_known_sender_must_be_an_input(self):
        """With a known sender, that sender must fund the transaction."""
        tx = detail([(ALICE, 5_000_000)], [(SCRIPT, REQUIRED)])

        assert match_deposit_to_script(tx, SCRIPT, REQUIRED, sender=BOB) is None
        incoming = match_deposit_to_script(tx, SCRIPT, REQUIRED, sender=ALICE)
        assert incoming is not None
        assert incoming.from_address == ALICE

    def test_known_sender_not_first_input(self):
        """The known sender may appear after other inputs."""
        tx = detail([(BOB, 1_000_000), (ALICE, 5_000_000)], [(SCRIPT, REQUIRED)])
        incoming = match_deposit_to_script(tx, SCRIPT, REQUIRED, sender=ALICE)
        assert incoming is not None
        assert incoming.from_address == ALICE


class TestWalletOwnership:
    """Tests for the round-trip self-payment pattern."""

    def test_round_trip_matches(self):
        """Spending at least the amount and paying exactly it back matches."""
        tx = detail([(ALICE, 10_000_000)], [(ALICE, REQUIRED), (ALICE, 7_800_000)])
        incoming = match_wallet_ownership(tx, ALICE, REQUIRED)
        assert incoming is not None
        assert incoming.from_address == ALICE
        assert incoming.to_address == ALICE
        assert incoming.amount == REQUIRED

    def test_input_equal_to_required_is_enough(self):
        """The input bound is inclusive."""
        tx = detail([(ALICE, REQUIRED)], [(ALICE, REQUIRED)])
        assert match_wallet_ownership(tx, ALICE, REQUIRED) is not None

    def test_insufficient_input(self):
        """An input below the required amount is not proof of control."""
        tx = detail([(ALICE, REQUIRED - 1)], [(ALICE, REQUIRED)])
        assert match_wallet_ownership(tx, ALICE, REQUIRED) is None

    def test_output_must_be_exact(self):
        """The self-payment must be exactly the required amount."""
        tx = detail([(ALICE, 10_000_000)], [(ALICE, REQUIRED + 1)])
        assert match_wallet_ownership(tx, ALICE, REQUIRED) is None

    def test_payment_to_other_wallet(self):
        """Paying someone else does not prove control."""
        tx = detail([(ALICE, 10_000_000)], [(BOB, REQUIRED)])
        assert match_wallet_ownership(tx, ALICE, REQUIRED) is None

    def test_deposit_pattern_is_not_ownership(self):
        """The two patterns stay distinct."""
        tx = detail([(ALICE, 10_000_000)], [(SCRIPT, REQUIRED)])
        assert match_wallet_ownership(tx, ALICE, REQUIRED) is None
        assert match_deposit_to_script(tx, SCRIPT, REQUIRED) is not None


class TestRecency:
    """Tests for is_recent."""

    def test_within_window(self):
        assert is_recent(1_000, 3600, now=1_000 + 3599)

    def test_boundary_is_inclusive(self):
        assert is_recent(1_000, 3600, now=1_000 + 3600)

    def test_older_than_window(self):
        assert not is_recent(1_000, 3600, now=1_000 + 3601)

    def test_defaults_to_wall_clock(self):
        import time
        assert is_recent(int(time.time()) - 10, 3600)
