"""
Amount/pattern matching over transaction details.

Pure functions, no I/O. All amounts are integer lovelace and compared
exactly; no floating point is involved.

Two patterns are kept separate because they serve different call paths:

- deposit-to-script: a depositor pays exactly the required amount to the
  watched script address (background refunds, deposit verification).
- wallet ownership: a wallet spends at least the required amount and pays
  exactly the required amount back to itself (proof of control when linking
  an account).
"""
from __future__ import annotations

import time
from typing import Optional

from .models import IncomingTransaction, TransactionDetail


def is_recent(block_time: int, max_age_seconds: int, now: Optional[float] = None) -> bool:
    """True when the transaction is no older than ``max_age_seconds``."""
    if now is None:
        now = time.time()
    return (now - block_time) <= max_age_seconds


def match_deposit_to_script(
    detail: TransactionDetail,
    watched_address: str,
    required_amount: int,
    sender: Optional[str] = None,
) -> Optional[IncomingTransaction]:
    """
    Match the deposit-to-script pattern.

    Without ``sender`` the depositor is the first input not spending from
    the watched address. With ``sender`` at least one input must come from
    that address.
    """
    if sender is None:
        from_address = next(
            (entry.address for entry in detail.inputs if entry.address != watched_address),
            None,
        )
    else:
        from_address = sender if any(entry.address == sender for entry in detail.inputs) else None

    if from_address is None:
        return None

    for output in detail.outputs:
        if output.address == watched_address and output.amount == required_amount:
            return IncomingTransaction(
                tx_hash=detail.tx_hash,
                from_address=from_address,
                to_address=watched_address,
                amount=output.amount,
                block_timestamp=detail.block_time,
                block_height=detail.block_height,
            )
    return None


def match_wallet_ownership(
    detail: TransactionDetail,
    wallet_address: str,
    required_amount: int,
) -> Optional[IncomingTransaction]:
    """Match a round-trip self-payment of exactly ``required_amount``."""
    funded = any(
        entry.address == wallet_address and entry.amount >= required_amount
        for entry in detail.inputs
    )
    if not funded:
        return None

    for output in detail.outputs:
        if output.address == wallet_address and output.amount == required_amount:
            return IncomingTransaction(
                tx_hash=detail.tx_hash,
                from_address=wallet_address,
                to_address=wallet_address,
                amount=output.amount,
                block_timestamp=detail.block_time,
                block_height=detail.block_height,
            )
    return None
