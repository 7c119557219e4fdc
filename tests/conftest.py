"""
Pytest configuration for k33p_refund tests.

Provides a fake Blockfrost API served through ``httpx.MockTransport`` and
helpers that wire a RefundMonitor against it with a controllable clock.
"""
from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("K33P_ENVIRONMENT", "dev")

from k33p_refund.circuit_breaker import CooldownCircuitBreaker
from k33p_refund.config import K33PSettings
from k33p_refund.indexer import BlockfrostIndexerClient, ResilientIndexer
from k33p_refund.ledger import IdempotencyLedger
from k33p_refund.monitor import RefundMonitor
from k33p_refund.refund import RefundIssuer, SimulatedRefundSubmitter
from k33p_refund.retry import RetryConfig
from k33p_refund.store_memory import InMemoryDepositStore

BASE_URL = "https://blockfrost.test/api/v0"
SCRIPT_ADDRESS = "addr_test1_script_deposit"
SENDER = "addr_test1_sender_alice"
OTHER_SENDER = "addr_test1_sender_bob"
REQUIRED = 2_000_000


class FakeClock:
    """Manually advanced clock usable as both wall and monotonic time."""

    def __init__(self, start: Optional[float] = None):
        self.now = float(int(time.time())) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def lovelace(quantity: int) -> List[Dict[str, str]]:
    return [{"unit": "lovelace", "quantity": str(quantity)}]


class FakeBlockfrost:
    """In-process stand-in for the Blockfrost REST API."""

    def __init__(self) -> None:
        self.address_txs: Dict[str, List[Dict[str, Any]]] = {}
        self.txs: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        # Status codes returned (in order) for the next requests
        self.fail_queue: List[int] = []
        # Per path-suffix failures, e.g. {"/utxos": [500, 500]}
        self.path_failures: Dict[str, List[int]] = {}
        self.submitted: List[bytes] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def paths(self) -> List[str]:
        return [r.url.path.replace("/api/v0", "", 1) for r in self.requests]

    def add_tx(
        self,
        tx_hash: str,
        inputs: List[Dict[str, Any]],
        outputs: List[Dict[str, Any]],
        block_time: int,
        block_height: int = 1000,
    ) -> None:
        self.txs[tx_hash] = {
            "block_time": block_time,
            "block_height": block_height,
            "inputs": inputs,
            "outputs": outputs,
        }
        addresses = {entry["address"] for entry in inputs + outputs}
        for address in addresses:
            self.address_txs.setdefault(address, []).insert(
                0,
                {"tx_hash": tx_hash, "tx_index": 0, "block_height": block_height, "block_time": block_time},
            )

    def add_deposit(
        self,
        tx_hash: str,
        sender: str = SENDER,
        amount: int = REQUIRED,
        block_time: Optional[float] = None,
        to_address: str = SCRIPT_ADDRESS,
    ) -> None:
        self.add_tx(
            tx_hash,
            inputs=[{"address": sender, "amount": lovelace(10_000_000)}],
            outputs=[
                {"address": to_address, "amount": lovelace(amount)},
                {"address": sender, "amount": lovelace(10_000_000 - amount - 170_000)},
            ],
            block_time=int(block_time if block_time is not None else time.time() - 60),
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_queue:
            status = self.fail_queue.pop(0)
            return httpx.Response(status, json={"status_code": status, "error": "Forced failure"})
        for suffix, statuses in self.path_failures.items():
            if statuses and request.url.path.endswith(suffix):
                status = statuses.pop(0)
                return httpx.Response(status, json={"status_code": status, "error": "Forced failure"})

        path = request.url.path.replace("/api/v0", "", 1)
        parts = [p for p in path.split("/") if p]

        if request.method == "POST" and path == "/tx/submit":
            self.submitted.append(request.content)
            return httpx.Response(200, json="submitted_" + str(len(self.submitted)))

        if len(parts) == 3 and parts[0] == "addresses" and parts[2] == "transactions":
            listing = self.address_txs.get(parts[1])
            if listing is None:
                return httpx.Response(404, json={"status_code": 404, "error": "Not Found"})
            count = int(request.url.params.get("count", "100"))
            return httpx.Response(200, json=listing[:count])

        if parts and parts[0] == "txs" and len(parts) >= 2:
            tx = self.txs.get(parts[1])
            if tx is None:
                return httpx.Response(404, json={"status_code": 404, "error": "Not Found"})
            if len(parts) == 3 and parts[2] == "utxos":
                return httpx.Response(200, json={"hash": parts[1], "inputs": tx["inputs"], "outputs": tx["outputs"]})
            return httpx.Response(200, json={"hash": parts[1], "block_time": tx["block_time"], "block_height": tx["block_height"]})

        return httpx.Response(404, json={"status_code": 404, "error": "Not Found"})

    def client(self, api_key: str = "preprodTESTKEY123456") -> BlockfrostIndexerClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return BlockfrostIndexerClient(BASE_URL, api_key, http_client=http_client)


def make_settings(**overrides: Any) -> K33PSettings:
    values: Dict[str, Any] = {
        "environment": "dev",
        "blockfrost_url": BASE_URL,
        "blockfrost_api_key": "preprodTESTKEY123456",
        "deposit_address": SCRIPT_ADDRESS,
        "auto_refund_enabled": True,
        "inter_item_delay_seconds": 0,
        "indexer_backoff_base_seconds": 0,
        "retry_sweep_every_ticks": 0,
    }
    values.update(overrides)
    return K33PSettings(_env_file=None, **values)


def make_monitor(
    blockfrost: FakeBlockfrost,
    *,
    settings: Optional[K33PSettings] = None,
    store: Optional[InMemoryDepositStore] = None,
    submitter: Optional[SimulatedRefundSubmitter] = None,
    clock: Optional[FakeClock] = None,
) -> RefundMonitor:
    settings = settings or make_settings()
    store = store if store is not None else InMemoryDepositStore()
    submitter = submitter or SimulatedRefundSubmitter()
    clock = clock or FakeClock()

    breaker = CooldownCircuitBreaker(
        "blockfrost",
        cooldown_seconds=settings.payment_error_cooldown_seconds,
        clock=clock,
    )
    indexer = ResilientIndexer(
        blockfrost.client(),
        breaker,
        RetryConfig.for_attempts(settings.indexer_max_attempts, settings.indexer_backoff_base_seconds),
    )
    issuer = RefundIssuer(
        store,
        submitter,
        deposit_address=settings.deposit_address,
        refund_amount=settings.refund_amount_lovelace,
    )
    return RefundMonitor(
        settings,
        indexer,
        IdempotencyLedger(store),
        issuer,
        breaker=breaker,
        clock=clock,
    )


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def blockfrost():
    return FakeBlockfrost()


@pytest.fixture
def store():
    return InMemoryDepositStore()


@pytest.fixture
def submitter():
    return SimulatedRefundSubmitter()
