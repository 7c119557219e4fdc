"""
Blockfrost-compatible chain indexer client.

Two layers:

- BlockfrostIndexerClient maps HTTP responses onto the three outcomes the
  reconciliation loop distinguishes: success, transient failure
  (IndexerTransientError) and quota/payment failure (IndexerQuotaError).
- ResilientIndexer guards every call with the cooldown circuit breaker and
  retries transient failures with exponential backoff.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .circuit_breaker import CooldownCircuitBreaker
from .constants import LOVELACE_UNIT, QUOTA_STATUS_CODES, FetchCounts, Timeouts
from .exceptions import (
    IndexerError,
    IndexerNotFoundError,
    IndexerQuotaError,
    IndexerTransientError,
    IndexerUnavailableError,
)
from .logging_config import mask_api_key
from .models import AddressTransaction, TransactionDetail, UtxoEntry
from .retry import RetryConfig, RetryExhausted, retry_async

logger = logging.getLogger(__name__)


def lovelace_of(amount: List[Dict[str, Any]]) -> int:
    """Sum the lovelace quantity of a Blockfrost ``[{unit, quantity}]`` list."""
    total = 0
    for asset in amount or []:
        if asset.get("unit") == LOVELACE_UNIT:
            total += int(asset.get("quantity", "0"))
    return total


def _parse_entries(raw: List[Dict[str, Any]]) -> tuple[UtxoEntry, ...]:
    entries = []
    for item in raw or []:
        # Collateral and reference inputs never move value to the watched address
        if item.get("collateral") or item.get("reference"):
            continue
        entries.append(UtxoEntry(address=item["address"], amount=lovelace_of(item.get("amount", []))))
    return tuple(entries)


class BlockfrostIndexerClient:
    """
    Thin async adapter over the Blockfrost REST API.

    Authentication uses the static ``project_id`` header.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = Timeouts.HTTP_DEFAULT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._api_calls = 0

        logger.info(
            f"Initialized indexer client for {self._base_url} "
            f"(key {mask_api_key(api_key)})"
        )

    @property
    def api_calls(self) -> int:
        return self._api_calls

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=Timeouts.HTTP_CONNECT),
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        client = self._get_client()
        url = f"{self._base_url}{path}"
        request_headers = {"project_id": self._api_key}
        if headers:
            request_headers.update(headers)

        self._api_calls += 1
        try:
            response = await client.request(
                method,
                url,
                params=params,
                content=content,
                headers=request_headers,
            )
        except httpx.HTTPError as e:
            raise IndexerTransientError(f"Indexer request failed: {e}", url=path) from e

        status = response.status_code
        if status in QUOTA_STATUS_CODES:
            raise IndexerQuotaError(
                f"Indexer quota exceeded (HTTP {status})",
                status_code=status,
                url=path,
            )
        if status == 404:
            raise IndexerNotFoundError("Indexer resource not found", status_code=status, url=path)
        if status >= 400:
            raise IndexerTransientError(
                f"Indexer returned HTTP {status}: {response.text[:200]}",
                status_code=status,
                url=path,
            )

        try:
            return response.json()
        except ValueError as e:
            raise IndexerTransientError("Indexer returned malformed JSON", url=path) from e

    async def list_address_transactions(
        self,
        address: str,
        count: int = FetchCounts.MONITOR,
        order: str = "desc",
    ) -> List[AddressTransaction]:
        """List recent transactions touching ``address``; unknown address yields []."""
        try:
            data = await self._request(
                "GET",
                f"/addresses/{address}/transactions",
                params={"order": order, "count": count},
            )
        except IndexerNotFoundError:
            return []

        return [
            AddressTransaction(
                tx_hash=item["tx_hash"],
                block_height=item.get("block_height"),
                block_time=item.get("block_time"),
            )
            for item in data or []
        ]

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/txs/{tx_hash}")
        return {
            "block_time": data.get("block_time"),
            "block_height": data.get("block_height"),
        }

    async def get_transaction_utxos(self, tx_hash: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/txs/{tx_hash}/utxos")
        return {
            "inputs": data.get("inputs", []),
            "outputs": data.get("outputs", []),
        }

    async def get_transaction_detail(
        self,
        tx_hash: str,
        block_time: Optional[int] = None,
        block_height: Optional[int] = None,
    ) -> TransactionDetail:
        """
        Fetch inputs, outputs and block metadata for a transaction.

        When the address listing already supplied ``block_time`` the
        ``/txs/{hash}`` call is skipped.
        """
        if block_time is None:
            meta = await self.get_transaction(tx_hash)
            block_time = meta["block_time"]
            block_height = meta["block_height"]

        utxos = await self.get_transaction_utxos(tx_hash)
        return TransactionDetail(
            tx_hash=tx_hash,
            inputs=_parse_entries(utxos["inputs"]),
            outputs=_parse_entries(utxos["outputs"]),
            block_time=int(block_time or 0),
            block_height=block_height,
        )

    async def submit_transaction(self, cbor: bytes) -> str:
        """Submit a signed transaction; returns its hash."""
        data = await self._request(
            "POST",
            "/tx/submit",
            content=cbor,
            headers={"Content-Type": "application/cbor"},
        )
        if isinstance(data, str):
            return data
        raise IndexerError(f"Unexpected submit response: {data!r}")


class ResilientIndexer:
    """
    Retry and circuit guard around BlockfrostIndexerClient.

    - circuit open: IndexerUnavailableError, no HTTP traffic
    - transient error: retried, then IndexerUnavailableError
    - quota error: trips the circuit and is re-raised, never retried
    """

    def __init__(
        self,
        client: BlockfrostIndexerClient,
        breaker: CooldownCircuitBreaker,
        retry_config: Optional[RetryConfig] = None,
    ):
        self._client = client
        self._breaker = breaker
        self._retry_config = retry_config or RetryConfig()

    @property
    def client(self) -> BlockfrostIndexerClient:
        return self._client

    @property
    def breaker(self) -> CooldownCircuitBreaker:
        return self._breaker

    @property
    def api_calls(self) -> int:
        return self._client.api_calls

    async def _call(self, func, *args, **kwargs):
        if not self._breaker.allow_request():
            raise IndexerUnavailableError(
                f"Circuit {self._breaker.name} open, "
                f"{self._breaker.remaining_cooldown():.0f}s remaining"
            )
        try:
            return await retry_async(func, *args, config=self._retry_config, **kwargs)
        except IndexerQuotaError as e:
            self._breaker.trip(e.message)
            raise
        except RetryExhausted as e:
            logger.error(f"Indexer call {func.__name__} abandoned: {e}")
            raise IndexerUnavailableError(str(e)) from e.original_exception

    async def list_address_transactions(
        self,
        address: str,
        count: int = FetchCounts.MONITOR,
        order: str = "desc",
    ) -> List[AddressTransaction]:
        return await self._call(self._client.list_address_transactions, address, count=count, order=order)

    async def get_transaction_detail(
        self,
        tx_hash: str,
        block_time: Optional[int] = None,
        block_height: Optional[int] = None,
    ) -> TransactionDetail:
        return await self._call(
            self._client.get_transaction_detail,
            tx_hash,
            block_time=block_time,
            block_height=block_height,
        )

    async def close(self) -> None:
        await self._client.close()
