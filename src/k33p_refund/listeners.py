"""
Transaction-detected listeners.

Listeners are plain callables (sync or async) taking an IncomingTransaction.
They are awaited in registration order after a qualifying transaction has
been processed; each failure is caught and logged on its own and never
affects engine state.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Union

import httpx

from .constants import Timeouts
from .models import IncomingTransaction

logger = logging.getLogger(__name__)

TransactionListener = Callable[[IncomingTransaction], Union[None, Awaitable[None]]]

SIGNATURE_HEADER = "X-K33P-Signature"


class Subscription:
    """Handle returned by ListenerRegistry.subscribe."""

    def __init__(self, registry: "ListenerRegistry", callback: TransactionListener):
        self._registry = registry
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> bool:
        return self._registry.unsubscribe(self)


class ListenerRegistry:
    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, callback: TransactionListener) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        logger.debug(f"Registered listener {_name(callback)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return False
        subscription.active = False
        logger.debug(f"Removed listener {_name(subscription.callback)}")
        return True

    async def notify(self, incoming: IncomingTransaction) -> int:
        """Invoke every listener; returns how many completed without error."""
        delivered = 0
        for subscription in list(self._subscriptions):
            callback = subscription.callback
            try:
                result = callback(incoming)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Listener {_name(callback)} failed for {incoming.tx_hash}: {e}",
                    exc_info=True,
                )
        return delivered


def _name(callback: Any) -> str:
    return getattr(callback, "__name__", type(callback).__name__)


def sign_payload(payload: str, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over ``"<timestamp>.<payload>"``, as ``t=<ts>,v1=<hex>``."""
    signed_content = f"{timestamp}.{payload}"
    sig = hmac.new(secret.encode(), signed_content.encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={sig}"


def verify_signature(
    payload: str,
    signature: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """Check a ``t=...,v1=...`` header, rejecting stale timestamps."""
    parts = dict(part.split("=", 1) for part in signature.split(",") if "=" in part)
    try:
        timestamp = int(parts["t"])
        sig_hex = parts["v1"]
    except (KeyError, ValueError):
        return False

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        return False

    expected = sign_payload(payload, secret, timestamp).split("v1=", 1)[1]
    return hmac.compare_digest(expected, sig_hex)


class WebhookDeliveryListener:
    """Posts detected transactions to an HTTP endpoint (single attempt)."""

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = url
        self._secret = secret
        self._http_client = http_client
        self._owns_client = http_client is None
        self.__name__ = f"webhook:{url}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=Timeouts.WEBHOOK_DELIVERY)
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __call__(self, incoming: IncomingTransaction) -> None:
        now = datetime.now(timezone.utc)
        payload = json.dumps(
            {
                "event": "transaction_detected",
                "timestamp": now.isoformat(),
                "data": incoming.to_dict(),
            },
            default=str,
        )
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[SIGNATURE_HEADER] = sign_payload(payload, self._secret, int(now.timestamp()))

        response = await self._get_client().post(self._url, content=payload, headers=headers)
        if response.status_code >= 300:
            logger.warning(f"Webhook {self._url} returned {response.status_code} for {incoming.tx_hash}")
        else:
            logger.debug(f"Webhook {self._url} delivered {incoming.tx_hash}")
