"""Wallet verification cache with asymmetric TTLs."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .constants import CacheTTL

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: bool
    expires_at: float


class VerificationCache:
    """
    In-process TTL cache of verification verdicts.

    Positive verdicts are stable and kept longer; negative verdicts may flip
    as soon as a new transaction lands, so they expire sooner.
    """

    def __init__(
        self,
        positive_ttl: int = CacheTTL.POSITIVE,
        negative_ttl: int = CacheTTL.NEGATIVE,
        default_ttl: int = CacheTTL.DEFAULT,
        max_items: int = CacheTTL.MAX_ITEMS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store: Dict[str, CacheEntry] = {}
        self._positive_ttl = positive_ttl
        self._negative_ttl = negative_ttl
        self._default_ttl = default_ttl
        self._max_items = max_items
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[bool]:
        """Cached verdict, or None when absent or expired."""
        entry = self._store.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._store[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: bool, ttl: Optional[int] = None) -> None:
        if ttl is None:
            ttl = self._default_ttl
        if key not in self._store and len(self._store) >= self._max_items:
            self._evict()
        self._store[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def set_verdict(self, key: str, value: bool) -> None:
        """Store a verdict with the TTL its polarity calls for."""
        self.set(key, value, self._positive_ttl if value else self._negative_ttl)

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, entry in self._store.items() if now >= entry.expires_at]
        for key in expired:
            del self._store[key]
        if len(self._store) >= self._max_items:
            # Oldest insertion first
            oldest = next(iter(self._store))
            del self._store[oldest]
            logger.debug(f"Verification cache full, evicted {oldest}")

    @staticmethod
    def deposit_key(address: str) -> str:
        return f"deposit_{address}"
