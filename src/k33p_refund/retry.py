"""
Exponential backoff for indexer calls.

A call that fails with a transient error on attempt ``n`` (0-based) waits
``base_delay * exponential_base ** n`` seconds, capped at ``max_delay``,
before the next attempt. With the defaults that is 2s then 4s, and the third
failure abandons the call. Quota errors are never retried; they go straight
to the circuit breaker.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type, TypeVar

from .constants import IndexerRetry
from .exceptions import IndexerQuotaError, IndexerTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryHook = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy. ``max_retries`` does not count the first call."""

    max_retries: int = IndexerRetry.MAX_ATTEMPTS - 1
    base_delay: float = IndexerRetry.BACKOFF_BASE
    exponential_base: float = IndexerRetry.EXPONENTIAL_BASE
    max_delay: float = IndexerRetry.MAX_DELAY
    retry_on: Tuple[Type[BaseException], ...] = (IndexerTransientError,)
    never_retry: Tuple[Type[BaseException], ...] = (IndexerQuotaError,)
    on_retry: Optional[RetryHook] = None

    @classmethod
    def for_attempts(cls, max_attempts: int, base_delay: float) -> "RetryConfig":
        return cls(max_retries=max(0, max_attempts - 1), base_delay=base_delay)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        delay = self.base_delay * self.exponential_base ** attempt
        return max(0.0, min(delay, self.max_delay))

    def delays(self) -> List[float]:
        """Waits between consecutive attempts, in order."""
        return [self.calculate_delay(n) for n in range(self.max_retries)]

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, self.never_retry):
            return False
        return isinstance(exc, self.retry_on)


@dataclass
class RetryStats:
    attempts: int = 0
    total_delay: float = 0.0
    delays: List[float] = field(default_factory=list)
    succeeded: bool = False


class RetryExhausted(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, message: str, stats: RetryStats, original_exception: BaseException):
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> T:
    """
    Await ``func(*args, **kwargs)`` under the backoff policy.

    Non-retryable errors propagate unchanged on the attempt that raised
    them. When the attempts run out, RetryExhausted is raised from the last
    error.
    """
    policy = config or RetryConfig()
    waits = policy.delays()
    name = getattr(func, "__name__", repr(func))
    stats = RetryStats()

    while True:
        stats.attempts += 1
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if not policy.should_retry(e):
                raise
            if stats.attempts > len(waits):
                raise RetryExhausted(
                    f"{name} failed after {stats.attempts} attempts: {e}",
                    stats=stats,
                    original_exception=e,
                ) from e

            delay = waits[stats.attempts - 1]
            stats.delays.append(delay)
            stats.total_delay += delay
            logger.warning(
                f"{name} attempt {stats.attempts}/{policy.max_attempts} failed "
                f"({type(e).__name__}: {e}); retrying in {delay:.1f}s"
            )
            if policy.on_retry:
                policy.on_retry(stats.attempts, e, delay)
            await asyncio.sleep(delay)
        else:
            stats.succeeded = True
            return result


__all__ = [
    "RetryConfig",
    "RetryExhausted",
    "RetryStats",
    "retry_async",
]
