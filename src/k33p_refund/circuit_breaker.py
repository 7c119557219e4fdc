"""
Cooldown circuit breaker for the chain indexer.

Unlike a failure-counting breaker, this one is tripped explicitly by a
single quota/payment signal and closes by itself once a fixed cooldown has
elapsed. There is no half-open probing: the first request allowed after the
cooldown is the resumption.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .constants import Timeouts

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Cooling down, calls refused


@dataclass
class CircuitStats:
    """Statistics for a circuit breaker."""
    trips: int = 0
    resumptions: int = 0
    rejected_calls: int = 0
    last_trip_time: Optional[float] = None
    last_trip_reason: Optional[str] = None
    last_resumption_time: Optional[float] = None


class CooldownCircuitBreaker:
    """
    Circuit breaker with a fixed cooldown window.

    Usage:
        breaker = CooldownCircuitBreaker("blockfrost", cooldown_seconds=300)

        if not breaker.allow_request():
            return  # skip this tick

        try:
            await call_indexer()
        except IndexerQuotaError as e:
            breaker.trip(str(e))
    """

    def __init__(
        self,
        name: str,
        cooldown_seconds: float = Timeouts.PAYMENT_ERROR_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._name = name
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._stats = CircuitStats()

    @property
    def name(self) -> str:
        return self._name

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown

    @property
    def state(self) -> CircuitState:
        """Current state, closing the circuit if the cooldown has elapsed."""
        self._maybe_close()
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def trip(self, reason: str = "quota exceeded") -> None:
        """Open the circuit; a trip while already open restarts the window."""
        now = self._clock()
        if self._state == CircuitState.CLOSED:
            self._stats.trips += 1
            logger.warning(
                f"Circuit breaker {self._name} opened: {reason}. "
                f"Pausing for {self._cooldown:.0f}s"
            )
        else:
            logger.warning(f"Circuit breaker {self._name} re-tripped while open: {reason}")
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._stats.last_trip_time = now
        self._stats.last_trip_reason = reason

    def allow_request(self) -> bool:
        """Return True when a call may go out; counts rejections."""
        if self.state == CircuitState.OPEN:
            self._stats.rejected_calls += 1
            return False
        return True

    def remaining_cooldown(self) -> float:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._cooldown - (self._clock() - self._opened_at))

    def reset(self) -> None:
        """Manually close the circuit (not counted as a resumption)."""
        self._state = CircuitState.CLOSED
        self._opened_at = None
        logger.info(f"Circuit breaker {self._name} manually reset")

    def _maybe_close(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self._cooldown:
            self._state = CircuitState.CLOSED
            self._opened_at = None
            self._stats.resumptions += 1
            self._stats.last_resumption_time = self._clock()
            logger.info(f"Circuit breaker {self._name} closed after cooldown, resuming calls")

    def get_state_info(self) -> Dict[str, Any]:
        """Get detailed state information."""
        state = self.state
        info: Dict[str, Any] = {
            "name": self._name,
            "state": state.value,
            "cooldown_seconds": self._cooldown,
            "stats": {
                "trips": self._stats.trips,
                "resumptions": self._stats.resumptions,
                "rejected_calls": self._stats.rejected_calls,
                "last_trip_reason": self._stats.last_trip_reason,
            },
        }
        if state == CircuitState.OPEN:
            info["recovery_remaining_seconds"] = self.remaining_cooldown()
        return info
