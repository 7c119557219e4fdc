"""Health reporting for the reconciliation loop."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class HealthStatus(str, Enum):
    """Health status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthReport:
    status: HealthStatus
    errors: List[str] = field(default_factory=list)
    last_activity: Optional[datetime] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "errors": list(self.errors),
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "timestamp": self.timestamp.isoformat(),
        }


def evaluate_health(
    *,
    is_running: bool,
    circuit_open: bool,
    seconds_since_activity: Optional[float],
    stalled_after: float,
    last_activity: Optional[datetime] = None,
    circuit_remaining: float = 0.0,
) -> HealthReport:
    """
    Derive the health status.

    Not running, or running with no successful poll for ``stalled_after``
    seconds, is unhealthy. An open circuit is degraded.
    """
    errors: List[str] = []

    if not is_running:
        errors.append("Monitor is not running")
    elif seconds_since_activity is not None and seconds_since_activity > stalled_after:
        errors.append(f"No successful poll for {int(seconds_since_activity)}s")

    if errors:
        status = HealthStatus.UNHEALTHY
    elif circuit_open:
        errors.append(f"Indexer quota exceeded, polling paused for {circuit_remaining:.0f}s")
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY

    return HealthReport(status=status, errors=errors, last_activity=last_activity)
