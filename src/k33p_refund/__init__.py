"""K33P deposit-and-refund reconciliation engine."""

from .cache import VerificationCache
from .circuit_breaker import CircuitState, CooldownCircuitBreaker
from .config import K33PSettings, load_settings
from .health import HealthReport, HealthStatus
from .indexer import BlockfrostIndexerClient, ResilientIndexer
from .ledger import IdempotencyLedger
from .listeners import ListenerRegistry, Subscription, WebhookDeliveryListener
from .matcher import is_recent, match_deposit_to_script, match_wallet_ownership
from .models import (
    DepositRecord,
    IncomingTransaction,
    MonitorState,
    RefundClaim,
    RefundResult,
    TickResult,
    TransactionDetail,
    UtxoEntry,
    VerificationResult,
)
from .monitor import RefundMonitor, build_monitor, build_verifier
from .refund import (
    BlockfrostRefundSubmitter,
    RefundIssuer,
    RefundSubmitter,
    SimulatedRefundSubmitter,
    load_refund_builder,
)
from .store import DepositStore
from .store_memory import InMemoryDepositStore
from .verification import DepositVerifier

__all__ = [
    "VerificationCache",
    "CircuitState",
    "CooldownCircuitBreaker",
    "K33PSettings",
    "load_settings",
    "HealthReport",
    "HealthStatus",
    "BlockfrostIndexerClient",
    "ResilientIndexer",
    "IdempotencyLedger",
    "ListenerRegistry",
    "Subscription",
    "WebhookDeliveryListener",
    "is_recent",
    "match_deposit_to_script",
    "match_wallet_ownership",
    "DepositRecord",
    "IncomingTransaction",
    "MonitorState",
    "RefundClaim",
    "RefundResult",
    "TickResult",
    "TransactionDetail",
    "UtxoEntry",
    "VerificationResult",
    "RefundMonitor",
    "build_monitor",
    "build_verifier",
    "BlockfrostRefundSubmitter",
    "RefundIssuer",
    "RefundSubmitter",
    "SimulatedRefundSubmitter",
    "load_refund_builder",
    "DepositStore",
    "InMemoryDepositStore",
    "DepositVerifier",
]
