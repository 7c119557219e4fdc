"""
Reconciliation loop.

RefundMonitor owns one scheduled task that polls the watched address,
deduplicates candidates against the idempotency ledger, matches them and
refunds qualifying deposits. Scheduled ticks and manual triggers share one
asyncio.Lock, so ticks never overlap.

States: stopped, running, circuit_open. The circuit opens on an indexer
quota signal and closes by itself after the cooldown; while it is open
every tick is a no-op.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .cache import VerificationCache
from .circuit_breaker import CooldownCircuitBreaker
from .config import K33PSettings
from .constants import Timeouts
from .exceptions import (
    ConfigurationError,
    IndexerError,
    IndexerNotFoundError,
    IndexerQuotaError,
)
from .health import HealthReport, evaluate_health
from .indexer import BlockfrostIndexerClient, ResilientIndexer
from .ledger import IdempotencyLedger
from .listeners import ListenerRegistry, Subscription, TransactionListener
from .logging_config import deposit_context, new_correlation_id
from .matcher import is_recent, match_deposit_to_script
from .models import AddressTransaction, IncomingTransaction, MonitorState, TickResult
from .refund import (
    BlockfrostRefundSubmitter,
    RefundIssuer,
    RefundSubmitter,
    SimulatedRefundSubmitter,
    load_refund_builder,
)
from .retry import RetryConfig
from .store import DepositStore
from .store_memory import InMemoryDepositStore
from .verification import DepositVerifier

logger = logging.getLogger(__name__)


def _as_datetime(ts: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts is not None else None


@dataclass
class MonitorStatistics:
    total_polls: int = 0
    skipped_polls: int = 0
    transactions_processed: int = 0
    refunds_issued: int = 0
    refund_failures: int = 0
    indexer_errors: int = 0
    last_poll_time: Optional[float] = None


class RefundMonitor:
    """
    Deposit-and-refund reconciliation engine.

    Construct once per process (see ``build_monitor``) and hand the instance
    to whatever exposes it.
    """

    def __init__(
        self,
        settings: K33PSettings,
        indexer: ResilientIndexer,
        ledger: IdempotencyLedger,
        refund_issuer: RefundIssuer,
        listeners: Optional[ListenerRegistry] = None,
        breaker: Optional[CooldownCircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._indexer = indexer
        self._ledger = ledger
        self._refund_issuer = refund_issuer
        self._listeners = listeners or ListenerRegistry()
        self._breaker = breaker or indexer.breaker
        self._clock = clock

        self._deposit_address = settings.deposit_address
        self._stats = MonitorStatistics()
        self._api_calls_baseline = 0
        self._tick_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._initialized = False
        self._started_at: Optional[float] = None
        self._ticks_since_sweep = 0
        self._current_interval = (
            settings.min_polling_interval_seconds
            if settings.adaptive_polling_enabled
            else settings.polling_interval_seconds
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> MonitorState:
        if not self._running:
            return MonitorState.STOPPED
        if self._breaker.is_open:
            return MonitorState.CIRCUIT_OPEN
        return MonitorState.RUNNING

    @property
    def ledger(self) -> IdempotencyLedger:
        return self._ledger

    @property
    def indexer(self) -> ResilientIndexer:
        return self._indexer

    @property
    def refund_issuer(self) -> RefundIssuer:
        return self._refund_issuer

    @property
    def current_polling_interval(self) -> float:
        return self._current_interval

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._ledger.store.initialize()
        await self._ledger.rehydrate()
        self._initialized = True

    async def start(self) -> bool:
        """Start the scheduled loop; returns False when auto refunds are disabled."""
        if not self._settings.auto_refund_enabled:
            logger.info("Auto-refund monitor is disabled (K33P_AUTO_REFUND_ENABLED=false)")
            return False
        if self._running:
            logger.info("Auto-refund monitor is already running")
            return True
        if not self._deposit_address:
            raise ConfigurationError("K33P_DEPOSIT_ADDRESS is required to start the monitor")

        await self.initialize()
        self._stop_event = asyncio.Event()
        self._running = True
        self._started_at = self._clock()
        self._task = asyncio.create_task(self._run_loop(self._stop_event))
        logger.info(
            f"Auto-refund monitor started for {self._deposit_address} "
            f"(interval {self._current_interval:.0f}s)"
        )
        return True

    async def stop(self) -> None:
        """Stop the loop; an in-flight tick runs to completion."""
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except Exception as e:
                logger.error(f"Monitor loop ended with error: {e}", exc_info=True)
            self._task = None
        logger.info("Auto-refund monitor stopped")

    async def close(self) -> None:
        await self.stop()
        await self._indexer.close()
        await self._ledger.store.close()

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.run_tick()
            except Exception as e:
                logger.error(f"Unexpected error in monitor loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._current_interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickResult:
        async with self._tick_lock:
            new_correlation_id()
            try:
                result = await self._tick()
            except Exception as e:
                logger.error(f"Tick failed: {e}", exc_info=True)
                return TickResult(errors=1, reason="error")

            await self._after_tick(result)
            return result

    async def trigger_manual_check(self) -> TickResult:
        """Run one cycle now; serialised with the scheduled loop."""
        logger.info("Manual transaction check triggered")
        await self.initialize()
        return await self.run_tick()

    async def _tick(self) -> TickResult:
        if not self._deposit_address:
            return TickResult(skipped=True, reason="no_deposit_address")

        if self._breaker.is_open:
            self._stats.skipped_polls += 1
            logger.debug(
                f"Circuit open, skipping poll ({self._breaker.remaining_cooldown():.0f}s remaining)"
            )
            return TickResult(skipped=True, reason="circuit_open")

        try:
            listing = await self._indexer.list_address_transactions(
                self._deposit_address,
                count=self._settings.tx_fetch_count,
            )
        except IndexerQuotaError as e:
            self._stats.indexer_errors += 1
            logger.warning(f"Indexer quota exceeded, entering cooldown: {e.message}")
            return TickResult(skipped=True, reason="quota_exceeded", errors=1)
        except IndexerError as e:
            self._stats.indexer_errors += 1
            logger.error(f"Could not list transactions for deposit address: {e.message}")
            return TickResult(reason="indexer_unavailable", errors=1)

        self._stats.total_polls += 1
        self._stats.last_poll_time = self._clock()

        candidates = self._new_since_cursor(listing)
        result = TickResult(candidates=len(candidates))
        all_resolved = True
        now = self._clock()

        for item in candidates:
            if await self._ledger.is_processed(item.tx_hash):
                continue
            if item.block_time is not None and not is_recent(
                item.block_time, self._settings.max_transaction_age_seconds, now
            ):
                continue

            try:
                detail = await self._indexer.get_transaction_detail(
                    item.tx_hash,
                    block_time=item.block_time,
                    block_height=item.block_height,
                )
            except IndexerQuotaError:
                self._stats.indexer_errors += 1
                result.errors += 1
                all_resolved = False
                break
            except IndexerNotFoundError:
                logger.debug(f"Transaction {item.tx_hash} not yet indexed")
                all_resolved = False
                continue
            except IndexerError as e:
                self._stats.indexer_errors += 1
                result.errors += 1
                all_resolved = False
                logger.warning(f"Skipping {item.tx_hash} this tick: {e.message}")
                continue

            if not is_recent(detail.block_time, self._settings.max_transaction_age_seconds, now):
                continue

            incoming = match_deposit_to_script(
                detail,
                self._deposit_address,
                self._settings.required_amount_lovelace,
            )
            if incoming is None:
                continue

            if result.detected > 0 and self._settings.inter_item_delay_seconds > 0:
                await asyncio.sleep(self._settings.inter_item_delay_seconds)
            result.detected += 1

            if not await self._process_deposit(incoming, result):
                all_resolved = False

        if all_resolved and listing and listing[0].tx_hash != self._ledger.last_seen_tx_hash:
            try:
                await self._ledger.set_last_seen_tx_hash(listing[0].tx_hash)
                result.cursor_advanced = True
            except Exception as e:
                logger.error(f"Failed to persist poll cursor: {e}", exc_info=True)

        if result.detected or result.errors:
            logger.info(
                f"Tick done: {result.candidates} new, {result.detected} deposits, "
                f"{result.refunds_issued} refunded, {result.errors} errors"
            )
        return result

    def _new_since_cursor(self, listing: List[AddressTransaction]) -> List[AddressTransaction]:
        """Listing entries newer than the cursor (listing is newest first)."""
        cursor = self._ledger.last_seen_tx_hash
        fresh: List[AddressTransaction] = []
        for item in listing:
            if item.tx_hash == cursor:
                break
            fresh.append(item)
        return fresh

    async def _process_deposit(self, incoming: IncomingTransaction, result: TickResult) -> bool:
        """Process one qualifying transaction; False leaves it for the next tick."""
        with deposit_context(incoming.tx_hash, incoming.from_address):
            logger.info(
                f"Processing deposit {incoming.tx_hash} from {incoming.from_address} "
                f"({incoming.amount} lovelace)"
            )
            try:
                claimed = await self._ledger.mark_processed(incoming.tx_hash)
            except Exception as e:
                logger.error(f"Could not mark {incoming.tx_hash} processed: {e}", exc_info=True)
                result.errors += 1
                return False

            if not claimed:
                logger.info(f"Transaction {incoming.tx_hash} already processed, skipping")
                return True

            self._stats.transactions_processed += 1
            try:
                record = await self._ledger.create_or_update_deposit_record(incoming)
                if record.refunded and record.tx_hash != incoming.tx_hash:
                    logger.info(
                        f"Address {incoming.from_address} already has a refunded deposit, skipping"
                    )
                else:
                    refund = await self._refund_issuer.process_refund(incoming.from_address)
                    if refund.already_processed or refund.in_progress:
                        logger.info(
                            f"Refund already handled for {incoming.from_address}: {refund.message}"
                        )
                    elif refund.success:
                        self._stats.refunds_issued += 1
                        result.refunds_issued += 1
                    else:
                        self._stats.refund_failures += 1
                        result.refund_failures += 1
                        logger.error(
                            f"Automatic refund failed for {incoming.from_address}: {refund.message}"
                        )
            except Exception as e:
                # Marker is set; the unrefunded sweep picks the deposit up
                self._stats.refund_failures += 1
                result.refund_failures += 1
                result.errors += 1
                logger.error(f"Error processing deposit {incoming.tx_hash}: {e}", exc_info=True)

            await self._listeners.notify(incoming)
            return True

    async def _after_tick(self, result: TickResult) -> None:
        if self._settings.adaptive_polling_enabled and not result.skipped:
            if result.detected:
                self._current_interval = self._settings.min_polling_interval_seconds
            else:
                self._current_interval = min(
                    self._current_interval * Timeouts.ADAPTIVE_GROWTH_FACTOR,
                    self._settings.max_polling_interval_seconds,
                )

        every = self._settings.retry_sweep_every_ticks
        if every > 0:
            self._ticks_since_sweep += 1
            if self._ticks_since_sweep >= every:
                self._ticks_since_sweep = 0
                try:
                    await self.retry_unrefunded_deposits()
                except Exception as e:
                    logger.error(f"Unrefunded deposit sweep failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def retry_unrefunded_deposits(self) -> Dict[str, int]:
        """Retry refunds for verified deposits that were never refunded."""
        pending = await self._ledger.list_unrefunded_deposits()
        summary = {"attempted": 0, "refunded": 0, "failed": 0}
        if not pending:
            return summary

        logger.info(f"Retrying {len(pending)} unrefunded deposits")
        for index, record in enumerate(pending):
            if index and self._settings.inter_item_delay_seconds > 0:
                await asyncio.sleep(self._settings.inter_item_delay_seconds)
            summary["attempted"] += 1
            with deposit_context(record.tx_hash or "", record.user_address):
                refund = await self._refund_issuer.process_refund(record.user_address)
            if refund.already_processed or refund.in_progress:
                continue
            if refund.success:
                summary["refunded"] += 1
                self._stats.refunds_issued += 1
            else:
                summary["failed"] += 1
                self._stats.refund_failures += 1
        logger.info(
            f"Unrefunded sweep: {summary['refunded']} refunded, {summary['failed']} failed"
        )
        return summary

    def register_listener(self, callback: TransactionListener) -> Subscription:
        return self._listeners.subscribe(callback)

    async def trigger_webhook_test(self, overrides: Optional[Dict[str, Any]] = None) -> IncomingTransaction:
        """Send a synthetic transaction to every listener."""
        fields: Dict[str, Any] = {
            "tx_hash": "test_" + secrets.token_hex(28),
            "from_address": "addr_test_sender",
            "to_address": self._deposit_address,
            "amount": self._settings.required_amount_lovelace,
            "block_timestamp": int(self._clock()),
            "block_height": None,
        }
        fields.update(overrides or {})
        incoming = IncomingTransaction(**fields)
        await self._listeners.notify(incoming)
        logger.info(f"Webhook test delivered to {len(self._listeners)} listeners")
        return incoming

    def statistics(self) -> Dict[str, Any]:
        data = asdict(self._stats)
        data["indexer_api_calls"] = self._indexer.api_calls - self._api_calls_baseline
        last = _as_datetime(self._stats.last_poll_time)
        data["last_poll_time"] = last.isoformat() if last else None
        return data

    def reset_statistics(self) -> None:
        """Clear counters; ledger and circuit are untouched."""
        self._stats = MonitorStatistics()
        self._api_calls_baseline = self._indexer.api_calls
        logger.info("Monitor statistics reset")

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._running,
            "processed_count": self._ledger.processed_count,
            "deposit_address": self._deposit_address,
            "circuit_state": self._breaker.state.value,
            "state": self.state.value,
            "current_polling_interval": self._current_interval,
            "last_seen_tx_hash": self._ledger.last_seen_tx_hash,
            "listener_count": len(self._listeners),
            "statistics": self.statistics(),
            "circuit": self._breaker.get_state_info(),
        }

    def get_health_check(self) -> HealthReport:
        now = self._clock()
        reference = self._stats.last_poll_time or self._started_at
        since = now - reference if reference is not None else None
        return evaluate_health(
            is_running=self._running,
            circuit_open=self._breaker.is_open,
            seconds_since_activity=since,
            stalled_after=self._settings.stalled_poll_seconds,
            last_activity=_as_datetime(self._stats.last_poll_time),
            circuit_remaining=self._breaker.remaining_cooldown(),
        )


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

def build_store(settings: K33PSettings) -> DepositStore:
    if settings.database_url:
        from .store_postgres import PostgresDepositStore
        return PostgresDepositStore(settings.database_url)
    if settings.environment != "dev":
        logger.warning("No K33P_DATABASE_URL set; using in-memory store (state is lost on restart)")
    return InMemoryDepositStore()


def build_monitor(
    settings: K33PSettings,
    *,
    store: Optional[DepositStore] = None,
    submitter: Optional[RefundSubmitter] = None,
    indexer_client: Optional[BlockfrostIndexerClient] = None,
    clock: Callable[[], float] = time.time,
) -> RefundMonitor:
    """Assemble the engine and its collaborators from settings."""
    store = store or build_store(settings)
    breaker = CooldownCircuitBreaker(
        "blockfrost",
        cooldown_seconds=settings.payment_error_cooldown_seconds,
    )
    client = indexer_client or BlockfrostIndexerClient(
        settings.blockfrost_url,
        settings.blockfrost_api_key,
        timeout=settings.indexer_timeout_seconds,
    )
    indexer = ResilientIndexer(
        client,
        breaker,
        RetryConfig.for_attempts(settings.indexer_max_attempts, settings.indexer_backoff_base_seconds),
    )
    if submitter is None and settings.refund_builder:
        submitter = BlockfrostRefundSubmitter(client, load_refund_builder(settings.refund_builder))
    if submitter is None:
        if settings.environment != "dev":
            raise ConfigurationError(
                f"K33P_REFUND_BUILDER is required in {settings.environment}; "
                "refusing to record simulated refunds"
            )
        logger.warning("No refund submitter configured; using simulated refunds")
        submitter = SimulatedRefundSubmitter()

    ledger = IdempotencyLedger(store)
    issuer = RefundIssuer(
        store,
        submitter,
        deposit_address=settings.deposit_address,
        refund_amount=settings.refund_amount_lovelace,
    )
    return RefundMonitor(settings, indexer, ledger, issuer, breaker=breaker, clock=clock)


def build_verifier(settings: K33PSettings, monitor: RefundMonitor) -> DepositVerifier:
    """Verifier sharing the monitor's indexer, circuit and ledger."""
    cache = VerificationCache(
        positive_ttl=settings.cache_positive_ttl_seconds,
        negative_ttl=settings.cache_negative_ttl_seconds,
        default_ttl=settings.cache_default_ttl_seconds,
    )
    return DepositVerifier(
        monitor.indexer,
        cache,
        monitor.ledger,
        script_address=settings.deposit_address,
        required_amount=settings.required_amount_lovelace,
        max_age=settings.verification_max_tx_age_seconds,
    )
