"""PostgreSQL-backed deposit store.

Tables: ``user_deposits``, ``transactions``, ``processed_transactions``,
``refund_claims`` and ``monitor_state``. Deposit mutations lock the row with
``SELECT ... FOR UPDATE`` so concurrent writers never lose updates. The
``refund_claims`` primary key lets one process at a time own a deposit's
refund, across every monitor and CLI process sharing the database.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from .exceptions import DepositNotFoundError, DuplicateDepositError
from .models import (
    DepositRecord,
    RefundClaim,
    TransactionLogEntry,
    TransactionStatus,
    TransactionType,
)
from .store import DepositMutator, DepositStore

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_deposits (
    id SERIAL PRIMARY KEY,
    user_address TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    phone_hash TEXT,
    tx_hash TEXT,
    amount BIGINT NOT NULL DEFAULT 0,
    sender_wallet_address TEXT,
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    signup_completed BOOLEAN NOT NULL DEFAULT FALSE,
    refunded BOOLEAN NOT NULL DEFAULT FALSE,
    refund_tx_hash TEXT,
    refund_timestamp TIMESTAMPTZ,
    verification_attempts INTEGER NOT NULL DEFAULT 0,
    last_verification_attempt TIMESTAMPTZ,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT refunded_has_tx_hash CHECK (NOT refunded OR refund_tx_hash IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_user_deposits_tx_hash ON user_deposits(tx_hash);
CREATE INDEX IF NOT EXISTS idx_user_deposits_refunded ON user_deposits(refunded);

CREATE TABLE IF NOT EXISTS transactions (
    id SERIAL PRIMARY KEY,
    tx_hash TEXT NOT NULL UNIQUE,
    from_address TEXT NOT NULL,
    to_address TEXT NOT NULL,
    amount BIGINT NOT NULL,
    confirmations INTEGER NOT NULL DEFAULT 0,
    transaction_type TEXT NOT NULL CHECK (transaction_type IN ('deposit', 'refund', 'signup')),
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'confirmed', 'failed')),
    user_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_transactions_type ON transactions(transaction_type);

CREATE TABLE IF NOT EXISTS processed_transactions (
    tx_hash TEXT PRIMARY KEY,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS refund_claims (
    deposit_tx_hash TEXT PRIMARY KEY,
    user_address TEXT NOT NULL,
    refund_tx_hash TEXT,
    claimed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS monitor_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class PostgresDepositStore(DepositStore):
    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            import asyncpg
            dsn = self._dsn
            if dsn.startswith("postgres://"):
                dsn = dsn.replace("postgres://", "postgresql://", 1)
            self._pool = await asyncpg.create_pool(dsn, min_size=self._min_size, max_size=self._max_size)
        return self._pool

    async def initialize(self) -> None:
        """Create tables if they do not exist."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _deposit_from_row(row: Any) -> DepositRecord:
        return DepositRecord(
            user_address=row["user_address"],
            user_id=row["user_id"],
            phone_hash=row["phone_hash"],
            tx_hash=row["tx_hash"],
            amount=int(row["amount"] or 0),
            sender_wallet_address=row["sender_wallet_address"],
            verified=bool(row["verified"]),
            signup_completed=bool(row["signup_completed"]),
            refunded=bool(row["refunded"]),
            refund_tx_hash=row["refund_tx_hash"],
            refund_timestamp=row["refund_timestamp"],
            verification_attempts=int(row["verification_attempts"] or 0),
            last_verification_attempt=row["last_verification_attempt"],
            timestamp=row["timestamp"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _transaction_from_row(row: Any) -> TransactionLogEntry:
        return TransactionLogEntry(
            tx_hash=row["tx_hash"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            amount=int(row["amount"]),
            transaction_type=TransactionType(row["transaction_type"]),
            status=TransactionStatus(row["status"]),
            user_id=row["user_id"],
            confirmations=int(row["confirmations"] or 0),
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Processed markers
    # ------------------------------------------------------------------

    async def is_processed(self, tx_hash: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT 1 FROM processed_transactions WHERE tx_hash = $1",
                tx_hash,
            )
            return row is not None

    async def mark_processed(self, tx_hash: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            res = await conn.execute(
                """
                INSERT INTO processed_transactions (tx_hash)
                VALUES ($1)
                ON CONFLICT (tx_hash) DO NOTHING
                """,
                tx_hash,
            )
            return res == "INSERT 0 1"

    async def list_processed(self) -> List[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT tx_hash FROM processed_transactions")
            return [row["tx_hash"] for row in rows]

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def get_deposit(self, user_address: str) -> Optional[DepositRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM user_deposits WHERE user_address = $1",
                user_address,
            )
            return self._deposit_from_row(row) if row else None

    async def create_deposit(self, record: DepositRecord) -> DepositRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO user_deposits (
                    user_address, user_id, phone_hash, tx_hash, amount,
                    sender_wallet_address, verified, signup_completed,
                    refunded, refund_tx_hash, verification_attempts, timestamp
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (user_address) DO NOTHING
                RETURNING *
                """,
                record.user_address,
                record.user_id,
                record.phone_hash,
                record.tx_hash,
                record.amount,
                record.sender_wallet_address,
                record.verified,
                record.signup_completed,
                record.refunded,
                record.refund_tx_hash,
                record.verification_attempts,
                record.timestamp,
            )
            if row is None:
                raise DuplicateDepositError(record.user_address)
            return self._deposit_from_row(row)

    async def modify_deposit(self, user_address: str, mutator: DepositMutator) -> DepositRecord:
        """Read-modify-write under a row lock."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM user_deposits WHERE user_address = $1 FOR UPDATE",
                    user_address,
                )
                if row is None:
                    raise DepositNotFoundError(user_address)

                record = self._deposit_from_row(row)
                mutator(record)
                record.updated_at = datetime.now(timezone.utc)

                updated = await conn.fetchrow(
                    """
                    UPDATE user_deposits SET
                        user_id = $2,
                        phone_hash = $3,
                        tx_hash = $4,
                        amount = $5,
                        sender_wallet_address = $6,
                        verified = $7,
                        signup_completed = $8,
                        refunded = $9,
                        refund_tx_hash = $10,
                        refund_timestamp = $11,
                        verification_attempts = $12,
                        last_verification_attempt = $13,
                        updated_at = $14
                    WHERE user_address = $1
                    RETURNING *
                    """,
                    user_address,
                    record.user_id,
                    record.phone_hash,
                    record.tx_hash,
                    record.amount,
                    record.sender_wallet_address,
                    record.verified,
                    record.signup_completed,
                    record.refunded,
                    record.refund_tx_hash,
                    record.refund_timestamp,
                    record.verification_attempts,
                    record.last_verification_attempt,
                    record.updated_at,
                )
                return self._deposit_from_row(updated)

    async def list_deposits(
        self,
        verified: Optional[bool] = None,
        refunded: Optional[bool] = None,
    ) -> List[DepositRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM user_deposits
                WHERE ($1::boolean IS NULL OR verified = $1)
                  AND ($2::boolean IS NULL OR refunded = $2)
                ORDER BY created_at
                """,
                verified,
                refunded,
            )
            return [self._deposit_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Refund claims
    # ------------------------------------------------------------------

    async def claim_refund(self, deposit_tx_hash: str, user_address: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            res = await conn.execute(
                """
                INSERT INTO refund_claims (deposit_tx_hash, user_address)
                VALUES ($1, $2)
                ON CONFLICT (deposit_tx_hash) DO NOTHING
                """,
                deposit_tx_hash,
                user_address,
            )
            return res == "INSERT 0 1"

    async def get_refund_claim(self, deposit_tx_hash: str) -> Optional[RefundClaim]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM refund_claims WHERE deposit_tx_hash = $1",
                deposit_tx_hash,
            )
            if row is None:
                return None
            return RefundClaim(
                deposit_tx_hash=row["deposit_tx_hash"],
                user_address=row["user_address"],
                refund_tx_hash=row["refund_tx_hash"],
                claimed_at=row["claimed_at"],
                completed_at=row["completed_at"],
            )

    async def complete_refund_claim(self, deposit_tx_hash: str, refund_tx_hash: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE refund_claims
                SET refund_tx_hash = $2, completed_at = NOW()
                WHERE deposit_tx_hash = $1
                """,
                deposit_tx_hash,
                refund_tx_hash,
            )

    async def release_refund_claim(self, deposit_tx_hash: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            res = await conn.execute(
                "DELETE FROM refund_claims WHERE deposit_tx_hash = $1 AND refund_tx_hash IS NULL",
                deposit_tx_hash,
            )
            return res == "DELETE 1"

    # ------------------------------------------------------------------
    # Transaction log
    # ------------------------------------------------------------------

    async def record_transaction(self, entry: TransactionLogEntry) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            res = await conn.execute(
                """
                INSERT INTO transactions (
                    tx_hash, from_address, to_address, amount, confirmations,
                    transaction_type, status, user_id
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (tx_hash) DO NOTHING
                """,
                entry.tx_hash,
                entry.from_address,
                entry.to_address,
                entry.amount,
                entry.confirmations,
                entry.transaction_type.value,
                entry.status.value,
                entry.user_id,
            )
            return res == "INSERT 0 1"

    async def list_transactions(
        self,
        transaction_type: Optional[TransactionType] = None,
    ) -> List[TransactionLogEntry]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM transactions
                WHERE ($1::text IS NULL OR transaction_type = $1)
                ORDER BY created_at
                """,
                transaction_type.value if transaction_type else None,
            )
            return [self._transaction_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Monitor state
    # ------------------------------------------------------------------

    async def get_state(self, key: str) -> Optional[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT value FROM monitor_state WHERE key = $1", key)
            return row["value"] if row else None

    async def set_state(self, key: str, value: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO monitor_state (key, value, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                """,
                key,
                value,
            )
