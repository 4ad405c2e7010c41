"""
PostgreSQL Usage Store
======================

asyncpg-backed implementation of ``UsageStore``.

Database Schema:
- usage: daily request counters keyed by device id (or ``ip:<address>``)
- transcription_usage: cumulative transcription minutes keyed by account id

Every asyncpg, network or timeout error is re-raised as ``StoreError`` so the
trackers can apply the fail-open policy. The store never retries.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import asyncpg

from .errors import StoreError
from .store import TranscriptionUsageRecord, UsageRecord, UsageStore

logger = logging.getLogger(__name__)

_BACKEND_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


# =============================================================================
# SQL Migration Scripts
# =============================================================================


USAGE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS usage (
    device_id TEXT PRIMARY KEY,
    user_id TEXT,
    daily_count INTEGER NOT NULL DEFAULT 0,
    last_reset DATE NOT NULL DEFAULT CURRENT_DATE,
    tier TEXT NOT NULL DEFAULT 'anonymous',
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_usage_user ON usage(user_id);
CREATE INDEX IF NOT EXISTS idx_usage_last_reset ON usage(last_reset);
"""

TRANSCRIPTION_USAGE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS transcription_usage (
    user_id TEXT PRIMARY KEY,
    minutes_used REAL NOT NULL DEFAULT 0,
    minutes_granted REAL NOT NULL DEFAULT 500,
    tier TEXT NOT NULL DEFAULT 'logged_in',
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);
"""


async def run_migrations(database_url: str | None) -> None:
    """Create the usage tables if they do not exist."""
    if not database_url:
        logger.info("No DATABASE_URL configured, skipping migrations")
        return

    try:
        conn = await asyncpg.connect(database_url)
        try:
            await conn.execute(USAGE_TABLE_SQL)
            await conn.execute(TRANSCRIPTION_USAGE_TABLE_SQL)
            logger.info("Usage DB: Migrations completed successfully")
        finally:
            await conn.close()
    except _BACKEND_ERRORS as e:
        raise StoreError("migrate", e) from e


class PostgresUsageStore(UsageStore):
    """Usage store on a lazily created asyncpg pool."""

    def __init__(
        self,
        database_url: str,
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: float = 5.0,
    ):
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    self._database_url,
                    min_size=self._min_size,
                    max_size=self._max_size,
                    command_timeout=self._command_timeout,
                )
                logger.info("Usage DB: connection pool created")
        return self._pool

    async def _fetchrow(self, operation: str, query: str, *args: Any) -> Any:
        try:
            pool = await self._get_pool()
            return await pool.fetchrow(query, *args)
        except _BACKEND_ERRORS as e:
            raise StoreError(operation, e) from e

    async def _execute(self, operation: str, query: str, *args: Any) -> None:
        try:
            pool = await self._get_pool()
            await pool.execute(query, *args)
        except _BACKEND_ERRORS as e:
            raise StoreError(operation, e) from e

    # =========================================================================
    # Request-count table
    # =========================================================================

    async def get_usage(self, key: str) -> UsageRecord | None:
        row = await self._fetchrow(
            "get_usage",
            """
            SELECT device_id, user_id, daily_count, last_reset, tier, updated_at
            FROM usage WHERE device_id = $1
            """,
            key,
        )
        if row is None:
            return None
        return UsageRecord(
            key=row["device_id"],
            daily_count=row["daily_count"],
            last_reset_day=row["last_reset"],
            tier=row["tier"],
            account_id=row["user_id"],
            updated_at=row["updated_at"],
        )

    async def save_usage(self, record: UsageRecord) -> None:
        await self._execute(
            "save_usage",
            """
            INSERT INTO usage (device_id, user_id, daily_count, last_reset, tier, updated_at)
            VALUES ($1, $2, $3, $4, $5, NOW())
            ON CONFLICT (device_id) DO UPDATE SET
                user_id = EXCLUDED.user_id,
                daily_count = EXCLUDED.daily_count,
                last_reset = EXCLUDED.last_reset,
                tier = EXCLUDED.tier,
                updated_at = NOW()
            """,
            record.key,
            record.account_id,
            record.daily_count,
            record.last_reset_day,
            record.tier,
        )

    # =========================================================================
    # Transcription table
    # =========================================================================

    async def get_transcription(self, key: str) -> TranscriptionUsageRecord | None:
        row = await self._fetchrow(
            "get_transcription",
            """
            SELECT user_id, minutes_used, minutes_granted, tier, created_at, updated_at
            FROM transcription_usage WHERE user_id = $1
            """,
            key,
        )
        if row is None:
            return None
        return TranscriptionUsageRecord(
            key=row["user_id"],
            minutes_used=float(row["minutes_used"]),
            minutes_granted=float(row["minutes_granted"]),
            tier=row["tier"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def create_transcription(self, record: TranscriptionUsageRecord) -> None:
        # First grant wins; a concurrent creator must not reset minutes_used.
        await self._execute(
            "create_transcription",
            """
            INSERT INTO transcription_usage (user_id, minutes_used, minutes_granted, tier)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id) DO NOTHING
            """,
            record.key,
            record.minutes_used,
            record.minutes_granted,
            record.tier,
        )

    async def add_transcription_minutes(self, key: str, minutes: float, tier: str) -> None:
        await self._execute(
            "add_transcription_minutes",
            """
            UPDATE transcription_usage
            SET minutes_used = minutes_used + $2, tier = $3, updated_at = NOW()
            WHERE user_id = $1
            """,
            key,
            minutes,
            tier,
        )

    async def accumulate_transcription(self, key: str, minutes: float, tier: str) -> None:
        await self._execute(
            "accumulate_transcription",
            """
            INSERT INTO transcription_usage (user_id, minutes_used, minutes_granted, tier)
            VALUES ($1, $2, 0, $3)
            ON CONFLICT (user_id) DO UPDATE SET
                minutes_used = transcription_usage.minutes_used + EXCLUDED.minutes_used,
                tier = EXCLUDED.tier,
                updated_at = NOW()
            """,
            key,
            minutes,
            tier,
        )

    async def check_health(self) -> None:
        await self._fetchrow("check_health", "SELECT 1")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Usage DB: connection pool closed")
