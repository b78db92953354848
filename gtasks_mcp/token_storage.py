"""
Database-backed storage for gateway state.

This module provides persistent, shareable storage for grants, bridge tokens,
sessions and upstream credentials using PostgreSQL, so state survives
restarts and can be shared by several gateway processes.
"""

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any

import asyncpg

from .storage import KeyValueStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS gateway_state (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value JSONB NOT NULL,
    expires_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (namespace, key)
)
"""


def _to_datetime(timestamp: float | None) -> datetime | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class GatewayDatabase:
    """Connection pool shared by every PostgreSQL-backed store."""

    def __init__(self, database_url: str | None = None):
        """
        Initialize the database handle.

        Args:
            database_url: PostgreSQL connection URL. If not provided,
                         will be read from DATABASE_URL environment variable.
        """
        self.database_url = database_url or os.environ.get("DATABASE_URL")
        self._pool: asyncpg.Pool | None = None

    @property
    def pool(self) -> asyncpg.Pool:
        if not self._pool:
            raise RuntimeError("Gateway database not initialized. Call initialize() first.")
        return self._pool

    async def initialize(self) -> None:
        """Open the connection pool and create the state table."""
        if not self.database_url:
            raise ValueError("DATABASE_URL is required for database storage")

        logger.info("Initializing database connection pool for gateway state")
        self._pool = await asyncpg.create_pool(
            self.database_url,
            min_size=2,
            max_size=10,
            command_timeout=30,
        )
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database connection pool initialized")

    async def close(self) -> None:
        """Close the database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database connection pool closed")

    def store(self, namespace: str) -> "PostgresStore":
        return PostgresStore(namespace, self)


class PostgresStore(KeyValueStore):
    """One namespace of the ``gateway_state`` table."""

    def __init__(self, namespace: str, database: GatewayDatabase):
        super().__init__(namespace)
        self.database = database

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self.database.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT value FROM gateway_state WHERE namespace = $1 AND key = $2",
                self.namespace,
                key,
            )
        if not row:
            logger.debug(f"Key {key[:20]}... not found in '{self.namespace}'")
            return None
        return json.loads(row["value"])

    async def put(self, key: str, value: dict[str, Any], expires_at: float | None = None) -> None:
        async with self.database.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO gateway_state (namespace, key, value, expires_at)
                VALUES ($1, $2, $3::jsonb, $4)
                ON CONFLICT (namespace, key) DO UPDATE SET
                    value = EXCLUDED.value,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = now()
                """,
                self.namespace,
                key,
                json.dumps(value),
                _to_datetime(expires_at),
            )
        logger.debug(f"Stored {key[:20]}... in '{self.namespace}'")

    async def delete(self, key: str) -> bool:
        async with self.database.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM gateway_state WHERE namespace = $1 AND key = $2",
                self.namespace,
                key,
            )
        # Parse the DELETE count from result string like "DELETE 1"
        return bool(result) and int(result.split()[-1]) > 0

    async def pop(self, key: str) -> dict[str, Any] | None:
        async with self.database.pool.acquire() as conn:
            row = await conn.fetchrow(
                "DELETE FROM gateway_state WHERE namespace = $1 AND key = $2 RETURNING value",
                self.namespace,
                key,
            )
        return json.loads(row["value"]) if row else None

    async def list_expired(self, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        async with self.database.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT key FROM gateway_state WHERE namespace = $1 AND expires_at < $2",
                self.namespace,
                _to_datetime(now),
            )
        return [row["key"] for row in rows]

    async def purge_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        async with self.database.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM gateway_state WHERE namespace = $1 AND expires_at < $2",
                self.namespace,
                _to_datetime(now),
            )
        count = int(result.split()[-1]) if result else 0
        if count > 0:
            logger.info(f"Cleaned up {count} expired entries from '{self.namespace}'")
        return count

    async def count(self) -> int:
        async with self.database.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT COUNT(*) AS count FROM gateway_state WHERE namespace = $1",
                self.namespace,
            )
        return row["count"] if row else 0
