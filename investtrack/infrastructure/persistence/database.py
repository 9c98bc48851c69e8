"""
Database connection manager for PostgreSQL.

Provides async connection pooling using asyncpg with:
- Connection pool lifecycle
- Query execution helpers that wrap driver errors in QueryError
- Transaction support
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Tuple

import asyncpg
from asyncpg import Connection, Pool, Record

from config.models import DatabaseConfig
from ...utils.logging_setup import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Base exception for database operations."""


class ConnectionError(DatabaseError):
    """Failed to establish database connection."""


class QueryError(DatabaseError):
    """Query execution failed."""


class Database:
    """
    Async database connection manager using asyncpg.

    Usage:
        db = Database(config)
        await db.connect()

        rows = await db.fetch("SELECT * FROM accounts WHERE user_id = $1", user_id)

        async with db.transaction() as conn:
            await conn.execute("DELETE FROM portfolios WHERE main_account_id = $1", account_id)
            await conn.executemany(INSERT_SQL, rows)

        await db.close()
    """

    def __init__(self, config: DatabaseConfig):
        self._config = config
        self._pool: Optional[Pool] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._pool is not None

    @property
    def pool(self) -> Pool:
        """Get the connection pool, raising if not connected."""
        if self._pool is None:
            raise ConnectionError("Database not connected. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """
        Create the connection pool.

        Raises:
            ConnectionError: If the pool cannot be created.
        """
        if self._connected:
            logger.warning("Database already connected")
            return

        logger.info(
            f"Connecting to database {self._config.host}:{self._config.port}/{self._config.database} "
            f"(pool {self._config.pool.min_connections}-{self._config.pool.max_connections})"
        )

        try:
            self._pool = await asyncpg.create_pool(
                self._config.dsn,
                min_size=self._config.pool.min_connections,
                max_size=self._config.pool.max_connections,
                command_timeout=60,
            )
            self._connected = True
            logger.info("Database connection pool established")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise ConnectionError(f"Failed to connect to database: {e}") from e

    async def close(self) -> None:
        """Close the connection pool gracefully."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._connected = False
            logger.info("Database connection pool closed")

    async def health_check(self) -> bool:
        if not self.is_connected:
            return False
        try:
            await self.fetchval("SELECT 1")
            return True
        except QueryError as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    # -------------------------------------------------------------------------
    # Query Execution Methods
    # -------------------------------------------------------------------------

    async def execute(self, query: str, *args: Any, timeout: Optional[float] = None) -> str:
        """
        Execute a query and return the status (e.g. "UPDATE 1").

        Raises:
            QueryError: If query execution fails.
        """
        try:
            async with self.pool.acquire() as conn:
                return await conn.execute(query, *args, timeout=timeout)
        except Exception as e:
            logger.error(f"Query execution failed: {e}", extra={"data": {"query": query[:200]}})
            raise QueryError(f"Query execution failed: {e}") from e

    async def executemany(
        self, query: str, args: List[Tuple[Any, ...]], timeout: Optional[float] = None
    ) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.executemany(query, args, timeout=timeout)
        except Exception as e:
            logger.error(f"Batch execution failed: {e}", extra={"data": {"query": query[:200]}})
            raise QueryError(f"Batch execution failed: {e}") from e

    async def fetch(self, query: str, *args: Any, timeout: Optional[float] = None) -> List[Record]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(query, *args, timeout=timeout)
        except Exception as e:
            logger.error(f"Fetch failed: {e}", extra={"data": {"query": query[:200]}})
            raise QueryError(f"Fetch failed: {e}") from e

    async def fetchrow(
        self, query: str, *args: Any, timeout: Optional[float] = None
    ) -> Optional[Record]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(query, *args, timeout=timeout)
        except Exception as e:
            logger.error(f"Fetchrow failed: {e}", extra={"data": {"query": query[:200]}})
            raise QueryError(f"Fetchrow failed: {e}") from e

    async def fetchval(
        self, query: str, *args: Any, column: int = 0, timeout: Optional[float] = None
    ) -> Any:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(query, *args, column=column, timeout=timeout)
        except Exception as e:
            logger.error(f"Fetchval failed: {e}", extra={"data": {"query": query[:200]}})
            raise QueryError(f"Fetchval failed: {e}") from e

    # -------------------------------------------------------------------------
    # Transaction Support
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Connection]:
        """
        Context manager for database transactions.

        Commits on success, rolls back on exception. Driver errors raised
        inside the block are re-raised as QueryError.
        """
        async with self.pool.acquire() as conn:
            try:
                async with conn.transaction():
                    yield conn
            except asyncpg.PostgresError as e:
                logger.error(f"Transaction rolled back: {e}")
                raise QueryError(f"Transaction failed: {e}") from e
