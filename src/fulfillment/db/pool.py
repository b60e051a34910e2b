"""PostgreSQL connection pool (asyncpg) shared by the record store."""

import os
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

logger = logging.getLogger(__name__)

# Global database instance
_database: Optional["Database"] = None


class Database:
    """Async PostgreSQL connection pool.

    Connects either from a DSN (``DATABASE_URL``) or from discrete
    host/port/name/user/password settings.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "fulfillment",
        user: str = "fulfillment_user",
        password: str = "",
        min_size: int = 2,
        max_size: int = 10,
        dsn: Optional[str] = None,
        command_timeout: Optional[float] = 60.0,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_size = min_size
        self.max_size = max_size
        self.dsn = dsn
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_env(cls) -> "Database":
        """Create Database instance from DATABASE_URL or DB_* variables."""
        timeout = os.getenv("DB_COMMAND_TIMEOUT")
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "fulfillment"),
            user=os.getenv("DB_USER", "fulfillment_user"),
            password=os.getenv("DB_PASSWORD", ""),
            min_size=int(os.getenv("DB_POOL_MIN", "2")),
            max_size=int(os.getenv("DB_POOL_MAX", "10")),
            dsn=os.getenv("DATABASE_URL") or None,
            command_timeout=float(timeout) if timeout else 60.0,
        )

    @property
    def is_connected(self) -> bool:
        return self.pool is not None

    async def connect(self) -> None:
        """Create the connection pool."""
        if self.pool is not None:
            logger.warning("[DB] Pool already exists")
            return

        if self.dsn:
            logger.info("[DB] Connecting to PostgreSQL via DATABASE_URL")
            self.pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
        else:
            logger.info(
                f"[DB] Connecting to PostgreSQL: {self.user}@{self.host}:{self.port}/{self.database}"
            )
            self.pool = await asyncpg.create_pool(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )

        logger.info(f"[DB] Pool ready (size {self.min_size}-{self.max_size})")

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self.pool is None:
            logger.warning("[DB] Pool does not exist")
            return

        await self.pool.close()
        self.pool = None
        logger.info("[DB] Pool closed")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a connection from the pool.

        Raises:
            RuntimeError: If the pool is not initialized
        """
        if self.pool is None:
            raise RuntimeError("Database pool not initialized. Call connect() first.")

        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a connection with an open transaction.

        Commits when the block exits normally, rolls back if it raises.
        Row locks taken inside the block (``SELECT ... FOR UPDATE``) are held
        until it exits.
        """
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args) -> str:
        """Execute a statement and return its command status (e.g. ``UPDATE 1``)."""
        async with self.connection() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> list:
        """Execute a query and return all rows."""
        async with self.connection() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args):
        """Execute a query and return the first row or None."""
        async with self.connection() as conn:
            return await conn.fetchrow(query, *args)


def get_database() -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database.from_env()
    return _database


async def init_database() -> Database:
    """Connect the global database instance and return it."""
    db = get_database()
    await db.connect()
    return db


async def close_database() -> None:
    """Close the global database instance."""
    global _database
    if _database is not None:
        await _database.disconnect()
        _database = None
