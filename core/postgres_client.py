"""
PostgreSQL Client Wrapper

asyncpg connection pool with a transaction scope bound to the current task.
Statements issued inside ``transaction()`` run on the transaction's connection;
nested ``transaction()`` blocks become savepoints.

Usage:
    from core.postgres_client import get_postgres_client

    db = await get_postgres_client("group_buy_service")

    async with db.transaction():
        row = await db.query_row("SELECT * FROM group_buy.campaigns WHERE campaign_id = $1", [campaign_id])
"""

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from core.config import get_settings

logger = logging.getLogger(__name__)


class PostgresClient:
    """
    PostgreSQL client with service discovery integration.

    Wraps an asyncpg pool and provides:
    - Service discovery for host/port configuration
    - Task-scoped transactions with savepoint nesting
    - Rows returned as plain dicts
    """

    def __init__(
        self,
        service_name: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ):
        from core.config_manager import ConfigManager

        self.service_name = service_name
        infra = get_settings().infrastructure

        config = ConfigManager(service_name)
        discovered_host, discovered_port = config.discover_service(
            service_name="postgres_service",
            default_host=infra.postgres_host,
            default_port=infra.postgres_port,
            env_host_key="POSTGRES_HOST",
            env_port_key="POSTGRES_PORT",
        )

        self.host = host or discovered_host
        self.port = port or discovered_port
        self.database = database or infra.postgres_db
        self.username = username or infra.postgres_user
        self.password = password or infra.postgres_password
        self.min_size = min_size or infra.postgres_pool_min
        self.max_size = max_size or infra.postgres_pool_max

        self._pool: Optional[asyncpg.Pool] = None
        self._tx_connection: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"{service_name}_tx_connection", default=None
        )

        logger.info(f"PostgreSQL client initialized for {service_name}: {self.host}:{self.port}/{self.database}")

    async def connect(self) -> None:
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.username,
            password=self.password,
            min_size=self.min_size,
            max_size=self.max_size,
        )
        logger.info(f"PostgreSQL pool ready ({self.min_size}-{self.max_size} connections)")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def in_transaction(self) -> bool:
        return self._tx_connection.get() is not None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Open a transaction, or a savepoint when one is already active"""
        current = self._tx_connection.get()
        if current is not None:
            async with current.transaction():
                yield current
            return

        if self._pool is None:
            await self.connect()

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                token = self._tx_connection.set(conn)
                try:
                    yield conn
                finally:
                    self._tx_connection.reset(token)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        current = self._tx_connection.get()
        if current is not None:
            yield current
            return

        if self._pool is None:
            await self.connect()
        async with self._pool.acquire() as conn:
            yield conn

    async def health_check(self) -> bool:
        try:
            return await self.query_row("SELECT 1 AS healthy") is not None
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return all rows"""
        async with self._connection() as conn:
            rows = await conn.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return the first row"""
        async with self._connection() as conn:
            row = await conn.fetchrow(sql, *(params or []))
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        """Execute SQL statement and return the command status"""
        async with self._connection() as conn:
            return await conn.execute(sql, *(params or []))

    async def execute_many(self, sql: str, params_list: List[List[Any]]) -> None:
        """Execute SQL statement with multiple parameter sets"""
        async with self._connection() as conn:
            await conn.executemany(sql, params_list)


# Singleton instances per service
_postgres_clients: Dict[str, PostgresClient] = {}


async def get_postgres_client(service_name: str, **kwargs) -> PostgresClient:
    """Get or create the PostgreSQL client for a service"""
    if service_name not in _postgres_clients:
        client = PostgresClient(service_name=service_name, **kwargs)
        await client.connect()
        _postgres_clients[service_name] = client
    return _postgres_clients[service_name]
