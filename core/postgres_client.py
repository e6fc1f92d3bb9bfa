"""
PostgreSQL Client Wrapper

asyncpg connection pool wrapper giving repositories a consistent
query/query_row/execute interface with positional ($n) parameters.

Usage:
    from core.postgres_client import get_postgres_client

    db = await get_postgres_client("push_campaign_service")

    async with db:
        rows = await db.query("SELECT * FROM push_campaign.segments WHERE merchant_id = $1", [merchant_id])
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class PostgresTransientError(Exception):
    """Raised for failures that may succeed on retry (connection loss, timeouts, serialization)"""


TRANSIENT_ERRORS = (
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.QueryCanceledError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


class PostgresClientWrapper:
    """
    PostgreSQL client wrapper around an asyncpg pool.

    - Pool is created lazily on first use (or by connect())
    - Rows are returned as plain dicts
    - Transient driver errors are raised as PostgresTransientError
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize PostgreSQL client wrapper.

        Args:
            service_name: Name of the service using this client
            config: Infrastructure config (defaults to environment)
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.host = self.config.postgres_host
        self.port = self.config.postgres_port
        self.database = self.config.postgres_db
        self._pool: Optional[asyncpg.Pool] = None
        self._lock = asyncio.Lock()

        logger.info(f"PostgreSQL client initialized for {service_name}: {self.host}:{self.port}/{self.database}")

    async def connect(self) -> None:
        """Create the connection pool if it does not exist yet"""
        if self._pool is not None:
            return
        async with self._lock:
            if self._pool is not None:
                return
            try:
                self._pool = await asyncpg.create_pool(
                    host=self.host,
                    port=self.port,
                    database=self.database,
                    user=self.config.postgres_user,
                    password=self.config.postgres_password,
                    min_size=self.config.postgres_pool_min,
                    max_size=self.config.postgres_pool_max,
                    command_timeout=self.config.postgres_command_timeout,
                    server_settings={"application_name": self.service_name},
                )
            except TRANSIENT_ERRORS as e:
                logger.error(f"Failed to connect to PostgreSQL at {self.host}:{self.port}: {e}")
                raise PostgresTransientError(str(e)) from e
            logger.info(f"PostgreSQL pool ready for {self.service_name}")

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit (the pool stays open)"""
        return False

    async def health_check(self) -> Optional[Dict]:
        """Check database health"""
        try:
            row = await self.query_row("SELECT 1 AS healthy")
            return {"healthy": bool(row and row.get("healthy") == 1)}
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return None

    async def query(
        self,
        sql: str,
        params: Optional[List[Any]] = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        await self.connect()
        try:
            async with self._pool.acquire() as conn:
                records = await conn.fetch(sql, *(params or []), timeout=timeout)
            return [dict(record) for record in records]
        except TRANSIENT_ERRORS as e:
            raise PostgresTransientError(str(e)) from e

    async def query_row(
        self,
        sql: str,
        params: Optional[List[Any]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        await self.connect()
        try:
            async with self._pool.acquire() as conn:
                record = await conn.fetchrow(sql, *(params or []), timeout=timeout)
            return dict(record) if record is not None else None
        except TRANSIENT_ERRORS as e:
            raise PostgresTransientError(str(e)) from e

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> bool:
        """Execute SQL statement"""
        await self.connect()
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(sql, *(params or []))
            return True
        except TRANSIENT_ERRORS as e:
            raise PostgresTransientError(str(e)) from e

    async def execute_many(self, sql: str, params_list: List[List[Any]]) -> bool:
        """Execute SQL statement with multiple parameter sets in one transaction"""
        if not params_list:
            return True
        await self.connect()
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(sql, params_list)
            return True
        except TRANSIENT_ERRORS as e:
            raise PostgresTransientError(str(e)) from e

    async def close(self):
        """Close connection pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")


# Singleton instances per service
_postgres_clients: Dict[str, PostgresClientWrapper] = {}


async def get_postgres_client(
    service_name: str,
    config: Optional[InfraConfig] = None,
) -> PostgresClientWrapper:
    """
    Get or create PostgreSQL client for a service.

    Args:
        service_name: Name of the service
        config: Optional infrastructure config

    Returns:
        PostgresClientWrapper instance
    """
    if service_name not in _postgres_clients:
        _postgres_clients[service_name] = PostgresClientWrapper(service_name, config=config)
    return _postgres_clients[service_name]


async def close_postgres_clients() -> None:
    """Close every cached client"""
    for client in list(_postgres_clients.values()):
        await client.close()
    _postgres_clients.clear()
