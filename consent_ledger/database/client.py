"""
Neo4j Async Client

Async wrapper for the Neo4j Python driver with connection pooling,
transaction management, and retry logic for transient errors.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncSession, AsyncTransaction
from neo4j.exceptions import (
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from consent_ledger.config import Settings

logger = structlog.get_logger(__name__)


# Retry configuration for transient errors
RETRYABLE_EXCEPTIONS = (ServiceUnavailable, SessionExpired, TransientError)


class Neo4jClient:
    """
    Async Neo4j client.

    Provides connection pooling, transaction management,
    and helper methods for common operations.
    """

    def __init__(self, settings: Settings):
        if not settings.neo4j_uri:
            raise ValueError("Neo4jClient requires NEO4J_URI")
        self._settings = settings
        self._uri = settings.neo4j_uri
        self._user = settings.neo4j_user
        self._password = settings.neo4j_password
        self._database = settings.neo4j_database

        self._driver: AsyncDriver | None = None

    async def connect(self) -> None:
        """Establish connection to Neo4j."""
        if self._driver is not None:
            return

        logger.info("neo4j_connecting", uri=self._uri, database=self._database)

        self._driver = AsyncGraphDatabase.driver(
            self._uri,
            auth=(self._user, self._password),
            max_connection_lifetime=self._settings.neo4j_max_connection_lifetime,
            max_connection_pool_size=self._settings.neo4j_max_connection_pool_size,
            connection_timeout=self._settings.neo4j_connection_timeout,
        )

        try:
            await self._driver.verify_connectivity()
            logger.info("neo4j_connected")
        except Exception as e:
            logger.error("neo4j_connect_failed", error=str(e))
            await self._driver.close()
            self._driver = None
            raise

    async def close(self) -> None:
        """Close the Neo4j connection."""
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("neo4j_closed")

    def _get_driver(self) -> AsyncDriver:
        """Get the driver instance, raising if not connected."""
        if self._driver is None:
            raise RuntimeError("Neo4j client not connected. Call connect() first.")
        return self._driver

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        driver = self._get_driver()
        async with driver.session(database=self._database) as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncTransaction, None]:
        """
        Get a Neo4j transaction.

        Usage:
            async with client.transaction() as tx:
                await tx.run("MATCH (c:ConsentRecord {id: $id}) RETURN c", id=record_id)

        Commits on successful context exit, rolls back on exception.
        """
        async with self.session() as session:
            tx = await session.begin_transaction()
            try:
                yield tx
                await tx.commit()
            except Exception:
                if not tx.closed():
                    await tx.rollback()
                raise

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
    )
    async def execute(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a Cypher query and return results.

        Args:
            query: Cypher query string
            parameters: Query parameters

        Returns:
            List of result records as dictionaries
        """
        async with self.session() as session:
            result = await session.run(query, parameters or {})
            return [dict(record) async for record in result]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
    )
    async def execute_single(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Execute a query and return a single result or None."""
        async with self.session() as session:
            result = await session.run(query, parameters or {})
            record = await result.single()
            return dict(record) if record else None

    async def health_check(self) -> dict[str, Any]:
        try:
            result = await self.execute_single(
                "CALL dbms.components() YIELD name, versions, edition "
                "RETURN name, versions, edition LIMIT 1"
            )
            return {"status": "healthy", "database": self._database, "details": result or {}}
        except Exception as e:
            logger.error("neo4j_health_check_failed", error=str(e))
            return {"status": "unhealthy", "database": self._database, "error": str(e)}
