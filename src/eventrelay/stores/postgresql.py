"""
PostgreSQL transactional store backed by SQLAlchemy async.

Transactions are SQLAlchemy ``AsyncConnection`` objects inside
``engine.begin()``. Repositories issue ``text()`` queries on them, so the
caller's own SQLAlchemy work shares the same transaction.

Example:
    >>> from sqlalchemy.ext.asyncio import create_async_engine
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/relay")
    >>> database = PostgreSQLDatabase(engine)
    >>> async with database.transaction() as conn:
    ...     await conn.execute(text("UPDATE orders ..."), params)
    ...     await writer.append(conn, "OrderPlaced", payload)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from eventrelay.exceptions import StoreUnavailableError
from eventrelay.stores.schema import get_schema_statements

logger = logging.getLogger(__name__)

_UNAVAILABLE = (OperationalError, InterfaceError, OSError)


class PostgreSQLDatabase:
    """Transaction manager over a SQLAlchemy ``AsyncEngine``."""

    backend = "postgresql"

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def initialize(self) -> None:
        """Create the relay tables if they do not exist."""
        async with self.transaction() as conn:
            for statement in get_schema_statements("postgresql"):
                await conn.execute(text(statement))
        logger.info("PostgreSQL schema initialized")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        try:
            conn = await self._engine.connect()
        except _UNAVAILABLE as e:
            raise StoreUnavailableError(f"PostgreSQL connection failed: {e}", e) from e

        try:
            async with conn.begin():
                yield conn
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(f"PostgreSQL unavailable: {e}", e) from e
        finally:
            await conn.close()

    async def close(self) -> None:
        await self._engine.dispose()


__all__ = ["PostgreSQLDatabase"]
