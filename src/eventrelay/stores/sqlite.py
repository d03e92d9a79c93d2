"""
SQLite transactional store backed by aiosqlite.

SQLite-specific behaviour:
- One aiosqlite connection per ``SQLiteDatabase``; transactions on it are
  serialized with an asyncio lock
- Transactions start with ``BEGIN IMMEDIATE`` so the database write lock
  is taken up front, which makes claiming exclusive across processes
- UUIDs are stored as TEXT and timestamps as sortable UTC TEXT

Example:
    >>> database = await SQLiteDatabase.connect("relay.db")
    >>> await database.initialize()
    >>> async with database.transaction() as conn:
    ...     await conn.execute("INSERT INTO orders ...", params)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import aiosqlite

from eventrelay.exceptions import StoreUnavailableError
from eventrelay.stores.schema import get_schema

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: datetime | None) -> str | None:
    """Format a datetime as sortable UTC text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse text written by ``format_timestamp`` (or ISO 8601) to an aware datetime."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class SQLiteDatabase:
    """
    Transaction manager over a single aiosqlite connection.

    The connection must be in autocommit mode (``isolation_level=None``)
    so that transactions are controlled explicitly; ``connect`` opens one
    that way.
    """

    backend = "sqlite"

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._connection = connection
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(cls, path: str, timeout: float = 5.0) -> SQLiteDatabase:
        """
        Open a database file (or ":memory:").

        Raises:
            StoreUnavailableError: If the file cannot be opened
        """
        try:
            connection = await aiosqlite.connect(path, timeout=timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open SQLite database {path}: {e}", e) from e
        return cls(connection)

    @property
    def connection(self) -> aiosqlite.Connection:
        return self._connection

    async def initialize(self) -> None:
        """Create the relay tables if they do not exist."""
        async with self._lock:
            await self._connection.executescript(get_schema("sqlite"))
        logger.info("SQLite schema initialized")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            try:
                await self._connection.execute("BEGIN IMMEDIATE")
            except (sqlite3.OperationalError, ValueError) as e:
                # ValueError is raised by aiosqlite for a closed connection
                raise StoreUnavailableError(f"Cannot begin SQLite transaction: {e}", e) from e

            try:
                yield self._connection
            except BaseException:
                await self._rollback()
                raise

            try:
                await self._connection.commit()
            except sqlite3.OperationalError as e:
                await self._rollback()
                raise StoreUnavailableError(f"SQLite commit failed: {e}", e) from e

    async def _rollback(self) -> None:
        try:
            await self._connection.rollback()
        except (sqlite3.Error, ValueError) as e:
            logger.warning(f"SQLite rollback failed: {e}", extra={"error": str(e)})

    async def close(self) -> None:
        await self._connection.close()


__all__ = [
    "SQLiteDatabase",
    "TIMESTAMP_FORMAT",
    "format_timestamp",
    "parse_timestamp",
]
