"""
Inbox repository recording which messages a consumer has handled.

An inbox record is inserted in the same transaction as the handler's side
effects. The unique key ``(message_id, handler_type)`` turns a redelivered
message into ``DuplicateInboxError`` instead of a second execution.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text

from eventrelay.exceptions import DuplicateInboxError
from eventrelay.observability import Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_HANDLER_TYPE,
    ATTR_MESSAGE_ID,
)
from eventrelay.stores.sqlite import format_timestamp

if TYPE_CHECKING:
    import aiosqlite
    from sqlalchemy.ext.asyncio import AsyncConnection

    from eventrelay.stores.in_memory import InMemoryTransaction

INBOX_TABLE = "inbox_records"


@dataclass(frozen=True)
class InboxRecord:
    """
    Marker that a handler processed a message.

    Attributes:
        message_id: Outbox id of the processed message
        handler_type: Name of the consumer handler
        processed_at: When the handler's transaction ran
        correlation_id: Causal chain of the message
        causation_id: Parent of the message, if any
    """

    message_id: UUID
    handler_type: str
    processed_at: datetime
    correlation_id: UUID | None = None
    causation_id: UUID | None = None


@runtime_checkable
class InboxRepository(Protocol):
    """Protocol for inbox repositories."""

    async def insert(self, txn: Any, record: InboxRecord) -> None:
        """
        Insert a record in the caller's transaction.

        Raises:
            DuplicateInboxError: If the message was already processed by
                this handler type
        """
        ...

    async def contains(self, txn: Any, message_id: UUID, handler_type: str) -> bool:
        ...

    async def count(self, txn: Any) -> int:
        ...

    async def cleanup(self, txn: Any, older_than: datetime) -> int:
        """Delete records processed before ``older_than``."""
        ...


class InMemoryInboxRepository:
    """In-memory inbox repository over an ``InMemoryDatabase``."""

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def insert(self, txn: InMemoryTransaction, record: InboxRecord) -> None:
        with self._tracer.span(
            "eventrelay.inbox.insert",
            {
                ATTR_MESSAGE_ID: str(record.message_id),
                ATTR_HANDLER_TYPE: record.handler_type,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            txn.insert(
                INBOX_TABLE,
                (record.message_id, record.handler_type),
                record,
                conflict=lambda: DuplicateInboxError(record.message_id, record.handler_type),
            )

    async def contains(
        self, txn: InMemoryTransaction, message_id: UUID, handler_type: str
    ) -> bool:
        return txn.get(INBOX_TABLE, (message_id, handler_type)) is not None

    async def count(self, txn: InMemoryTransaction) -> int:
        return sum(1 for _ in txn.rows(INBOX_TABLE))

    async def cleanup(self, txn: InMemoryTransaction, older_than: datetime) -> int:
        expired = [
            (record.message_id, record.handler_type)
            for record in txn.rows(INBOX_TABLE)
            if record.processed_at < older_than
        ]
        for key in expired:
            txn.delete(INBOX_TABLE, key)
        return len(expired)


class SQLiteInboxRepository:
    """
    SQLite implementation of the inbox repository.

    Duplicates are detected with ``ON CONFLICT DO NOTHING`` and the affected
    row count, which leaves the surrounding transaction usable.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def insert(self, txn: aiosqlite.Connection, record: InboxRecord) -> None:
        with self._tracer.span(
            "eventrelay.inbox.insert",
            {
                ATTR_MESSAGE_ID: str(record.message_id),
                ATTR_HANDLER_TYPE: record.handler_type,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            cursor = await txn.execute(
                f"""
                INSERT INTO {INBOX_TABLE}
                    (message_id, handler_type, processed_at, correlation_id, causation_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (message_id, handler_type) DO NOTHING
                """,
                (
                    str(record.message_id),
                    record.handler_type,
                    format_timestamp(record.processed_at),
                    str(record.correlation_id) if record.correlation_id else None,
                    str(record.causation_id) if record.causation_id else None,
                ),
            )
            if cursor.rowcount == 0:
                raise DuplicateInboxError(record.message_id, record.handler_type)

    async def contains(
        self, txn: aiosqlite.Connection, message_id: UUID, handler_type: str
    ) -> bool:
        cursor = await txn.execute(
            f"SELECT 1 FROM {INBOX_TABLE} WHERE message_id = ? AND handler_type = ?",
            (str(message_id), handler_type),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return row is not None

    async def count(self, txn: aiosqlite.Connection) -> int:
        cursor = await txn.execute(f"SELECT COUNT(*) FROM {INBOX_TABLE}")
        row = await cursor.fetchone()
        await cursor.close()
        return row[0] if row else 0

    async def cleanup(self, txn: aiosqlite.Connection, older_than: datetime) -> int:
        cursor = await txn.execute(
            f"DELETE FROM {INBOX_TABLE} WHERE processed_at < ?",
            (format_timestamp(older_than),),
        )
        return cursor.rowcount


class PostgreSQLInboxRepository:
    """PostgreSQL implementation of the inbox repository."""

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def insert(self, txn: AsyncConnection, record: InboxRecord) -> None:
        with self._tracer.span(
            "eventrelay.inbox.insert",
            {
                ATTR_MESSAGE_ID: str(record.message_id),
                ATTR_HANDLER_TYPE: record.handler_type,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            result = await txn.execute(
                text(f"""
                    INSERT INTO {INBOX_TABLE}
                        (message_id, handler_type, processed_at, correlation_id, causation_id)
                    VALUES (:message_id, :handler_type, :processed_at,
                            :correlation_id, :causation_id)
                    ON CONFLICT (message_id, handler_type) DO NOTHING
                """),
                {
                    "message_id": record.message_id,
                    "handler_type": record.handler_type,
                    "processed_at": record.processed_at,
                    "correlation_id": record.correlation_id,
                    "causation_id": record.causation_id,
                },
            )
            if result.rowcount == 0:
                raise DuplicateInboxError(record.message_id, record.handler_type)

    async def contains(self, txn: AsyncConnection, message_id: UUID, handler_type: str) -> bool:
        result = await txn.execute(
            text(f"""
                SELECT 1 FROM {INBOX_TABLE}
                WHERE message_id = :message_id AND handler_type = :handler_type
            """),
            {"message_id": message_id, "handler_type": handler_type},
        )
        return result.fetchone() is not None

    async def count(self, txn: AsyncConnection) -> int:
        result = await txn.execute(text(f"SELECT COUNT(*) FROM {INBOX_TABLE}"))
        return result.scalar() or 0

    async def cleanup(self, txn: AsyncConnection, older_than: datetime) -> int:
        result = await txn.execute(
            text(f"DELETE FROM {INBOX_TABLE} WHERE processed_at < :cutoff"),
            {"cutoff": older_than},
        )
        return result.rowcount


__all__ = [
    "INBOX_TABLE",
    "InboxRecord",
    "InboxRepository",
    "InMemoryInboxRepository",
    "SQLiteInboxRepository",
    "PostgreSQLInboxRepository",
]
