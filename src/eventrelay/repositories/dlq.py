"""
Dead-letter repository for messages that could not be delivered.

A record is written in the same transaction that moves its outbox row to
``dead_lettered``. Records stay until an operator replays or purges them;
replay inserts a fresh outbox message and deletes the record in one
transaction (see ``eventrelay.admin``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import bindparam, text

from eventrelay.observability import Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGE_TYPE,
)
from eventrelay.stores.sqlite import format_timestamp, parse_timestamp

if TYPE_CHECKING:
    import aiosqlite
    from sqlalchemy.ext.asyncio import AsyncConnection

    from eventrelay.repositories.outbox import OutboxMessage
    from eventrelay.stores.in_memory import InMemoryTransaction

DLQ_TABLE = "dead_letters"


@dataclass(frozen=True)
class DeadLetterRecord:
    """
    A message that failed permanently or ran out of retries.

    Attributes:
        original_message_id: Id of the dead-lettered outbox message
        message_type: Type tag of the message
        payload: Serialized JSON body, kept verbatim for replay
        final_error: Error text of the last failed attempt
        attempts: Retries scheduled before giving up
        failed_at: When the message was dead-lettered
        correlation_id: Causal chain of the message
        causation_id: Parent message id, if any
        ordering_key: Ordering key of the message, if any
        created_at: When the original message was appended
    """

    original_message_id: UUID
    message_type: str
    payload: str
    final_error: str
    attempts: int
    failed_at: datetime
    correlation_id: UUID
    causation_id: UUID | None = None
    ordering_key: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_message(
        cls, message: OutboxMessage, final_error: str, failed_at: datetime
    ) -> DeadLetterRecord:
        return cls(
            original_message_id=message.id,
            message_type=message.message_type,
            payload=message.payload,
            final_error=final_error,
            attempts=message.attempts,
            failed_at=failed_at,
            correlation_id=message.correlation_id,
            causation_id=message.causation_id,
            ordering_key=message.ordering_key,
            created_at=message.created_at,
        )


@dataclass(frozen=True)
class DeadLetterFilter:
    """
    Selects dead-letter records; empty criteria match everything.

    Attributes:
        message_types: Only records of these types
        failed_after: Only records that failed at or after this time
        failed_before: Only records that failed before this time
        message_ids: Only these original message ids
    """

    message_types: tuple[str, ...] = field(default_factory=tuple)
    failed_after: datetime | None = None
    failed_before: datetime | None = None
    message_ids: tuple[UUID, ...] = field(default_factory=tuple)

    def matches(self, record: DeadLetterRecord) -> bool:
        if self.message_types and record.message_type not in self.message_types:
            return False
        if self.message_ids and record.original_message_id not in self.message_ids:
            return False
        if self.failed_after is not None and record.failed_at < self.failed_after:
            return False
        if self.failed_before is not None and record.failed_at >= self.failed_before:
            return False
        return True


@runtime_checkable
class DeadLetterRepository(Protocol):
    """Protocol for dead-letter repositories."""

    async def insert(self, txn: Any, record: DeadLetterRecord) -> None:
        ...

    async def get(self, txn: Any, message_id: UUID) -> DeadLetterRecord | None:
        ...

    async def list_records(
        self,
        txn: Any,
        criteria: DeadLetterFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterRecord]:
        """List matching records, oldest failure first."""
        ...

    async def count(self, txn: Any, criteria: DeadLetterFilter | None = None) -> int:
        ...

    async def delete(self, txn: Any, message_id: UUID) -> bool:
        ...

    async def count_by_type(self, txn: Any) -> dict[str, int]:
        ...

    async def purge(self, txn: Any, older_than: datetime) -> int:
        """Delete records that failed before ``older_than``."""
        ...


# =============================================================================
# In-memory
# =============================================================================


class InMemoryDeadLetterRepository:
    """In-memory dead-letter repository over an ``InMemoryDatabase``."""

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def _matching(
        self, txn: InMemoryTransaction, criteria: DeadLetterFilter | None
    ) -> list[DeadLetterRecord]:
        records = [
            record
            for record in txn.rows(DLQ_TABLE)
            if criteria is None or criteria.matches(record)
        ]
        return sorted(records, key=lambda r: (r.failed_at, str(r.original_message_id)))

    async def insert(self, txn: InMemoryTransaction, record: DeadLetterRecord) -> None:
        with self._tracer.span(
            "eventrelay.dlq.insert",
            {
                ATTR_MESSAGE_ID: str(record.original_message_id),
                ATTR_MESSAGE_TYPE: record.message_type,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            txn.put(DLQ_TABLE, record.original_message_id, record)

    async def get(self, txn: InMemoryTransaction, message_id: UUID) -> DeadLetterRecord | None:
        return txn.get(DLQ_TABLE, message_id)

    async def list_records(
        self,
        txn: InMemoryTransaction,
        criteria: DeadLetterFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterRecord]:
        return self._matching(txn, criteria)[offset : offset + limit]

    async def count(
        self, txn: InMemoryTransaction, criteria: DeadLetterFilter | None = None
    ) -> int:
        return len(self._matching(txn, criteria))

    async def delete(self, txn: InMemoryTransaction, message_id: UUID) -> bool:
        return txn.delete(DLQ_TABLE, message_id)

    async def count_by_type(self, txn: InMemoryTransaction) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in txn.rows(DLQ_TABLE):
            counts[record.message_type] = counts.get(record.message_type, 0) + 1
        return counts

    async def purge(self, txn: InMemoryTransaction, older_than: datetime) -> int:
        expired = [
            record.original_message_id
            for record in txn.rows(DLQ_TABLE)
            if record.failed_at < older_than
        ]
        for message_id in expired:
            txn.delete(DLQ_TABLE, message_id)
        return len(expired)


# =============================================================================
# SQLite
# =============================================================================

_COLUMNS = (
    "original_message_id, message_type, payload, final_error, attempts, failed_at, "
    "correlation_id, causation_id, ordering_key, created_at"
)


def _sqlite_where(criteria: DeadLetterFilter | None) -> tuple[str, list[Any]]:
    if criteria is None:
        return "", []
    clauses: list[str] = []
    params: list[Any] = []
    if criteria.message_types:
        clauses.append(f"message_type IN ({', '.join('?' for _ in criteria.message_types)})")
        params.extend(criteria.message_types)
    if criteria.message_ids:
        clauses.append(
            f"original_message_id IN ({', '.join('?' for _ in criteria.message_ids)})"
        )
        params.extend(str(message_id) for message_id in criteria.message_ids)
    if criteria.failed_after is not None:
        clauses.append("failed_at >= ?")
        params.append(format_timestamp(criteria.failed_after))
    if criteria.failed_before is not None:
        clauses.append("failed_at < ?")
        params.append(format_timestamp(criteria.failed_before))
    if not clauses:
        return "", []
    return "WHERE " + " AND ".join(clauses), params


class SQLiteDeadLetterRepository:
    """
    SQLite implementation of the dead-letter repository.

    UUIDs are stored as TEXT and timestamps as sortable UTC TEXT.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @staticmethod
    def _row_to_record(row: Any) -> DeadLetterRecord:
        return DeadLetterRecord(
            original_message_id=UUID(row[0]),
            message_type=row[1],
            payload=row[2],
            final_error=row[3],
            attempts=row[4],
            failed_at=parse_timestamp(row[5]),  # type: ignore[arg-type]
            correlation_id=UUID(row[6]),
            causation_id=UUID(row[7]) if row[7] else None,
            ordering_key=row[8],
            created_at=parse_timestamp(row[9]),
        )

    async def insert(self, txn: aiosqlite.Connection, record: DeadLetterRecord) -> None:
        with self._tracer.span(
            "eventrelay.dlq.insert",
            {
                ATTR_MESSAGE_ID: str(record.original_message_id),
                ATTR_MESSAGE_TYPE: record.message_type,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            await txn.execute(
                f"""
                INSERT INTO {DLQ_TABLE} ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (original_message_id) DO UPDATE SET
                    final_error = excluded.final_error,
                    attempts = excluded.attempts,
                    failed_at = excluded.failed_at
                """,
                (
                    str(record.original_message_id),
                    record.message_type,
                    record.payload,
                    record.final_error,
                    record.attempts,
                    format_timestamp(record.failed_at),
                    str(record.correlation_id),
                    str(record.causation_id) if record.causation_id else None,
                    record.ordering_key,
                    format_timestamp(record.created_at or record.failed_at),
                ),
            )

    async def get(self, txn: aiosqlite.Connection, message_id: UUID) -> DeadLetterRecord | None:
        cursor = await txn.execute(
            f"SELECT {_COLUMNS} FROM {DLQ_TABLE} WHERE original_message_id = ?",
            (str(message_id),),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return self._row_to_record(row) if row is not None else None

    async def list_records(
        self,
        txn: aiosqlite.Connection,
        criteria: DeadLetterFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterRecord]:
        where, params = _sqlite_where(criteria)
        cursor = await txn.execute(
            f"""
            SELECT {_COLUMNS} FROM {DLQ_TABLE}
            {where}
            ORDER BY failed_at, original_message_id
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_record(row) for row in rows]

    async def count(
        self, txn: aiosqlite.Connection, criteria: DeadLetterFilter | None = None
    ) -> int:
        where, params = _sqlite_where(criteria)
        cursor = await txn.execute(f"SELECT COUNT(*) FROM {DLQ_TABLE} {where}", params)
        row = await cursor.fetchone()
        await cursor.close()
        return row[0] if row else 0

    async def delete(self, txn: aiosqlite.Connection, message_id: UUID) -> bool:
        cursor = await txn.execute(
            f"DELETE FROM {DLQ_TABLE} WHERE original_message_id = ?",
            (str(message_id),),
        )
        return cursor.rowcount == 1

    async def count_by_type(self, txn: aiosqlite.Connection) -> dict[str, int]:
        cursor = await txn.execute(
            f"SELECT message_type, COUNT(*) FROM {DLQ_TABLE} GROUP BY message_type"
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return {row[0]: row[1] for row in rows}

    async def purge(self, txn: aiosqlite.Connection, older_than: datetime) -> int:
        cursor = await txn.execute(
            f"DELETE FROM {DLQ_TABLE} WHERE failed_at < ?",
            (format_timestamp(older_than),),
        )
        return cursor.rowcount


# =============================================================================
# PostgreSQL
# =============================================================================


def _pg_where(criteria: DeadLetterFilter | None) -> tuple[str, dict[str, Any], list[Any]]:
    if criteria is None:
        return "", {}, []
    clauses: list[str] = []
    params: dict[str, Any] = {}
    expanding: list[Any] = []
    if criteria.message_types:
        clauses.append("message_type IN :message_types")
        params["message_types"] = list(criteria.message_types)
        expanding.append(bindparam("message_types", expanding=True))
    if criteria.message_ids:
        clauses.append("original_message_id IN :message_ids")
        params["message_ids"] = list(criteria.message_ids)
        expanding.append(bindparam("message_ids", expanding=True))
    if criteria.failed_after is not None:
        clauses.append("failed_at >= :failed_after")
        params["failed_after"] = criteria.failed_after
    if criteria.failed_before is not None:
        clauses.append("failed_at < :failed_before")
        params["failed_before"] = criteria.failed_before
    if not clauses:
        return "", {}, []
    return "WHERE " + " AND ".join(clauses), params, expanding


class PostgreSQLDeadLetterRepository:
    """PostgreSQL implementation of the dead-letter repository."""

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @staticmethod
    def _row_to_record(row: Any) -> DeadLetterRecord:
        return DeadLetterRecord(
            original_message_id=row.original_message_id,
            message_type=row.message_type,
            payload=row.payload,
            final_error=row.final_error,
            attempts=row.attempts,
            failed_at=row.failed_at,
            correlation_id=row.correlation_id,
            causation_id=row.causation_id,
            ordering_key=row.ordering_key,
            created_at=row.created_at,
        )

    async def insert(self, txn: AsyncConnection, record: DeadLetterRecord) -> None:
        with self._tracer.span(
            "eventrelay.dlq.insert",
            {
                ATTR_MESSAGE_ID: str(record.original_message_id),
                ATTR_MESSAGE_TYPE: record.message_type,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            await txn.execute(
                text(f"""
                    INSERT INTO {DLQ_TABLE} ({_COLUMNS})
                    VALUES (:original_message_id, :message_type, :payload, :final_error,
                            :attempts, :failed_at, :correlation_id, :causation_id,
                            :ordering_key, :created_at)
                    ON CONFLICT (original_message_id) DO UPDATE SET
                        final_error = EXCLUDED.final_error,
                        attempts = EXCLUDED.attempts,
                        failed_at = EXCLUDED.failed_at
                """),
                {
                    "original_message_id": record.original_message_id,
                    "message_type": record.message_type,
                    "payload": record.payload,
                    "final_error": record.final_error,
                    "attempts": record.attempts,
                    "failed_at": record.failed_at,
                    "correlation_id": record.correlation_id,
                    "causation_id": record.causation_id,
                    "ordering_key": record.ordering_key,
                    "created_at": record.created_at or record.failed_at,
                },
            )

    async def get(self, txn: AsyncConnection, message_id: UUID) -> DeadLetterRecord | None:
        result = await txn.execute(
            text(f"SELECT {_COLUMNS} FROM {DLQ_TABLE} WHERE original_message_id = :id"),
            {"id": message_id},
        )
        row = result.fetchone()
        return self._row_to_record(row) if row is not None else None

    async def list_records(
        self,
        txn: AsyncConnection,
        criteria: DeadLetterFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterRecord]:
        where, params, expanding = _pg_where(criteria)
        query = text(f"""
            SELECT {_COLUMNS} FROM {DLQ_TABLE}
            {where}
            ORDER BY failed_at, original_message_id
            LIMIT :limit OFFSET :offset
        """)
        if expanding:
            query = query.bindparams(*expanding)
        result = await txn.execute(query, {**params, "limit": limit, "offset": offset})
        return [self._row_to_record(row) for row in result.fetchall()]

    async def count(self, txn: AsyncConnection, criteria: DeadLetterFilter | None = None) -> int:
        where, params, expanding = _pg_where(criteria)
        query = text(f"SELECT COUNT(*) FROM {DLQ_TABLE} {where}")
        if expanding:
            query = query.bindparams(*expanding)
        result = await txn.execute(query, params)
        return result.scalar() or 0

    async def delete(self, txn: AsyncConnection, message_id: UUID) -> bool:
        result = await txn.execute(
            text(f"DELETE FROM {DLQ_TABLE} WHERE original_message_id = :id"),
            {"id": message_id},
        )
        return result.rowcount == 1

    async def count_by_type(self, txn: AsyncConnection) -> dict[str, int]:
        result = await txn.execute(
            text(f"SELECT message_type, COUNT(*) AS n FROM {DLQ_TABLE} GROUP BY message_type")
        )
        return {row.message_type: row.n for row in result.fetchall()}

    async def purge(self, txn: AsyncConnection, older_than: datetime) -> int:
        result = await txn.execute(
            text(f"DELETE FROM {DLQ_TABLE} WHERE failed_at < :cutoff"),
            {"cutoff": older_than},
        )
        return result.rowcount


__all__ = [
    "DLQ_TABLE",
    "DeadLetterRecord",
    "DeadLetterFilter",
    "DeadLetterRepository",
    "InMemoryDeadLetterRepository",
    "SQLiteDeadLetterRepository",
    "PostgreSQLDeadLetterRepository",
]
