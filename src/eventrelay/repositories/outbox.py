"""
Outbox repository for transactional message publishing.

Messages are inserted in the same transaction as the business change that
produced them and relayed later by the outbox processor. Every method takes
the transaction object of its backend as first argument so that callers can
combine outbox changes with other writes atomically:

- In-memory: ``InMemoryTransaction``
- SQLite: ``aiosqlite.Connection`` inside ``SQLiteDatabase.transaction()``
- PostgreSQL: ``AsyncConnection`` inside ``PostgreSQLDatabase.transaction()``

State transitions after a claim (publish, reschedule, dead-letter) are
conditioned on the caller still owning the claim and report whether they
took effect.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID, uuid4

from sqlalchemy import text

from eventrelay.observability import Tracer, create_tracer
from eventrelay.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_CLAIM_OWNER,
    ATTR_DB_SYSTEM,
    ATTR_MESSAGE_COUNT,
    ATTR_MESSAGE_ID,
    ATTR_MESSAGE_TYPE,
)
from eventrelay.stores.sqlite import format_timestamp, parse_timestamp

if TYPE_CHECKING:
    import aiosqlite
    from sqlalchemy.ext.asyncio import AsyncConnection

    from eventrelay.stores.in_memory import InMemoryTransaction

OUTBOX_TABLE = "outbox_messages"


class MessageState(str, Enum):
    """Delivery state of an outbox message."""

    PENDING = "pending"
    CLAIMED = "claimed"
    PUBLISHED = "published"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class OutboxMessage:
    """
    A message stored in the outbox.

    Attributes:
        id: Message identifier and downstream idempotency key
        message_type: Type tag used to route and decode the payload
        payload: Serialized JSON body
        correlation_id: Identifier of the causal chain
        created_at: When the message was appended
        state: Current delivery state
        attempts: Retries scheduled so far
        next_attempt_at: Earliest time the message may be claimed
        last_error: Error text of the latest failed publish
        causation_id: Id of the message whose handling produced this one
        ordering_key: Entity or session key forwarded to consumers
        claim_owner: Processor instance holding the claim
        claim_expires_at: When an unfinished claim may be taken over
        published_at: When the transport accepted the message
    """

    id: UUID
    message_type: str
    payload: str
    correlation_id: UUID
    created_at: datetime
    state: MessageState = MessageState.PENDING
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    causation_id: UUID | None = None
    ordering_key: str | None = None
    claim_owner: str | None = None
    claim_expires_at: datetime | None = None
    published_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.next_attempt_at is None:
            self.next_attempt_at = self.created_at

    @classmethod
    def new(
        cls,
        message_type: str,
        payload: str,
        correlation_id: UUID,
        created_at: datetime,
        causation_id: UUID | None = None,
        ordering_key: str | None = None,
    ) -> OutboxMessage:
        """Create a Pending message with a fresh id, due immediately."""
        return cls(
            id=uuid4(),
            message_type=message_type,
            payload=payload,
            correlation_id=correlation_id,
            created_at=created_at,
            causation_id=causation_id,
            ordering_key=ordering_key,
        )


@dataclass(frozen=True)
class OutboxStats:
    """
    Aggregate statistics for the outbox.

    Attributes:
        pending_count: Messages waiting to be claimed
        claimed_count: Messages currently claimed by a processor
        published_count: Published messages not yet cleaned up
        dead_lettered_count: Dead-lettered messages not yet cleaned up
        oldest_pending: Creation time of the oldest pending message
    """

    pending_count: int = 0
    claimed_count: int = 0
    published_count: int = 0
    dead_lettered_count: int = 0
    oldest_pending: datetime | None = None

    @property
    def backlog(self) -> int:
        """Messages not yet delivered (pending plus claimed)."""
        return self.pending_count + self.claimed_count


@runtime_checkable
class OutboxRepository(Protocol):
    """
    Protocol for outbox repositories.

    Implementations must make ``claim_batch`` atomic: a row returned to one
    caller is never returned to a concurrent caller until its claim expires.
    """

    async def insert(self, txn: Any, message: OutboxMessage) -> None:
        """Insert a new Pending message in the caller's transaction."""
        ...

    async def claim_batch(
        self,
        txn: Any,
        limit: int,
        now: datetime,
        owner: str,
        claim_ttl: float,
    ) -> list[OutboxMessage]:
        """
        Claim up to ``limit`` due messages, oldest first.

        Due messages are Pending ones whose ``next_attempt_at`` has passed
        and Claimed ones whose claim has expired. Rows locked by another
        transaction are skipped.
        """
        ...

    async def mark_published(
        self, txn: Any, message_id: UUID, owner: str, now: datetime
    ) -> bool:
        """Transition a claimed message to Published."""
        ...

    async def reschedule(
        self,
        txn: Any,
        message_id: UUID,
        owner: str,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        """Return a claimed message to Pending for a later retry."""
        ...

    async def mark_dead_lettered(
        self,
        txn: Any,
        message_id: UUID,
        owner: str,
        attempts: int,
        error: str,
    ) -> OutboxMessage | None:
        """Transition a claimed message to DeadLettered; returns the updated row."""
        ...

    async def release(self, txn: Any, message_ids: list[UUID], owner: str) -> int:
        """Return claimed messages to Pending without counting an attempt."""
        ...

    async def get(self, txn: Any, message_id: UUID) -> OutboxMessage | None:
        ...

    async def list_messages(
        self,
        txn: Any,
        state: MessageState | None = None,
        limit: int = 100,
    ) -> list[OutboxMessage]:
        """List messages oldest first, optionally filtered by state."""
        ...

    async def get_stats(self, txn: Any) -> OutboxStats:
        ...

    async def cleanup(self, txn: Any, older_than: datetime) -> int:
        """
        Delete terminal messages older than ``older_than``.

        Published rows are aged by ``published_at``, dead-lettered rows by
        ``created_at``. Returns the number of rows deleted.
        """
        ...


# =============================================================================
# In-memory
# =============================================================================


class InMemoryOutboxRepository:
    """
    In-memory outbox repository over an ``InMemoryDatabase``.

    Rows are stored as ``(sequence, OutboxMessage)`` pairs; the sequence
    breaks ties between messages created at the same instant. Returned
    messages are copies.
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @staticmethod
    def _ordered(txn: InMemoryTransaction) -> list[tuple[int, OutboxMessage]]:
        return sorted(txn.rows(OUTBOX_TABLE), key=lambda row: (row[1].created_at, row[0]))

    @staticmethod
    def _owned(
        txn: InMemoryTransaction, message_id: UUID, owner: str
    ) -> tuple[int, OutboxMessage] | None:
        row = txn.get(OUTBOX_TABLE, message_id)
        if row is None:
            return None
        message = row[1]
        if message.state != MessageState.CLAIMED or message.claim_owner != owner:
            return None
        return row

    async def insert(self, txn: InMemoryTransaction, message: OutboxMessage) -> None:
        with self._tracer.span(
            "eventrelay.outbox.insert",
            {
                ATTR_MESSAGE_ID: str(message.id),
                ATTR_MESSAGE_TYPE: message.message_type,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            txn.insert(
                OUTBOX_TABLE,
                message.id,
                (txn.next_sequence(), dataclasses.replace(message)),
            )

    async def claim_batch(
        self,
        txn: InMemoryTransaction,
        limit: int,
        now: datetime,
        owner: str,
        claim_ttl: float,
    ) -> list[OutboxMessage]:
        with self._tracer.span(
            "eventrelay.outbox.claim_batch",
            {ATTR_BATCH_SIZE: limit, ATTR_CLAIM_OWNER: owner, ATTR_DB_SYSTEM: "memory"},
        ):
            expires = now + timedelta(seconds=claim_ttl)
            claimed: list[OutboxMessage] = []
            for seq, message in self._ordered(txn):
                if len(claimed) >= limit:
                    break
                if not _is_due(message, now):
                    continue
                updated = dataclasses.replace(
                    message,
                    state=MessageState.CLAIMED,
                    claim_owner=owner,
                    claim_expires_at=expires,
                )
                txn.put(OUTBOX_TABLE, message.id, (seq, updated))
                claimed.append(dataclasses.replace(updated))
            return claimed

    async def mark_published(
        self, txn: InMemoryTransaction, message_id: UUID, owner: str, now: datetime
    ) -> bool:
        row = self._owned(txn, message_id, owner)
        if row is None:
            return False
        seq, message = row
        txn.put(
            OUTBOX_TABLE,
            message_id,
            (
                seq,
                dataclasses.replace(
                    message,
                    state=MessageState.PUBLISHED,
                    published_at=now,
                    claim_owner=None,
                    claim_expires_at=None,
                ),
            ),
        )
        return True

    async def reschedule(
        self,
        txn: InMemoryTransaction,
        message_id: UUID,
        owner: str,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        row = self._owned(txn, message_id, owner)
        if row is None:
            return False
        seq, message = row
        txn.put(
            OUTBOX_TABLE,
            message_id,
            (
                seq,
                dataclasses.replace(
                    message,
                    state=MessageState.PENDING,
                    attempts=attempts,
                    next_attempt_at=next_attempt_at,
                    last_error=error,
                    claim_owner=None,
                    claim_expires_at=None,
                ),
            ),
        )
        return True

    async def mark_dead_lettered(
        self,
        txn: InMemoryTransaction,
        message_id: UUID,
        owner: str,
        attempts: int,
        error: str,
    ) -> OutboxMessage | None:
        row = self._owned(txn, message_id, owner)
        if row is None:
            return None
        seq, message = row
        updated = dataclasses.replace(
            message,
            state=MessageState.DEAD_LETTERED,
            attempts=attempts,
            last_error=error,
            claim_owner=None,
            claim_expires_at=None,
        )
        txn.put(OUTBOX_TABLE, message_id, (seq, updated))
        return dataclasses.replace(updated)

    async def release(
        self, txn: InMemoryTransaction, message_ids: list[UUID], owner: str
    ) -> int:
        released = 0
        for message_id in message_ids:
            row = self._owned(txn, message_id, owner)
            if row is None:
                continue
            seq, message = row
            txn.put(
                OUTBOX_TABLE,
                message_id,
                (
                    seq,
                    dataclasses.replace(
                        message,
                        state=MessageState.PENDING,
                        claim_owner=None,
                        claim_expires_at=None,
                    ),
                ),
            )
            released += 1
        return released

    async def get(self, txn: InMemoryTransaction, message_id: UUID) -> OutboxMessage | None:
        row = txn.get(OUTBOX_TABLE, message_id)
        return dataclasses.replace(row[1]) if row is not None else None

    async def list_messages(
        self,
        txn: InMemoryTransaction,
        state: MessageState | None = None,
        limit: int = 100,
    ) -> list[OutboxMessage]:
        messages = [
            dataclasses.replace(message)
            for _, message in self._ordered(txn)
            if state is None or message.state == state
        ]
        return messages[:limit]

    async def get_stats(self, txn: InMemoryTransaction) -> OutboxStats:
        counts = dict.fromkeys(MessageState, 0)
        oldest: datetime | None = None
        for _, message in txn.rows(OUTBOX_TABLE):
            counts[message.state] += 1
            if message.state == MessageState.PENDING and (
                oldest is None or message.created_at < oldest
            ):
                oldest = message.created_at
        return OutboxStats(
            pending_count=counts[MessageState.PENDING],
            claimed_count=counts[MessageState.CLAIMED],
            published_count=counts[MessageState.PUBLISHED],
            dead_lettered_count=counts[MessageState.DEAD_LETTERED],
            oldest_pending=oldest,
        )

    async def cleanup(self, txn: InMemoryTransaction, older_than: datetime) -> int:
        expired = [
            message.id
            for _, message in txn.rows(OUTBOX_TABLE)
            if (
                message.state == MessageState.PUBLISHED
                and message.published_at is not None
                and message.published_at < older_than
            )
            or (message.state == MessageState.DEAD_LETTERED and message.created_at < older_than)
        ]
        for message_id in expired:
            txn.delete(OUTBOX_TABLE, message_id)
        return len(expired)


def _is_due(message: OutboxMessage, now: datetime) -> bool:
    if message.state == MessageState.PENDING:
        return message.next_attempt_at is not None and message.next_attempt_at <= now
    if message.state == MessageState.CLAIMED:
        return message.claim_expires_at is not None and message.claim_expires_at <= now
    return False


# =============================================================================
# SQLite
# =============================================================================

_COLUMNS = (
    "id, message_type, payload, state, attempts, next_attempt_at, last_error, "
    "correlation_id, causation_id, ordering_key, claim_owner, claim_expires_at, "
    "created_at, published_at"
)


class SQLiteOutboxRepository:
    """
    SQLite implementation of the outbox repository.

    SQLite-specific adaptations:
    - UUIDs stored as TEXT, timestamps as sortable UTC TEXT
    - ``?`` positional parameters
    - Claims use ``UPDATE ... RETURNING`` inside the ``BEGIN IMMEDIATE``
      transaction opened by ``SQLiteDatabase``, which holds the database
      write lock, so no other connection can claim the same rows
    - Ties on ``created_at`` are broken by ``rowid`` (insertion order)
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @staticmethod
    def _row_to_message(row: Any) -> OutboxMessage:
        return OutboxMessage(
            id=UUID(row[0]),
            message_type=row[1],
            payload=row[2],
            state=MessageState(row[3]),
            attempts=row[4],
            next_attempt_at=parse_timestamp(row[5]),
            last_error=row[6],
            correlation_id=UUID(row[7]),
            causation_id=UUID(row[8]) if row[8] else None,
            ordering_key=row[9],
            claim_owner=row[10],
            claim_expires_at=parse_timestamp(row[11]),
            created_at=parse_timestamp(row[12]),  # type: ignore[arg-type]
            published_at=parse_timestamp(row[13]),
        )

    async def insert(self, txn: aiosqlite.Connection, message: OutboxMessage) -> None:
        with self._tracer.span(
            "eventrelay.outbox.insert",
            {
                ATTR_MESSAGE_ID: str(message.id),
                ATTR_MESSAGE_TYPE: message.message_type,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            await txn.execute(
                f"""
                INSERT INTO {OUTBOX_TABLE} ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(message.id),
                    message.message_type,
                    message.payload,
                    message.state.value,
                    message.attempts,
                    format_timestamp(message.next_attempt_at),
                    message.last_error,
                    str(message.correlation_id),
                    str(message.causation_id) if message.causation_id else None,
                    message.ordering_key,
                    message.claim_owner,
                    format_timestamp(message.claim_expires_at),
                    format_timestamp(message.created_at),
                    format_timestamp(message.published_at),
                ),
            )

    async def claim_batch(
        self,
        txn: aiosqlite.Connection,
        limit: int,
        now: datetime,
        owner: str,
        claim_ttl: float,
    ) -> list[OutboxMessage]:
        with self._tracer.span(
            "eventrelay.outbox.claim_batch",
            {ATTR_BATCH_SIZE: limit, ATTR_CLAIM_OWNER: owner, ATTR_DB_SYSTEM: "sqlite"},
        ) as span:
            now_text = format_timestamp(now)
            cursor = await txn.execute(
                f"""
                UPDATE {OUTBOX_TABLE}
                SET state = 'claimed', claim_owner = ?, claim_expires_at = ?
                WHERE id IN (
                    SELECT id FROM {OUTBOX_TABLE}
                    WHERE (state = 'pending' AND next_attempt_at <= ?)
                       OR (state = 'claimed' AND claim_expires_at <= ?)
                    ORDER BY created_at, rowid
                    LIMIT ?
                )
                RETURNING {_COLUMNS}, rowid
                """,
                (
                    owner,
                    format_timestamp(now + timedelta(seconds=claim_ttl)),
                    now_text,
                    now_text,
                    limit,
                ),
            )
            rows = await cursor.fetchall()
            await cursor.close()

            rows = sorted(rows, key=lambda row: (row[12], row[14]))
            if span is not None:
                span.set_attribute(ATTR_MESSAGE_COUNT, len(rows))
            return [self._row_to_message(row) for row in rows]

    async def mark_published(
        self, txn: aiosqlite.Connection, message_id: UUID, owner: str, now: datetime
    ) -> bool:
        cursor = await txn.execute(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET state = 'published', published_at = ?,
                claim_owner = NULL, claim_expires_at = NULL
            WHERE id = ? AND state = 'claimed' AND claim_owner = ?
            """,
            (format_timestamp(now), str(message_id), owner),
        )
        return cursor.rowcount == 1

    async def reschedule(
        self,
        txn: aiosqlite.Connection,
        message_id: UUID,
        owner: str,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        cursor = await txn.execute(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET state = 'pending', attempts = ?, next_attempt_at = ?, last_error = ?,
                claim_owner = NULL, claim_expires_at = NULL
            WHERE id = ? AND state = 'claimed' AND claim_owner = ?
            """,
            (attempts, format_timestamp(next_attempt_at), error, str(message_id), owner),
        )
        return cursor.rowcount == 1

    async def mark_dead_lettered(
        self,
        txn: aiosqlite.Connection,
        message_id: UUID,
        owner: str,
        attempts: int,
        error: str,
    ) -> OutboxMessage | None:
        cursor = await txn.execute(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET state = 'dead_lettered', attempts = ?, last_error = ?,
                claim_owner = NULL, claim_expires_at = NULL
            WHERE id = ? AND state = 'claimed' AND claim_owner = ?
            RETURNING {_COLUMNS}
            """,
            (attempts, error, str(message_id), owner),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return self._row_to_message(row) if row is not None else None

    async def release(
        self, txn: aiosqlite.Connection, message_ids: list[UUID], owner: str
    ) -> int:
        released = 0
        for message_id in message_ids:
            cursor = await txn.execute(
                f"""
                UPDATE {OUTBOX_TABLE}
                SET state = 'pending', claim_owner = NULL, claim_expires_at = NULL
                WHERE id = ? AND state = 'claimed' AND claim_owner = ?
                """,
                (str(message_id), owner),
            )
            released += cursor.rowcount
        return released

    async def get(self, txn: aiosqlite.Connection, message_id: UUID) -> OutboxMessage | None:
        cursor = await txn.execute(
            f"SELECT {_COLUMNS} FROM {OUTBOX_TABLE} WHERE id = ?",
            (str(message_id),),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return self._row_to_message(row) if row is not None else None

    async def list_messages(
        self,
        txn: aiosqlite.Connection,
        state: MessageState | None = None,
        limit: int = 100,
    ) -> list[OutboxMessage]:
        if state is None:
            cursor = await txn.execute(
                f"SELECT {_COLUMNS} FROM {OUTBOX_TABLE} ORDER BY created_at, rowid LIMIT ?",
                (limit,),
            )
        else:
            cursor = await txn.execute(
                f"""
                SELECT {_COLUMNS} FROM {OUTBOX_TABLE}
                WHERE state = ?
                ORDER BY created_at, rowid
                LIMIT ?
                """,
                (state.value, limit),
            )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_message(row) for row in rows]

    async def get_stats(self, txn: aiosqlite.Connection) -> OutboxStats:
        cursor = await txn.execute(
            f"""
            SELECT
                SUM(CASE WHEN state = 'pending' THEN 1 ELSE 0 END),
                SUM(CASE WHEN state = 'claimed' THEN 1 ELSE 0 END),
                SUM(CASE WHEN state = 'published' THEN 1 ELSE 0 END),
                SUM(CASE WHEN state = 'dead_lettered' THEN 1 ELSE 0 END),
                MIN(CASE WHEN state = 'pending' THEN created_at END)
            FROM {OUTBOX_TABLE}
            """
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return OutboxStats()
        return OutboxStats(
            pending_count=row[0] or 0,
            claimed_count=row[1] or 0,
            published_count=row[2] or 0,
            dead_lettered_count=row[3] or 0,
            oldest_pending=parse_timestamp(row[4]),
        )

    async def cleanup(self, txn: aiosqlite.Connection, older_than: datetime) -> int:
        cutoff = format_timestamp(older_than)
        cursor = await txn.execute(
            f"""
            DELETE FROM {OUTBOX_TABLE}
            WHERE (state = 'published' AND published_at < ?)
               OR (state = 'dead_lettered' AND created_at < ?)
            """,
            (cutoff, cutoff),
        )
        return cursor.rowcount


# =============================================================================
# PostgreSQL
# =============================================================================


class PostgreSQLOutboxRepository:
    """
    PostgreSQL implementation of the outbox repository.

    Claims lock candidate rows with ``FOR UPDATE SKIP LOCKED`` so that
    concurrent processors never block on, or return, each other's rows.

    Example:
        >>> async with database.transaction() as conn:
        ...     await orders.save(conn, order)
        ...     await repo.insert(conn, OutboxMessage.new(...))
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @staticmethod
    def _row_to_message(row: Any) -> OutboxMessage:
        return OutboxMessage(
            id=row.id,
            message_type=row.message_type,
            payload=row.payload,
            state=MessageState(row.state),
            attempts=row.attempts,
            next_attempt_at=row.next_attempt_at,
            last_error=row.last_error,
            correlation_id=row.correlation_id,
            causation_id=row.causation_id,
            ordering_key=row.ordering_key,
            claim_owner=row.claim_owner,
            claim_expires_at=row.claim_expires_at,
            created_at=row.created_at,
            published_at=row.published_at,
        )

    async def insert(self, txn: AsyncConnection, message: OutboxMessage) -> None:
        with self._tracer.span(
            "eventrelay.outbox.insert",
            {
                ATTR_MESSAGE_ID: str(message.id),
                ATTR_MESSAGE_TYPE: message.message_type,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            await txn.execute(
                text(f"""
                    INSERT INTO {OUTBOX_TABLE} ({_COLUMNS})
                    VALUES (:id, :message_type, :payload, :state, :attempts, :next_attempt_at,
                            :last_error, :correlation_id, :causation_id, :ordering_key,
                            :claim_owner, :claim_expires_at, :created_at, :published_at)
                """),
                {
                    "id": message.id,
                    "message_type": message.message_type,
                    "payload": message.payload,
                    "state": message.state.value,
                    "attempts": message.attempts,
                    "next_attempt_at": message.next_attempt_at,
                    "last_error": message.last_error,
                    "correlation_id": message.correlation_id,
                    "causation_id": message.causation_id,
                    "ordering_key": message.ordering_key,
                    "claim_owner": message.claim_owner,
                    "claim_expires_at": message.claim_expires_at,
                    "created_at": message.created_at,
                    "published_at": message.published_at,
                },
            )

    async def claim_batch(
        self,
        txn: AsyncConnection,
        limit: int,
        now: datetime,
        owner: str,
        claim_ttl: float,
    ) -> list[OutboxMessage]:
        with self._tracer.span(
            "eventrelay.outbox.claim_batch",
            {ATTR_BATCH_SIZE: limit, ATTR_CLAIM_OWNER: owner, ATTR_DB_SYSTEM: "postgresql"},
        ) as span:
            result = await txn.execute(
                text(f"""
                    UPDATE {OUTBOX_TABLE}
                    SET state = 'claimed', claim_owner = :owner, claim_expires_at = :expires
                    WHERE id IN (
                        SELECT id FROM {OUTBOX_TABLE}
                        WHERE (state = 'pending' AND next_attempt_at <= :now)
                           OR (state = 'claimed' AND claim_expires_at <= :now)
                        ORDER BY created_at, seq
                        LIMIT :limit
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING {_COLUMNS}, seq
                """),
                {
                    "owner": owner,
                    "expires": now + timedelta(seconds=claim_ttl),
                    "now": now,
                    "limit": limit,
                },
            )
            rows = sorted(result.fetchall(), key=lambda row: (row.created_at, row.seq))
            if span is not None:
                span.set_attribute(ATTR_MESSAGE_COUNT, len(rows))
            return [self._row_to_message(row) for row in rows]

    async def mark_published(
        self, txn: AsyncConnection, message_id: UUID, owner: str, now: datetime
    ) -> bool:
        result = await txn.execute(
            text(f"""
                UPDATE {OUTBOX_TABLE}
                SET state = 'published', published_at = :now,
                    claim_owner = NULL, claim_expires_at = NULL
                WHERE id = :id AND state = 'claimed' AND claim_owner = :owner
            """),
            {"id": message_id, "owner": owner, "now": now},
        )
        return result.rowcount == 1

    async def reschedule(
        self,
        txn: AsyncConnection,
        message_id: UUID,
        owner: str,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
    ) -> bool:
        result = await txn.execute(
            text(f"""
                UPDATE {OUTBOX_TABLE}
                SET state = 'pending', attempts = :attempts, next_attempt_at = :next_attempt_at,
                    last_error = :error, claim_owner = NULL, claim_expires_at = NULL
                WHERE id = :id AND state = 'claimed' AND claim_owner = :owner
            """),
            {
                "id": message_id,
                "owner": owner,
                "attempts": attempts,
                "next_attempt_at": next_attempt_at,
                "error": error,
            },
        )
        return result.rowcount == 1

    async def mark_dead_lettered(
        self,
        txn: AsyncConnection,
        message_id: UUID,
        owner: str,
        attempts: int,
        error: str,
    ) -> OutboxMessage | None:
        result = await txn.execute(
            text(f"""
                UPDATE {OUTBOX_TABLE}
                SET state = 'dead_lettered', attempts = :attempts, last_error = :error,
                    claim_owner = NULL, claim_expires_at = NULL
                WHERE id = :id AND state = 'claimed' AND claim_owner = :owner
                RETURNING {_COLUMNS}
            """),
            {"id": message_id, "owner": owner, "attempts": attempts, "error": error},
        )
        row = result.fetchone()
        return self._row_to_message(row) if row is not None else None

    async def release(self, txn: AsyncConnection, message_ids: list[UUID], owner: str) -> int:
        if not message_ids:
            return 0
        result = await txn.execute(
            text(f"""
                UPDATE {OUTBOX_TABLE}
                SET state = 'pending', claim_owner = NULL, claim_expires_at = NULL
                WHERE id = ANY(:ids) AND state = 'claimed' AND claim_owner = :owner
            """),
            {"ids": list(message_ids), "owner": owner},
        )
        return result.rowcount

    async def get(self, txn: AsyncConnection, message_id: UUID) -> OutboxMessage | None:
        result = await txn.execute(
            text(f"SELECT {_COLUMNS} FROM {OUTBOX_TABLE} WHERE id = :id"),
            {"id": message_id},
        )
        row = result.fetchone()
        return self._row_to_message(row) if row is not None else None

    async def list_messages(
        self,
        txn: AsyncConnection,
        state: MessageState | None = None,
        limit: int = 100,
    ) -> list[OutboxMessage]:
        where = "WHERE state = :state" if state is not None else ""
        result = await txn.execute(
            text(f"""
                SELECT {_COLUMNS} FROM {OUTBOX_TABLE}
                {where}
                ORDER BY created_at, seq
                LIMIT :limit
            """),
            {"state": state.value if state is not None else None, "limit": limit},
        )
        return [self._row_to_message(row) for row in result.fetchall()]

    async def get_stats(self, txn: AsyncConnection) -> OutboxStats:
        result = await txn.execute(
            text(f"""
                SELECT
                    COUNT(*) FILTER (WHERE state = 'pending') AS pending_count,
                    COUNT(*) FILTER (WHERE state = 'claimed') AS claimed_count,
                    COUNT(*) FILTER (WHERE state = 'published') AS published_count,
                    COUNT(*) FILTER (WHERE state = 'dead_lettered') AS dead_lettered_count,
                    MIN(created_at) FILTER (WHERE state = 'pending') AS oldest_pending
                FROM {OUTBOX_TABLE}
            """)
        )
        row = result.fetchone()
        if row is None:
            return OutboxStats()
        return OutboxStats(
            pending_count=row.pending_count or 0,
            claimed_count=row.claimed_count or 0,
            published_count=row.published_count or 0,
            dead_lettered_count=row.dead_lettered_count or 0,
            oldest_pending=row.oldest_pending,
        )

    async def cleanup(self, txn: AsyncConnection, older_than: datetime) -> int:
        result = await txn.execute(
            text(f"""
                DELETE FROM {OUTBOX_TABLE}
                WHERE (state = 'published' AND published_at < :cutoff)
                   OR (state = 'dead_lettered' AND created_at < :cutoff)
            """),
            {"cutoff": older_than},
        )
        return result.rowcount


__all__ = [
    "OUTBOX_TABLE",
    "MessageState",
    "OutboxMessage",
    "OutboxStats",
    "OutboxRepository",
    "InMemoryOutboxRepository",
    "SQLiteOutboxRepository",
    "PostgreSQLOutboxRepository",
]
