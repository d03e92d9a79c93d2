"""
Operator tooling: dead-letter replay and backlog inspection.

Example:
    >>> admin = OutboxAdmin(stores.database, stores.outbox, stores.dead_letters)
    >>> report = await admin.inspect(limit=20)
    >>> result = await admin.replay(DeadLetterFilter(message_types=("OrderPlaced",)))
    >>> print(result.replayed, result.failed)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from eventrelay.clock import Clock, utc_now
from eventrelay.exceptions import DeadLetterNotFoundError
from eventrelay.observability import Tracer, create_tracer
from eventrelay.observability.attributes import ATTR_BATCH_SIZE, ATTR_MESSAGE_COUNT
from eventrelay.repositories.dlq import (
    DeadLetterFilter,
    DeadLetterRecord,
    DeadLetterRepository,
)
from eventrelay.repositories.outbox import (
    MessageState,
    OutboxMessage,
    OutboxRepository,
    OutboxStats,
)
from eventrelay.stores.interface import TransactionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplayResult:
    """
    Outcome of a replay run.

    Attributes:
        replayed: Records turned into new Pending messages
        failed: Records left in place because their replay failed
        errors: Error text per failed record id
        new_message_ids: Ids of the Pending messages created
    """

    replayed: int = 0
    failed: int = 0
    errors: dict[UUID, str] = field(default_factory=dict)
    new_message_ids: tuple[UUID, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "replayed": self.replayed,
            "failed": self.failed,
            "errors": {str(k): v for k, v in self.errors.items()},
            "new_message_ids": [str(i) for i in self.new_message_ids],
        }


@dataclass(frozen=True)
class PendingEntry:
    """A pending outbox message with its age."""

    message_id: UUID
    message_type: str
    attempts: int
    age_seconds: float
    next_attempt_at: datetime | None
    last_error: str | None


@dataclass(frozen=True)
class DeadLetterEntry:
    """A dead-letter record with its age."""

    message_id: UUID
    message_type: str
    attempts: int
    age_seconds: float
    final_error: str


@dataclass(frozen=True)
class BacklogReport:
    """
    Snapshot of the relay's undelivered work.

    Attributes:
        stats: Outbox counts per state
        pending: Oldest pending messages, up to the requested limit
        dead_letters: Oldest dead-letter records, up to the requested limit
        dead_letter_count: Total dead-letter records
        dead_letters_by_type: Dead-letter record count per message type
        generated_at: When the report was taken
    """

    stats: OutboxStats
    pending: list[PendingEntry]
    dead_letters: list[DeadLetterEntry]
    dead_letter_count: int
    dead_letters_by_type: dict[str, int]
    generated_at: datetime

    @property
    def oldest_pending_age(self) -> float | None:
        if self.stats.oldest_pending is None:
            return None
        return (self.generated_at - self.stats.oldest_pending).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "outbox": {
                "pending": self.stats.pending_count,
                "claimed": self.stats.claimed_count,
                "published": self.stats.published_count,
                "dead_lettered": self.stats.dead_lettered_count,
                "oldest_pending_age_seconds": self.oldest_pending_age,
            },
            "pending": [
                {
                    "message_id": str(p.message_id),
                    "message_type": p.message_type,
                    "attempts": p.attempts,
                    "age_seconds": p.age_seconds,
                    "next_attempt_at": p.next_attempt_at.isoformat()
                    if p.next_attempt_at
                    else None,
                    "last_error": p.last_error,
                }
                for p in self.pending
            ],
            "dead_letters": {
                "total": self.dead_letter_count,
                "by_type": self.dead_letters_by_type,
                "oldest": [
                    {
                        "message_id": str(d.message_id),
                        "message_type": d.message_type,
                        "attempts": d.attempts,
                        "age_seconds": d.age_seconds,
                        "final_error": d.final_error,
                    }
                    for d in self.dead_letters
                ],
            },
        }


class OutboxAdmin:
    """
    Administrative operations over the outbox and dead-letter store.

    Args:
        database: Transaction manager of the outbox backend
        outbox: Outbox repository of the same backend
        dead_letters: Dead-letter repository of the same backend
        clock: Time source for new messages and ages
        tracer: Optional tracer (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        database: TransactionManager,
        outbox: OutboxRepository,
        dead_letters: DeadLetterRepository,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._outbox = outbox
        self._dead_letters = dead_letters
        self._clock = clock or utc_now
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    async def replay(
        self,
        criteria: DeadLetterFilter | None = None,
        batch_size: int = 100,
    ) -> ReplayResult:
        """
        Replay every dead-letter record matching ``criteria``.

        Only records that failed up to the start of the call are considered,
        so messages replayed here and dead-lettered again while the call is
        still paging are left for the next replay.

        Records are processed in pages of ``batch_size``. Each record is
        replayed in its own transaction: a new Pending message with a fresh
        id and zero attempts is inserted and the record is deleted. A failed
        record stays where it is and is reported in the result.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        replayed: list[UUID] = []
        errors: dict[UUID, str] = {}
        window = _pin_window(criteria, self._clock())

        with self._tracer.span(
            "eventrelay.admin.replay",
            {ATTR_BATCH_SIZE: batch_size},
        ) as span:
            while True:
                # Replayed records are deleted, so failed ones are all that
                # remain ahead of the next page.
                async with self._database.transaction() as txn:
                    page = await self._dead_letters.list_records(
                        txn, window, limit=batch_size, offset=len(errors)
                    )
                if not page:
                    break

                for record in page:
                    try:
                        new_id = await self._replay_record(record.original_message_id)
                    except Exception as e:
                        errors[record.original_message_id] = f"{type(e).__name__}: {e}"
                        logger.warning(
                            f"Replay of dead letter {record.original_message_id} failed: {e}",
                            extra={
                                "message_id": str(record.original_message_id),
                                "message_type": record.message_type,
                                "error": str(e),
                            },
                        )
                    else:
                        replayed.append(new_id)

            if span is not None:
                span.set_attribute(ATTR_MESSAGE_COUNT, len(replayed))

        result = ReplayResult(
            replayed=len(replayed),
            failed=len(errors),
            errors=errors,
            new_message_ids=tuple(replayed),
        )
        logger.info(
            f"Replayed {result.replayed} dead letter(s), {result.failed} failed",
            extra={"replayed": result.replayed, "failed": result.failed},
        )
        return result

    async def replay_one(self, message_id: UUID) -> UUID:
        """
        Replay a single dead-letter record.

        Returns:
            Id of the new Pending message

        Raises:
            DeadLetterNotFoundError: If no record exists for ``message_id``
        """
        return await self._replay_record(message_id)

    async def _replay_record(self, message_id: UUID) -> UUID:
        async with self._database.transaction() as txn:
            record = await self._dead_letters.get(txn, message_id)
            if record is None:
                raise DeadLetterNotFoundError(message_id)
            message = OutboxMessage.new(
                message_type=record.message_type,
                payload=record.payload,
                correlation_id=record.correlation_id,
                created_at=self._clock(),
                causation_id=record.causation_id,
                ordering_key=record.ordering_key,
            )
            await self._outbox.insert(txn, message)
            if not await self._dead_letters.delete(txn, message_id):
                raise DeadLetterNotFoundError(message_id)

        logger.info(
            f"Replayed dead letter {message_id} as {message.id}",
            extra={
                "message_id": str(message.id),
                "original_message_id": str(message_id),
                "message_type": message.message_type,
            },
        )
        return message.id

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def inspect(self, limit: int = 20) -> BacklogReport:
        """Outbox counts plus the oldest pending messages and dead letters."""
        now = self._clock()
        async with self._database.transaction() as txn:
            stats = await self._outbox.get_stats(txn)
            pending = await self._outbox.list_messages(txn, MessageState.PENDING, limit=limit)
            records = await self._dead_letters.list_records(txn, limit=limit)
            dead_letter_count = await self._dead_letters.count(txn)
            by_type = await self._dead_letters.count_by_type(txn)

        return BacklogReport(
            stats=stats,
            pending=[
                PendingEntry(
                    message_id=m.id,
                    message_type=m.message_type,
                    attempts=m.attempts,
                    age_seconds=(now - m.created_at).total_seconds(),
                    next_attempt_at=m.next_attempt_at,
                    last_error=m.last_error,
                )
                for m in pending
            ],
            dead_letters=[
                DeadLetterEntry(
                    message_id=r.original_message_id,
                    message_type=r.message_type,
                    attempts=r.attempts,
                    age_seconds=(now - r.failed_at).total_seconds(),
                    final_error=r.final_error,
                )
                for r in records
            ],
            dead_letter_count=dead_letter_count,
            dead_letters_by_type=by_type,
            generated_at=now,
        )

    async def get_stats(self) -> OutboxStats:
        async with self._database.transaction() as txn:
            return await self._outbox.get_stats(txn)

    async def list_dead_letters(
        self,
        criteria: DeadLetterFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetterRecord]:
        async with self._database.transaction() as txn:
            return await self._dead_letters.list_records(txn, criteria, limit=limit, offset=offset)

    async def get_dead_letter(self, message_id: UUID) -> DeadLetterRecord:
        """
        Raises:
            DeadLetterNotFoundError: If no record exists for ``message_id``
        """
        async with self._database.transaction() as txn:
            record = await self._dead_letters.get(txn, message_id)
        if record is None:
            raise DeadLetterNotFoundError(message_id)
        return record

    async def count_dead_letters(self, criteria: DeadLetterFilter | None = None) -> int:
        async with self._database.transaction() as txn:
            return await self._dead_letters.count(txn, criteria)

    async def purge_dead_letters(self, older_than: datetime) -> int:
        """Delete dead-letter records that failed before ``older_than``."""
        async with self._database.transaction() as txn:
            purged = await self._dead_letters.purge(txn, older_than)
        logger.info(
            f"Purged {purged} dead letter(s) older than {older_than.isoformat()}",
            extra={"purged": purged},
        )
        return purged


def _pin_window(criteria: DeadLetterFilter | None, now: datetime) -> DeadLetterFilter:
    """Cap ``criteria`` at records that failed no later than ``now``."""
    criteria = criteria or DeadLetterFilter()
    ceiling = now + timedelta(microseconds=1)
    if criteria.failed_before is not None and criteria.failed_before <= ceiling:
        return criteria
    return replace(criteria, failed_before=ceiling)


__all__ = [
    "BacklogReport",
    "DeadLetterEntry",
    "OutboxAdmin",
    "PendingEntry",
    "ReplayResult",
]
