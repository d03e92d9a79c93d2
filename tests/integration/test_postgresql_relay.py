"""
Integration tests for the PostgreSQL backend.

Covers the repository contract against a real database, claim exclusivity
with FOR UPDATE SKIP LOCKED across concurrent connections, and a full
outbox-to-inbox round trip.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import text

from eventrelay.admin import OutboxAdmin
from eventrelay.config import ProcessorConfig, RetryConfig
from eventrelay.consumer import DispatchOutcome, IdempotentDispatcher
from eventrelay.exceptions import DuplicateInboxError
from eventrelay.messages.envelope import ReceivedMessage
from eventrelay.outbox.claims import ClaimCoordinator
from eventrelay.outbox.processor import OutboxProcessor
from eventrelay.outbox.writer import OutboxWriter
from eventrelay.repositories.dlq import DeadLetterFilter, DeadLetterRecord
from eventrelay.repositories.inbox import InboxRecord
from eventrelay.repositories.outbox import MessageState
from eventrelay.transport import InMemoryTransport
from tests.fixtures import OrderPlaced
from tests.integration.conftest import skip_if_no_postgres_infra

pytestmark = [
    pytest.mark.integration,
    pytest.mark.postgres,
    skip_if_no_postgres_infra,
]


@pytest.fixture
def pg_writer(pg_stores, registry, clock) -> OutboxWriter:
    return OutboxWriter(pg_stores.outbox, registry=registry, clock=clock, enable_tracing=False)


async def append_orders(stores, writer, count: int) -> list:
    async with stores.database.transaction() as txn:
        return [
            await writer.append(
                txn, "OrderPlaced", OrderPlaced(order_id=uuid4(), sku="SKU-1", quantity=1)
            )
            for _ in range(count)
        ]


class TestOutboxRepository:
    @pytest.mark.asyncio
    async def test_append_commits_with_business_write(self, pg_stores, pg_writer, order_placed):
        async with pg_stores.database.transaction() as conn:
            await conn.execute(text("CREATE TABLE IF NOT EXISTS orders (id UUID PRIMARY KEY)"))

        with pytest.raises(RuntimeError):
            async with pg_stores.database.transaction() as conn:
                await conn.execute(
                    text("INSERT INTO orders (id) VALUES (:id)"), {"id": order_placed.order_id}
                )
                await pg_writer.append(conn, "OrderPlaced", order_placed)
                raise RuntimeError("rolled back")

        async with pg_stores.database.transaction() as conn:
            assert await pg_stores.outbox.list_messages(conn) == []
            count = await conn.scalar(text("SELECT count(*) FROM orders"))
            await conn.execute(text("DROP TABLE orders"))
        assert count == 0

    @pytest.mark.asyncio
    async def test_state_transitions(self, pg_stores, pg_writer, clock):
        (message_id,) = await append_orders(pg_stores, pg_writer, 1)

        async with pg_stores.database.transaction() as conn:
            (claimed,) = await pg_stores.outbox.claim_batch(conn, 10, clock(), "relay-1", 30.0)
        assert claimed.id == message_id
        assert claimed.state == MessageState.CLAIMED
        assert claimed.claim_owner == "relay-1"

        retry_at = clock() + timedelta(seconds=2)
        async with pg_stores.database.transaction() as conn:
            assert not await pg_stores.outbox.reschedule(
                conn, message_id, "other", 1, retry_at, "TimeoutError: "
            )
            assert await pg_stores.outbox.reschedule(
                conn, message_id, "relay-1", 1, retry_at, "TimeoutError: "
            )
            message = await pg_stores.outbox.get(conn, message_id)
        assert message.state == MessageState.PENDING
        assert message.attempts == 1
        assert message.next_attempt_at == retry_at
        assert message.claim_owner is None

        async with pg_stores.database.transaction() as conn:
            assert await pg_stores.outbox.claim_batch(conn, 10, clock(), "relay-1", 30.0) == []
            claimed = await pg_stores.outbox.claim_batch(conn, 10, retry_at, "relay-1", 30.0)
            assert [m.id for m in claimed] == [message_id]
            assert await pg_stores.outbox.mark_published(conn, message_id, "relay-1", retry_at)
            stats = await pg_stores.outbox.get_stats(conn)
        assert stats.published_count == 1
        assert stats.backlog == 0

    @pytest.mark.asyncio
    async def test_expired_claim_is_reclaimed(self, pg_stores, pg_writer, clock):
        await append_orders(pg_stores, pg_writer, 1)

        async with pg_stores.database.transaction() as conn:
            await pg_stores.outbox.claim_batch(conn, 10, clock(), "crashed", 30.0)
        later = clock() + timedelta(seconds=31)
        async with pg_stores.database.transaction() as conn:
            (claimed,) = await pg_stores.outbox.claim_batch(conn, 10, later, "relay-2", 30.0)
        assert claimed.claim_owner == "relay-2"

    @pytest.mark.asyncio
    async def test_concurrent_claims_skip_locked_rows(self, pg_stores, pg_writer, clock):
        await append_orders(pg_stores, pg_writer, 60)
        coordinators = [
            ClaimCoordinator(pg_stores.database, pg_stores.outbox, f"relay-{i}", 30.0)
            for i in range(4)
        ]

        batches = await asyncio.gather(*(c.claim_batch(20, clock()) for c in coordinators))

        ids = [m.id for batch in batches for m in batch]
        assert len(ids) == 60
        assert len(set(ids)) == 60


class TestDeadLettersAndInbox:
    @pytest.mark.asyncio
    async def test_dead_letter_and_replay(self, pg_stores, pg_writer, clock):
        (message_id,) = await append_orders(pg_stores, pg_writer, 1)
        async with pg_stores.database.transaction() as conn:
            await pg_stores.outbox.claim_batch(conn, 10, clock(), "relay-1", 30.0)

        processor_error = "SchemaViolationError: bad payload"
        async with pg_stores.database.transaction() as conn:
            updated = await pg_stores.outbox.mark_dead_lettered(
                conn, message_id, "relay-1", 0, processor_error
            )
            await pg_stores.dead_letters.insert(
                conn, DeadLetterRecord.from_message(updated, processor_error, clock())
            )

        admin = OutboxAdmin(
            pg_stores.database,
            pg_stores.outbox,
            pg_stores.dead_letters,
            clock=clock,
            enable_tracing=False,
        )
        assert await admin.count_dead_letters(DeadLetterFilter(message_types=("OrderPlaced",))) == 1
        report = await admin.inspect()
        assert report.dead_letters_by_type == {"OrderPlaced": 1}

        result = await admin.replay()

        assert result.replayed == 1
        async with pg_stores.database.transaction() as conn:
            replayed = await pg_stores.outbox.get(conn, result.new_message_ids[0])
        assert replayed.state == MessageState.PENDING
        assert replayed.attempts == 0
        assert replayed.correlation_id == updated.correlation_id

    @pytest.mark.asyncio
    async def test_inbox_unique_per_handler(self, pg_stores, clock):
        message_id = uuid4()
        record = InboxRecord(message_id=message_id, handler_type="inventory", processed_at=clock())

        async with pg_stores.database.transaction() as conn:
            await pg_stores.inbox.insert(conn, record)
        with pytest.raises(DuplicateInboxError):
            async with pg_stores.database.transaction() as conn:
                await pg_stores.inbox.insert(conn, record)

        async with pg_stores.database.transaction() as conn:
            await pg_stores.inbox.insert(
                conn,
                InboxRecord(message_id=message_id, handler_type="audit", processed_at=clock()),
            )
            assert await pg_stores.inbox.count(conn) == 2


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_processor_and_dispatcher(self, pg_stores, pg_writer, registry, clock):
        await append_orders(pg_stores, pg_writer, 5)
        transport = InMemoryTransport(enable_tracing=False)
        processor = OutboxProcessor(
            pg_stores.database,
            pg_stores.outbox,
            pg_stores.dead_letters,
            transport,
            registry=registry,
            config=ProcessorConfig(batch_size=10, retry=RetryConfig()),
            clock=clock,
            enable_tracing=False,
        )

        result = await processor.run_once()
        assert result.published == 5

        dispatcher = IdempotentDispatcher(
            pg_stores.database, pg_stores.inbox, "inventory", enable_tracing=False
        )
        handled = []

        async def handler(message, context):
            handled.append(message.message_id)

        outcomes = []
        for published in transport.published + transport.published[:2]:
            message = ReceivedMessage.from_metadata(
                published.message_type, published.payload, published.metadata
            )
            outcomes.append(await dispatcher.dispatch(message, handler))

        assert outcomes.count(DispatchOutcome.PROCESSED) == 5
        assert outcomes.count(DispatchOutcome.DUPLICATE) == 2
        assert len(set(handled)) == 5
