"""
Unit tests for OutboxWriter.

Tests cover:
- Atomicity with the business transaction
- Correlation and causation propagation
- Serialization failures before any write
- Tracing
"""

from uuid import uuid4

import pytest

from eventrelay.correlation import CorrelationContext
from eventrelay.exceptions import SerializationError
from eventrelay.observability import MockTracer
from eventrelay.outbox.writer import OutboxWriter
from eventrelay.repositories.outbox import MessageState
from tests.fixtures import OrderPlaced


class TestAppend:
    """Tests for OutboxWriter.append."""

    @pytest.mark.asyncio
    async def test_message_commits_with_business_change(
        self, memory_stores, writer, order_placed, clock
    ):
        async with memory_stores.database.transaction() as txn:
            txn.put("orders", order_placed.order_id, order_placed)
            message_id = await writer.append(txn, "OrderPlaced", order_placed)

        async with memory_stores.database.transaction() as txn:
            message = await memory_stores.outbox.get(txn, message_id)

        assert message is not None
        assert message.state == MessageState.PENDING
        assert message.attempts == 0
        assert message.created_at == clock()
        assert message.next_attempt_at == clock()
        assert OrderPlaced.model_validate_json(message.payload) == order_placed

    @pytest.mark.asyncio
    async def test_rollback_discards_message_and_business_change(
        self, memory_stores, writer, order_placed
    ):
        with pytest.raises(RuntimeError):
            async with memory_stores.database.transaction() as txn:
                txn.put("orders", order_placed.order_id, order_placed)
                await writer.append(txn, "OrderPlaced", order_placed)
                raise RuntimeError("payment declined")

        async with memory_stores.database.transaction() as txn:
            assert await memory_stores.outbox.list_messages(txn) == []
            assert txn.get("orders", order_placed.order_id) is None

    @pytest.mark.asyncio
    async def test_serialization_error_writes_nothing(self, memory_stores, writer):
        with pytest.raises(SerializationError):
            async with memory_stores.database.transaction() as txn:
                await writer.append(txn, "OrderPlaced", {"sku": object()})

        async with memory_stores.database.transaction() as txn:
            assert await memory_stores.outbox.list_messages(txn) == []

    @pytest.mark.asyncio
    async def test_missing_correlation_starts_new_chain(self, memory_stores, writer, order_placed):
        async with memory_stores.database.transaction() as txn:
            first = await writer.append(txn, "OrderPlaced", order_placed)
            second = await writer.append(txn, "OrderPlaced", order_placed)
            a = await memory_stores.outbox.get(txn, first)
            b = await memory_stores.outbox.get(txn, second)

        assert a.correlation_id != b.correlation_id
        assert a.causation_id is None

    @pytest.mark.asyncio
    async def test_explicit_ids_and_ordering_key(self, memory_stores, writer, order_placed):
        correlation_id, causation_id = uuid4(), uuid4()
        async with memory_stores.database.transaction() as txn:
            message_id = await writer.append(
                txn,
                "OrderPlaced",
                order_placed,
                correlation_id=correlation_id,
                causation_id=causation_id,
                ordering_key=str(order_placed.order_id),
            )
            message = await memory_stores.outbox.get(txn, message_id)

        assert message.correlation_id == correlation_id
        assert message.causation_id == causation_id
        assert message.ordering_key == str(order_placed.order_id)

    @pytest.mark.asyncio
    async def test_append_in_context(self, memory_stores, writer, order_placed):
        context = CorrelationContext(correlation_id=uuid4(), causation_id=uuid4())
        async with memory_stores.database.transaction() as txn:
            message_id = await writer.append_in_context(txn, "OrderPlaced", order_placed, context)
            message = await memory_stores.outbox.get(txn, message_id)

        assert message.correlation_id == context.correlation_id
        assert message.causation_id == context.causation_id

    @pytest.mark.asyncio
    async def test_records_span(self, memory_stores, registry, order_placed):
        tracer = MockTracer()
        writer = OutboxWriter(memory_stores.outbox, registry=registry, tracer=tracer)

        async with memory_stores.database.transaction() as txn:
            await writer.append(txn, "OrderPlaced", order_placed)

        assert tracer.span_names == ["eventrelay.outbox.append"]
        _, attributes = tracer.spans[0]
        assert attributes["eventrelay.message.type"] == "OrderPlaced"
