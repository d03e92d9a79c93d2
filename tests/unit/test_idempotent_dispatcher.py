"""
Unit tests for IdempotentDispatcher and HandlerContext.

Tests cover:
- Exactly-once effects under redelivery
- Rollback of the inbox record when the handler fails
- Deduplication scoped per handler type
- Chained messages emitted from handlers
"""

from dataclasses import replace
from uuid import uuid4

import pytest
import pytest_asyncio

from eventrelay.consumer.dispatcher import DispatchOutcome, IdempotentDispatcher
from eventrelay.messages.envelope import ReceivedMessage
from eventrelay.observability import MockTracer
from eventrelay.repositories.outbox import MessageState
from tests.fixtures import OrderPlaced


def received(order: OrderPlaced, **overrides) -> ReceivedMessage:
    values = {
        "message_id": uuid4(),
        "message_type": "OrderPlaced",
        "payload": order.model_dump_json(),
        "correlation_id": uuid4(),
    }
    values.update(overrides)
    return ReceivedMessage(**values)


async def stock(stores, sku: str) -> int:
    async with stores.database.transaction() as txn:
        return txn.get("inventory", sku)


@pytest_asyncio.fixture
async def stocked(memory_stores):
    async with memory_stores.database.transaction() as txn:
        txn.put("inventory", "SKU-1", 10)
    return memory_stores


async def reserve_inventory(message, context) -> None:
    order = OrderPlaced.model_validate_json(message.payload)
    txn = context.transaction
    txn.put("inventory", order.sku, txn.get("inventory", order.sku) - order.quantity)


class TestIdempotency:
    """Tests for at-most-once handler effects."""

    @pytest.mark.asyncio
    async def test_redelivered_message_is_applied_once(self, stocked, clock, order_placed):
        dispatcher = IdempotentDispatcher(
            stocked.database, stocked.inbox, "inventory", clock=clock, enable_tracing=False
        )
        message = received(order_placed)

        first = await dispatcher.dispatch(message, reserve_inventory)
        second = await dispatcher.dispatch(
            replace(message, delivery_attempt=2), reserve_inventory
        )

        assert first is DispatchOutcome.PROCESSED
        assert second is DispatchOutcome.DUPLICATE
        assert await stock(stocked, "SKU-1") == 8
        assert dispatcher.get_stats() == {"processed": 1, "duplicates": 1, "failed": 0}

        async with stocked.database.transaction() as txn:
            assert await stocked.inbox.contains(txn, message.message_id, "inventory")
            assert await stocked.inbox.count(txn) == 1

    @pytest.mark.asyncio
    async def test_handler_failure_rolls_back_inbox_and_effects(self, stocked, order_placed):
        dispatcher = IdempotentDispatcher(
            stocked.database, stocked.inbox, "inventory", enable_tracing=False
        )
        message = received(order_placed)
        calls = []

        async def flaky(msg, context):
            calls.append(msg.delivery_attempt)
            await reserve_inventory(msg, context)
            if len(calls) == 1:
                raise ConnectionError("warehouse API down")

        with pytest.raises(ConnectionError):
            await dispatcher.dispatch(message, flaky)

        assert await stock(stocked, "SKU-1") == 10
        async with stocked.database.transaction() as txn:
            assert not await stocked.inbox.contains(txn, message.message_id, "inventory")

        assert await dispatcher.dispatch(message, flaky) is DispatchOutcome.PROCESSED
        assert await stock(stocked, "SKU-1") == 8
        assert dispatcher.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_handler_types_deduplicate_independently(self, stocked, order_placed):
        inventory = IdempotentDispatcher(
            stocked.database, stocked.inbox, "inventory", enable_tracing=False
        )
        audit = IdempotentDispatcher(stocked.database, stocked.inbox, "audit", enable_tracing=False)
        seen = []

        async def record(message, context):
            seen.append(message.message_id)

        message = received(order_placed)
        assert await inventory.dispatch(message, reserve_inventory) is DispatchOutcome.PROCESSED
        assert await audit.dispatch(message, record) is DispatchOutcome.PROCESSED
        assert await audit.dispatch(message, record) is DispatchOutcome.DUPLICATE
        assert seen == [message.message_id]

    @pytest.mark.asyncio
    async def test_sqlite_duplicate_detection(self, sqlite_stores, order_placed):
        dispatcher = IdempotentDispatcher(
            sqlite_stores.database, sqlite_stores.inbox, "inventory", enable_tracing=False
        )
        calls = []

        async def handler(message, context):
            calls.append(message.message_id)

        message = received(order_placed)
        assert await dispatcher.dispatch(message, handler) is DispatchOutcome.PROCESSED
        assert await dispatcher.dispatch(message, handler) is DispatchOutcome.DUPLICATE
        assert calls == [message.message_id]


class TestEmit:
    """Tests for chained messages emitted by handlers."""

    @pytest.mark.asyncio
    async def test_emit_chains_correlation_and_causation(
        self, memory_stores, writer, clock, order_placed
    ):
        dispatcher = IdempotentDispatcher(
            memory_stores.database,
            memory_stores.inbox,
            "payments",
            writer=writer,
            clock=clock,
            enable_tracing=False,
        )
        message = received(order_placed)
        emitted = []

        async def capture_payment(msg, context):
            order = OrderPlaced.model_validate_json(msg.payload)
            emitted.append(
                await context.emit(
                    "PaymentCaptured",
                    {"order_id": str(order.order_id), "amount": order.amount},
                    ordering_key=str(order.order_id),
                )
            )
            assert context.emitted == emitted

        await dispatcher.dispatch(message, capture_payment)

        async with memory_stores.database.transaction() as txn:
            chained = await memory_stores.outbox.get(txn, emitted[0])
        assert chained.state == MessageState.PENDING
        assert chained.message_type == "PaymentCaptured"
        assert chained.correlation_id == message.correlation_id
        assert chained.causation_id == message.message_id
        assert chained.ordering_key == str(order_placed.order_id)

    @pytest.mark.asyncio
    async def test_emit_rolls_back_with_handler(self, memory_stores, writer, order_placed):
        dispatcher = IdempotentDispatcher(
            memory_stores.database, memory_stores.inbox, "payments", writer=writer,
            enable_tracing=False,
        )

        async def emit_then_fail(msg, context):
            await context.emit("PaymentCaptured", {"order_id": str(uuid4()), "amount": 1.0})
            raise ValueError("card declined")

        with pytest.raises(ValueError):
            await dispatcher.dispatch(received(order_placed), emit_then_fail)

        async with memory_stores.database.transaction() as txn:
            assert await memory_stores.outbox.list_messages(txn) == []

    @pytest.mark.asyncio
    async def test_emit_without_writer(self, memory_stores, order_placed):
        dispatcher = IdempotentDispatcher(
            memory_stores.database, memory_stores.inbox, "payments", enable_tracing=False
        )

        async def handler(msg, context):
            await context.emit("PaymentCaptured", {})

        with pytest.raises(RuntimeError, match="emit"):
            await dispatcher.dispatch(received(order_placed), handler)


class TestTracing:
    @pytest.mark.asyncio
    async def test_dispatch_span_records_outcome(self, memory_stores, order_placed):
        tracer = MockTracer()
        dispatcher = IdempotentDispatcher(
            memory_stores.database, memory_stores.inbox, "inventory", tracer=tracer
        )

        async def noop(msg, context):
            pass

        await dispatcher.dispatch(received(order_placed), noop)

        assert tracer.span_names == ["eventrelay.consumer.dispatch"]
        _, attributes = tracer.spans[0]
        assert attributes["eventrelay.handler.type"] == "inventory"
