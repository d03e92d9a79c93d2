"""
Unit tests for InMemoryTransport.
"""

from uuid import uuid4

import pytest

from eventrelay.observability import MockTracer
from eventrelay.transport import Ack, InMemoryTransport


def metadata(**extra: str) -> dict[str, str]:
    return {"message_id": str(uuid4()), "correlation_id": str(uuid4()), **extra}


class TestPublish:
    @pytest.mark.asyncio
    async def test_records_published_messages(self, transport):
        meta = metadata(ordering_key="order-1")
        await transport.publish("OrderPlaced", '{"sku": "A"}', meta)

        assert len(transport.published) == 1
        published = transport.published[0]
        assert published.message_type == "OrderPlaced"
        assert published.payload == '{"sku": "A"}'
        assert published.message_id == meta["message_id"]
        assert transport.get_stats()["published"] == 1

    @pytest.mark.asyncio
    async def test_fail_next(self, transport):
        transport.fail_next(ConnectionError("down"), times=2)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await transport.publish("OrderPlaced", "{}", metadata())
        await transport.publish("OrderPlaced", "{}", metadata())

        assert len(transport.published) == 1

    @pytest.mark.asyncio
    async def test_publish_span(self):
        tracer = MockTracer()
        transport = InMemoryTransport(tracer=tracer)
        await transport.publish("OrderPlaced", "{}", metadata())
        assert tracer.span_names == ["eventrelay.transport.publish"]


class TestDelivery:
    @pytest.mark.asyncio
    async def test_every_subscription_receives_every_message(self, transport):
        received = {"a": [], "b": []}

        async def handler_a(message):
            received["a"].append(message.message_type)

        async def handler_b(message):
            received["b"].append(message.message_type)
            return Ack.ACK

        transport.subscribe(handler_a, name="a")
        transport.subscribe(handler_b, name="b")
        await transport.start()
        try:
            await transport.publish("OrderPlaced", "{}", metadata())
            await transport.publish("PaymentCaptured", "{}", metadata())
            await transport.drain(timeout=2.0)
        finally:
            await transport.stop()

        assert sorted(received["a"]) == ["OrderPlaced", "PaymentCaptured"]
        assert sorted(received["b"]) == ["OrderPlaced", "PaymentCaptured"]
        assert transport.get_stats()["delivered"] == 4
        assert transport.subscription_count == 2

    @pytest.mark.asyncio
    async def test_metadata_becomes_received_message(self, transport):
        seen = []

        async def handler(message):
            seen.append(message)

        meta = metadata(ordering_key="order-9", causation_id=str(uuid4()))
        transport.subscribe(handler)
        await transport.start()
        try:
            await transport.publish("OrderPlaced", '{"a": 1}', meta)
            await transport.drain(timeout=2.0)
        finally:
            await transport.stop()

        (message,) = seen
        assert str(message.message_id) == meta["message_id"]
        assert str(message.correlation_id) == meta["correlation_id"]
        assert str(message.causation_id) == meta["causation_id"]
        assert message.ordering_key == "order-9"
        assert message.delivery_attempt == 1

    @pytest.mark.asyncio
    async def test_nack_and_exceptions_are_redelivered(self, transport):
        attempts = []

        async def handler(message):
            attempts.append(message.delivery_attempt)
            if message.delivery_attempt == 1:
                return Ack.NACK
            if message.delivery_attempt == 2:
                raise RuntimeError("handler crashed")
            return Ack.ACK

        transport.subscribe(handler)
        await transport.start()
        try:
            await transport.publish("OrderPlaced", "{}", metadata())
            await transport.drain(timeout=2.0)
        finally:
            await transport.stop()

        assert attempts == [1, 2, 3]
        stats = transport.get_stats()
        assert stats["redelivered"] == 2
        assert stats["delivered"] == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_redeliveries(self):
        transport = InMemoryTransport(max_redeliveries=2, enable_tracing=False)
        attempts = []

        async def always_nack(message):
            attempts.append(message.delivery_attempt)
            return Ack.NACK

        transport.subscribe(always_nack)
        await transport.start()
        try:
            await transport.publish("OrderPlaced", "{}", metadata())
            await transport.drain(timeout=2.0)
        finally:
            await transport.stop()

        assert attempts == [1, 2, 3]
        assert transport.get_stats()["undeliverable"] == 1

    @pytest.mark.asyncio
    async def test_subscribe_after_start(self, transport):
        seen = []

        async def handler(message):
            seen.append(message.message_type)

        await transport.start()
        transport.subscribe(handler)
        try:
            await transport.publish("OrderPlaced", "{}", metadata())
            await transport.drain(timeout=2.0)
        finally:
            await transport.stop()

        assert seen == ["OrderPlaced"]
