"""
Unit tests for HousekeepingJob.
"""

import asyncio
from uuid import uuid4

import pytest

from eventrelay.config import HousekeepingConfig
from eventrelay.housekeeping import HousekeepingJob
from eventrelay.outbox.claims import ClaimCoordinator
from eventrelay.repositories.inbox import InboxRecord
from eventrelay.repositories.outbox import MessageState

DAY = 86400.0


async def publish_all(stores, clock) -> None:
    coordinator = ClaimCoordinator(stores.database, stores.outbox, "relay", 30.0)
    claimed = await coordinator.claim_batch(100, clock())
    async with stores.database.transaction() as txn:
        for message in claimed:
            await stores.outbox.mark_published(txn, message.id, "relay", clock())


async def add_inbox(stores, clock, handler_type="inventory") -> None:
    async with stores.database.transaction() as txn:
        await stores.inbox.insert(
            txn, InboxRecord(message_id=uuid4(), handler_type=handler_type, processed_at=clock())
        )


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_deletes_rows_past_retention(self, memory_stores, writer, clock, order_placed):
        config = HousekeepingConfig(published_retention=7 * DAY, inbox_retention=14 * DAY)
        async with memory_stores.database.transaction() as txn:
            await writer.append(txn, "OrderPlaced", order_placed)
        await publish_all(memory_stores, clock)
        await add_inbox(memory_stores, clock)

        clock.advance(8 * DAY)
        async with memory_stores.database.transaction() as txn:
            pending_id = await writer.append(txn, "OrderPlaced", order_placed)
        await add_inbox(memory_stores, clock, "audit")
        job = HousekeepingJob(
            memory_stores.database, memory_stores.outbox, memory_stores.inbox, config, clock
        )

        result = await job.run_once()

        assert result.outbox_deleted == 1
        assert result.inbox_deleted == 0
        assert result.ran_at == clock()
        async with memory_stores.database.transaction() as txn:
            remaining = await memory_stores.outbox.list_messages(txn)
            assert [m.id for m in remaining] == [pending_id]
            assert remaining[0].state == MessageState.PENDING

        clock.advance(7 * DAY)
        result = await job.run_once()
        assert result.inbox_deleted == 1
        async with memory_stores.database.transaction() as txn:
            assert await memory_stores.inbox.count(txn) == 1

    @pytest.mark.asyncio
    async def test_pending_rows_are_never_deleted(self, memory_stores, writer, clock, order_placed):
        async with memory_stores.database.transaction() as txn:
            await writer.append(txn, "OrderPlaced", order_placed)
        clock.advance(365 * DAY)
        job = HousekeepingJob(memory_stores.database, memory_stores.outbox, clock=clock)

        assert (await job.run_once()).outbox_deleted == 0

    @pytest.mark.asyncio
    async def test_inbox_only(self, memory_stores, clock):
        await add_inbox(memory_stores, clock)
        clock.advance(15 * DAY)
        job = HousekeepingJob(memory_stores.database, inbox=memory_stores.inbox, clock=clock)

        result = await job.run_once()

        assert result.outbox_deleted == 0
        assert result.inbox_deleted == 1

    @pytest.mark.asyncio
    async def test_sqlite_cleanup(self, sqlite_stores, clock):
        await add_inbox(sqlite_stores, clock)
        clock.advance(15 * DAY)
        job = HousekeepingJob(
            sqlite_stores.database, sqlite_stores.outbox, sqlite_stores.inbox, clock=clock
        )

        assert (await job.run_once()).inbox_deleted == 1


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, memory_stores, clock):
        await add_inbox(memory_stores, clock)
        clock.advance(15 * DAY)
        job = HousekeepingJob(
            memory_stores.database,
            memory_stores.outbox,
            memory_stores.inbox,
            HousekeepingConfig(interval=60.0),
            clock,
        )

        await job.start()
        assert job.is_running
        await asyncio.sleep(0.01)
        await job.stop()

        assert not job.is_running
        async with memory_stores.database.transaction() as txn:
            assert await memory_stores.inbox.count(txn) == 0

    @pytest.mark.asyncio
    async def test_loop_survives_store_outage(self, memory_stores, clock):
        memory_stores.database.available = False
        job = HousekeepingJob(
            memory_stores.database, memory_stores.outbox, config=HousekeepingConfig(interval=60.0)
        )

        await job.start()
        await asyncio.sleep(0.01)
        assert job.is_running
        await job.stop()
