"""
Periodic cleanup of terminal outbox rows and old inbox records.

Published and dead-lettered outbox rows older than ``published_retention``
are deleted, as are inbox records older than ``inbox_retention``. The inbox
retention must exceed the longest redelivery window of the transport: once
a record is gone, a late redelivery of its message runs the handler again.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from eventrelay.clock import Clock, utc_now
from eventrelay.config import HousekeepingConfig
from eventrelay.exceptions import StoreUnavailableError
from eventrelay.repositories.inbox import InboxRepository
from eventrelay.repositories.outbox import OutboxRepository
from eventrelay.stores.interface import TransactionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HousekeepingResult:
    """Rows deleted by one housekeeping run."""

    outbox_deleted: int = 0
    inbox_deleted: int = 0
    ran_at: datetime | None = None


class HousekeepingJob:
    """
    Deletes expired outbox and inbox rows.

    Either repository may be omitted when a service owns only one side.

    Args:
        database: Transaction manager of the store
        outbox: Outbox repository, if the store holds an outbox
        inbox: Inbox repository, if the store holds an inbox
        config: Retention settings
        clock: Time source
    """

    def __init__(
        self,
        database: TransactionManager,
        outbox: OutboxRepository | None = None,
        inbox: InboxRepository | None = None,
        config: HousekeepingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._database = database
        self._outbox = outbox
        self._inbox = inbox
        self._config = config or HousekeepingConfig()
        self._clock = clock or utc_now
        self._task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> HousekeepingResult:
        now = self._clock()
        outbox_deleted = inbox_deleted = 0

        async with self._database.transaction() as txn:
            if self._outbox is not None:
                cutoff = now - timedelta(seconds=self._config.published_retention)
                outbox_deleted = await self._outbox.cleanup(txn, cutoff)
            if self._inbox is not None:
                cutoff = now - timedelta(seconds=self._config.inbox_retention)
                inbox_deleted = await self._inbox.cleanup(txn, cutoff)

        if outbox_deleted or inbox_deleted:
            logger.info(
                f"Housekeeping removed {outbox_deleted} outbox row(s) "
                f"and {inbox_deleted} inbox record(s)",
                extra={"outbox_deleted": outbox_deleted, "inbox_deleted": inbox_deleted},
            )
        return HousekeepingResult(outbox_deleted, inbox_deleted, now)

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="eventrelay-housekeeping")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except StoreUnavailableError as e:
                logger.error(
                    f"Housekeeping skipped, store unavailable: {e}",
                    extra={"error": str(e)},
                )
            except Exception as e:
                logger.exception(f"Housekeeping run failed: {e}", extra={"error": str(e)})
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._config.interval)
            except TimeoutError:
                pass


__all__ = ["HousekeepingJob", "HousekeepingResult"]
