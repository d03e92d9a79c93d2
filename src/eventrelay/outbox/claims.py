"""
Claim coordination between outbox processor instances.

The claim is the only synchronization point between processors sharing an
outbox: each batch is selected and marked Claimed in a single transaction,
so a row handed to one instance is invisible to the others until its claim
expires.
"""

import logging
from datetime import datetime
from uuid import UUID

from eventrelay.repositories.outbox import OutboxMessage, OutboxRepository
from eventrelay.stores.interface import TransactionManager

logger = logging.getLogger(__name__)


class ClaimCoordinator:
    """
    Claims and releases outbox batches on behalf of one processor instance.

    Args:
        database: Transaction manager of the outbox backend
        outbox: Outbox repository of the same backend
        owner: Identifier of the processor instance
        claim_ttl: Seconds before an unfinished claim may be taken over
    """

    def __init__(
        self,
        database: TransactionManager,
        outbox: OutboxRepository,
        owner: str,
        claim_ttl: float,
    ) -> None:
        self._database = database
        self._outbox = outbox
        self._owner = owner
        self._claim_ttl = claim_ttl

    @property
    def owner(self) -> str:
        return self._owner

    async def claim_batch(self, limit: int, now: datetime) -> list[OutboxMessage]:
        """
        Claim up to ``limit`` due messages, oldest first.

        Raises:
            StoreUnavailableError: If the outbox cannot be reached
        """
        async with self._database.transaction() as txn:
            claimed = await self._outbox.claim_batch(
                txn, limit, now, self._owner, self._claim_ttl
            )

        if claimed:
            logger.debug(
                f"Claimed {len(claimed)} outbox message(s)",
                extra={"owner": self._owner, "count": len(claimed)},
            )
        return claimed

    async def release(self, message_ids: list[UUID]) -> int:
        """Return un-started claims to Pending; attempts are left untouched."""
        if not message_ids:
            return 0
        async with self._database.transaction() as txn:
            released = await self._outbox.release(txn, message_ids, self._owner)
        logger.info(
            f"Released {released} claimed outbox message(s)",
            extra={"owner": self._owner, "count": released},
        )
        return released


__all__ = ["ClaimCoordinator"]
