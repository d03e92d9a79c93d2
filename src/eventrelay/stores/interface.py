"""
Transaction boundary shared by the outbox, inbox and dead-letter stores.

A ``TransactionManager`` hands out transactions of one backend. The object
yielded by ``transaction()`` is backend specific (an in-memory staging
area, an aiosqlite connection or a SQLAlchemy ``AsyncConnection``) and is
passed unchanged to repository methods that must take part in the
caller's transaction, such as ``OutboxWriter.append``.
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class TransactionManager(Protocol):
    """
    Protocol for databases that run the relay's transactions.

    ``transaction()`` commits when the block exits normally and rolls back
    when it raises. Backend failures surface as ``StoreUnavailableError``.

    Example:
        >>> async with database.transaction() as txn:
        ...     await orders.save(txn, order)
        ...     await writer.append(txn, "OrderPlaced", order_placed)
    """

    @property
    def backend(self) -> str:
        """Backend identifier: "memory", "sqlite" or "postgresql"."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[Any]:
        """Open a transaction."""
        ...

    async def close(self) -> None:
        """Release the underlying connection or engine."""
        ...


__all__ = ["TransactionManager"]
