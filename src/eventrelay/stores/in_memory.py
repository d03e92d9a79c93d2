"""
In-memory transactional store.

Backs the in-memory repositories used by tests and single-process
development setups. Transactions are serialized by an asyncio lock and
stage their writes until commit, so a failing block leaves no trace.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager
from typing import Any

from eventrelay.exceptions import StoreUnavailableError

_DELETED = object()


class InMemoryTransaction:
    """
    Staged view over the tables of an ``InMemoryDatabase``.

    Reads see committed rows overlaid with this transaction's own writes.
    Nothing becomes visible to other transactions before commit.
    """

    def __init__(self, database: InMemoryDatabase) -> None:
        self._database = database
        self._writes: dict[str, dict[Any, Any]] = {}
        self._on_commit: list[Callable[[], None]] = []

    def get(self, table: str, key: Any) -> Any | None:
        staged = self._writes.get(table, {})
        if key in staged:
            row = staged[key]
            return None if row is _DELETED else row
        return self._database.table(table).get(key)

    def put(self, table: str, key: Any, row: Any) -> None:
        self._writes.setdefault(table, {})[key] = row

    def insert(
        self,
        table: str,
        key: Any,
        row: Any,
        conflict: Callable[[], Exception] | None = None,
    ) -> None:
        """
        Insert a row, failing if the key already exists.

        Args:
            conflict: Factory for the exception raised on a duplicate key;
                defaults to ``KeyError``
        """
        if self.get(table, key) is not None:
            raise conflict() if conflict is not None else KeyError(key)
        self.put(table, key, row)

    def delete(self, table: str, key: Any) -> bool:
        if self.get(table, key) is None:
            return False
        self._writes.setdefault(table, {})[key] = _DELETED
        return True

    def rows(self, table: str) -> Iterator[Any]:
        """Iterate over the rows of a table as seen by this transaction."""
        staged = self._writes.get(table, {})
        for key, row in self._database.table(table).items():
            if key not in staged:
                yield row
        for row in staged.values():
            if row is not _DELETED:
                yield row

    def next_sequence(self) -> int:
        """Monotonic insertion counter of the database."""
        return self._database.next_sequence()

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` after this transaction commits."""
        self._on_commit.append(callback)

    def _apply(self) -> None:
        for table, writes in self._writes.items():
            rows = self._database.table(table)
            for key, row in writes.items():
                if row is _DELETED:
                    rows.pop(key, None)
                else:
                    rows[key] = row


class InMemoryDatabase:
    """
    Process-local database of named tables.

    Attributes:
        available: When False every new transaction raises
            ``StoreUnavailableError``; tests use it to simulate outages.

    Example:
        >>> database = InMemoryDatabase()
        >>> async with database.transaction() as txn:
        ...     txn.put("orders", order.id, order)
    """

    backend = "memory"

    def __init__(self) -> None:
        self._tables: dict[str, dict[Any, Any]] = {}
        self._lock = asyncio.Lock()
        self._commit_listeners: list[Callable[[], None]] = []
        self._sequence = itertools.count(1)
        self.available = True

    def table(self, name: str) -> dict[Any, Any]:
        """Committed rows of a table, keyed by primary key."""
        return self._tables.setdefault(name, {})

    def next_sequence(self) -> int:
        return next(self._sequence)

    def add_commit_listener(self, listener: Callable[[], None]) -> None:
        """
        Register a callback invoked after every commit that wrote rows.

        Used to wake an outbox processor as soon as new messages exist.
        """
        self._commit_listeners.append(listener)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        if not self.available:
            raise StoreUnavailableError("In-memory database is marked unavailable")

        async with self._lock:
            txn = InMemoryTransaction(self)
            yield txn
            if not self.available:
                raise StoreUnavailableError("In-memory database became unavailable")
            txn._apply()

        if txn._writes:
            for listener in self._commit_listeners:
                listener()
        for callback in txn._on_commit:
            callback()

    async def close(self) -> None:
        self._tables.clear()

    def clear(self) -> None:
        """Remove all rows from all tables."""
        self._tables.clear()


__all__ = ["InMemoryDatabase", "InMemoryTransaction"]
