"""
Bounded-concurrency execution with per-key ordering.

Work sharing an ordering key runs one item at a time in submission order;
different keys run in parallel up to ``max_concurrency``. Work without a
key only takes a concurrency slot.

Example:
    >>> pool = OrderedWorkerPool(max_concurrency=10)
    >>> await pool.run("order-42", handle(message))      # waits for the result
    >>> pool.submit("order-43", handle(other_message))   # fire and forget
    >>> await pool.join()
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PoolStats:
    """
    Statistics of an ordered worker pool.

    Attributes:
        in_flight: Work items currently holding a concurrency slot
        peak_in_flight: Highest ``in_flight`` observed
        completed: Items finished successfully
        failed: Items that raised
        waiting_on_key: Items queued behind another item with the same key
    """

    in_flight: int = 0
    peak_in_flight: int = 0
    completed: int = 0
    failed: int = 0
    waiting_on_key: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "in_flight": self.in_flight,
            "peak_in_flight": self.peak_in_flight,
            "completed": self.completed,
            "failed": self.failed,
            "waiting_on_key": self.waiting_on_key,
        }


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class OrderedWorkerPool:
    """
    Runs awaitables with a global concurrency limit and FIFO order per key.

    The key lock is taken before the concurrency slot, so an item blocked
    behind its predecessor never occupies a slot another key could use.

    Args:
        max_concurrency: Maximum items running at once
    """

    def __init__(self, max_concurrency: int = 10) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be positive, got {max_concurrency}")
        self._max_concurrency = max_concurrency
        self._slots = asyncio.Semaphore(max_concurrency)
        self._keys: dict[str, _KeyLock] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stats = PoolStats()

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def stats(self) -> PoolStats:
        return PoolStats(**self._stats.to_dict())

    @property
    def active_keys(self) -> int:
        """Number of keys with running or waiting items."""
        return len(self._keys)

    async def run(self, key: str | None, work: Awaitable[T]) -> T:
        """
        Run ``work`` once its key and a concurrency slot are free.

        Exceptions raised by ``work`` propagate to the caller.
        """
        if key is None:
            return await self._run_in_slot(work)

        entry = self._keys.get(key)
        if entry is None:
            entry = self._keys[key] = _KeyLock()
        entry.users += 1
        queued = entry.lock.locked()
        if queued:
            self._stats.waiting_on_key += 1
        try:
            async with entry.lock:
                if queued:
                    self._stats.waiting_on_key -= 1
                    queued = False
                return await self._run_in_slot(work)
        finally:
            if queued:
                self._stats.waiting_on_key -= 1
            entry.users -= 1
            if entry.users == 0:
                del self._keys[key]

    def submit(
        self,
        key: str | None,
        work: Coroutine[Any, Any, T],
        on_error: Callable[[BaseException], None] | None = None,
    ) -> asyncio.Task[T]:
        """
        Schedule ``work`` without waiting for it.

        Items submitted with the same key start in submission order.
        Errors are passed to ``on_error`` or logged.
        """
        task = asyncio.create_task(self.run(key, work))
        self._tasks.add(task)

        def _done(finished: asyncio.Task[T]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is None:
                return
            if on_error is not None:
                on_error(error)
            else:
                logger.error(
                    f"Pool work for key {key!r} failed: {error}",
                    exc_info=error,
                    extra={"ordering_key": key},
                )

        task.add_done_callback(_done)
        return task

    async def join(self, timeout: float | None = None) -> None:
        """
        Wait for every submitted item to finish.

        Raises:
            TimeoutError: If items are still running after ``timeout``
        """
        async with asyncio.timeout(timeout):
            while self._tasks:
                await asyncio.wait(list(self._tasks))

    async def cancel(self) -> int:
        """Cancel submitted items that have not finished; returns the count."""
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)

    async def _run_in_slot(self, work: Awaitable[T]) -> T:
        async with self._slots:
            self._stats.in_flight += 1
            self._stats.peak_in_flight = max(self._stats.peak_in_flight, self._stats.in_flight)
            try:
                result = await work
            except BaseException:
                self._stats.failed += 1
                raise
            else:
                self._stats.completed += 1
                return result
            finally:
                self._stats.in_flight -= 1


__all__ = ["OrderedWorkerPool", "PoolStats"]
