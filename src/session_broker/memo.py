"""In-process deduplication of session acquisitions.

Concurrent callers in one process asking for the same session share a single
acquisition task. The task's outcome, value or exception, stays cached for
the life of the process, so repeated calls are free. Cross-process
duplication is the sign-in lock's job, not this module's.
"""

from __future__ import annotations

__all__ = ["AcquisitionMemoizer"]

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

T = TypeVar("T")


class AcquisitionMemoizer(Generic[T]):
    """One outstanding (then cached) acquisition per key.

    Usage:
        memo = AcquisitionMemoizer[SessionRecord]()
        record = await memo.memoize(key, lambda: manager.acquire(identity))
    """

    def __init__(self) -> None:
        self._tasks: dict[Hashable, asyncio.Future[T]] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def task_for(self, key: Hashable) -> asyncio.Future[T] | None:
        """The task memoized under ``key``, if any."""
        return self._tasks.get(key)

    def start(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Return the task memoized under ``key``, starting ``factory`` if there is none."""
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
        return task

    @staticmethod
    async def wait(task: asyncio.Future[T]) -> T:
        """Await a shared task without letting the caller's cancellation reach it."""
        if task.done():
            return task.result()
        return await asyncio.shield(task)

    async def memoize(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        """Return the shared result for ``key``, starting ``factory`` on first use.

        The shared task is shielded: cancelling one waiting caller does not
        cancel the acquisition the other callers are waiting on.

        Raises:
            Exception: Whatever the factory raised (re-raised to every caller).
        """
        return await self.wait(self.start(key, factory))

    def invalidate(self, key: Hashable, task: asyncio.Future[T] | None = None) -> bool:
        """Forget ``key`` so the next memoize() starts a new acquisition.

        Args:
            key: Key to drop.
            task: If given, only drop the entry while it still holds this task
                (another caller may already have replaced it).

        Returns:
            True if an entry was removed.
        """
        current = self._tasks.get(key)
        if current is None or (task is not None and current is not task):
            return False
        del self._tasks[key]
        return True

    def clear(self) -> None:
        """Forget every entry."""
        self._tasks.clear()
