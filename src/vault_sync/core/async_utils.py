"""Async utilities for bridging blocking host I/O into a reconciliation pass."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Call blocking *func* in the default thread pool and await its result.

    Host reads and writes, remote fetches and Version Store commits all go
    through this so the event loop keeps serving other documents.

    Example:
        content = await run_sync(vault.read, "notes/A.md")
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
    limit: int,
) -> list[T]:
    """Run coroutines concurrently, at most *limit* at a time.

    Results keep the input order; the first exception propagates.
    """
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")
    semaphore = asyncio.Semaphore(limit)

    async def bounded(coro: Coroutine[Any, Any, T]) -> T:
        async with semaphore:
            return await coro

    return list(await asyncio.gather(*(bounded(c) for c in coros)))


class KeyedLock:
    """One ``asyncio.Lock`` per key, created on first use.

    Serializes work on the same key (a document ID) while unrelated keys
    proceed concurrently.  Locks are dropped once nobody holds or waits
    for them.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        """Return ``True`` if *key* is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
