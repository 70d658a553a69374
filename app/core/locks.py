import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    """In-process mutual exclusion scoped to a single key (e.g. one customer).

    Locks are created on first use and dropped once no holder or waiter
    references them, so memory stays proportional to in-flight keys.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refcounts: dict[Hashable, int] = {}
        self._guard = asyncio.Lock()

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        async with self._guard:
            lock = self._locks.setdefault(key, asyncio.Lock())
            self._refcounts[key] = self._refcounts.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            async with self._guard:
                remaining = self._refcounts[key] - 1
                if remaining:
                    self._refcounts[key] = remaining
                else:
                    self._refcounts.pop(key, None)
                    self._locks.pop(key, None)

    def active_keys(self) -> int:
        return len(self._locks)
