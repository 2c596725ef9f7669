"""In-process single-flight locks keyed by subscription or tenant."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @staticmethod
    def make_key(*parts: Any) -> str:
        return ":".join(str(part) for part in parts)

    @asynccontextmanager
    async def hold(self, *parts: Any) -> AsyncIterator[None]:
        key = self.make_key(*parts)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every processor in this process
automation_locks = KeyedLock()

__all__ = ["KeyedLock", "automation_locks"]
