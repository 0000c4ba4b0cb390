"""Keyed asyncio locks for per-entity critical sections."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable


class KeyedLocks:
    """One ``asyncio.Lock`` per key, created on first use.

    Locks for several keys are always taken in sorted order so two
    settlements touching the same pair of wallets cannot deadlock.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        ordered = sorted(set(keys))
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self.get(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def keys(self) -> Iterable[str]:
        return self._locks.keys()
