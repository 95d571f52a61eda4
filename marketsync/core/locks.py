"""
Keyed asyncio locks.

The service runs in a single process, so per-pool serialisation and the
signing-key nonce mutex are plain asyncio locks held in a registry.
Entries live only while someone holds or waits on them.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLock:
    """One asyncio.Lock per key, created on first use and dropped when idle."""

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._locks: dict[Hashable, asyncio.Lock] = {}
        # holders + waiters per key
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        return key in self._locks and self._locks[key].locked()

    def __len__(self) -> int:
        return len(self._locks)
