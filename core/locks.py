"""
Keyed asyncio locks.

Serializes mutations of the same wallet / subscription inside one process.
Cross-process safety comes from row locks and version columns in the DB;
this only keeps concurrent requests in the same worker from racing each
other into a version conflict.

Entries are dropped once nobody holds or waits on them, so the registry
does not grow with the number of wallets ever touched.
"""
import asyncio
from contextlib import asynccontextmanager


class KeyedLock:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key):
        key = str(key)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


wallet_locks = KeyedLock()
subscription_locks = KeyedLock()
