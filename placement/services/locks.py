"""Per-id asyncio locks serializing read-modify-write on one assessment or section.

Entries are dropped once no task holds or waits on them, so the registry does
not grow with every id ever touched.
"""

import asyncio
from contextlib import asynccontextmanager


class KeyedLock:

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every orchestrator in the process
run_locks = KeyedLock()
