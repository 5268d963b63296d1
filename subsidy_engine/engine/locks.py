"""Per-entity async locks shared by the milestone engine and payment orchestrator."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLocks:
    """
    One asyncio.Lock per key, created on first use.

    Holding ``locks.hold(("milestone", 7))`` makes the check-then-write on
    milestone 7 a single critical section. Different keys never block each
    other. A key's lock is dropped once nobody holds or waits for it, so the
    table only grows with the number of keys in use at the same time.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
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

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def milestone_key(milestone_id: int) -> tuple[str, int]:
    return ("milestone", milestone_id)


def project_key(project_id: int) -> tuple[str, int]:
    return ("project", project_id)
