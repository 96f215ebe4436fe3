"""
In-process row locks.

Two callers touching the same account, goal, loan, transaction or
recurring config are serialized. Keys are acquired in sorted order so
overlapping key sets can never deadlock. Locks are not reentrant: a
caller that already holds a key must not ask for it again.

A key's lock lives only while some caller holds or waits for it, so the
registry stays as small as the set of rows currently in use.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from finance_ledger.services.storage import Table


def lock_key(table: Table, record_id: str) -> str:
    return f"{Table(table).value}:{record_id}"


class EntityLocks:
    """Registry of one asyncio.Lock per row key."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: Optional[str]) -> AsyncIterator[None]:
        ordered = sorted({k for k in keys if k})
        locks = [self._checkout(key) for key in ordered]
        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._checkin(key)
