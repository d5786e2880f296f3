"""
Per-user locks for access state read-modify-write.

Paired with SELECT ... FOR UPDATE on the user's purchase rows; the in-process
lock only keeps concurrent requests of one worker from queueing on the database.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from weakref import WeakValueDictionary


class UserLockRegistry:
    """One asyncio.Lock per user id, dropped once nobody holds a reference."""

    def __init__(self) -> None:
        self._locks: WeakValueDictionary[int, asyncio.Lock] = WeakValueDictionary()

    def lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        lock = self.lock_for(user_id)
        async with lock:
            yield


user_locks = UserLockRegistry()
