"""
Per-user serialization point for wallet mutations.

Within one process every debit/credit for a given user runs under that user's
asyncio.Lock; across processes the ledger's conditional UPDATE is the guard.
Entries are reference counted and removed once no coroutine holds or waits
on them, so the registry does not grow with the number of users ever seen.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from app.core.logging import get_logger

logger = get_logger(__name__)


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class UserLockRegistry:
    """Hands out one asyncio.Lock per user id"""

    def __init__(self) -> None:
        self._entries: dict[int, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        entry = self._entries.get(user_id)
        if entry is None:
            entry = self._entries[user_id] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(user_id, None)

    def is_locked(self, user_id: int) -> bool:
        entry = self._entries.get(user_id)
        return bool(entry and entry.lock.locked())

    def __len__(self) -> int:
        return len(self._entries)

    def reset(self) -> None:
        """Drop all entries (tests only; never while a lock is held)"""
        self._entries.clear()


wallet_locks = UserLockRegistry()
