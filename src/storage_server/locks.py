"""Per-key asyncio locks shared by request handlers and the sweeper."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """Lazily created `asyncio.Lock` per key, dropped once nobody holds or waits on it.

    Usage:
        locks = KeyedLocks()
        async with locks.hold(f"id:{object_id}"):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
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


def id_key(object_id: str) -> str:
    return f"id:{object_id}"


def hash_key(content_hash: str) -> str:
    return f"hash:{content_hash}"
