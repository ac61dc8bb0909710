"""Keyed exclusive sections.

One asyncio lock per key, created on first use and dropped once nobody holds
or waits for it, so memory stays bounded by the number of keys in use.

Example:
    locks = KeyedLock()

    async with locks.hold(domain_id):
        ...  # single writer for this domain

    async with locks.hold(original_id, custom_id):
        ...  # both keys, acquired in sorted order
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLock:
    """Exclusive sections keyed by string, without a global lock."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    async def _acquire(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._forget(key, entry)
            raise

    def _release(self, key: str) -> None:
        entry = self._entries[key]
        entry.lock.release()
        self._forget(key, entry)

    def _forget(self, key: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users == 0:
            self._entries.pop(key, None)

    @contextlib.asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Hold the exclusive section for every key.

        Keys are de-duplicated and acquired in sorted order so that two
        callers holding overlapping key sets cannot deadlock.
        """
        ordered = sorted(set(keys))
        acquired: list[str] = []
        try:
            for key in ordered:
                await self._acquire(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
