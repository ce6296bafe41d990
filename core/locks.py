"""
Registrar - Keyed Locks

Per-aggregate serialization for the command pipeline. Two commands that
mutate the same aggregate id hold the same lock for the whole
load-mutate-persist section; commands on different ids never contend.

Locks are reference counted and dropped once no holder or waiter remains,
so the table does not grow with the number of aggregates ever touched.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Iterable, List


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.refs = 0


class KeyedLock:
    """
    A family of asyncio locks addressed by key.

    Usage:
        locks = KeyedLock()

        async with locks.acquire("student:S1", "offering:O7"):
            ...  # both keys held

    Multiple keys are always taken in sorted order to avoid lock-order
    deadlocks between commands that touch overlapping key sets.
    """

    def __init__(self) -> None:
        self._entries: Dict[Hashable, _Entry] = {}

    def _checkout(self, key: Hashable) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.refs += 1
        return entry

    def _checkin(self, key: Hashable) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.refs -= 1
        if entry.refs <= 0:
            del self._entries[key]

    def is_locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def acquire(self, *keys: Hashable) -> AsyncIterator[None]:
        """Hold every key for the duration of the block."""
        ordered: List[Hashable] = sorted(set(keys), key=repr)
        held: List[Hashable] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                try:
                    await entry.lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                held.append(key)
            yield
        finally:
            for key in reversed(held):
                self._entries[key].lock.release()
                self._checkin(key)


def lock_keys(prefix: str, ids: Iterable[str]) -> List[str]:
    """Namespace aggregate ids so different aggregate types never collide."""
    return [f"{prefix}:{i}" for i in ids]
