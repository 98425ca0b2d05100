import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class PathLocks:
    """In-process advisory locks keyed by canonical path.

    Locks for several paths are always taken in sorted order, so an ancestor
    is locked before any of its descendants and two holders can never wait on
    each other. Entries are dropped once nobody holds or waits for them.
    """

    def __init__(self):
        self._entries: Dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, *paths: str):
        keys = sorted(set(paths))
        acquired = []
        try:
            for key in keys:
                entry = self._entries.get(key)
                if entry is None:
                    entry = self._entries[key] = _LockEntry()
                entry.users += 1
                try:
                    await entry.lock.acquire()
                except BaseException:
                    self._release_entry(key, entry, locked=False)
                    raise
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                self._release_entry(key, entry, locked=True)

    def _release_entry(self, key: str, entry: _LockEntry, locked: bool):
        if locked:
            entry.lock.release()
        entry.users -= 1
        if entry.users == 0:
            del self._entries[key]

    def is_locked(self, path: str) -> bool:
        entry = self._entries.get(path)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
