import asyncio
from contextlib import asynccontextmanager


class _Entry:
    __slots__ = ("lock", "owner", "depth", "waiters")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.owner: asyncio.Task | None = None
        self.depth = 0
        self.waiters = 0


class KeyedLocks:
    """Per-key asyncio locks, re-entrant for the task that holds them.

    Entries are dropped once nobody holds or waits on them, so the registry
    does not grow with the number of videos ever seen.
    """

    def __init__(self):
        self._entries: dict[str, _Entry] = {}

    def is_held(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.owner is not None

    @asynccontextmanager
    async def hold(self, key: str):
        task = asyncio.current_task()
        entry = self._entries.get(key)
        if entry is not None and entry.owner is task:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.waiters += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            entry.waiters -= 1
            self._discard_if_idle(key, entry)
            raise
        entry.waiters -= 1
        entry.owner = task
        entry.depth = 1
        try:
            yield
        finally:
            entry.owner = None
            entry.depth = 0
            entry.lock.release()
            self._discard_if_idle(key, entry)

    def _discard_if_idle(self, key: str, entry: _Entry) -> None:
        if entry.waiters == 0 and entry.owner is None and self._entries.get(key) is entry:
            del self._entries[key]


# Serializes finalization, transitions and progress publication per video id
video_locks = KeyedLocks()
