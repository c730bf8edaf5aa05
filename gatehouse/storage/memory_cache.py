from __future__ import annotations

import fnmatch
import threading
from collections import OrderedDict
from typing import Any, Optional

from gatehouse.service.clock import Clock, SystemClock


class MemoryCacheStore:
    """Process-local TTL cache with the same async surface as ``RedisCache``.

    Entries are evicted lazily on read and, once ``max_entries`` is reached,
    oldest-inserted first.
    """

    def __init__(self, clock: Optional[Clock] = None, *, max_entries: int = 10000):
        self.clock = clock or SystemClock()
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def get_json(self, key: str) -> Optional[Any]:
        now = self.clock.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            return value

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        expires_at = self.clock.time() + max(1, ttl_seconds)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (value, expires_at)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern (``*`` wildcard)."""
        with self._lock:
            doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in doomed:
                self._entries.pop(key, None)
        return len(doomed)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
