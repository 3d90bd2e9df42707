from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple


class MemoryCache:
    """Process-local stand-in for Redis with the same awaitable surface.

    Used in tests and single-process development when Redis is unreachable.
    A plain ``threading.Lock`` guards the map because callers may reach it
    from worker threads as well as the event loop; no method awaits while
    holding it.
    """

    def __init__(self, *, max_entries: int = 100_000) -> None:
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self.max_entries = max_entries

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (_, exp) in self._entries.items() if exp <= now]
        for key in expired:
            self._entries.pop(key, None)

    def _make_room(self, key: str, now: float) -> None:
        if key in self._entries or len(self._entries) < self.max_entries:
            return
        self._evict_expired(now)
        if len(self._entries) >= self.max_entries:
            oldest = min(self._entries.items(), key=lambda item: item[1][1])[0]
            self._entries.pop(oldest, None)

    async def get(self, key: str) -> Optional[str]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires = entry
            if expires <= now:
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = time.monotonic()
        with self._lock:
            self._make_room(key, now)
            self._entries[key] = (value, now + max(1, int(ttl_seconds)))

    async def set_nx(self, key: str, value: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[1] > now:
                return False
            self._make_room(key, now)
            self._entries[key] = (value, now + max(1, int(ttl_seconds)))
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or entry[1] <= now:
            return None
        return entry[0]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
