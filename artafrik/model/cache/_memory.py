# model/cache/_memory.py
from __future__ import annotations
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local expiring string cache. No locks: concurrent misses
    simply both refill, last write wins."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._entries[key] = (value, self.clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)
