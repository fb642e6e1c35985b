"""In-process stand-in for Redis used under TEST_MODE / ALLOW_REDIS_FALLBACK_DEV.

Expiry is evaluated lazily against the injected clock, which lets tests move
time forward instead of sleeping.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from tokenforge.service.clock import Clock, system_clock
from tokenforge.storage.redis_cache import blacklist_key


class MemoryCache:
    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or system_clock
        self._entries: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock.now():
            self._entries.pop(key, None)
            return None
        return value

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = self.clock.now() + timedelta(seconds=max(1, int(ttl_seconds)))
        with self._lock:
            self._entries[key] = (value, expires_at)

    async def set(self, key: str, value: str) -> None:
        with self._lock:
            self._entries[key] = (value, None)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def atomic_increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            current = self._live_value(key)
            if current is None:
                expires_at = self.clock.now() + timedelta(seconds=max(1, int(ttl_seconds)))
                self._entries[key] = ("1", expires_at)
                return 1
            count = int(current) + 1
            self._entries[key] = (str(count), self._entries[key][1])
            return count

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.set_with_ttl(blacklist_key(token), "1", ttl_seconds)

    async def is_blacklisted(self, token: str) -> bool:
        return await self.get(blacklist_key(token)) is not None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
