from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis


def blacklist_key(token: str) -> str:
    """Blacklist keys hash the token so raw credentials never sit in Redis."""

    return f"blacklist:{hashlib.sha256(token.encode()).hexdigest()}"


class RedisCache:
    """Thin async Redis wrapper used as the key-value store."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and first-hit EXPIRE in one round trip so concurrent callers cannot
    # leave a counter without a TTL.
    _INCR_WITH_TTL_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set(self, key: str, value: str) -> None:
        await self.client.set(key, value)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def atomic_increment(self, key: str, ttl_seconds: int) -> int:
        """Increment ``key``; the TTL is applied only on the first increment."""
        count = await self._incr_with_ttl(keys=[key], args=[max(1, int(ttl_seconds))])
        return int(count)

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.set_with_ttl(blacklist_key(token), "1", ttl_seconds)

    async def is_blacklisted(self, token: str) -> bool:
        return bool(await self.client.exists(blacklist_key(token)))

    async def close(self) -> None:
        await self.client.aclose()
