from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

# Atomic get-and-delete for servers older than 6.2 (no GETDEL)
_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def ttl_seconds(expires_at: datetime) -> int:
    """Compute a safe TTL from an absolute expiry timestamp.

    Naive timestamps are treated as UTC. Clamped to at least one second so
    Redis never receives a zero or negative expiry.
    """

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


class RedisCache:
    """Thin async Redis wrapper for sessions and authorization codes."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set_nx(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Store ``value`` only when ``key`` is absent; True when it was written."""
        return bool(await self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        """Atomically get and delete ``key``; only one concurrent caller sees the value."""
        try:
            return await self.client.getdel(key)
        except ResponseError:
            # GETDEL unknown to this server; the Lua script is equally atomic
            return await self.client.eval(_GETDEL_SCRIPT, 1, key)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set_nx(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True))

    async def delete(self, key: str) -> None:
        self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        try:
            return self.client.getdel(key)
        except ResponseError:
            return self.client.eval(_GETDEL_SCRIPT, 1, key)

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def close(self) -> None:
        self.client.close()
