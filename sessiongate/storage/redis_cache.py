from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for persisted session flags."""

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _flag_key(key: str) -> str:
        return f"sessiongate:flag:{key}"

    async def get_flag(self, key: str) -> bool:
        return (await self.client.get(self._flag_key(key))) == "true"

    async def set_flag(self, key: str, value: bool) -> None:
        # A single SET/DEL keeps the write atomic with respect to readers
        if value:
            await self.client.set(self._flag_key(key), "true")
        else:
            await self.client.delete(self._flag_key(key))

    async def delete_flag(self, key: str) -> None:
        await self.client.delete(self._flag_key(key))

    async def close(self) -> None:
        await self.client.aclose()
