"""
Redis-backed raw byte store used by the cache facade.
"""

from typing import Any, Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from shared.errors import StorageUnavailableError
from shared.logging import get_logger

# Failures that mean the store cannot be reached, as opposed to bad commands
UNAVAILABLE_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisStore:
    """Byte-oriented key/value store with TTL support on top of redis.asyncio.

    The store either owns its connection (built from ``redis_url`` on
    ``start``) or wraps a client handed in by the caller. Only owned
    connections are closed and rebuilt by ``stop`` and ``reload``.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        redis_url: Optional[str] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        if client is None and redis_url is None:
            raise ValueError("Either a Redis client or a redis_url is required")

        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.socket_connect_timeout = socket_connect_timeout
        self.health_check_interval = health_check_interval
        self.logger = get_logger("cache.storage")

        self._redis: Optional[redis.Redis] = client
        self._owns_client = client is None

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            raise StorageUnavailableError(
                "Redis store is not started",
                {"redis_url": self.redis_url}
            )
        return self._redis

    async def start(self):
        """Open the connection and verify it answers."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                socket_connect_timeout=self.socket_connect_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=self.health_check_interval
            )

        try:
            await self._redis.ping()
        except UNAVAILABLE_ERRORS as e:
            self.logger.warning("Redis store unreachable on start", error=str(e))
            if self._owns_client:
                await self._redis.aclose()
                self._redis = None
            raise StorageUnavailableError(str(e), {"operation": "start"}) from e

        self.logger.info("Redis store started", owns_client=self._owns_client)

    async def stop(self):
        """Close an owned connection."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis store stopped")

    async def reload(self):
        """Re-establish the connection; data in Redis is untouched."""
        await self.stop()
        await self.start()
        self.logger.info("Redis store reloaded")

    async def raw_get(self, key: str) -> Optional[bytes]:
        return await self._call("get", key)

    async def raw_set(self, key: str, data: bytes, ttl: Optional[int] = None) -> bool:
        """Store bytes, expiring after ``ttl`` seconds when given."""
        result = await self._call("set", key, data, ex=ttl)
        return bool(result)

    async def raw_delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._call("delete", *keys)

    async def raw_keys(self, pattern: str) -> Iterable[bytes]:
        return await self._call("keys", pattern)

    async def raw_flush(self, pattern: Optional[str] = None) -> int:
        """Delete keys matching ``pattern``, or the whole database when omitted."""
        if pattern is None:
            await self._call("flushdb")
            return 0

        keys = await self.raw_keys(pattern)
        if keys:
            return await self.raw_delete(*keys)
        return 0

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.client.ping()
            return True
        except (StorageUnavailableError, *UNAVAILABLE_ERRORS):
            return False

    async def _call(self, command: str, *args, **kwargs) -> Any:
        client = self.client
        try:
            return await getattr(client, command)(*args, **kwargs)
        except UNAVAILABLE_ERRORS as e:
            self.logger.warning("Redis command failed", command=command, error=str(e))
            raise StorageUnavailableError(str(e), {"operation": command}) from e
