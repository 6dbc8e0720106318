"""
Cache facade: typed get/set/remove/get_or_else over the Redis store.
"""

import math
from datetime import timedelta
from typing import Any, Dict, Optional, Union

from shared.errors import SerializationError, StorageUnavailableError, ValidationError
from shared.logging import get_logger, set_namespace
from shared.metrics import MetricsCollector, get_metrics_collector

from . import codec
from .models import NOT_FOUND, CacheEntry, Kind
from .single_flight import Compute, SingleFlight, discard_compute
from .storage import RedisStore

Ttl = Union[int, float, timedelta, None]


class Cache:
    """Typed key/value cache with expiration and single-flight misses."""

    def __init__(
        self,
        store: RedisStore,
        *,
        namespace: str = "cache",
        default_ttl: Optional[int] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.namespace = namespace
        self.default_ttl = self._normalize_ttl(default_ttl)
        self.logger = get_logger("cache.api")
        self.metrics = metrics or get_metrics_collector(namespace or "cache")
        self.single_flight = SingleFlight(namespace or "default", metrics=self.metrics)
        # Bumped by invalidate so computations started before it never store
        self._epoch = 0

    async def start(self):
        await self.store.start()
        self.logger.info("Cache started", namespace=self.namespace)

    async def stop(self):
        await self.store.stop()
        self.logger.info("Cache stopped", namespace=self.namespace)

    async def reload(self):
        """Reconnect to the backing store; stored entries are kept."""
        await self.store.reload()
        self.logger.info("Cache reloaded", namespace=self.namespace)

    async def get(self, key: str, kind: codec.Expected = None) -> Optional[Any]:
        """Get a live value of a compatible kind, or None."""
        value = await self._lookup(key, kind)
        return None if value is NOT_FOUND else value

    async def set(self, key: str, value: Any, ttl: Ttl = None, *, kind: Optional[Kind] = None) -> bool:
        """Store a value; ``ttl`` seconds overrides the default expiration."""
        set_namespace(self.namespace)
        payload = codec.encode(value, kind)
        ttl_seconds = self._normalize_ttl(ttl) if ttl is not None else self.default_ttl
        entry = CacheEntry.create(payload, ttl_seconds)

        with self.metrics.time_operation("set"):
            stored = await self._guard(
                "set",
                self.store.raw_set(self._make_key(key), entry.to_bytes(), self._redis_ttl(ttl_seconds))
            )

        self.logger.debug("Cached value", key=key, ttl=ttl_seconds)
        return stored

    async def remove(self, key: str) -> bool:
        """Delete an entry, returning whether it existed."""
        with self.metrics.time_operation("remove"):
            removed = await self._guard("remove", self.store.raw_delete(self._make_key(key)))
        self.logger.debug("Removed value", key=key, removed=bool(removed))
        return bool(removed)

    async def exists(self, key: str) -> bool:
        """Check for a live entry of any kind."""
        return await self._read_entry(key) is not None

    async def get_or_else(
        self,
        key: str,
        compute: Compute,
        kind: codec.Expected = None,
        *,
        ttl: Ttl = None,
    ) -> Any:
        """Return the cached value, computing and storing it once on a miss.

        Concurrent misses on the same key share a single call to ``compute``.
        A failure of ``compute`` is raised to every waiter and nothing is
        stored. The computed value is stored without expiration unless
        ``ttl`` is given, and must decode as ``kind`` when one is requested.
        """
        cached = await self._lookup(key, kind)
        if cached is not NOT_FOUND:
            discard_compute(compute)
            return cached

        ttl_seconds = self._normalize_ttl(ttl) if ttl is not None else None

        async def lookup():
            return await self._lookup(key, kind, record=False)

        epoch = self._epoch

        async def store(value):
            await self._store_computed(key, value, kind, ttl_seconds, epoch)

        return await self.single_flight.do(key, compute, lookup=lookup, store=store)

    async def invalidate(self) -> int:
        """Delete every entry of the namespace and forget in-flight computations."""
        self._epoch += 1
        self.single_flight.forget()
        if self.namespace:
            removed = await self._guard("invalidate", self.store.raw_flush(f"{self.namespace}:*"))
        else:
            removed = await self._guard("invalidate", self.store.raw_flush())
        self.logger.info("Cache invalidated", namespace=self.namespace, removed=removed)
        return removed

    async def health_check(self) -> bool:
        return await self.store.health_check()

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        pattern = f"{self.namespace}:*" if self.namespace else "*"
        keys = await self._guard("stats", self.store.raw_keys(pattern))
        hits = self.metrics.sample("cache_hits_total")
        misses = self.metrics.sample("cache_misses_total")
        total = hits + misses

        return {
            "namespace": self.namespace,
            "keys": len(keys),
            "hits": int(hits),
            "misses": int(misses),
            "hit_rate": hits / total if total else 0.0,
            "in_flight": len(self.single_flight),
        }

    def _make_key(self, key: str) -> str:
        if not key:
            raise ValidationError("Cache key must not be empty")
        return f"{self.namespace}:{key}" if self.namespace else key

    async def _read_entry(self, key: str) -> Optional[CacheEntry]:
        redis_key = self._make_key(key)
        with self.metrics.time_operation("get"):
            data = await self._guard("get", self.store.raw_get(redis_key))
        if data is None:
            return None

        entry = CacheEntry.from_bytes(data)
        if entry is None:
            self.logger.debug("Malformed cache entry", key=key)
            return None

        if entry.is_expired():
            # Redis has not evicted it yet
            await self._guard("get", self.store.raw_delete(redis_key))
            self.logger.debug("Expired entry dropped", key=key)
            return None

        return entry

    async def _lookup(self, key: str, kind: codec.Expected, record: bool = True) -> Any:
        set_namespace(self.namespace)
        entry = await self._read_entry(key)
        value = NOT_FOUND if entry is None else codec.decode(entry.payload, kind)

        if record:
            if value is NOT_FOUND:
                self.metrics.record_miss()
                self.logger.debug("Cache miss", key=key)
            else:
                self.metrics.record_hit()
                self.logger.debug("Cache hit", key=key)
        return value

    async def _store_computed(
        self,
        key: str,
        value: Any,
        kind: codec.Expected,
        ttl_seconds: Optional[float],
        epoch: int,
    ):
        payload = codec.encode(value, kind if isinstance(kind, Kind) else None)
        # A value later reads would not accept must not be returned or stored
        if kind is not None and codec.decode(payload, kind) is NOT_FOUND:
            raise SerializationError(
                f"Computed {type(value).__name__} does not match requested kind",
                {"key": key, "type": type(value).__name__}
            )

        if epoch != self._epoch:
            self.logger.debug("Computed value dropped after invalidate", key=key)
            return

        entry = CacheEntry.create(payload, ttl_seconds)
        await self._guard(
            "set",
            self.store.raw_set(self._make_key(key), entry.to_bytes(), self._redis_ttl(ttl_seconds))
        )
        self.logger.debug("Stored computed value", key=key, ttl=ttl_seconds)

    async def _guard(self, operation: str, awaitable):
        try:
            return await awaitable
        except StorageUnavailableError:
            self.metrics.record_error(operation)
            raise

    @staticmethod
    def _normalize_ttl(ttl: Ttl) -> Optional[float]:
        if ttl is None:
            return None
        seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else ttl
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds <= 0:
            raise ValidationError("TTL must be a positive number of seconds", {"ttl": str(ttl)})
        return seconds

    @staticmethod
    def _redis_ttl(ttl_seconds: Optional[float]) -> Optional[int]:
        """Whole seconds for Redis, rounded up; the entry header keeps the exact time."""
        if ttl_seconds is None:
            return None
        return max(1, math.ceil(ttl_seconds))
