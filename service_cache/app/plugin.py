"""
Host integration for the Redis cache.

The plugin owns the cache lifecycle. Frameworks call ``start``/``stop``
directly, or FastAPI applications pass ``plugin.lifespan`` to the app and
call ``install`` to expose the cache on ``app.state.cache``.
"""

from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shared.config import CacheConfig, get_config
from shared.errors import CacheException, StorageUnavailableError
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector

from .cache.api import Cache
from .cache.storage import RedisStore


class RedisCachePlugin:
    """Lifecycle hooks around a single Cache instance."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        client: Optional[redis.Redis] = None,
        configure_logs: bool = False,
    ):
        self.config = config or get_config()
        self.logger = get_logger("cache.plugin")
        self.metrics = get_metrics_collector(self.config.service_name)

        if configure_logs:
            configure_logging(self.config.service_name, self.config.log_level)

        self.store = RedisStore(
            client,
            redis_url=self.config.redis_url,
            socket_timeout=self.config.socket_timeout,
            socket_connect_timeout=self.config.socket_connect_timeout,
            health_check_interval=self.config.health_check_interval
        )
        self.cache = Cache(
            self.store,
            namespace=self.config.namespace,
            default_ttl=self.config.default_ttl,
            metrics=self.metrics
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> Cache:
        """Connect the cache; safe to call more than once."""
        if not self._started:
            await self.cache.start()
            self._started = True
            self.logger.info("Cache plugin started", namespace=self.config.namespace)
        return self.cache

    async def stop(self):
        if self._started:
            await self.cache.stop()
            self._started = False
            self.logger.info("Cache plugin stopped")

    async def reload(self, config: Optional[CacheConfig] = None):
        """Re-establish the connection, optionally picking up new settings."""
        if config is not None:
            self.config = config
            self.store.redis_url = config.redis_url
            self.store.socket_timeout = config.socket_timeout
            self.store.socket_connect_timeout = config.socket_connect_timeout
            self.store.health_check_interval = config.health_check_interval
            self.cache.default_ttl = Cache._normalize_ttl(config.default_ttl)

        await self.cache.reload()
        self._started = True
        self.logger.info("Cache plugin reloaded", redis_url=self.config.redis_url)

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        await self.start()
        try:
            yield
        finally:
            await self.stop()

    def install(self, app: FastAPI) -> FastAPI:
        """Expose the cache on the app and map cache errors to responses."""
        app.state.cache = self.cache
        app.state.cache_plugin = self

        @app.exception_handler(CacheException)
        async def cache_exception_handler(request: Request, exc: CacheException):
            self.logger.error(
                "Cache error",
                code=exc.code,
                message=exc.message,
                details=exc.details
            )
            status_code = 503 if isinstance(exc, StorageUnavailableError) else 400
            return JSONResponse(
                status_code=status_code,
                content=exc.to_response().model_dump()
            )

        @app.get("/health/cache")
        async def cache_health():
            """Cache health endpoint."""
            healthy = await self.cache.health_check()
            body = {"service": self.config.service_name, "status": "ok" if healthy else "error"}
            if not healthy:
                return JSONResponse(status_code=503, content=body)
            body["stats"] = await self.cache.get_stats()
            return body

        return app


def create_app(plugin: Optional[RedisCachePlugin] = None) -> FastAPI:
    """Build a FastAPI application hosting the cache plugin."""
    plugin = plugin or RedisCachePlugin(configure_logs=True)
    app = FastAPI(
        title="Cache Service",
        description="Redis cache plugin host",
        version="1.0.0",
        lifespan=plugin.lifespan,
    )
    return plugin.install(app)
