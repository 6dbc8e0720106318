"""
Tests for the cache plugin lifecycle and its FastAPI wiring.
"""

from unittest.mock import AsyncMock, patch

import fakeredis.aioredis
import httpx
import pytest
from fastapi import FastAPI
from redis.exceptions import ConnectionError as RedisConnectionError

from service_cache.app.plugin import RedisCachePlugin, create_app
from service_cache.app.cache.storage import RedisStore
from shared.config import get_config
from shared.errors import StorageUnavailableError


@pytest.fixture
def redis_client():
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def config():
    return get_config(namespace="plugin", default_ttl=120, redis_url="redis://cache-host:6379/1")


@pytest.fixture
def plugin(config, redis_client):
    return RedisCachePlugin(config, client=redis_client)


class TestRedisCachePlugin:
    """Lifecycle hooks."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, plugin):
        cache = await plugin.start()

        assert plugin.started is True
        assert cache is plugin.cache
        assert cache.namespace == "plugin"
        assert cache.default_ttl == 120

        await plugin.stop()
        assert plugin.started is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, plugin, redis_client):
        with patch.object(redis_client, "ping", new_callable=AsyncMock) as mock_ping:
            await plugin.start()
            await plugin.start()

        mock_ping.assert_called_once()

    @pytest.mark.asyncio
    async def test_reload_keeps_entries_and_applies_config(self, plugin, config):
        await plugin.start()
        await plugin.cache.set("k", "value")

        new_config = config.model_copy(update={"default_ttl": 30})
        await plugin.reload(new_config)

        assert plugin.cache.default_ttl == 30
        assert await plugin.cache.get("k", str) == "value"

    @pytest.mark.asyncio
    async def test_start_fails_when_redis_unreachable(self, plugin, redis_client):
        with patch.object(redis_client, "ping", new_callable=AsyncMock) as mock_ping:
            mock_ping.side_effect = RedisConnectionError("connection refused")

            with pytest.raises(StorageUnavailableError):
                await plugin.start()

        assert plugin.started is False


class TestRedisStore:
    """Connection ownership."""

    def test_requires_client_or_url(self):
        with pytest.raises(ValueError):
            RedisStore()

    @pytest.mark.asyncio
    async def test_unstarted_store_is_unavailable(self):
        store = RedisStore(redis_url="redis://localhost:6379/0")

        with pytest.raises(StorageUnavailableError):
            await store.raw_get("k")
        assert await store.health_check() is False

    @pytest.mark.asyncio
    async def test_owned_client_built_from_url(self, redis_client):
        store = RedisStore(redis_url="redis://cache-host:6379/1", socket_timeout=2.0)

        with patch("service_cache.app.cache.storage.redis.from_url", return_value=redis_client) as from_url:
            await store.start()

            from_url.assert_called_once()
            assert from_url.call_args.args == ("redis://cache-host:6379/1",)
            assert from_url.call_args.kwargs["socket_timeout"] == 2.0

            await store.reload()
            assert from_url.call_count == 2

            await store.stop()

        with pytest.raises(StorageUnavailableError):
            store.client

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self, redis_client):
        store = RedisStore(redis_client)
        await store.start()

        await store.stop()

        assert store.client is redis_client

    @pytest.mark.asyncio
    async def test_raw_operations(self, redis_client):
        store = RedisStore(redis_client)
        await store.start()

        assert await store.raw_set("a:1", b"one", 60) is True
        assert await store.raw_set("a:2", b"two", None) is True
        await redis_client.set("b:1", b"other")

        assert await store.raw_get("a:1") == b"one"
        assert sorted(await store.raw_keys("a:*")) == [b"a:1", b"a:2"]
        assert await store.raw_flush("a:*") == 2
        assert await store.raw_get("a:2") is None
        assert await store.raw_delete() == 0
        assert await store.raw_delete("b:1") == 1


class TestFastAPIWiring:
    """Plugin hosted by a FastAPI application."""

    @pytest.fixture
    def app(self, plugin):
        app = create_app(plugin)

        @app.get("/items/{key}")
        async def read_item(key: str):
            cache = app.state.cache
            return {"value": await cache.get_or_else(key, lambda: key.upper(), str)}

        return app

    @pytest.mark.asyncio
    async def test_lifespan_starts_and_stops_plugin(self, app, plugin):
        async with plugin.lifespan(app):
            assert plugin.started is True
            assert app.state.cache is plugin.cache
        assert plugin.started is False

    @pytest.mark.asyncio
    async def test_route_uses_cache(self, app, plugin):
        async with plugin.lifespan(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/items/abc")

            assert response.status_code == 200
            assert response.json() == {"value": "ABC"}
            assert await plugin.cache.get("abc", str) == "ABC"

    @pytest.mark.asyncio
    async def test_health_endpoint(self, app, plugin):
        async with plugin.lifespan(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/health/cache")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["stats"]["namespace"] == "plugin"

    @pytest.mark.asyncio
    async def test_storage_errors_map_to_503(self, app, plugin, redis_client):
        async with plugin.lifespan(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                with patch.object(redis_client, "get", new_callable=AsyncMock) as mock_get:
                    mock_get.side_effect = RedisConnectionError("connection refused")
                    response = await client.get("/items/abc")

        assert response.status_code == 503
        assert response.json()["code"] == "STORAGE_UNAVAILABLE"

    def test_create_app_registers_routes(self, plugin):
        app = create_app(plugin)

        assert isinstance(app, FastAPI)
        assert "/health/cache" in {route.path for route in app.routes}
