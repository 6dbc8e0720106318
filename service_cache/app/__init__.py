"""
Redis cache plugin package.

This package provides a typed key/value cache over Redis for in-process
consumers. It provides:

- app.cache: Codec, Redis store, single-flight coordinator and the Cache facade.
- app.plugin: Lifecycle hooks and FastAPI wiring for hosting the cache.

Guidelines:
- Reads never wait on in-flight computations; only get_or_else does.
- Absent and mismatched values are not errors; connectivity failures are.
"""
