"""
Shared utilities for the Redis cache plugin.

This package aggregates common building blocks consumed by the cache:

- config: Cache configuration via pydantic-settings
- logging: Structured logging with structlog
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- test_helpers: Fixtures and awaiting helpers for the test suites

Do not import from service_cache into shared/.
"""
