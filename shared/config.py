"""
Shared configuration management for the Redis cache plugin.
"""

from typing import Any, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # External services
    redis_url: str = "redis://localhost:6379/0"


class CacheConfig(BaseConfig):
    """Cache-specific configuration."""

    service_name: str = "cache"

    # Keys are stored as "<namespace>:<key>"; empty namespace uses the whole db
    namespace: str = "cache"
    default_ttl: Optional[int] = Field(default=None, gt=0)

    # Redis connection
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    health_check_interval: int = 30


def get_config(**overrides: Any) -> CacheConfig:
    """Get configuration for the cache plugin."""
    return CacheConfig(**overrides)
