"""
Shared configuration management for the caching proxy.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PROXY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Upstream
    upstream_base_url: str = Field(default="https://bitcoinexplorer.org/api")
    upstream_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    forward_query_string: bool = Field(default=False)

    # Cache
    cache_root: str = Field(default="./cache")
    cache_ttl_ms: int = Field(default=60 * 60 * 1000, gt=0)
    sweep_interval_seconds: float = Field(default=0, ge=0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "proxy"
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)


def get_config(**overrides) -> ServiceConfig:
    """Get configuration for the proxy service.

    Keyword overrides take precedence over the environment, which is how
    tests and the CLI pin a cache root or upstream.
    """
    return ServiceConfig(**overrides)
