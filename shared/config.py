"""
Shared configuration management for the DataLoader layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATALOADER_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/app")

    # Key-value cache
    cache_namespace: str = Field(default="dataloader")
    cache_operation_timeout: float = Field(default=5.0, gt=0)
    cache_health_timeout: float = Field(default=2.0, gt=0)
    cache_failure_threshold: int = Field(default=5, ge=1)
    cache_recovery_timeout: float = Field(default=30.0, ge=0)

    # Backing store
    fetch_timeout: float = Field(default=5.0, gt=0)

    # Per-entity loader overrides (YAML)
    loader_config_file: Optional[str] = Field(default=None)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
