"""
Shared configuration management for the learning portal access layer.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Hosted backend (Supabase)
    supabase_url: str = Field(default="http://localhost:54321")
    supabase_anon_key: str = Field(default="")
    supabase_jwt_secret: Optional[str] = Field(default=None)

    # Provider reads
    provider_timeout_seconds: float = Field(default=5.0, gt=0)
    provider_retry_attempts: int = Field(default=2, ge=1)

    # Provider cache
    cache_enabled: bool = Field(default=False)
    redis_url: str = Field(default="redis://localhost:6379/0")
    cache_ttl_seconds: int = Field(default=60, ge=1)

    # Entitlements
    free_features: Optional[List[str]] = Field(default=None)
    premium_duration_days: int = Field(default=365, ge=1)

    # Route guard targets
    sign_in_path: str = Field(default="/auth")
    upgrade_path: str = Field(default="/subscriptions")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
