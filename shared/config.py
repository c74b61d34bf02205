"""
Shared configuration management for the rate-limiting core.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RATELIMIT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")


class RateLimitSettings(BaseConfig):
    """Numeric knobs for one limiter configuration."""

    limiter_name: str = Field(default="default")
    algorithm: Literal["token_bucket", "windowed"] = Field(default="token_bucket")

    # Token bucket
    limit: int = Field(default=25, gt=0)
    increment: int = Field(default=1, gt=0)
    tick_interval_ms: Optional[int] = Field(default=None, gt=0)
    policy: Literal["strict", "clamped"] = Field(default="strict")
    eviction_interval_ms: Optional[int] = Field(default=None, gt=0)
    evict_on_schedule: bool = Field(default=True)

    # Windowed counter
    window_limit: int = Field(default=20, gt=0)
    window_ms: int = Field(default=5000, ge=0)

    # Façade
    key_path: str = Field(default="ip", min_length=1)


def get_settings(**overrides) -> RateLimitSettings:
    """Load settings from the environment, applying explicit overrides."""
    return RateLimitSettings(**overrides)
