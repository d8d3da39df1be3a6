"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Xylkit indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_SUPPORTED_DATABASE_SCHEMES = (
    "postgresql://",
    "postgresql+asyncpg://",
    "sqlite://",
    "sqlite+aiosqlite://",
)


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./data/xylkit.db",
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(_SUPPORTED_DATABASE_SCHEMES):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional RPC cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class MovementSettings(BaseSettings):
    """Movement (Aptos-compatible) full-node REST API settings."""

    model_config = SettingsConfigDict(env_prefix="MOVEMENT_", extra="ignore")

    rpc_url: str = Field(
        default="https://aptos.testnet.porto.movementlabs.xyz/v1",
        alias="MOVEMENT_RPC_URL",
        description="Primary full-node REST endpoint (including the /v1 suffix)",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="MOVEMENT_FALLBACK_RPC_URL",
        description="Fallback full-node REST endpoint",
    )
    network: str = Field(
        default="movement-testnet",
        alias="MOVEMENT_NETWORK",
        description="Network label stored on registered deployments",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="MOVEMENT_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Client-side rate limit for REST calls",
    )
    max_retries: int = Field(
        default=3,
        alias="MOVEMENT_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retry attempts per endpoint for transient failures",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="MOVEMENT_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        description="HTTP timeout for a single REST call",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class SyncSettings(BaseSettings):
    """Synchronization engine settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    cooldown_seconds: int = Field(
        default=30,
        alias="SYNC_COOLDOWN_SECONDS",
        ge=0,
        le=3600,
        description="Minimum interval between completed sync runs of a deployment",
    )
    batch_size: int = Field(
        default=100,
        alias="SYNC_BATCH_SIZE",
        ge=1,
        le=100,
        description="Transactions scanned per sync run (REST API caps pages at 100)",
    )
    discovery_batch_size: int = Field(
        default=100,
        alias="SYNC_DISCOVERY_BATCH_SIZE",
        ge=1,
        le=100,
        description="User transactions scanned per discovery run",
    )
    start_version_margin: int = Field(
        default=10,
        alias="SYNC_START_VERSION_MARGIN",
        ge=0,
        description="Versions to back off from a deployment's oldest transaction when seeding its cursor",
    )
    known_deployments: str = Field(
        default="",
        alias="SYNC_KNOWN_DEPLOYMENTS",
        description="Comma-separated deployment addresses registered at bootstrap",
    )

    @property
    def known_deployment_addresses(self) -> list[str]:
        return [a.strip() for a in self.known_deployments.split(",") if a.strip()]


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from xylkit_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.cooldown_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    movement: MovementSettings = Field(
        default_factory=lambda: MovementSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "movement": {
                "rpc_url": self.movement.rpc_url,
                "fallback_rpc_url": self.movement.fallback_rpc_url or "(not set)",
                "network": self.movement.network,
            },
            "sync": {
                "cooldown_seconds": str(self.sync.cooldown_seconds),
                "batch_size": str(self.sync.batch_size),
                "discovery_batch_size": str(self.sync.discovery_batch_size),
                "known_deployments": str(len(self.sync.known_deployment_addresses)),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
