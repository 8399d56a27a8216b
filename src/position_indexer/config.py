"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
position indexer, loading and validating environment variables at startup.
A missing chain endpoint or contract address fails validation here, so the
process never starts with an unusable configuration.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Uniswap v4 PositionManager deployment height on Base.
DEFAULT_DEPLOYMENT_BLOCK = 14_506_421


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string (block cache and broadcast channel)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Blockchain RPC and contract settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        alias="CHAIN_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    position_manager_address: str = Field(
        alias="CHAIN_POSITION_MANAGER_ADDRESS",
        description="Position-NFT contract emitting Transfer events",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side RPC rate limit",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("position_manager_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not _ADDRESS_RE.match(v):
            raise ValueError("CHAIN_POSITION_MANAGER_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v.lower()


class IndexerSettings(BaseSettings):
    """Historical crawl and live watcher settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    chunk_size_blocks: int = Field(
        default=2000,
        alias="INDEXER_CHUNK_SIZE_BLOCKS",
        ge=1,
        le=100_000,
        description="Block window size for eth_getLogs scans",
    )
    deployment_block: int = Field(
        default=DEFAULT_DEPLOYMENT_BLOCK,
        alias="INDEXER_DEPLOYMENT_BLOCK",
        ge=0,
        description="Height the historical backfill starts from",
    )
    enable_realtime: bool = Field(
        default=True,
        alias="INDEXER_ENABLE_REALTIME",
        description="Run the live block watcher",
    )
    enable_historical_sync: bool = Field(
        default=False,
        alias="INDEXER_ENABLE_HISTORICAL_SYNC",
        description="Run the chunked historical crawler",
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        alias="INDEXER_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=300.0,
        description="How often the watcher polls for a new head",
    )
    confirmations: int = Field(
        default=0,
        alias="INDEXER_CONFIRMATIONS",
        ge=0,
        le=1000,
        description="Only process blocks at least this many blocks below the head",
    )
    max_range_attempts: int = Field(
        default=5,
        alias="INDEXER_MAX_RANGE_ATTEMPTS",
        ge=1,
        le=50,
        description="Attempts per block range before the range is reported as failed",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        alias="INDEXER_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=300.0,
        description="Initial backoff between range attempts (doubles per attempt)",
    )


class BroadcastSettings(BaseSettings):
    """Live user-action notification settings."""

    model_config = SettingsConfigDict(env_prefix="BROADCAST_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="BROADCAST_ENABLED",
    )
    channel: str = Field(
        default="dna:user_actions",
        alias="BROADCAST_CHANNEL",
        min_length=1,
    )


class Settings(BaseSettings):
    """Main application settings.

    Example:
        ```python
        from position_indexer.config import get_settings

        settings = get_settings()
        print(settings.chain.rpc_url)
        print(settings.indexer.chunk_size_blocks)
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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    broadcast: BroadcastSettings = Field(
        default_factory=lambda: BroadcastSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
                "position_manager_address": self.chain.position_manager_address,
            },
            "indexer": {
                "chunk_size_blocks": str(self.indexer.chunk_size_blocks),
                "deployment_block": str(self.indexer.deployment_block),
                "enable_realtime": str(self.indexer.enable_realtime),
                "enable_historical_sync": str(self.indexer.enable_historical_sync),
                "confirmations": str(self.indexer.confirmations),
            },
            "broadcast": {
                "enabled": str(self.broadcast.enabled),
                "channel": self.broadcast.channel,
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Mask credentials embedded in a URL (user:password@ or an API-key path)."""
        redacted = re.sub(r"//([^:/@]+):([^@]+)@", r"//\1:***@", url)
        # Hosted RPC providers put the API key in the last path segment.
        return re.sub(r"/(v\d+/)?[A-Za-z0-9_-]{24,}$", r"/\1***", redacted)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        pydantic.ValidationError: If required variables are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
