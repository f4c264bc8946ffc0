"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Bitredict sync pipeline, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _check_address(v: str) -> str:
    if not (v.startswith("0x") and len(v) == 42):
        raise ValueError("Contract address must be a 0x-prefixed 20-byte hex string")
    return v


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_max: int = Field(
        default=5,
        alias="DB_POOL_MAX",
        ge=1,
        le=100,
        description="Connection pool size (raise to 7 if utilization stays above 80%)",
    )
    statement_timeout_ms: int = Field(
        default=30_000,
        alias="DB_STATEMENT_TIMEOUT_MS",
        ge=0,
        le=600_000,
        description="Per-statement timeout applied to every PostgreSQL session",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """Chain RPC and contract address settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://dream-rpc.somnia.network",
        alias="CHAIN_RPC_URL",
        description="Chain RPC endpoint",
    )
    private_key: SecretStr | None = Field(
        default=None,
        alias="CHAIN_PRIVATE_KEY",
        description="Publisher key for the downstream data stream (never used to send transactions)",
    )
    pool_core_address: str = Field(
        alias="CHAIN_POOL_CORE_ADDRESS",
        description="Pool core contract address",
    )
    oddyssey_address: str = Field(
        alias="CHAIN_ODDYSSEY_ADDRESS",
        description="Oddyssey contract address",
    )
    combo_pools_address: str | None = Field(
        default=None,
        alias="CHAIN_COMBO_POOLS_ADDRESS",
        description="Combo pools contract address (reputation events only)",
    )
    boost_system_address: str | None = Field(
        default=None,
        alias="CHAIN_BOOST_SYSTEM_ADDRESS",
        description="Boost system contract address (PoolBoosted events); defaults to pool core",
    )
    poll_interval_ms: int = Field(
        default=2000,
        alias="CHAIN_POLL_INTERVAL_MS",
        ge=100,
        le=60_000,
        description="How often log subscriptions poll for new blocks",
    )
    request_timeout_s: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_S",
        gt=0,
        le=300,
        description="Timeout for a single RPC request",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Client-side RPC rate limit",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("pool_core_address", "oddyssey_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate contract address format."""
        return _check_address(v)

    @field_validator("combo_pools_address", "boost_system_address")
    @classmethod
    def validate_optional_address(cls, v: str | None) -> str | None:
        if not v:
            return None
        return _check_address(v)


class SyncSettings(BaseSettings):
    """Event sync, retry and reconciliation settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    max_retries: int = Field(
        default=3,
        alias="SYNC_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries after a transient handler failure",
    )
    retry_delay_ms: int = Field(
        default=5000,
        alias="SYNC_RETRY_DELAY_MS",
        ge=0,
        le=600_000,
        description="Base retry delay; doubles with each attempt",
    )
    fallback_interval_ms: int = Field(
        default=300_000,
        alias="SYNC_FALLBACK_INTERVAL_MS",
        ge=1000,
        le=24 * 3600 * 1000,
        description="Reconciler cadence",
    )
    lookback_blocks: int = Field(
        default=1000,
        alias="SYNC_LOOKBACK_BLOCKS",
        ge=1,
        le=1_000_000,
        description="Block window replayed by the reconciler on every tick",
    )
    query_chunk_blocks: int = Field(
        default=900,
        alias="SYNC_QUERY_CHUNK_BLOCKS",
        ge=1,
        le=900,
        description="Maximum block span of a single eth_getLogs request",
    )
    audit_pool_limit: int = Field(
        default=10,
        alias="SYNC_AUDIT_POOL_LIMIT",
        ge=1,
        le=1000,
        description="Active pools checked per reconciler tick",
    )
    shutdown_grace_s: float = Field(
        default=10.0,
        alias="SYNC_SHUTDOWN_GRACE_S",
        ge=0,
        le=300,
        description="How long shutdown waits for in-flight handlers",
    )
    sink_timeout_s: float = Field(
        default=30.0,
        alias="SYNC_SINK_TIMEOUT_S",
        gt=0,
        le=300,
        description="Timeout applied to each handler attempt and each sink call",
    )


class BroadcastSettings(BaseSettings):
    """Push-socket broadcaster settings."""

    model_config = SettingsConfigDict(env_prefix="BROADCAST_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="BROADCAST_ENABLED",
        description="Serve the channel broadcast socket",
    )
    host: str = Field(
        default="0.0.0.0",
        alias="BROADCAST_HOST",
        description="Bind address",
    )
    port: int = Field(
        default=8765,
        alias="BROADCAST_PORT",
        ge=1,
        le=65535,
        description="Bind port",
    )
    path: str = Field(
        default="/ws",
        alias="BROADCAST_PATH",
        description="Request path accepted for socket upgrades",
    )


class StreamsSettings(BaseSettings):
    """Downstream data-stream publisher settings."""

    model_config = SettingsConfigDict(env_prefix="STREAMS_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="STREAMS_ENABLED",
        description="Publish enriched records to the data stream",
    )
    key_prefix: str = Field(
        default="",
        alias="STREAMS_KEY_PREFIX",
        description="Optional prefix for stream keys",
    )
    maxlen: int = Field(
        default=10_000,
        alias="STREAMS_MAXLEN",
        ge=100,
        le=10_000_000,
        description="Approximate max length of each stream",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from bitredict_sync.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.lookback_blocks)
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
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
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
    streams: StreamsSettings = Field(
        default_factory=lambda: StreamsSettings(
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
            "redis_url": self._redact_url(self.redis.url),
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "private_key": "(set)" if self.chain.private_key else "(not set)",
                "pool_core_address": self.chain.pool_core_address,
                "oddyssey_address": self.chain.oddyssey_address,
                "combo_pools_address": self.chain.combo_pools_address or "(not set)",
                "boost_system_address": self.chain.boost_system_address or "(not set)",
            },
            "sync": {
                "max_retries": str(self.sync.max_retries),
                "retry_delay_ms": str(self.sync.retry_delay_ms),
                "fallback_interval_ms": str(self.sync.fallback_interval_ms),
                "lookback_blocks": str(self.sync.lookback_blocks),
                "query_chunk_blocks": str(self.sync.query_chunk_blocks),
            },
            "db": {
                "pool_max": str(self.database.pool_max),
                "statement_timeout_ms": str(self.database.statement_timeout_ms),
            },
            "broadcast_enabled": str(self.broadcast.enabled),
            "streams_enabled": str(self.streams.enabled),
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
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
