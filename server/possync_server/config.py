"""
Configuration management for the possync server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for DATA_DIR
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Host to bind to
        port: Port to listen on
        cors_origins: Allowed CORS origins ("*" allows any)
        max_batch_ops: Maximum envelopes accepted by one apply-batch request
    """

    host: str = "0.0.0.0"
    port: int = 8081
    cors_origins: tuple[str, ...] = ("*",)
    max_batch_ops: int = 500

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            max_batch_ops=int(os.getenv("MAX_BATCH_OPS", "500")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for per-store SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/possync"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -16000  # 16MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/possync"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-16000")),
        )


@dataclass(frozen=True)
class ApplierConfig:
    """Apply engine configuration.

    Attributes:
        max_parallel_groups: Entity groups of one batch applied concurrently
        default_store_id: Store used when a request carries no X-Store-ID
    """

    max_parallel_groups: int = 8
    default_store_id: str = "default"

    @classmethod
    def from_env(cls) -> ApplierConfig:
        """Load configuration from environment variables."""
        return cls(
            max_parallel_groups=int(os.getenv("APPLIER_MAX_PARALLEL_GROUPS", "8")),
            default_store_id=os.getenv("DEFAULT_STORE_ID", "default"),
        )


@dataclass(frozen=True)
class FeedConfig:
    """Change feed configuration.

    Attributes:
        queue_size: Per-subscriber buffer; a subscriber that falls this far
            behind is disconnected and must catch up
        catch_up_limit: Maximum change records per /v1/changes page
    """

    queue_size: int = 1000
    catch_up_limit: int = 500

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables."""
        return cls(
            queue_size=int(os.getenv("FEED_QUEUE_SIZE", "1000")),
            catch_up_limit=int(os.getenv("FEED_CATCH_UP_LIMIT", "500")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        http: HTTP API configuration
        storage: Local storage configuration
        applier: Apply engine configuration
        feed: Change feed configuration
        observability: Logging configuration
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    applier: ApplierConfig = field(default_factory=ApplierConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            http=HttpConfig.from_env(),
            storage=StorageConfig.from_env(),
            applier=ApplierConfig.from_env(),
            feed=FeedConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        errors = []
        if not 0 < self.http.port < 65536:
            errors.append(f"HTTP_PORT out of range: {self.http.port}")
        if not self.http.cors_origins:
            errors.append("CORS_ORIGINS must list at least one origin")
        if self.http.max_batch_ops < 1:
            errors.append("MAX_BATCH_OPS must be >= 1")
        if not self.storage.data_dir:
            errors.append("DATA_DIR is required")
        if self.applier.max_parallel_groups < 1:
            errors.append("APPLIER_MAX_PARALLEL_GROUPS must be >= 1")
        if not self.applier.default_store_id:
            errors.append("DEFAULT_STORE_ID must not be empty")
        if self.feed.queue_size < 1:
            errors.append("FEED_QUEUE_SIZE must be >= 1")
        if self.feed.catch_up_limit < 1:
            errors.append("FEED_CATCH_UP_LIMIT must be >= 1")
        if self.observability.log_format not in ("json", "text"):
            errors.append(f"LOG_FORMAT must be json or text, got {self.observability.log_format}")
        if errors:
            raise ValueError("Invalid configuration: " + "; ".join(errors))

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "http_bind": f"{self.http.host}:{self.http.port}",
                "cors_origins": ",".join(self.http.cors_origins),
                "max_batch_ops": self.http.max_batch_ops,
                "data_dir": self.storage.data_dir,
                "max_parallel_groups": self.applier.max_parallel_groups,
                "default_store_id": self.applier.default_store_id,
                "feed_queue_size": self.feed.queue_size,
                "log_level": self.observability.log_level,
            },
        )
