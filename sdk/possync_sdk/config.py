"""
Configuration for the possync device SDK.

Every section can be built directly (tests, embedding apps) or loaded from
POSSYNC_* environment variables (CLI, demos).

Invariants:
    - All settings have defaults suitable for a single device talking to a
      local server
    - The API key is never logged

How to change safely:
    - Add new settings with defaults that keep existing devices working
    - Keep env var names stable; devices in the field read them at startup
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class TransportConfig:
    """HTTP transport configuration.

    Attributes:
        base_url: Server base URL (scheme, host, port)
        api_key: Bearer token sent on every request (not validated server-side)
        store_id: Operator data scope sent as X-Store-ID
        connect_timeout_s: TCP connect timeout
        request_timeout_s: Total per-request timeout
        use_batch_endpoint: Send batches to /v1/sync/apply-batch
        max_parallel_requests: Concurrency of the single-op fallback
    """

    base_url: str = "http://localhost:8080"
    api_key: str | None = None
    store_id: str = "default"
    connect_timeout_s: float = 5.0
    request_timeout_s: float = 30.0
    use_batch_endpoint: bool = True
    max_parallel_requests: int = 5

    @classmethod
    def from_env(cls) -> TransportConfig:
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("POSSYNC_BASE_URL", "http://localhost:8080"),
            api_key=os.getenv("POSSYNC_API_KEY"),
            store_id=os.getenv("POSSYNC_STORE_ID", "default"),
            connect_timeout_s=float(os.getenv("POSSYNC_CONNECT_TIMEOUT_S", "5")),
            request_timeout_s=float(os.getenv("POSSYNC_REQUEST_TIMEOUT_S", "30")),
            use_batch_endpoint=_env_bool("POSSYNC_USE_BATCH", "true"),
            max_parallel_requests=int(os.getenv("POSSYNC_MAX_PARALLEL_REQUESTS", "5")),
        )


@dataclass(frozen=True)
class DispatcherConfig:
    """Batch dispatcher configuration.

    Attributes:
        batch_size: Maximum envelopes per request
        idle_interval_ms: Periodic flush interval while idle
        base_backoff_ms: First retry delay
        max_backoff_ms: Retry delay cap
        stall_threshold_ms: Backlog age that raises the stalled signal
        offline_poll_ms: Re-check interval while offline
    """

    batch_size: int = 20
    idle_interval_ms: int = 15_000
    base_backoff_ms: int = 1_000
    max_backoff_ms: int = 60_000
    stall_threshold_ms: int = 300_000
    offline_poll_ms: int = 5_000

    @classmethod
    def from_env(cls) -> DispatcherConfig:
        """Load configuration from environment variables."""
        return cls(
            batch_size=int(os.getenv("POSSYNC_BATCH_SIZE", "20")),
            idle_interval_ms=int(os.getenv("POSSYNC_IDLE_INTERVAL_MS", "15000")),
            base_backoff_ms=int(os.getenv("POSSYNC_BASE_BACKOFF_MS", "1000")),
            max_backoff_ms=int(os.getenv("POSSYNC_MAX_BACKOFF_MS", "60000")),
            stall_threshold_ms=int(os.getenv("POSSYNC_STALL_THRESHOLD_MS", "300000")),
            offline_poll_ms=int(os.getenv("POSSYNC_OFFLINE_POLL_MS", "5000")),
        )


@dataclass(frozen=True)
class ReconcilerConfig:
    """Realtime reconciler configuration.

    Attributes:
        catch_up_limit: Page size for catch-up fetches
        base_backoff_ms: First reconnect delay
        max_backoff_ms: Reconnect delay cap
        stall_threshold_ms: Disconnection time that raises the stalled signal
        heartbeat_s: WebSocket heartbeat interval
    """

    catch_up_limit: int = 500
    base_backoff_ms: int = 1_000
    max_backoff_ms: int = 30_000
    stall_threshold_ms: int = 120_000
    heartbeat_s: float = 30.0

    @classmethod
    def from_env(cls) -> ReconcilerConfig:
        """Load configuration from environment variables."""
        return cls(
            catch_up_limit=int(os.getenv("POSSYNC_CATCH_UP_LIMIT", "500")),
            base_backoff_ms=int(os.getenv("POSSYNC_RECONNECT_BASE_MS", "1000")),
            max_backoff_ms=int(os.getenv("POSSYNC_RECONNECT_MAX_MS", "30000")),
            stall_threshold_ms=int(os.getenv("POSSYNC_FEED_STALL_MS", "120000")),
            heartbeat_s=float(os.getenv("POSSYNC_FEED_HEARTBEAT_S", "30")),
        )


@dataclass(frozen=True)
class ClientConfig:
    """Complete device configuration.

    Attributes:
        outbox_path: SQLite outbox file
        connectivity_probe_ms: Interval between health probes
        acked_retention_ms: How long ACKED entries are kept for echo matching
        transport: HTTP transport configuration
        dispatcher: Dispatcher configuration
        reconciler: Reconciler configuration
    """

    outbox_path: str = "possync_outbox.db"
    connectivity_probe_ms: int = 10_000
    acked_retention_ms: int = 24 * 3600 * 1000
    transport: TransportConfig = field(default_factory=TransportConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            outbox_path=os.getenv("POSSYNC_OUTBOX_PATH", "possync_outbox.db"),
            connectivity_probe_ms=int(os.getenv("POSSYNC_PROBE_INTERVAL_MS", "10000")),
            acked_retention_ms=int(os.getenv("POSSYNC_ACKED_RETENTION_MS", str(24 * 3600 * 1000))),
            transport=TransportConfig.from_env(),
            dispatcher=DispatcherConfig.from_env(),
            reconciler=ReconcilerConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.transport.base_url.startswith(("http://", "https://")):
            raise ValueError(f"POSSYNC_BASE_URL must be http(s), got {self.transport.base_url!r}")
        if self.dispatcher.batch_size < 1:
            raise ValueError("POSSYNC_BATCH_SIZE must be >= 1")
        if self.dispatcher.base_backoff_ms > self.dispatcher.max_backoff_ms:
            raise ValueError("POSSYNC_BASE_BACKOFF_MS must not exceed POSSYNC_MAX_BACKOFF_MS")
        if self.transport.max_parallel_requests < 1:
            raise ValueError("POSSYNC_MAX_PARALLEL_REQUESTS must be >= 1")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Sync client configuration loaded",
            extra={
                "base_url": self.transport.base_url,
                "store_id": self.transport.store_id,
                "api_key_set": self.transport.api_key is not None,
                "outbox_path": self.outbox_path,
                "batch_size": self.dispatcher.batch_size,
            },
        )
