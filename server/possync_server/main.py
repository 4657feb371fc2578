"""
possync server - Main entry point.

This module starts the server with all components:
- SyncStore (per-store SQLite databases)
- Change feed (in-process fan-out)
- Applier (idempotent apply engine)
- HTTP/WebSocket API (aiohttp)

Usage:
    possync-server
    python -m possync_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The data directory exists before the API accepts requests
    - Graceful shutdown closes feed subscribers before the HTTP runner

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api import ApiContext, create_http_app, start_http_server
from .apply import Applier, SyncStore
from .config import ServerConfig
from .feed import InMemoryChangeFeed

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    formatter: logging.Formatter
    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


class Server:
    """possync server orchestrator.

    Manages the lifecycle of all server components.

    Attributes:
        config: Server configuration
        store: Canonical per-store SQLite store
        feed: Change feed
        applier: Apply engine
        app: aiohttp application

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in setup())
        self.store: SyncStore | None = None
        self.feed: InMemoryChangeFeed | None = None
        self.applier: Applier | None = None
        self.app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def setup(self) -> web.Application:
        """Build components and the application without binding a port."""
        data_dir = Path(self.config.storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        self.store = SyncStore(
            data_dir=str(data_dir),
            wal_mode=self.config.storage.wal_mode,
            busy_timeout_ms=self.config.storage.busy_timeout_ms,
            cache_size_pages=self.config.storage.cache_size_pages,
        )
        self.feed = InMemoryChangeFeed(queue_size=self.config.feed.queue_size)
        self.applier = Applier(self.store, self.feed, self.config.applier)

        self.app = create_http_app(
            ApiContext(
                applier=self.applier,
                store=self.store,
                feed=self.feed,
                http=self.config.http,
                feed_config=self.config.feed,
                default_store_id=self.config.applier.default_store_id,
            )
        )
        return self.app

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting possync server")
        self.config.log_config()

        try:
            app = self.setup()
            self._runner = await start_http_server(
                app, self.config.http.host, self.config.http.port
            )

            self._running = True
            logger.info("possync server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if self.feed is not None:
            await self.feed.close()

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

        if self._running:
            self._running = False
            logger.info("possync server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Create server
    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
