"""
Polls AppView server - Main entry point.

This module starts the ingestion side of the AppView:
- Projection store (SQLite)
- Stream consumer (relay -> projection)
- HTTP read API (optional)

The web layer (pages, OAuth, sessions) runs in its own process and shares
the projection database; it calls PollActions for writes.

Usage:
    python -m appview.polls_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The schema exists before the consumer starts
    - Graceful shutdown flushes the relay cursor

How to change safely:
    - Test shutdown sequence thoroughly
    - Keep a single consumer per CONSUMER_NAME
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .api import run_http_server
from .apply import EventReconciler, ProjectionStore, StreamConsumer
from .config import ServerConfig
from .records import RecordFilter
from .relay import JetstreamRelayStream, RelayStream

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


class Server:
    """Polls AppView ingestion server.

    Manages the lifecycle of:
    - Projection store
    - Relay connection
    - Stream consumer task
    - HTTP read API task

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None, relay: RelayStream | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            relay: Optional relay stream (Jetstream from config if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.relay: RelayStream = relay or JetstreamRelayStream(self.config.relay)
        self.store: ProjectionStore | None = None
        self.consumer: StreamConsumer | None = None

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting polls AppView ingester")
        self.config.log_config()

        try:
            self.store = ProjectionStore(
                db_path=self.config.storage.db_path,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
                cache_size_pages=self.config.storage.cache_size_pages,
            )
            await self.store.initialize()

            self.consumer = StreamConsumer(
                relay=self.relay,
                store=self.store,
                reconciler=EventReconciler(self.store),
                record_filter=RecordFilter(self.config.relay.collections),
                relay_config=self.config.relay,
                consumer_config=self.config.consumer,
            )
            self._tasks.append(asyncio.create_task(self.consumer.start()))

            if self.config.http.enabled:
                self._tasks.append(
                    asyncio.create_task(
                        run_http_server(self.store, self.config.http, lambda: self.consumer.stats)
                    )
                )

            self._running = True
            logger.info("Polls AppView ingester started")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running and not self._tasks:
            return

        logger.info("Stopping polls AppView ingester")

        if self.consumer:
            await self.consumer.stop()

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        self._running = False
        logger.info("Polls AppView ingester stopped", extra=self.consumer.stats if self.consumer else {})

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
