"""
Configuration management for the polls AppView.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Renaming CONSUMER_NAME orphans the persisted cursor
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .records.lexicon import POLL_COLLECTION, VOTE_COLLECTION

logger = logging.getLogger(__name__)

DEFAULT_JETSTREAM_URL = "wss://jetstream2.us-east.bsky.network/subscribe"
DEFAULT_COLLECTIONS = (POLL_COLLECTION, VOTE_COLLECTION)


@dataclass(frozen=True)
class RelayConfig:
    """Relay connection configuration.

    Attributes:
        url: Jetstream subscribe endpoint (ws:// or wss://)
        collections: Collections to subscribe to
        heartbeat_seconds: Websocket ping interval
        reconnect_initial_delay_ms: First reconnect delay after a failure
        reconnect_max_delay_ms: Upper bound for the reconnect backoff
    """

    url: str = DEFAULT_JETSTREAM_URL
    collections: tuple[str, ...] = DEFAULT_COLLECTIONS
    heartbeat_seconds: float = 30.0
    reconnect_initial_delay_ms: int = 500
    reconnect_max_delay_ms: int = 60000

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from environment variables."""
        collections = os.getenv("RELAY_COLLECTIONS")
        return cls(
            url=os.getenv("JETSTREAM_URL", DEFAULT_JETSTREAM_URL),
            collections=tuple(c.strip() for c in collections.split(",") if c.strip())
            if collections
            else DEFAULT_COLLECTIONS,
            heartbeat_seconds=float(os.getenv("RELAY_HEARTBEAT_SECONDS", "30")),
            reconnect_initial_delay_ms=int(os.getenv("RELAY_RECONNECT_INITIAL_MS", "500")),
            reconnect_max_delay_ms=int(os.getenv("RELAY_RECONNECT_MAX_MS", "60000")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        db_path: SQLite projection database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    db_path: str = "/var/lib/polls/projection.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -16000  # 16MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "/var/lib/polls/projection.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-16000")),
        )


@dataclass(frozen=True)
class ConsumerConfig:
    """Stream consumer configuration.

    Attributes:
        name: Consumer name; keys the persisted cursor
        cursor_commit_every: Persist the cursor after this many processed events
    """

    name: str = "polls-ingester"
    cursor_commit_every: int = 1

    @classmethod
    def from_env(cls) -> ConsumerConfig:
        """Load configuration from environment variables."""
        return cls(
            name=os.getenv("CONSUMER_NAME", "polls-ingester"),
            cursor_commit_every=int(os.getenv("CURSOR_COMMIT_EVERY", "1")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP read API configuration.

    Attributes:
        enabled: Serve the read API from the ingester process
        host: Bind address
        port: Listen port
    """

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8081

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("HTTP_ENABLED", "true").lower() == "true",
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
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

    Attributes:
        relay: Relay connection configuration
        storage: Local storage configuration
        consumer: Stream consumer configuration
        http: HTTP read API configuration
        observability: Logging configuration
    """

    relay: RelayConfig = field(default_factory=RelayConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            relay=RelayConfig.from_env(),
            storage=StorageConfig.from_env(),
            consumer=ConsumerConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.relay.url.startswith(("ws://", "wss://")):
            raise ValueError(f"JETSTREAM_URL must be a ws:// or wss:// URL, got '{self.relay.url}'")
        if not self.relay.collections:
            raise ValueError("RELAY_COLLECTIONS must name at least one collection")
        unknown = set(self.relay.collections) - set(DEFAULT_COLLECTIONS)
        if unknown:
            raise ValueError(f"RELAY_COLLECTIONS contains unsupported collections: {sorted(unknown)}")
        if self.relay.reconnect_initial_delay_ms <= 0:
            raise ValueError("RELAY_RECONNECT_INITIAL_MS must be positive")
        if self.relay.reconnect_max_delay_ms < self.relay.reconnect_initial_delay_ms:
            raise ValueError("RELAY_RECONNECT_MAX_MS must be >= RELAY_RECONNECT_INITIAL_MS")

        if not self.storage.db_path:
            raise ValueError("DB_PATH is required")

        if not self.consumer.name:
            raise ValueError("CONSUMER_NAME is required")
        if self.consumer.cursor_commit_every < 1:
            raise ValueError("CURSOR_COMMIT_EVERY must be at least 1")

        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT out of range: {self.http.port}")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(os.path.dirname(self.storage.db_path) or "."):
            logger.warning(
                f"Data directory does not exist for {self.storage.db_path}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "relay_url": self.relay.url,
                "collections": list(self.relay.collections),
                "db_path": self.storage.db_path,
                "consumer": self.consumer.name,
                "cursor_commit_every": self.consumer.cursor_commit_every,
                "http_enabled": self.http.enabled,
                "http_port": self.http.port,
                "log_level": self.observability.log_level,
            },
        )
