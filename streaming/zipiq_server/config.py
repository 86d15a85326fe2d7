"""
Configuration management for the zipIQ archival server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit wallet paths
    - Wallet key material is never logged; only file counts are reported

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Changing QueueConfig defaults changes retry timing of already queued items
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

WINSTON_PER_AR = 10**12


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration for the durable backlog.

    Attributes:
        data_dir: Directory for SQLite databases and blobs
        queue_db_file: File name of the archival backlog database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/zipiq"
    queue_db_file: str = "archive_queue.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @property
    def queue_db_path(self) -> str:
        return os.path.join(self.data_dir, self.queue_db_file)

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/zipiq"),
            queue_db_file=os.getenv("QUEUE_DB_FILE", "archive_queue.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class ContentStoreConfig:
    """Content-addressed blob store configuration.

    Attributes:
        content_dir: Directory for blob files (defaults to <data_dir>/blobs)
        cache_max_bytes: Upper bound on bytes held in the in-memory cache
        cache_max_items: Upper bound on blobs held in the in-memory cache
        retention_days: Age after which unpinned blobs are removed
        cleanup_interval_seconds: Interval between cleanup runs
    """

    content_dir: str | None = None
    cache_max_bytes: int = 256 * 1024 * 1024  # 256MB
    cache_max_items: int = 512
    retention_days: int = 30
    cleanup_interval_seconds: int = 3600

    @classmethod
    def from_env(cls) -> ContentStoreConfig:
        """Load configuration from environment variables."""
        return cls(
            content_dir=os.getenv("CONTENT_DIR"),
            cache_max_bytes=int(os.getenv("CONTENT_CACHE_MAX_BYTES", str(256 * 1024 * 1024))),
            cache_max_items=int(os.getenv("CONTENT_CACHE_MAX_ITEMS", "512")),
            retention_days=int(os.getenv("CONTENT_RETENTION_DAYS", "30")),
            cleanup_interval_seconds=int(os.getenv("CONTENT_CLEANUP_INTERVAL_SECONDS", "3600")),
        )


@dataclass(frozen=True)
class LedgerConfig:
    """Archival network (Arweave gateway) configuration.

    Attributes:
        host: Gateway host
        port: Gateway port
        protocol: http or https
        timeout_seconds: Bound on every gateway call
        app_name: Value of the App-Name transaction tag
        app_version: Value of the App-Version transaction tag
        content_type: Value of the Content-Type transaction tag
    """

    host: str = "arweave.net"
    port: int = 443
    protocol: str = "https"
    timeout_seconds: float = 30.0
    app_name: str = "zipIQ"
    app_version: str = "1.0.0"
    content_type: str = "video/chunk"

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("ARWEAVE_HOST", "arweave.net"),
            port=int(os.getenv("ARWEAVE_PORT", "443")),
            protocol=os.getenv("ARWEAVE_PROTOCOL", "https"),
            timeout_seconds=float(os.getenv("LEDGER_TIMEOUT_SECONDS", "30")),
            app_name=os.getenv("LEDGER_APP_NAME", "zipIQ"),
            app_version=os.getenv("LEDGER_APP_VERSION", "1.0.0"),
            content_type=os.getenv("LEDGER_CONTENT_TYPE", "video/chunk"),
        )


@dataclass(frozen=True)
class SigningConfig:
    """Signing identity configuration.

    Attributes:
        wallet_paths: JWK key files, one signing identity each
        min_balance_winston: Cached balance an identity needs to be used
        balance_refresh_seconds: Age after which cached balances are refreshed
        max_consecutive_failures: Failures before rotating to the next identity
    """

    wallet_paths: tuple[str, ...] = ()
    min_balance_winston: int = WINSTON_PER_AR // 10  # 0.1 AR
    balance_refresh_seconds: float = 300.0
    max_consecutive_failures: int = 3

    @classmethod
    def from_env(cls) -> SigningConfig:
        """Load configuration from environment variables."""
        raw_paths = os.getenv("SIGNING_WALLET_PATHS", "")
        return cls(
            wallet_paths=tuple(p.strip() for p in raw_paths.split(",") if p.strip()),
            min_balance_winston=int(
                os.getenv("SIGNING_MIN_BALANCE_WINSTON", str(WINSTON_PER_AR // 10))
            ),
            balance_refresh_seconds=float(os.getenv("SIGNING_BALANCE_REFRESH_SECONDS", "300")),
            max_consecutive_failures=int(os.getenv("SIGNING_MAX_CONSECUTIVE_FAILURES", "3")),
        )


@dataclass(frozen=True)
class QueueConfig:
    """Archival queue drain loop configuration.

    Attributes:
        max_attempts: Submission attempts before an item is Failed
        retry_base_seconds: Backoff base; delay = base * 2 ** attempts
        submission_delay_seconds: Fixed floor between successive submissions
        idle_poll_seconds: Wake-up interval when the backlog looks empty
        max_payload_bytes: Largest accepted payload
        shutdown_grace_seconds: Time an in-flight submission gets on shutdown
        confirmation_interval_seconds: Interval between confirmation polls
        confirmation_batch: Records polled per confirmation run
    """

    max_attempts: int = 3
    retry_base_seconds: float = 5.0
    submission_delay_seconds: float = 2.0
    idle_poll_seconds: float = 30.0
    max_payload_bytes: int = 50 * 1024 * 1024  # 50MB
    shutdown_grace_seconds: float = 30.0
    confirmation_interval_seconds: float = 120.0
    confirmation_batch: int = 50

    def backoff(self, attempts: int) -> float:
        """Retry delay after `attempts` failed attempts."""
        return self.retry_base_seconds * (2**attempts)

    @classmethod
    def from_env(cls) -> QueueConfig:
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("ARCHIVE_MAX_ATTEMPTS", "3")),
            retry_base_seconds=float(os.getenv("ARCHIVE_RETRY_BASE_SECONDS", "5")),
            submission_delay_seconds=float(os.getenv("ARCHIVE_SUBMISSION_DELAY_SECONDS", "2")),
            idle_poll_seconds=float(os.getenv("ARCHIVE_IDLE_POLL_SECONDS", "30")),
            max_payload_bytes=int(os.getenv("ARCHIVE_MAX_PAYLOAD_BYTES", str(50 * 1024 * 1024))),
            shutdown_grace_seconds=float(os.getenv("ARCHIVE_SHUTDOWN_GRACE_SECONDS", "30")),
            confirmation_interval_seconds=float(
                os.getenv("ARCHIVE_CONFIRMATION_INTERVAL_SECONDS", "120")
            ),
            confirmation_batch=int(os.getenv("ARCHIVE_CONFIRMATION_BATCH", "50")),
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
        storage: Backlog storage configuration
        content: Content store configuration
        ledger: Archival network configuration
        signing: Signing identity configuration
        queue: Drain loop configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    content: ContentStoreConfig = field(default_factory=ContentStoreConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @property
    def content_dir(self) -> str:
        return self.content.content_dir or os.path.join(self.storage.data_dir, "blobs")

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            content=ContentStoreConfig.from_env(),
            ledger=LedgerConfig.from_env(),
            signing=SigningConfig.from_env(),
            queue=QueueConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.queue.max_attempts < 1:
            raise ValueError("ARCHIVE_MAX_ATTEMPTS must be at least 1")
        if self.queue.retry_base_seconds < 0 or self.queue.submission_delay_seconds < 0:
            raise ValueError("Archive retry and submission delays must not be negative")
        if self.queue.idle_poll_seconds <= 0:
            raise ValueError("ARCHIVE_IDLE_POLL_SECONDS must be positive")
        if self.queue.max_payload_bytes <= 0:
            raise ValueError("ARCHIVE_MAX_PAYLOAD_BYTES must be positive")
        if self.ledger.protocol not in ("http", "https"):
            raise ValueError(
                f"Invalid ARWEAVE_PROTOCOL '{self.ledger.protocol}'. Must be one of: http, https"
            )
        if self.ledger.timeout_seconds <= 0:
            raise ValueError("LEDGER_TIMEOUT_SECONDS must be positive")
        if self.signing.max_consecutive_failures < 1:
            raise ValueError("SIGNING_MAX_CONSECUTIVE_FAILURES must be at least 1")

        if not self.signing.wallet_paths:
            logger.warning(
                "No signing wallets configured (SIGNING_WALLET_PATHS). "
                "Archival submissions will fail until one is provided."
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "content_dir": self.content_dir,
                "ledger_url": self.ledger.base_url,
                "wallet_count": len(self.signing.wallet_paths),
                "max_attempts": self.queue.max_attempts,
                "submission_delay_seconds": self.queue.submission_delay_seconds,
                "log_level": self.observability.log_level,
            },
        )
