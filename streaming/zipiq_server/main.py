"""
zipIQ archival server - Main entry point.

This module starts the archival backend with all components:
- Content store (filesystem blobs + SQLite index)
- Ledger client (Arweave gateway)
- Signing key manager (wallets from SIGNING_WALLET_PATHS)
- Archival queue drain loop
- Confirmation poll loop (archived transactions -> confirmed)
- Content cleanup loop (retention of unpinned blobs)

The HTTP layer that receives uploads is a separate process concern; it
uses ingest_chunk() and the ArchivalQueue query methods.

Usage:
    python -m streaming.zipiq_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Interrupted archival work is recovered before the drain loop starts
    - Graceful shutdown gives an in-flight submission its grace period
    - Periodic loops log failures and keep running

How to change safely:
    - Add new components with their own start/stop in this orchestrator
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sqlite3
import sys
from pathlib import Path

import json_log_formatter

from .archive import ArchivalQueue, QueueStore
from .config import ServerConfig
from .content import ContentStoreError, LocalContentStore
from .errors import ZipiqError
from .ledger import ArweaveLedgerClient
from .signing import SigningKeyManager

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
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class Server:
    """zipIQ archival server orchestrator.

    Manages the lifecycle of all server components:
    - Stores (content, backlog)
    - Ledger connection and signing identities
    - Background loops (drain, confirmation poll, content cleanup)

    Attributes:
        config: Server configuration
        content_store: Content-addressed blob store
        queue_store: Durable archival backlog
        ledger: Archival network client
        keys: Signing key manager
        queue: Archival queue engine

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

        # Components (initialized in start())
        self.content_store: LocalContentStore | None = None
        self.queue_store: QueueStore | None = None
        self.ledger: ArweaveLedgerClient | None = None
        self.keys: SigningKeyManager | None = None
        self.queue: ArchivalQueue | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting zipIQ archival server")
        self.config.log_config()

        try:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

            self.content_store = LocalContentStore(
                content_dir=self.config.content_dir,
                cache_max_bytes=self.config.content.cache_max_bytes,
                cache_max_items=self.config.content.cache_max_items,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            self.queue_store = QueueStore(
                db_path=self.config.storage.queue_db_path,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )

            self.ledger = ArweaveLedgerClient(self.config.ledger)
            await self.ledger.connect()

            self.keys = SigningKeyManager.from_config(
                self.ledger,
                self.config.signing,
                balance_timeout_seconds=self.config.ledger.timeout_seconds,
            )
            refreshed = await self.keys.refresh_balances()
            logger.info(
                "Signing identities loaded",
                extra={"count": len(self.keys.identities), "refreshed": refreshed},
            )

            self.queue = ArchivalQueue(
                store=self.queue_store,
                ledger=self.ledger,
                keys=self.keys,
                config=self.config.queue,
                ledger_config=self.config.ledger,
            )
            await self.queue.start()

            self._tasks.append(asyncio.create_task(self._confirmation_loop()))
            self._tasks.append(asyncio.create_task(self._cleanup_loop()))

            self._running = True
            logger.info("zipIQ archival server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self._teardown()
            raise

    async def _confirmation_loop(self) -> None:
        interval = self.config.queue.confirmation_interval_seconds
        try:
            while True:
                await asyncio.sleep(interval)
                if self.queue is None:
                    continue
                try:
                    confirmed = await self.queue.poll_confirmations()
                    if confirmed:
                        logger.info(f"Confirmed {confirmed} archived transactions")
                except (ZipiqError, sqlite3.Error) as e:
                    logger.warning(f"Confirmation poll failed: {e}")
                except Exception as e:
                    logger.error(f"Confirmation poll error: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Confirmation loop cancelled")

    async def _cleanup_loop(self) -> None:
        interval = self.config.content.cleanup_interval_seconds
        max_age = self.config.content.retention_days * 86400
        try:
            while True:
                await asyncio.sleep(interval)
                if self.content_store is None:
                    continue
                try:
                    await self.content_store.cleanup(max_age)
                except (ContentStoreError, sqlite3.Error, OSError) as e:
                    logger.warning(f"Content cleanup failed: {e}")
                except Exception as e:
                    logger.error(f"Content cleanup error: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Cleanup loop cancelled")

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping zipIQ archival server")
        await self._teardown()
        self._running = False
        logger.info("zipIQ archival server stopped")

    async def _teardown(self) -> None:
        # Stop background tasks
        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.queue:
            await self.queue.stop()

        if self.ledger:
            await self.ledger.close()

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

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

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
