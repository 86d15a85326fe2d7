"""
Archival queue engine for zipIQ.

The ArchivalQueue accepts archival requests, persists them in the QueueStore
and drains them through the signing key manager and ledger client with a
single background worker:

    enqueue() ──> QueueStore (pending) ──> drain loop ──> ledger.submit()
                                              │
                       ┌──────────────────────┼───────────────────────┐
                       ▼                      ▼                       ▼
                  archived            pending (backoff)            failed
              + ArchivedRecord     attempts < max_attempts   permanent error or
                                                             attempts exhausted

Invariants:
    - At most one submission is in flight system-wide
    - Successive submission cycles are at least submission_delay_seconds apart,
      whatever their outcome
    - Every submission is bounded by ledger_timeout_seconds; a timeout is a
      transient NetworkUnavailableError. Balance reads made during identity
      selection are bounded one by one in the key manager
    - Transient errors retry after retry_base_seconds * 2 ** attempts until
      max_attempts; permanent errors fail the item on the current attempt
    - Failures are recorded as item state and never raised to enqueue callers
    - Items left in flight by a crash return to pending on start()
    - A cycle that fails outside the ledger call is logged, its in-flight item
      returns to pending and the loop keeps running

How to change safely:
    - Keep classification on the error classes (ZipiqError.transient)
    - Never write an ArchivedRecord before the ledger accepted the submission
    - Test restart recovery after changing any state transition
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any

from ..config import LedgerConfig, QueueConfig
from ..content.base import now_ms
from ..errors import ZipiqError
from ..ledger.base import (
    CostEstimate,
    LedgerClient,
    NetworkUnavailableError,
    SubmissionReceipt,
    Tags,
)
from ..signing.identity import SigningIdentity
from ..signing.manager import SigningKeyManager
from .models import (
    ArchivalRequest,
    ArchiveError,
    ArchivedRecord,
    EnqueueResult,
    ItemState,
    PayloadTooLargeError,
    QueueItem,
    QueueStats,
    StreamStatus,
    UnexpectedSubmissionError,
)
from .store import QueueStore

logger = logging.getLogger(__name__)


class ArchivalQueue:
    """Durable, rate-limited, retrying archival of stream chunks.

    Attributes:
        store: Persistent backlog and archived-record index
        ledger: Archival network client
        keys: Signing key manager consulted before each submission
        config: Drain loop configuration

    Example:
        >>> queue = ArchivalQueue(store, ledger, keys, QueueConfig())
        >>> await queue.start()
        >>> await queue.enqueue({"payload": data, "stream_id": "s1", ...})
        >>> status = await queue.get_stream_status("s1")
        >>> await queue.stop()
    """

    def __init__(
        self,
        store: QueueStore,
        ledger: LedgerClient,
        keys: SigningKeyManager,
        config: QueueConfig | None = None,
        ledger_config: LedgerConfig | None = None,
    ) -> None:
        """Initialize the archival queue.

        Args:
            store: QueueStore instance
            ledger: LedgerClient implementation
            keys: SigningKeyManager instance
            config: Drain loop settings (defaults if omitted)
            ledger_config: Supplies the call timeout and the application tags
        """
        self.store = store
        self.ledger = ledger
        self.keys = keys
        self.config = config or QueueConfig()
        self.ledger_config = ledger_config or LedgerConfig()

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()
        self._next_cycle_at = 0.0
        self._current_item: str | None = None

        self._submitted_count = 0
        self._retry_count = 0
        self._failed_count = 0
        self._last_error: str | None = None

    @property
    def ledger_timeout(self) -> float:
        return self.ledger_config.timeout_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    # Lifecycle

    async def start(self) -> None:
        """Recover interrupted items and start the drain loop."""
        if self._running:
            logger.warning("Archival queue already running")
            return

        recovered = await self.store.recover_in_flight()
        self._running = True
        self._stopping.clear()
        self._task = asyncio.create_task(self._drain_loop(), name="archival-drain")
        logger.info(
            "Starting archival queue",
            extra={
                "recovered": recovered,
                "max_attempts": self.config.max_attempts,
                "submission_delay_s": self.config.submission_delay_seconds,
            },
        )

    async def stop(self) -> None:
        """Stop draining; an in-flight submission gets the grace period."""
        if not self._running and self._task is None:
            return
        logger.info("Stopping archival queue", extra={"in_flight": self._current_item})
        self._running = False
        self._stopping.set()
        self._wake.set()

        task, self._task = self._task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=self.config.shutdown_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "In-flight submission abandoned at shutdown",
                extra={"item_id": self._current_item},
            )

    # Requests

    async def enqueue(self, request: ArchivalRequest | dict[str, Any]) -> EnqueueResult:
        """Persist an archival request and wake the drain loop.

        Re-enqueueing an id that is pending, in flight or archived is a no-op.

        Raises:
            ValidationError: If a required field is missing or malformed
            PayloadTooLargeError: If the payload exceeds max_payload_bytes
        """
        if isinstance(request, dict):
            request = ArchivalRequest.from_dict(request)
        else:
            request = request.validated()

        if len(request.payload) > self.config.max_payload_bytes:
            raise PayloadTooLargeError(len(request.payload), self.config.max_payload_bytes)

        result = await self.store.enqueue(request)
        if result.created:
            logger.info(
                "Chunk queued for archival",
                extra={
                    "item_id": result.item_id,
                    "stream_id": request.stream_id,
                    "chunk_index": request.chunk_index,
                    "size": len(request.payload),
                },
            )
            self._wake.set()
        else:
            logger.debug(
                "Duplicate archival request ignored",
                extra={"item_id": result.item_id, "state": result.state.value},
            )
        return result

    # Drain loop

    async def _drain_loop(self) -> None:
        try:
            while self._running:
                self._wake.clear()
                try:
                    item = await self.store.next_ready()
                    if item is None:
                        await self._wait_for_work()
                        continue

                    await self._pause(self._next_cycle_at - time.monotonic())
                    if not self._running:
                        break

                    try:
                        await self._process(item)
                    finally:
                        self._next_cycle_at = time.monotonic() + self.config.submission_delay_seconds
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Drain cycle error: {e}", exc_info=True)
                    await self._release_in_flight()
                    await self._pause(self.config.idle_poll_seconds)

        except asyncio.CancelledError:
            logger.info("Archival drain loop cancelled", extra={"item_id": self._current_item})
            raise
        finally:
            self._running = False

    async def _release_in_flight(self) -> None:
        """Return an item stranded by a failed cycle to pending."""
        try:
            await self.store.recover_in_flight()
        except sqlite3.Error as e:
            logger.error(f"Failed to release in-flight item: {e}", exc_info=True)

    async def _wait_for_work(self) -> None:
        timeout = self.config.idle_poll_seconds
        next_at = await self.store.next_attempt_at()
        if next_at is not None:
            timeout = min(timeout, max(0.0, (next_at - now_ms()) / 1000.0))
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _pause(self, seconds: float) -> None:
        """Sleep that only shutdown can interrupt."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _tags(self, item: QueueItem) -> Tags:
        meta = item.metadata
        upload_date = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        return [
            ("App-Name", self.ledger_config.app_name),
            ("App-Version", self.ledger_config.app_version),
            ("Content-Type", self.ledger_config.content_type),
            ("Stream-ID", meta.stream_id),
            ("Chunk-Index", str(meta.chunk_index)),
            ("Timestamp", str(meta.timestamp_ms)),
            ("User-ID", meta.user_id),
            ("IPFS-Hash", meta.content_address),
            ("Original-Size", str(meta.payload_size)),
            ("Upload-Date", upload_date.replace("+00:00", "Z")),
        ]

    async def _process(self, item: QueueItem) -> None:
        """Run one submission cycle for `item`."""
        if not await self.store.mark_in_flight(item.id):
            return

        self._current_item = item.id
        attempts = item.attempts + 1
        identity: SigningIdentity | None = None
        try:
            if item.payload is None:
                await self._fail(
                    item,
                    attempts,
                    ArchiveError("Queue item has no payload", code="PAYLOAD_MISSING"),
                    identity,
                )
                return

            try:
                identity = await self.keys.get_active_identity()
                receipt = await asyncio.wait_for(
                    self.ledger.submit(item.payload, self._tags(item), identity.wallet),
                    timeout=self.ledger_timeout,
                )
            except asyncio.TimeoutError:
                error: ZipiqError = NetworkUnavailableError(
                    f"Ledger call timed out after {self.ledger_timeout}s", item_id=item.id
                )
                await self._fail(item, attempts, error, identity)
            except ZipiqError as e:
                await self._fail(item, attempts, e, identity)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Unexpected submission error: {e}",
                    exc_info=True,
                    extra={"item_id": item.id},
                )
                await self._fail(
                    item, attempts, UnexpectedSubmissionError(str(e), type(e).__name__), identity
                )
            else:
                await self._succeed(item, attempts, identity, receipt)
        finally:
            self._current_item = None

    async def _succeed(
        self,
        item: QueueItem,
        attempts: int,
        identity: SigningIdentity,
        receipt: SubmissionReceipt,
    ) -> ArchivedRecord:
        record = await self.store.mark_archived(
            item.id,
            receipt.transaction_id,
            attempts,
            reward=receipt.reward,
            owner_address=receipt.owner_address,
        )
        self.keys.record_spend(identity.ref, receipt.reward)
        self.keys.record_success(identity.ref)
        self._submitted_count += 1

        logger.info(
            "Chunk archived",
            extra={
                "item_id": item.id,
                "stream_id": item.metadata.stream_id,
                "chunk_index": item.metadata.chunk_index,
                "transaction_id": receipt.transaction_id,
                "attempt": attempts,
                "reward": receipt.reward,
                "identity": identity.ref,
            },
        )
        return record

    async def _fail(
        self,
        item: QueueItem,
        attempts: int,
        error: ZipiqError,
        identity: SigningIdentity | None,
    ) -> None:
        if identity is not None:
            self.keys.record_failure(identity.ref, error.message)
        self._last_error = error.message

        context = {
            "item_id": item.id,
            "stream_id": item.metadata.stream_id,
            "attempt": attempts,
            "error_code": error.code,
            "transient": error.transient,
        }

        if error.transient and attempts < self.config.max_attempts:
            delay = self.config.backoff(attempts)
            await self.store.mark_retry(
                item.id,
                attempts,
                next_attempt_at=now_ms() + int(delay * 1000),
                error=error.message,
                error_code=error.code,
            )
            self._retry_count += 1
            logger.warning(
                f"Archival attempt failed, retrying in {delay:g}s: {error.message}",
                extra=context,
            )
            return

        await self.store.mark_failed(item.id, attempts, error=error.message, error_code=error.code)
        self._failed_count += 1
        logger.error(f"Archival failed permanently: {error.message}", extra=context)

    # Queries

    async def get_item(self, item_id: str) -> QueueItem | None:
        return await self.store.get_item(item_id)

    async def get_stream_status(self, stream_id: str) -> StreamStatus:
        """Archived transactions of a stream, ordered by chunk_index."""
        return await self.store.stream_status(stream_id)

    async def get_queue_stats(self) -> QueueStats:
        counts = await self.store.count_by_state()
        pending_count, pending_size = counts[ItemState.PENDING]
        in_flight_count, _ = counts[ItemState.IN_FLIGHT]
        archived_count, archived_size = counts[ItemState.ARCHIVED]
        failed_count, failed_size = counts[ItemState.FAILED]
        return QueueStats(
            pending_count=pending_count,
            pending_size=pending_size,
            in_flight_count=in_flight_count,
            archived_count=archived_count,
            archived_size=archived_size,
            failed_count=failed_count,
            failed_size=failed_size,
            is_processing=self._running and (pending_count + in_flight_count) > 0,
        )

    async def list_items(
        self,
        state: ItemState | None = None,
        limit: int = 100,
        stream_id: str | None = None,
    ) -> list[QueueItem]:
        return await self.store.list_items(state=state, limit=limit, stream_id=stream_id)

    async def requeue_failed(self, item_id: str | None = None) -> int:
        """Give failed items a fresh attempt budget and wake the drain loop."""
        requeued = await self.store.requeue_failed(item_id)
        if requeued:
            self._wake.set()
        return requeued

    async def health_check(self) -> dict[str, Any]:
        """Best-effort report on network, signing identity and backlog.

        Never raises; each failing section is reported as such.
        """
        report: dict[str, Any] = {"running": self._running, "checked_at": now_ms()}

        try:
            info = await asyncio.wait_for(self.ledger.get_network_info(), timeout=self.ledger_timeout)
            report["network"] = {"status": "healthy", **info.to_dict()}
        except (ZipiqError, asyncio.TimeoutError) as e:
            report["network"] = {"status": "unreachable", "error": str(e) or type(e).__name__}
        except Exception as e:
            logger.error(f"Network health probe failed: {e}", exc_info=True)
            report["network"] = {"status": "unreachable", "error": str(e) or type(e).__name__}

        report["signing"] = self.keys.status()

        try:
            report["queue"] = (await self.get_queue_stats()).to_dict()
        except sqlite3.Error as e:
            report["queue"] = {"status": "unavailable", "error": str(e)}
        except Exception as e:
            logger.error(f"Queue health probe failed: {e}", exc_info=True)
            report["queue"] = {"status": "unavailable", "error": str(e)}

        healthy = (
            self._running
            and report["network"]["status"] == "healthy"
            and report["signing"]["funded_count"] > 0
            and "status" not in report["queue"]
        )
        report["status"] = "healthy" if healthy else "degraded"
        report["last_error"] = self._last_error
        if not healthy:
            logger.warning("Archival queue degraded", extra={"network": report["network"]["status"]})
        return report

    async def poll_confirmations(self, limit: int | None = None) -> int:
        """Check unconfirmed archived transactions against the network.

        A not-found answer is normal propagation delay and leaves the record
        pending. Stops at the first network failure.

        Returns:
            Number of records newly confirmed
        """
        records = await self.store.unconfirmed_records(limit or self.config.confirmation_batch)
        confirmed = 0
        for record in records:
            try:
                report = await asyncio.wait_for(
                    self.ledger.get_status(record.transaction_id), timeout=self.ledger_timeout
                )
            except (ZipiqError, asyncio.TimeoutError) as e:
                logger.warning(
                    f"Confirmation poll interrupted: {e}",
                    extra={"transaction_id": record.transaction_id},
                )
                break
            if not report.confirmed:
                logger.debug(
                    "Transaction not yet confirmed",
                    extra={"transaction_id": record.transaction_id, "status": report.status.value},
                )
                continue
            await self.store.update_confirmation(record.item_id, report.block_height)
            confirmed += 1
            logger.info(
                "Transaction confirmed",
                extra={
                    "item_id": record.item_id,
                    "transaction_id": record.transaction_id,
                    "block_height": report.block_height,
                },
            )
        return confirmed

    async def get_transaction_data(self, transaction_id: str) -> bytes:
        """Fetch archived data back from the network.

        Raises:
            TransactionNotFoundError: If the network has no data for the id
            NetworkUnavailableError: If the network cannot be reached
        """
        try:
            return await asyncio.wait_for(
                self.ledger.get_data(transaction_id), timeout=self.ledger_timeout
            )
        except asyncio.TimeoutError as e:
            raise NetworkUnavailableError(
                "Transaction data fetch timed out", transaction_id=transaction_id
            ) from e

    async def estimate_cost(self, size_bytes: int) -> CostEstimate:
        try:
            return await asyncio.wait_for(
                self.ledger.estimate_cost(size_bytes), timeout=self.ledger_timeout
            )
        except asyncio.TimeoutError as e:
            raise NetworkUnavailableError("Price query timed out", size_bytes=size_bytes) from e

    @property
    def stats(self) -> dict[str, Any]:
        """Get drain loop statistics."""
        return {
            "running": self._running,
            "current_item": self._current_item,
            "submitted_count": self._submitted_count,
            "retry_count": self._retry_count,
            "failed_count": self._failed_count,
            "last_error": self._last_error,
        }
