"""
Integration tests for ArchivalQueue with SQLite and an in-memory ledger.

Tests cover:
- End-to-end archival with transaction tags
- Idempotent enqueue
- Retry bound and permanent-error short-circuit
- Submission rate floor
- Restart recovery and graceful shutdown
- Confirmation polling and health reporting
- Upload-side ingest
"""

import asyncio
import dataclasses
import os
import sqlite3
import tempfile
import time

import pytest

from streaming.zipiq_server.archive import (
    ArchivalQueue,
    ArchivalRequest,
    ConfirmationState,
    ItemState,
    PayloadTooLargeError,
    QueueStore,
    ValidationError,
)
from streaming.zipiq_server.config import LedgerConfig, QueueConfig
from streaming.zipiq_server.content import (
    ChunkInfo,
    MemoryContentStore,
    StorageUnavailableError,
    compute_content_address,
)
from streaming.zipiq_server.ingest import ingest_chunk
from streaming.zipiq_server.ledger import (
    InMemoryLedgerClient,
    NetworkUnavailableError,
    SubmissionRejectedError,
)
from streaming.zipiq_server.signing import SigningKeyManager

SUBMISSION_DELAY = 0.05


async def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll an async predicate until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if await predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not reached before timeout")


def make_request(stream_id="s1", chunk_index=0, payload=None):
    payload = payload or f"{stream_id}-chunk-{chunk_index}".encode()
    return ArchivalRequest(
        payload=payload,
        stream_id=stream_id,
        chunk_index=chunk_index,
        timestamp_ms=1_700_000_000_000 + chunk_index,
        user_id="user-1",
        content_address=compute_content_address(payload),
    )


class FlakyLedger(InMemoryLedgerClient):
    """Fails the first submissions of chosen chunk indexes."""

    def __init__(self, failures):
        super().__init__()
        self.failures = dict(failures)

    async def submit(self, data, tags, wallet):
        index = int(dict(tags)["Chunk-Index"])
        if self.failures.get(index, 0) > 0:
            self.failures[index] -= 1
            self.submit_attempts += 1
            raise NetworkUnavailableError("gateway busy", status_code=503)
        return await super().submit(data, tags, wallet)


class GarbledInfoLedger(InMemoryLedgerClient):
    """Network info parsing fails with a non-ledger error."""

    async def get_network_info(self):
        raise ValueError("invalid literal for int() with base 10: 'n/a'")


class UnwritableContentStore(MemoryContentStore):
    async def upload_chunk(self, data, chunk):
        raise StorageUnavailableError("disk full")


class TestArchivalQueue:
    """Integration tests for ArchivalQueue."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        return QueueStore(os.path.join(data_dir, "archive_queue.db"))

    @pytest.fixture
    def ledger(self, wallet):
        ledger = InMemoryLedgerClient()
        ledger.set_balance(wallet.address, 10**9)
        return ledger

    @pytest.fixture
    def config(self):
        return QueueConfig(
            max_attempts=3,
            retry_base_seconds=0.01,
            submission_delay_seconds=SUBMISSION_DELAY,
            idle_poll_seconds=0.05,
            max_payload_bytes=1024 * 1024,
            shutdown_grace_seconds=1.0,
        )

    @pytest.fixture
    async def make_queue(self, store, wallet, config):
        """Factory for queues sharing the store; stops every queue it made."""
        queues = []

        def factory(ledger, wallets=(wallet,), ledger_timeout=2.0, **overrides):
            keys = SigningKeyManager(ledger, min_balance=1)
            for w in wallets:
                keys.add_wallet(w)
            queue_config = dataclasses.replace(config, **overrides)
            queue = ArchivalQueue(
                store, ledger, keys, queue_config, LedgerConfig(timeout_seconds=ledger_timeout)
            )
            queues.append(queue)
            return queue

        yield factory
        for queue in queues:
            await queue.stop()

    @pytest.fixture
    def queue(self, make_queue, ledger):
        return make_queue(ledger)

    async def _archived(self, queue, *item_ids):
        async def check():
            for item_id in item_ids:
                item = await queue.get_item(item_id)
                if item is None or item.state != ItemState.ARCHIVED:
                    return False
            return True

        await wait_until(check)

    async def _in_state(self, queue, item_id, state):
        async def check():
            item = await queue.get_item(item_id)
            return item is not None and item.state == state

        await wait_until(check)

    @pytest.mark.asyncio
    async def test_archives_chunk(self, queue, ledger, wallet):
        """A queued chunk is submitted with the full tag set and indexed."""
        request = make_request()
        result = await queue.enqueue(request)
        assert result.accepted and result.created

        await queue.start()
        await self._archived(queue, "s1_0")

        assert len(ledger.submissions) == 1
        submission = ledger.submissions[0]
        assert submission.data == request.payload
        assert submission.owner_address == wallet.address

        tags = submission.tag_dict
        assert [name for name, _ in submission.tags] == [
            "App-Name",
            "App-Version",
            "Content-Type",
            "Stream-ID",
            "Chunk-Index",
            "Timestamp",
            "User-ID",
            "IPFS-Hash",
            "Original-Size",
            "Upload-Date",
        ]
        assert tags["App-Name"] == "zipIQ"
        assert tags["Stream-ID"] == "s1"
        assert tags["Chunk-Index"] == "0"
        assert tags["Timestamp"] == str(request.timestamp_ms)
        assert tags["User-ID"] == "user-1"
        assert tags["IPFS-Hash"] == request.content_address
        assert tags["Original-Size"] == str(len(request.payload))
        assert tags["Upload-Date"].endswith("Z")

        item = await queue.get_item("s1_0")
        assert item.transaction_id == submission.transaction_id
        assert item.attempts == 1
        assert item.payload is None

        status = await queue.get_stream_status("s1")
        assert status.archived_count == 1
        assert status.transactions[0].transaction_id == submission.transaction_id

    @pytest.mark.asyncio
    async def test_enqueue_accepts_dict(self, queue):
        result = await queue.enqueue(
            {
                "payload": b"bytes",
                "streamId": "s9",
                "chunkIndex": 4,
                "timestampMs": 1,
                "userId": "u",
                "contentAddress": compute_content_address(b"bytes"),
            }
        )
        assert result.item_id == "s9_4"

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent(self, queue, ledger):
        """Re-enqueueing a live or archived id never submits twice."""
        assert (await queue.enqueue(make_request())).created is True
        assert (await queue.enqueue(make_request())).created is False

        await queue.start()
        await self._archived(queue, "s1_0")

        again = await queue.enqueue(make_request())
        assert again.created is False
        assert again.state == ItemState.ARCHIVED

        await asyncio.sleep(3 * SUBMISSION_DELAY)
        assert len(ledger.submissions) == 1

    @pytest.mark.asyncio
    async def test_enqueue_validation(self, queue):
        with pytest.raises(ValidationError) as exc:
            await queue.enqueue({"payload": b"x", "chunk_index": 0})
        assert exc.value.field == "stream_id"

        with pytest.raises(ValidationError):
            await queue.enqueue(make_request(chunk_index=-1))

        with pytest.raises(PayloadTooLargeError) as exc:
            await queue.enqueue(make_request(payload=b"x" * (1024 * 1024 + 1)))
        assert exc.value.code == "PAYLOAD_TOO_LARGE"
        assert await queue.list_items() == []

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, make_queue, wallet):
        """Chunk 1 fails twice, succeeds on its third attempt; order is kept."""
        ledger = FlakyLedger({1: 2})
        ledger.set_balance(wallet.address, 10**9)
        queue = make_queue(ledger)
        for index in range(3):
            await queue.enqueue(make_request(chunk_index=index))

        await queue.start()
        try:
            await self._archived(queue, "s1_0", "s1_1", "s1_2")
        finally:
            await queue.stop()

        item = await queue.get_item("s1_1")
        assert item.attempts == 3
        assert item.last_error is None

        status = await queue.get_stream_status("s1")
        assert [t.chunk_index for t in status.transactions] == [0, 1, 2]
        assert status.pending_count == 0
        assert status.failed_count == 0
        assert queue.stats["retry_count"] == 2

    @pytest.mark.asyncio
    async def test_retry_bound(self, queue, ledger):
        """A persistently transient error is attempted exactly max_attempts times."""
        ledger.fail_next(NetworkUnavailableError("down"), times=10)
        await queue.enqueue(make_request())

        await queue.start()
        await self._in_state(queue, "s1_0", ItemState.FAILED)

        item = await queue.get_item("s1_0")
        assert item.attempts == 3
        assert item.last_error_code == "NETWORK_UNAVAILABLE"
        assert ledger.submit_attempts == 3

        await asyncio.sleep(3 * SUBMISSION_DELAY)
        assert ledger.submit_attempts == 3

    @pytest.mark.asyncio
    async def test_backoff_grows(self, make_queue, ledger, store):
        """Each retry is scheduled retry_base * 2 ** attempts after the failure."""
        queue = make_queue(ledger, retry_base_seconds=0.2)
        ledger.fail_next(NetworkUnavailableError("down"), times=1)
        await queue.enqueue(make_request())

        await queue.start()
        try:
            await wait_until(lambda: _attempts_at_least(store, "s1_0", 1))
            item = await store.get_item("s1_0")
            assert item.next_attempt_at - item.updated_at >= 400 - 5
            await self._archived(queue, "s1_0")
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_permanent_failure_short_circuits(self, queue, ledger):
        ledger.fail_next(SubmissionRejectedError("bad transaction", status_code=400), times=3)
        await queue.enqueue(make_request())

        await queue.start()
        await self._in_state(queue, "s1_0", ItemState.FAILED)

        item = await queue.get_item("s1_0")
        assert item.attempts == 1
        assert item.last_error_code == "SUBMISSION_REJECTED"
        assert item.payload is not None
        assert ledger.submit_attempts == 1

    @pytest.mark.asyncio
    async def test_no_identity_fails_immediately(self, make_queue, ledger):
        queue = make_queue(ledger, wallets=())
        await queue.enqueue(make_request())

        await queue.start()
        try:
            await self._in_state(queue, "s1_0", ItemState.FAILED)
        finally:
            await queue.stop()

        item = await queue.get_item("s1_0")
        assert item.attempts == 1
        assert item.last_error_code == "NO_IDENTITY_CONFIGURED"
        assert ledger.submit_attempts == 0

    @pytest.mark.asyncio
    async def test_unfunded_identity_is_retried(self, make_queue, second_wallet):
        ledger = InMemoryLedgerClient()
        queue = make_queue(ledger, wallets=(second_wallet,))
        await queue.enqueue(make_request())

        await queue.start()
        try:
            await self._in_state(queue, "s1_0", ItemState.FAILED)
        finally:
            await queue.stop()

        item = await queue.get_item("s1_0")
        assert item.attempts == 3
        assert item.last_error_code == "NO_FUNDED_IDENTITY"

    @pytest.mark.asyncio
    async def test_rate_floor(self, queue, ledger):
        """Successive submissions are at least the configured delay apart."""
        for index in range(4):
            await queue.enqueue(make_request(chunk_index=index))

        started = time.monotonic()
        await queue.start()
        await self._archived(queue, *(f"s1_{i}" for i in range(4)))
        elapsed = time.monotonic() - started

        times = [s.submitted_at for s in ledger.submissions]
        gaps = [b - a for a, b in zip(times, times[1:])]
        assert all(gap >= SUBMISSION_DELAY * 0.95 for gap in gaps)
        assert elapsed >= 3 * SUBMISSION_DELAY * 0.95

    @pytest.mark.asyncio
    async def test_single_submission_in_flight(self, make_queue, wallet):
        ledger = InMemoryLedgerClient(submit_latency=0.05)
        ledger.set_balance(wallet.address, 10**9)
        queue = make_queue(ledger, submission_delay_seconds=0)
        for index in range(3):
            await queue.enqueue(make_request(chunk_index=index))

        await queue.start()
        try:
            for _ in range(20):
                stats = await queue.get_queue_stats()
                assert stats.in_flight_count <= 1
                await asyncio.sleep(0.01)
            await self._archived(queue, "s1_0", "s1_1", "s1_2")
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_recovers_in_flight_after_restart(self, make_queue, ledger, store):
        """An item stranded in flight by a crash is archived after restart."""
        await store.enqueue(make_request())
        assert await store.mark_in_flight("s1_0")

        queue = make_queue(ledger)
        await queue.start()
        try:
            await self._archived(queue, "s1_0")
        finally:
            await queue.stop()

        assert (await store.get_item("s1_0")).attempts == 1

    @pytest.mark.asyncio
    async def test_stop_abandons_slow_submission(self, make_queue, store, wallet):
        slow = InMemoryLedgerClient(submit_latency=5.0)
        slow.set_balance(wallet.address, 10**9)
        first = make_queue(slow, shutdown_grace_seconds=0.05)
        await first.enqueue(make_request())

        await first.start()
        await self._in_state(first, "s1_0", ItemState.IN_FLIGHT)
        await first.stop()
        assert not first.is_running
        assert (await store.get_item("s1_0")).state == ItemState.IN_FLIGHT

        fast = InMemoryLedgerClient()
        fast.set_balance(wallet.address, 10**9)
        second = make_queue(fast)
        await second.start()
        try:
            await self._archived(second, "s1_0")
        finally:
            await second.stop()
        assert len(fast.submissions) == 1

    @pytest.mark.asyncio
    async def test_submission_timeout_is_retried(self, make_queue, store, wallet):
        """A hung submission times out as a transient error and is retried."""
        slow = InMemoryLedgerClient(submit_latency=0.5)
        slow.set_balance(wallet.address, 10**9)
        queue = make_queue(slow, ledger_timeout=0.1, retry_base_seconds=0.3)
        await queue.enqueue(make_request())

        await queue.start()
        await wait_until(lambda: _attempts_at_least(store, "s1_0", 1))
        item = await store.get_item("s1_0")
        assert item.state == ItemState.PENDING
        assert item.attempts == 1
        assert item.last_error_code == "NETWORK_UNAVAILABLE"

        await self._in_state(queue, "s1_0", ItemState.FAILED)
        item = await store.get_item("s1_0")
        assert item.attempts == 3
        assert item.last_error_code == "NETWORK_UNAVAILABLE"
        assert slow.submissions == []

    @pytest.mark.asyncio
    async def test_drain_loop_survives_store_error(self, queue, store, monkeypatch):
        """A backlog read error is logged and the loop keeps draining."""
        original = store.next_attempt_at
        calls = []

        async def locked_once():
            calls.append(1)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return await original()

        async def read_again():
            return len(calls) >= 2

        monkeypatch.setattr(store, "next_attempt_at", locked_once)
        await queue.start()
        await wait_until(read_again)
        assert queue.is_running

        await queue.enqueue(make_request())
        await self._archived(queue, "s1_0")
        assert queue.is_running

    @pytest.mark.asyncio
    async def test_failed_archive_write_releases_item(self, queue, ledger, store, monkeypatch):
        """An item whose post-submit write fails goes back to pending, not stranded."""
        original = store.mark_archived
        calls = []

        async def locked_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return await original(*args, **kwargs)

        monkeypatch.setattr(store, "mark_archived", locked_once)
        await queue.enqueue(make_request())

        await queue.start()
        await self._archived(queue, "s1_0")
        assert queue.is_running

        item = await store.get_item("s1_0")
        assert item.attempts == 1
        assert len(ledger.submissions) == 2
        assert item.transaction_id == ledger.submissions[1].transaction_id

    @pytest.mark.asyncio
    async def test_requeue_failed(self, queue, ledger):
        ledger.fail_next(SubmissionRejectedError("rejected", status_code=400))
        await queue.enqueue(make_request())
        await queue.start()
        await self._in_state(queue, "s1_0", ItemState.FAILED)

        assert await queue.requeue_failed("s1_0") == 1
        await self._archived(queue, "s1_0")
        assert len(ledger.submissions) == 1

    @pytest.mark.asyncio
    async def test_reenqueue_failed_creates_fresh_job(self, queue, ledger):
        ledger.fail_next(SubmissionRejectedError("rejected", status_code=400))
        await queue.enqueue(make_request())
        await queue.start()
        await self._in_state(queue, "s1_0", ItemState.FAILED)

        result = await queue.enqueue(make_request())
        assert result.created is True
        await self._archived(queue, "s1_0")
        assert (await queue.get_item("s1_0")).attempts == 1

    @pytest.mark.asyncio
    async def test_queue_stats(self, queue, ledger):
        ledger.fail_next(SubmissionRejectedError("rejected", status_code=400))
        await queue.enqueue(make_request(chunk_index=0, payload=b"12345"))
        await queue.enqueue(make_request(chunk_index=1, payload=b"123"))

        stats = await queue.get_queue_stats()
        assert stats.pending_count == 2
        assert stats.pending_size == 8
        assert stats.is_processing is False

        await queue.start()
        await self._archived(queue, "s1_1")

        stats = await queue.get_queue_stats()
        assert stats.failed_count == 1
        assert stats.failed_size == 5
        assert stats.archived_count == 1
        assert stats.pending_count == 0
        assert stats.is_processing is False

    @pytest.mark.asyncio
    async def test_poll_confirmations(self, queue, ledger):
        await queue.enqueue(make_request())
        await queue.start()
        await self._archived(queue, "s1_0")

        assert await queue.poll_confirmations() == 0

        ledger.confirm_all()
        assert await queue.poll_confirmations() == 1
        assert await queue.poll_confirmations() == 0

        status = await queue.get_stream_status("s1")
        assert status.transactions[0].confirmation == ConfirmationState.CONFIRMED
        assert status.transactions[0].block_height == 1

    @pytest.mark.asyncio
    async def test_poll_confirmations_stops_on_network_error(self, queue, ledger):
        await queue.enqueue(make_request())
        await queue.start()
        await self._archived(queue, "s1_0")

        ledger.confirm_all()
        ledger.available = False
        assert await queue.poll_confirmations() == 0

    @pytest.mark.asyncio
    async def test_fetch_archived_data(self, queue, ledger):
        request = make_request()
        await queue.enqueue(request)
        await queue.start()
        await self._archived(queue, "s1_0")

        transaction_id = (await queue.get_item("s1_0")).transaction_id
        assert await queue.get_transaction_data(transaction_id) == request.payload

        estimate = await queue.estimate_cost(1000)
        assert estimate.winston == 1000

    @pytest.mark.asyncio
    async def test_health_check(self, queue, ledger):
        await queue.keys.refresh_balances()
        await queue.start()
        report = await queue.health_check()
        assert report["status"] == "healthy"
        assert report["network"]["status"] == "healthy"
        assert report["signing"]["funded_count"] == 1

        ledger.available = False
        report = await queue.health_check()
        assert report["status"] == "degraded"
        assert report["network"]["status"] == "unreachable"

    @pytest.mark.asyncio
    async def test_health_check_when_stopped(self, queue):
        report = await queue.health_check()
        assert report["running"] is False
        assert report["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_health_check_survives_garbled_network_info(self, make_queue, wallet):
        ledger = GarbledInfoLedger()
        ledger.set_balance(wallet.address, 10**9)
        queue = make_queue(ledger)
        await queue.start()

        report = await queue.health_check()
        assert report["status"] == "degraded"
        assert report["network"]["status"] == "unreachable"
        assert "n/a" in report["network"]["error"]
        assert "pending_count" in report["queue"]

    @pytest.mark.asyncio
    async def test_ingest_chunk(self, queue, ledger):
        """Ingest stores the blob and queues it under the same address."""
        content = MemoryContentStore()
        data = b"live video chunk"

        result = await ingest_chunk(content, queue, data, ChunkInfo("s7", 2, 123, "user-7"))
        assert result.content_address == compute_content_address(data)
        assert result.archival.created is True
        assert await content.get(result.content_address) == data
        assert [c.chunk_index for c in await content.list_stream_chunks("s7")] == [2]

        await queue.start()
        await self._archived(queue, "s7_2")
        assert ledger.submissions[0].tag_dict["IPFS-Hash"] == result.content_address

    @pytest.mark.asyncio
    async def test_ingest_rejects_oversized_chunk(self, queue):
        content = MemoryContentStore()
        with pytest.raises(PayloadTooLargeError):
            await ingest_chunk(
                content, queue, b"x" * (1024 * 1024 + 1), ChunkInfo("s7", 0, 1, "user-7")
            )
        assert await content.list_addresses() == []


    @pytest.mark.asyncio
    async def test_ingest_store_failure_still_queues(self, queue):
        """A failed blob write is raised, while the concurrent enqueue stands."""
        data = b"live video chunk"
        with pytest.raises(StorageUnavailableError):
            await ingest_chunk(
                UnwritableContentStore(), queue, data, ChunkInfo("s7", 3, 1, "user-7")
            )

        item = await queue.get_item("s7_3")
        assert item.state == ItemState.PENDING
        assert item.metadata.content_address == compute_content_address(data)


async def _attempts_at_least(store, item_id, attempts):
    item = await store.get_item(item_id)
    return item is not None and item.attempts >= attempts
