"""
Unit tests for QueueStore.

Tests cover:
- Idempotent enqueue and replacement of failed items
- Conditional state transitions
- Atomic archival with payload release
- Restart recovery and operator requeue
- Stream status and backlog counters
"""

import os
import sqlite3
import tempfile

import pytest

from streaming.zipiq_server.archive import (
    ArchivalRequest,
    ConfirmationState,
    ItemState,
    QueueStore,
)


@pytest.fixture
def store():
    """Create a queue store in a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield QueueStore(os.path.join(tmpdir, "queue.db"))


def make_request(stream_id="s1", chunk_index=0, payload=b"chunk-bytes"):
    return ArchivalRequest(
        payload=payload,
        stream_id=stream_id,
        chunk_index=chunk_index,
        timestamp_ms=1_700_000_000_000 + chunk_index,
        user_id="u1",
        content_address=f"bafk-{stream_id}-{chunk_index}",
    )


async def take(store, item_id):
    """Move an item to in_flight as the drain loop would."""
    assert await store.mark_in_flight(item_id)


class TestEnqueue:
    """Tests for enqueue()."""

    @pytest.mark.asyncio
    async def test_creates_pending_item(self, store):
        result = await store.enqueue(make_request(), now=1000)

        assert result.item_id == "s1_0"
        assert result.created is True
        assert result.accepted is True

        item = await store.get_item("s1_0")
        assert item.state == ItemState.PENDING
        assert item.attempts == 0
        assert item.payload == b"chunk-bytes"
        assert item.queued_at == 1000
        assert item.next_attempt_at == 1000
        assert item.metadata.payload_size == len(b"chunk-bytes")
        assert item.metadata.content_address == "bafk-s1-0"

    @pytest.mark.asyncio
    async def test_duplicate_is_noop(self, store):
        """A second enqueue of a live id keeps the original item."""
        await store.enqueue(make_request(payload=b"first"), now=1000)
        result = await store.enqueue(make_request(payload=b"second"), now=2000)

        assert result.created is False
        assert result.accepted is True
        assert result.state == ItemState.PENDING

        item = await store.get_item("s1_0")
        assert item.payload == b"first"
        assert item.queued_at == 1000

    @pytest.mark.asyncio
    async def test_duplicate_of_archived_is_noop(self, store):
        await store.enqueue(make_request())
        await take(store, "s1_0")
        await store.mark_archived("s1_0", "tx-1", attempts=1)

        result = await store.enqueue(make_request())
        assert result.created is False
        assert result.state == ItemState.ARCHIVED
        assert (await store.get_item("s1_0")).transaction_id == "tx-1"

    @pytest.mark.asyncio
    async def test_failed_item_is_replaced(self, store):
        await store.enqueue(make_request(payload=b"old"), now=1000)
        await take(store, "s1_0")
        await store.mark_failed("s1_0", attempts=3, error="boom", error_code="X")

        result = await store.enqueue(make_request(payload=b"new"), now=5000)
        assert result.created is True

        item = await store.get_item("s1_0")
        assert item.state == ItemState.PENDING
        assert item.attempts == 0
        assert item.payload == b"new"
        assert item.queued_at == 5000
        assert item.last_error is None


class TestTransitions:
    """Tests for conditional state transitions."""

    @pytest.mark.asyncio
    async def test_in_flight_requires_pending(self, store):
        await store.enqueue(make_request())
        assert await store.mark_in_flight("s1_0") is True
        assert await store.mark_in_flight("s1_0") is False
        assert await store.mark_in_flight("missing") is False

    @pytest.mark.asyncio
    async def test_retry(self, store):
        await store.enqueue(make_request(), now=1000)
        await take(store, "s1_0")

        assert await store.mark_retry("s1_0", 1, 11_000, "gateway down", "NETWORK_UNAVAILABLE")

        item = await store.get_item("s1_0")
        assert item.state == ItemState.PENDING
        assert item.attempts == 1
        assert item.next_attempt_at == 11_000
        assert item.last_error == "gateway down"
        assert item.last_error_code == "NETWORK_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_retry_requires_in_flight(self, store):
        await store.enqueue(make_request())
        assert await store.mark_retry("s1_0", 1, 0, "x") is False
        assert await store.mark_failed("s1_0", 1, "x") is False

    @pytest.mark.asyncio
    async def test_failed_keeps_payload(self, store):
        await store.enqueue(make_request())
        await take(store, "s1_0")
        await store.mark_failed("s1_0", 3, "rejected", "SUBMISSION_REJECTED")

        item = await store.get_item("s1_0")
        assert item.state == ItemState.FAILED
        assert item.state.terminal
        assert item.payload == b"chunk-bytes"


class TestMarkArchived:
    """Tests for mark_archived()."""

    @pytest.mark.asyncio
    async def test_writes_record_and_drops_payload(self, store):
        await store.enqueue(make_request())
        await take(store, "s1_0")

        record = await store.mark_archived(
            "s1_0", "tx-abc", attempts=2, reward=500, owner_address="addr", archived_at=9000
        )
        assert record.transaction_id == "tx-abc"
        assert record.metadata.stream_id == "s1"

        item = await store.get_item("s1_0")
        assert item.state == ItemState.ARCHIVED
        assert item.transaction_id == "tx-abc"
        assert item.attempts == 2
        assert item.payload is None

        stored = await store.get_record("s1_0")
        assert stored.reward == 500
        assert stored.owner_address == "addr"
        assert stored.archived_at == 9000
        assert stored.confirmation == ConfirmationState.PENDING

    @pytest.mark.asyncio
    async def test_requires_in_flight(self, store):
        await store.enqueue(make_request())
        with pytest.raises(KeyError):
            await store.mark_archived("s1_0", "tx-1", attempts=1)
        assert await store.get_record("s1_0") is None

    @pytest.mark.asyncio
    async def test_transaction_id_set_once(self, store):
        await store.enqueue(make_request())
        await take(store, "s1_0")
        await store.mark_archived("s1_0", "tx-1", attempts=1)

        with pytest.raises(KeyError):
            await store.mark_archived("s1_0", "tx-2", attempts=2)
        assert (await store.get_record("s1_0")).transaction_id == "tx-1"

    @pytest.mark.asyncio
    async def test_rolls_back_on_conflict(self, store):
        """A record insert failure leaves the item in flight."""
        await store.enqueue(make_request(chunk_index=0))
        await store.enqueue(make_request(chunk_index=1))
        await take(store, "s1_0")
        await take(store, "s1_1")
        await store.mark_archived("s1_0", "tx-same", attempts=1)

        with pytest.raises(sqlite3.IntegrityError):
            await store.mark_archived("s1_1", "tx-same", attempts=1)

        item = await store.get_item("s1_1")
        assert item.state == ItemState.IN_FLIGHT
        assert item.payload is not None
        assert await store.get_record("s1_1") is None


class TestRecovery:
    """Tests for recover_in_flight() and requeue_failed()."""

    @pytest.mark.asyncio
    async def test_recover_in_flight(self, store):
        await store.enqueue(make_request(chunk_index=0))
        await store.enqueue(make_request(chunk_index=1))
        await take(store, "s1_0")

        assert await store.recover_in_flight(now=7000) == 1

        item = await store.get_item("s1_0")
        assert item.state == ItemState.PENDING
        assert item.attempts == 0
        assert item.next_attempt_at == 7000

    @pytest.mark.asyncio
    async def test_requeue_single(self, store):
        for index in (0, 1):
            await store.enqueue(make_request(chunk_index=index))
            await take(store, f"s1_{index}")
            await store.mark_failed(f"s1_{index}", 3, "boom")

        assert await store.requeue_failed("s1_1") == 1
        assert (await store.get_item("s1_0")).state == ItemState.FAILED

        item = await store.get_item("s1_1")
        assert item.state == ItemState.PENDING
        assert item.attempts == 0
        assert item.last_error is None

    @pytest.mark.asyncio
    async def test_requeue_all(self, store):
        for index in (0, 1):
            await store.enqueue(make_request(chunk_index=index))
            await take(store, f"s1_{index}")
            await store.mark_failed(f"s1_{index}", 3, "boom")

        assert await store.requeue_failed() == 2
        assert await store.requeue_failed() == 0


class TestReads:
    """Tests for the read side."""

    @pytest.mark.asyncio
    async def test_next_ready_order_and_backoff(self, store):
        await store.enqueue(make_request(chunk_index=1), now=1000)
        await store.enqueue(make_request(chunk_index=0), now=1000)
        await store.enqueue(make_request(stream_id="s0", chunk_index=0), now=2000)

        first = await store.next_ready(now=3000)
        assert first.id == "s1_0"

        await take(store, "s1_0")
        await store.mark_retry("s1_0", 1, 50_000, "later")

        assert (await store.next_ready(now=3000)).id == "s1_1"
        assert await store.next_ready(now=500) is None
        assert await store.next_attempt_at() == 1000

    @pytest.mark.asyncio
    async def test_next_ready_empty(self, store):
        assert await store.next_ready() is None
        assert await store.next_attempt_at() is None

    @pytest.mark.asyncio
    async def test_list_items_omits_payload(self, store):
        await store.enqueue(make_request(chunk_index=0))
        await store.enqueue(make_request(stream_id="s2", chunk_index=0))

        items = await store.list_items()
        assert [i.id for i in items] == ["s1_0", "s2_0"]
        assert all(i.payload is None for i in items)

        assert [i.id for i in await store.list_items(stream_id="s2")] == ["s2_0"]
        assert await store.list_items(state=ItemState.FAILED) == []
        assert len(await store.list_items(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_count_by_state(self, store):
        await store.enqueue(make_request(chunk_index=0, payload=b"12345"))
        await store.enqueue(make_request(chunk_index=1, payload=b"123"))
        await take(store, "s1_1")

        counts = await store.count_by_state()
        assert counts[ItemState.PENDING] == (1, 5)
        assert counts[ItemState.IN_FLIGHT] == (1, 3)
        assert counts[ItemState.ARCHIVED] == (0, 0)
        assert counts[ItemState.FAILED] == (0, 0)

    @pytest.mark.asyncio
    async def test_stream_status(self, store):
        """Transactions are ordered by chunk_index, not by archival time."""
        for index in range(4):
            await store.enqueue(make_request(chunk_index=index))
        for index in (2, 0):
            await take(store, f"s1_{index}")
            await store.mark_archived(f"s1_{index}", f"tx-{index}", attempts=1)
        await take(store, "s1_3")
        await store.mark_failed("s1_3", 1, "rejected")

        status = await store.stream_status("s1")
        assert status.archived_count == 2
        assert [t.chunk_index for t in status.transactions] == [0, 2]
        assert [t.transaction_id for t in status.transactions] == ["tx-0", "tx-2"]
        assert status.pending_count == 1
        assert status.failed_count == 1
        assert status.total_count == 4

    @pytest.mark.asyncio
    async def test_stream_status_unknown(self, store):
        status = await store.stream_status("nope")
        assert status.archived_count == 0
        assert status.transactions == []
        assert status.total_count == 0

    @pytest.mark.asyncio
    async def test_confirmation(self, store):
        for index in (0, 1):
            await store.enqueue(make_request(chunk_index=index))
            await take(store, f"s1_{index}")
            await store.mark_archived(f"s1_{index}", f"tx-{index}", 1, archived_at=1000 + index)

        pending = await store.unconfirmed_records()
        assert [r.item_id for r in pending] == ["s1_0", "s1_1"]

        assert await store.update_confirmation("s1_0", block_height=1234, confirmed_at=5000)
        assert not await store.update_confirmation("missing", block_height=1)

        record = await store.get_record("s1_0")
        assert record.confirmation == ConfirmationState.CONFIRMED
        assert record.block_height == 1234
        assert record.confirmed_at == 5000
        assert [r.item_id for r in await store.unconfirmed_records()] == ["s1_1"]

    @pytest.mark.asyncio
    async def test_survives_reopen(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "queue.db")
            await QueueStore(path).enqueue(make_request())

            reopened = QueueStore(path)
            item = await reopened.get_item("s1_0")
            assert item.payload == b"chunk-bytes"
