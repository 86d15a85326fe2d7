"""
Unit tests for the archival backlog CLI.
"""

import json
import os
import sys

import pytest

from streaming.zipiq_server.archive import ArchivalRequest, ItemState, QueueStore
from streaming.zipiq_server.tools import QueueCLI
from streaming.zipiq_server.tools.queue_cli import main


def make_request(chunk_index):
    return ArchivalRequest(
        payload=b"payload-%d" % chunk_index,
        stream_id="s1",
        chunk_index=chunk_index,
        timestamp_ms=1000 + chunk_index,
        user_id="u1",
        content_address=f"bafk-{chunk_index}",
    )


async def seed(db_path):
    """One archived, one failed and one pending item."""
    store = QueueStore(db_path)
    for index in range(3):
        await store.enqueue(make_request(index))
    await store.mark_in_flight("s1_0")
    await store.mark_archived("s1_0", "tx-0", attempts=1)
    await store.mark_in_flight("s1_1")
    await store.mark_failed("s1_1", 3, "gateway rejected", "SUBMISSION_REJECTED")
    return store


@pytest.fixture
async def data_dir(tmp_path):
    await seed(os.path.join(tmp_path, "archive_queue.db"))
    return str(tmp_path)


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["zipiq-queue", *argv])
    with pytest.raises(SystemExit) as exc:
        main()
    return exc.value.code


class TestQueueCLI:
    """Tests for QueueCLI methods."""

    @pytest.mark.asyncio
    async def test_stats(self, data_dir):
        stats = await QueueCLI(data_dir).stats()
        assert stats["archived"]["count"] == 1
        assert stats["failed"]["count"] == 1
        assert stats["pending"] == {"count": 1, "size_bytes": len(b"payload-2")}

    @pytest.mark.asyncio
    async def test_failed_and_requeue(self, data_dir):
        cli = QueueCLI(data_dir)
        failed = await cli.failed()
        assert [item["id"] for item in failed] == ["s1_1"]
        assert failed[0]["last_error_code"] == "SUBMISSION_REJECTED"

        assert await cli.requeue("s1_1") == 1
        assert (await cli.store.get_item("s1_1")).state == ItemState.PENDING
        assert await cli.failed() == []

    @pytest.mark.asyncio
    async def test_stream(self, data_dir):
        status = await QueueCLI(data_dir).stream("s1")
        assert status["archived_count"] == 1
        assert status["transactions"][0]["transaction_id"] == "tx-0"

    @pytest.mark.asyncio
    async def test_missing_backlog(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await QueueCLI(str(tmp_path / "empty")).stats()


class TestMain:
    """Tests for the argparse entry point."""

    def test_stats_json(self, data_dir, monkeypatch, capsys):
        assert run_cli(monkeypatch, "--data-dir", data_dir, "--format", "json", "stats") == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["failed"]["count"] == 1

    def test_failed_text(self, data_dir, monkeypatch, capsys):
        assert run_cli(monkeypatch, "--data-dir", data_dir, "failed") == 0
        out = capsys.readouterr().out
        assert "s1_1" in out
        assert "SUBMISSION_REJECTED" in out

    def test_requeue_requires_target(self, data_dir, monkeypatch):
        assert run_cli(monkeypatch, "--data-dir", data_dir, "requeue") == 2

    def test_requeue_unknown_item(self, data_dir, monkeypatch):
        assert run_cli(monkeypatch, "--data-dir", data_dir, "requeue", "--item-id", "nope") == 1

    def test_requeue_all(self, data_dir, monkeypatch, capsys):
        assert run_cli(monkeypatch, "--data-dir", data_dir, "requeue", "--all") == 0
        assert "Requeued 1 item(s)" in capsys.readouterr().out

    def test_missing_data_dir(self, tmp_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "--data-dir", str(tmp_path / "nope"), "stats") == 1
        assert "No archival backlog" in capsys.readouterr().err

    def test_cleanup(self, data_dir, monkeypatch, capsys):
        assert run_cli(monkeypatch, "--data-dir", data_dir, "cleanup", "--max-age-days", "1") == 0
        assert "Removed 0 blob(s)" in capsys.readouterr().out
