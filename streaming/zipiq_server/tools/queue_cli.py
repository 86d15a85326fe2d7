"""
Operator CLI for the zipIQ archival backlog.

Works directly on the backlog database and content store of a data
directory, so it can be used while the server runs (SQLite WAL mode) or
after it stopped. Requeued items are picked up by a running server at its
next idle poll.

Usage:
    zipiq-queue stats --data-dir /var/lib/zipiq
    zipiq-queue failed --limit 20
    zipiq-queue requeue --item-id stream1_4
    zipiq-queue requeue --all
    zipiq-queue stream stream1
    zipiq-queue cleanup --max-age-days 30

Invariants:
    - Never submits to the archival network
    - Only failed items are requeued; live items are never touched
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from ..archive import ItemState, QueueStore
from ..config import ContentStoreConfig, StorageConfig
from ..content import LocalContentStore

logger = logging.getLogger(__name__)


class QueueCLI:
    """Backlog inspection and repair commands.

    Example:
        >>> cli = QueueCLI("/var/lib/zipiq")
        >>> stats = await cli.stats()
        >>> await cli.requeue(item_id="stream1_4")
    """

    def __init__(
        self,
        data_dir: str,
        queue_db_file: str = "archive_queue.db",
        content_dir: str | None = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.queue_db_path = self.data_dir / queue_db_file
        self.content_dir = Path(content_dir) if content_dir else self.data_dir / "blobs"
        self._store: QueueStore | None = None

    @property
    def store(self) -> QueueStore:
        if self._store is None:
            if not self.queue_db_path.exists():
                raise FileNotFoundError(f"No archival backlog at {self.queue_db_path}")
            self._store = QueueStore(str(self.queue_db_path))
        return self._store

    async def stats(self) -> dict[str, Any]:
        counts = await self.store.count_by_state()
        return {
            state.value: {"count": count, "size_bytes": size}
            for state, (count, size) in counts.items()
        }

    async def failed(self, limit: int = 50) -> list[dict[str, Any]]:
        items = await self.store.list_items(state=ItemState.FAILED, limit=limit)
        return [item.to_dict() for item in items]

    async def requeue(self, item_id: str | None = None) -> int:
        return await self.store.requeue_failed(item_id)

    async def stream(self, stream_id: str) -> dict[str, Any]:
        status = await self.store.stream_status(stream_id)
        return status.to_dict()

    async def cleanup(self, max_age_days: float) -> int:
        store = LocalContentStore(str(self.content_dir))
        return await store.cleanup(max_age_days * 86400)


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True))


async def _run(args: argparse.Namespace) -> int:
    cli = QueueCLI(args.data_dir, args.queue_db_file, args.content_dir)

    if args.command == "stats":
        stats = await cli.stats()
        if args.format == "json":
            _print_json(stats)
        else:
            for state, values in stats.items():
                print(f"  {state:<10} {values['count']:>8} items  {values['size_bytes']:>14} bytes")

    elif args.command == "failed":
        items = await cli.failed(args.limit)
        if args.format == "json":
            _print_json(items)
        elif not items:
            print("No failed items")
        else:
            print(f"{len(items)} failed item(s):")
            for item in items:
                print(
                    f"  {item['id']}  attempts={item['attempts']}  "
                    f"[{item['last_error_code']}] {item['last_error']}"
                )

    elif args.command == "requeue":
        if not args.all and not args.item_id:
            print("Specify --item-id or --all", file=sys.stderr)
            return 2
        requeued = await cli.requeue(None if args.all else args.item_id)
        print(f"Requeued {requeued} item(s)")
        return 0 if requeued or args.all else 1

    elif args.command == "stream":
        status = await cli.stream(args.stream_id)
        if args.format == "json":
            _print_json(status)
        else:
            print(
                f"Stream {status['stream_id']}: {status['archived_count']} archived, "
                f"{status['pending_count']} pending, {status['failed_count']} failed"
            )
            for tx in status["transactions"]:
                print(f"  #{tx['chunk_index']:<6} {tx['transaction_id']}  {tx['confirmation']}")

    elif args.command == "cleanup":
        removed = await cli.cleanup(args.max_age_days)
        print(f"Removed {removed} blob(s)")

    return 0


def main() -> None:
    """CLI entry point for the archival queue tool."""
    storage = StorageConfig()
    content = ContentStoreConfig()

    parser = argparse.ArgumentParser(description="zipIQ archival backlog tool")
    parser.add_argument(
        "--data-dir", default=os.getenv("DATA_DIR", storage.data_dir), help="Server data directory"
    )
    parser.add_argument(
        "--queue-db-file",
        default=os.getenv("QUEUE_DB_FILE", storage.queue_db_file),
        help="Backlog database file name",
    )
    parser.add_argument(
        "--content-dir", default=os.getenv("CONTENT_DIR"), help="Blob directory (default: <data-dir>/blobs)"
    )
    parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Item counts and sizes per state")

    failed_parser = subparsers.add_parser("failed", help="List failed items")
    failed_parser.add_argument("--limit", type=int, default=50, help="Maximum items to list")

    requeue_parser = subparsers.add_parser("requeue", help="Requeue failed items")
    requeue_parser.add_argument("--item-id", help="Item id ({stream_id}_{chunk_index})")
    requeue_parser.add_argument("--all", action="store_true", help="Requeue every failed item")

    stream_parser = subparsers.add_parser("stream", help="Archival status of a stream")
    stream_parser.add_argument("stream_id", help="Stream identifier")

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove expired unpinned blobs")
    cleanup_parser.add_argument(
        "--max-age-days",
        type=float,
        default=float(content.retention_days),
        help="Retention in days",
    )

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        sys.exit(asyncio.run(_run(args)))
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
