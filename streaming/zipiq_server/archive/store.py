"""
Durable SQLite backlog for the archival queue.

The queue store holds every QueueItem and the ArchivedRecord index in one
SQLite database so that pending work and archival results survive process
restarts. Only the archival queue engine writes to it.

Invariants:
    - Enqueue is insert-if-absent inside BEGIN IMMEDIATE; two concurrent
      enqueues of one id never both insert
    - An item becomes archived in the same transaction that writes its
      ArchivedRecord; there is never one without the other
    - State transitions are conditional on the expected current state
    - Archived payloads are dropped; failed payloads are kept for requeue

How to change safely:
    - Schema migrations must be backward compatible
    - Keep multi-statement updates inside explicit transactions

Table schema:
    queue_items:
        - id TEXT PRIMARY KEY ("{stream_id}_{chunk_index}")
        - payload BLOB (NULL once archived)
        - metadata_json TEXT
        - stream_id TEXT, chunk_index INTEGER, payload_size INTEGER
        - attempts INTEGER, state TEXT
        - queued_at, next_attempt_at, updated_at INTEGER (Unix ms)
        - transaction_id TEXT, last_error TEXT, last_error_code TEXT
        - INDEX on (state, next_attempt_at), INDEX on (stream_id)

    archived_records:
        - item_id TEXT PRIMARY KEY
        - stream_id TEXT, chunk_index INTEGER
        - transaction_id TEXT UNIQUE
        - archived_at INTEGER, metadata_json TEXT
        - reward TEXT, owner_address TEXT
        - confirmation TEXT, block_height INTEGER, confirmed_at INTEGER
        - INDEX on (stream_id, chunk_index), INDEX on (confirmation, archived_at)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..content.base import now_ms
from .models import (
    ArchivalRequest,
    ArchivedRecord,
    ArchiveMetadata,
    ConfirmationState,
    EnqueueResult,
    ItemState,
    QueueItem,
    StreamStatus,
    TransactionRef,
)

logger = logging.getLogger(__name__)


class QueueStore:
    """SQLite-backed backlog and archived-record index.

    Thread safety:
        Writes are serialized with an asyncio lock and run inside
        BEGIN IMMEDIATE transactions. Connections are per operation.

    Example:
        >>> store = QueueStore("/var/lib/zipiq/archive_queue.db")
        >>> result = await store.enqueue(request)
        >>> item = await store.next_ready()
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the queue store.

        Args:
            db_path: Path of the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            self._create_schema(conn)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS queue_items (
                id TEXT PRIMARY KEY,
                payload BLOB,
                metadata_json TEXT NOT NULL,
                stream_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                payload_size INTEGER NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                state TEXT NOT NULL,
                queued_at INTEGER NOT NULL,
                next_attempt_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                transaction_id TEXT,
                last_error TEXT,
                last_error_code TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_queue_ready
                ON queue_items(state, next_attempt_at);
            CREATE INDEX IF NOT EXISTS idx_queue_stream
                ON queue_items(stream_id);

            CREATE TABLE IF NOT EXISTS archived_records (
                item_id TEXT PRIMARY KEY,
                stream_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                transaction_id TEXT NOT NULL UNIQUE,
                archived_at INTEGER NOT NULL,
                metadata_json TEXT NOT NULL,
                reward TEXT NOT NULL DEFAULT '0',
                owner_address TEXT,
                confirmation TEXT NOT NULL DEFAULT 'pending',
                block_height INTEGER,
                confirmed_at INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_records_stream
                ON archived_records(stream_id, chunk_index);
            CREATE INDEX IF NOT EXISTS idx_records_confirmation
                ON archived_records(confirmation, archived_at);
        """)

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> QueueItem:
        keys = row.keys()
        return QueueItem(
            id=row["id"],
            payload=row["payload"] if "payload" in keys else None,
            metadata=ArchiveMetadata.from_dict(json.loads(row["metadata_json"])),
            attempts=row["attempts"],
            state=ItemState(row["state"]),
            queued_at=row["queued_at"],
            next_attempt_at=row["next_attempt_at"],
            transaction_id=row["transaction_id"],
            last_error=row["last_error"],
            last_error_code=row["last_error_code"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ArchivedRecord:
        return ArchivedRecord(
            item_id=row["item_id"],
            transaction_id=row["transaction_id"],
            archived_at=row["archived_at"],
            metadata=ArchiveMetadata.from_dict(json.loads(row["metadata_json"])),
            reward=int(row["reward"]),
            owner_address=row["owner_address"],
            confirmation=ConfirmationState(row["confirmation"]),
            block_height=row["block_height"],
            confirmed_at=row["confirmed_at"],
        )

    # Writes

    async def enqueue(self, request: ArchivalRequest, now: int | None = None) -> EnqueueResult:
        """Insert a pending item unless one with the same id is live.

        A failed item with the same id is replaced by a fresh pending job.
        """
        now = now or now_ms()
        metadata = request.metadata()
        item_id = metadata.item_id
        metadata_json = json.dumps(metadata.to_dict(), sort_keys=True)

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT state FROM queue_items WHERE id = ?", (item_id,)
                    ).fetchone()

                    if row is not None and row["state"] != ItemState.FAILED.value:
                        conn.execute("COMMIT")
                        return EnqueueResult(item_id, created=False, state=ItemState(row["state"]))

                    if row is None:
                        conn.execute(
                            """
                            INSERT INTO queue_items (id, payload, metadata_json, stream_id,
                                                     chunk_index, payload_size, attempts, state,
                                                     queued_at, next_attempt_at, updated_at)
                            VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                            """,
                            (
                                item_id,
                                request.payload,
                                metadata_json,
                                metadata.stream_id,
                                metadata.chunk_index,
                                metadata.payload_size,
                                ItemState.PENDING.value,
                                now,
                                now,
                                now,
                            ),
                        )
                    else:
                        conn.execute(
                            """
                            UPDATE queue_items
                            SET payload = ?, metadata_json = ?, payload_size = ?, attempts = 0,
                                state = ?, queued_at = ?, next_attempt_at = ?, updated_at = ?,
                                transaction_id = NULL, last_error = NULL, last_error_code = NULL
                            WHERE id = ?
                            """,
                            (
                                request.payload,
                                metadata_json,
                                metadata.payload_size,
                                ItemState.PENDING.value,
                                now,
                                now,
                                now,
                                item_id,
                            ),
                        )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.debug(
            "Queued item",
            extra={"item_id": item_id, "size": metadata.payload_size, "replaced": row is not None},
        )
        return EnqueueResult(item_id, created=True, state=ItemState.PENDING)

    async def mark_in_flight(self, item_id: str, now: int | None = None) -> bool:
        return await self._transition(
            item_id,
            ItemState.PENDING,
            "state = ?, updated_at = ?",
            (ItemState.IN_FLIGHT.value, now or now_ms()),
        )

    async def mark_retry(
        self,
        item_id: str,
        attempts: int,
        next_attempt_at: int,
        error: str,
        error_code: str | None = None,
    ) -> bool:
        return await self._transition(
            item_id,
            ItemState.IN_FLIGHT,
            "state = ?, attempts = ?, next_attempt_at = ?, last_error = ?, "
            "last_error_code = ?, updated_at = ?",
            (ItemState.PENDING.value, attempts, next_attempt_at, error, error_code, now_ms()),
        )

    async def mark_failed(
        self,
        item_id: str,
        attempts: int,
        error: str,
        error_code: str | None = None,
    ) -> bool:
        return await self._transition(
            item_id,
            ItemState.IN_FLIGHT,
            "state = ?, attempts = ?, last_error = ?, last_error_code = ?, updated_at = ?",
            (ItemState.FAILED.value, attempts, error, error_code, now_ms()),
        )

    async def _transition(
        self,
        item_id: str,
        expected: ItemState,
        assignments: str,
        params: tuple[Any, ...],
    ) -> bool:
        async with self._lock:
            with self._get_connection() as conn:
                updated = conn.execute(
                    f"UPDATE queue_items SET {assignments} WHERE id = ? AND state = ?",
                    (*params, item_id, expected.value),
                ).rowcount
        if not updated:
            logger.warning(
                "Queue item not in expected state",
                extra={"item_id": item_id, "expected": expected.value},
            )
        return bool(updated)

    async def mark_archived(
        self,
        item_id: str,
        transaction_id: str,
        attempts: int,
        reward: int = 0,
        owner_address: str | None = None,
        archived_at: int | None = None,
    ) -> ArchivedRecord:
        """Write the ArchivedRecord and mark the item archived atomically.

        Raises:
            KeyError: If the item does not exist or is not in flight
        """
        archived_at = archived_at or now_ms()

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT metadata_json, stream_id, chunk_index FROM queue_items "
                        "WHERE id = ? AND state = ? AND transaction_id IS NULL",
                        (item_id, ItemState.IN_FLIGHT.value),
                    ).fetchone()
                    if row is None:
                        raise KeyError(f"Queue item not in flight: {item_id}")

                    conn.execute(
                        """
                        INSERT INTO archived_records (item_id, stream_id, chunk_index,
                                                      transaction_id, archived_at, metadata_json,
                                                      reward, owner_address, confirmation)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            item_id,
                            row["stream_id"],
                            row["chunk_index"],
                            transaction_id,
                            archived_at,
                            row["metadata_json"],
                            str(reward),
                            owner_address,
                            ConfirmationState.PENDING.value,
                        ),
                    )
                    conn.execute(
                        """
                        UPDATE queue_items
                        SET state = ?, transaction_id = ?, attempts = ?, payload = NULL,
                            last_error = NULL, last_error_code = NULL, updated_at = ?
                        WHERE id = ?
                        """,
                        (ItemState.ARCHIVED.value, transaction_id, attempts, archived_at, item_id),
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        return ArchivedRecord(
            item_id=item_id,
            transaction_id=transaction_id,
            archived_at=archived_at,
            metadata=ArchiveMetadata.from_dict(json.loads(row["metadata_json"])),
            reward=reward,
            owner_address=owner_address,
        )

    async def recover_in_flight(self, now: int | None = None) -> int:
        """Return items left in flight by a crash to pending.

        The interrupted attempt is not counted.
        """
        now = now or now_ms()
        async with self._lock:
            with self._get_connection() as conn:
                recovered = conn.execute(
                    "UPDATE queue_items SET state = ?, next_attempt_at = ?, updated_at = ? "
                    "WHERE state = ?",
                    (ItemState.PENDING.value, now, now, ItemState.IN_FLIGHT.value),
                ).rowcount
        if recovered:
            logger.warning(f"Recovered {recovered} in-flight items after restart")
        return recovered

    async def requeue_failed(self, item_id: str | None = None, now: int | None = None) -> int:
        """Move failed items back to pending with a fresh attempt budget.

        Args:
            item_id: A single item to requeue, or None for every failed item
        """
        now = now or now_ms()
        sql = (
            "UPDATE queue_items SET state = ?, attempts = 0, next_attempt_at = ?, updated_at = ?, "
            "last_error = NULL, last_error_code = NULL "
            "WHERE state = ? AND payload IS NOT NULL"
        )
        params: list[Any] = [ItemState.PENDING.value, now, now, ItemState.FAILED.value]
        if item_id is not None:
            sql += " AND id = ?"
            params.append(item_id)

        async with self._lock:
            with self._get_connection() as conn:
                requeued = conn.execute(sql, params).rowcount
        logger.info(f"Requeued {requeued} failed items", extra={"item_id": item_id})
        return requeued

    async def update_confirmation(
        self,
        item_id: str,
        block_height: int | None,
        confirmed_at: int | None = None,
    ) -> bool:
        async with self._lock:
            with self._get_connection() as conn:
                updated = conn.execute(
                    "UPDATE archived_records SET confirmation = ?, block_height = ?, "
                    "confirmed_at = ? WHERE item_id = ?",
                    (
                        ConfirmationState.CONFIRMED.value,
                        block_height,
                        confirmed_at or now_ms(),
                        item_id,
                    ),
                ).rowcount
        return bool(updated)

    # Reads

    async def get_item(self, item_id: str) -> QueueItem | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM queue_items WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    async def next_ready(self, now: int | None = None) -> QueueItem | None:
        """Oldest pending item whose backoff has expired."""
        now = now or now_ms()
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM queue_items
                WHERE state = ? AND next_attempt_at <= ?
                ORDER BY queued_at, chunk_index, rowid
                LIMIT 1
                """,
                (ItemState.PENDING.value, now),
            ).fetchone()
        return self._row_to_item(row) if row else None

    async def next_attempt_at(self) -> int | None:
        """Earliest next_attempt_at among pending items."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MIN(next_attempt_at) AS next_at FROM queue_items WHERE state = ?",
                (ItemState.PENDING.value,),
            ).fetchone()
        return row["next_at"] if row else None

    async def list_items(
        self,
        state: ItemState | None = None,
        limit: int = 100,
        stream_id: str | None = None,
    ) -> list[QueueItem]:
        """Items without their payloads, oldest first."""
        sql = (
            "SELECT id, metadata_json, attempts, state, queued_at, next_attempt_at, "
            "transaction_id, last_error, last_error_code, updated_at FROM queue_items"
        )
        clauses = []
        params: list[Any] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if stream_id is not None:
            clauses.append("stream_id = ?")
            params.append(stream_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY queued_at, chunk_index, rowid LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_item(row) for row in rows]

    async def count_by_state(self) -> dict[ItemState, tuple[int, int]]:
        """(count, total payload bytes) per state."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n, COALESCE(SUM(payload_size), 0) AS size "
                "FROM queue_items GROUP BY state"
            ).fetchall()
        counts = {state: (0, 0) for state in ItemState}
        for row in rows:
            counts[ItemState(row["state"])] = (row["n"], row["size"])
        return counts

    async def stream_status(self, stream_id: str) -> StreamStatus:
        with self._get_connection() as conn:
            records = conn.execute(
                """
                SELECT chunk_index, transaction_id, archived_at, confirmation, block_height
                FROM archived_records
                WHERE stream_id = ?
                ORDER BY chunk_index
                """,
                (stream_id,),
            ).fetchall()
            counts = {
                row["state"]: row["n"]
                for row in conn.execute(
                    "SELECT state, COUNT(*) AS n FROM queue_items WHERE stream_id = ? "
                    "GROUP BY state",
                    (stream_id,),
                )
            }

        transactions = [
            TransactionRef(
                chunk_index=row["chunk_index"],
                transaction_id=row["transaction_id"],
                archived_at=row["archived_at"],
                confirmation=ConfirmationState(row["confirmation"]),
                block_height=row["block_height"],
            )
            for row in records
        ]
        return StreamStatus(
            stream_id=stream_id,
            archived_count=len(transactions),
            transactions=transactions,
            pending_count=counts.get(ItemState.PENDING.value, 0)
            + counts.get(ItemState.IN_FLIGHT.value, 0),
            failed_count=counts.get(ItemState.FAILED.value, 0),
        )

    async def get_record(self, item_id: str) -> ArchivedRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM archived_records WHERE item_id = ?", (item_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    async def unconfirmed_records(self, limit: int = 50) -> list[ArchivedRecord]:
        """Archived records still awaiting confirmation, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM archived_records WHERE confirmation = ? "
                "ORDER BY archived_at LIMIT ?",
                (ConfirmationState.PENDING.value, limit),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]
