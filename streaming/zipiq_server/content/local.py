"""
Local filesystem content store for zipIQ.

Blobs are written as files named by their content address, fanned out by
the first two characters after the multibase prefix:

    <content_dir>/<aa>/<address>

Blob metadata and the chunk/stream indexes live in a SQLite database next
to the blob files, so listings survive restarts and are index lookups.
Recently stored or read blobs are kept in a bounded in-memory LRU cache.

Invariants:
    - Blob files are written to a temporary name and renamed into place,
      readers never observe a partial blob
    - The blobs row is inserted only after the file is in place
    - cleanup() deletes index rows before unlinking files
    - Pinned blobs are never removed

How to change safely:
    - Schema migrations must be backward compatible
    - Never rewrite an existing blob file

Table schema:
    blobs:
        - address TEXT PRIMARY KEY
        - size INTEGER
        - stored_at INTEGER (Unix ms)
        - pinned INTEGER (0/1)
        - pinned_at, unpinned_at INTEGER
        - mimetype TEXT, filename TEXT

    chunks:
        - stream_id TEXT, chunk_index INTEGER (PRIMARY KEY)
        - content_address TEXT
        - timestamp_ms INTEGER, user_id TEXT, size INTEGER
        - mimetype TEXT, uploaded_at INTEGER
        - INDEX on (user_id, stream_id), INDEX on (content_address)
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import tempfile
from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .base import (
    BlobInfo,
    ChunkInfo,
    ChunkRecord,
    ContentStore,
    NotFoundError,
    StorageUnavailableError,
    StreamSummary,
    compute_content_address,
    guess_mimetype,
    now_ms,
)

logger = logging.getLogger(__name__)


class BlobCache:
    """Bounded LRU cache of blob bytes keyed by content address."""

    def __init__(self, max_bytes: int, max_items: int) -> None:
        self.max_bytes = max_bytes
        self.max_items = max_items
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self._size = 0
        self.hits = 0
        self.misses = 0

    def get(self, address: str) -> bytes | None:
        data = self._entries.get(address)
        if data is None:
            self.misses += 1
            return None
        self._entries.move_to_end(address)
        self.hits += 1
        return data

    def add(self, address: str, data: bytes) -> None:
        if len(data) > self.max_bytes or self.max_items <= 0:
            return
        if address in self._entries:
            self._entries.move_to_end(address)
            return
        self._entries[address] = data
        self._size += len(data)
        while self._size > self.max_bytes or len(self._entries) > self.max_items:
            _, evicted = self._entries.popitem(last=False)
            self._size -= len(evicted)

    def discard(self, address: str) -> None:
        data = self._entries.pop(address, None)
        if data is not None:
            self._size -= len(data)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def size_bytes(self) -> int:
        return self._size


class LocalContentStore(ContentStore):
    """Content store backed by the local filesystem and a SQLite index.

    Thread safety:
        Mutations are serialized with an asyncio lock. Reads do not take the
        lock; a blob file is only visible once complete.

    Example:
        >>> store = LocalContentStore("/var/lib/zipiq/blobs")
        >>> record = await store.upload_chunk(data, ChunkInfo("s1", 0, ts, "u1"))
        >>> chunks = await store.list_stream_chunks("s1")
    """

    def __init__(
        self,
        content_dir: str,
        cache_max_bytes: int = 256 * 1024 * 1024,
        cache_max_items: int = 512,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the local content store.

        Args:
            content_dir: Directory for blob files and the index database
            cache_max_bytes: In-memory cache byte budget
            cache_max_items: In-memory cache entry budget
            wal_mode: Enable SQLite WAL mode for the index
            busy_timeout_ms: SQLite busy timeout
        """
        self.content_dir = Path(content_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache = BlobCache(cache_max_bytes, cache_max_items)
        self._lock = asyncio.Lock()

        self.content_dir.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            self._create_schema(conn)

    @property
    def index_path(self) -> Path:
        return self.content_dir / "index.db"

    def _blob_path(self, address: str) -> Path:
        return self.content_dir / address[1:3] / address

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            str(self.index_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS blobs (
                address TEXT PRIMARY KEY,
                size INTEGER NOT NULL,
                stored_at INTEGER NOT NULL,
                pinned INTEGER NOT NULL DEFAULT 0,
                pinned_at INTEGER,
                unpinned_at INTEGER,
                mimetype TEXT NOT NULL,
                filename TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_blobs_stored ON blobs(pinned, stored_at);

            CREATE TABLE IF NOT EXISTS chunks (
                stream_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                content_address TEXT NOT NULL,
                timestamp_ms INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                size INTEGER NOT NULL,
                mimetype TEXT NOT NULL,
                uploaded_at INTEGER NOT NULL,
                PRIMARY KEY (stream_id, chunk_index)
            );

            CREATE INDEX IF NOT EXISTS idx_chunks_user ON chunks(user_id, stream_id);
            CREATE INDEX IF NOT EXISTS idx_chunks_address ON chunks(content_address);
        """)

    def _write_blob_file(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def put(self, data: bytes, filename: str | None = None) -> str:
        address = compute_content_address(data)
        path = self._blob_path(address)

        async with self._lock:
            try:
                if not path.exists():
                    self._write_blob_file(path, data)
                with self._get_connection() as conn:
                    inserted = conn.execute(
                        """
                        INSERT OR IGNORE INTO blobs (address, size, stored_at, mimetype, filename)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (address, len(data), now_ms(), guess_mimetype(filename), filename),
                    ).rowcount
            except (OSError, sqlite3.Error) as e:
                raise StorageUnavailableError(
                    f"Failed to store blob: {e}", address=address
                ) from e

        if inserted:
            logger.debug("Stored blob", extra={"address": address, "size": len(data)})
        self.cache.add(address, bytes(data))
        return address

    async def get(self, address: str) -> bytes:
        cached = self.cache.get(address)
        if cached is not None:
            return cached

        path = self._blob_path(address)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(address) from None
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read blob: {e}", address=address) from e

        self.cache.add(address, data)
        return data

    async def has(self, address: str) -> bool:
        return await self.blob_info(address) is not None

    async def _set_pinned(self, address: str, pinned: bool) -> bool:
        column = "pinned_at" if pinned else "unpinned_at"
        async with self._lock:
            with self._get_connection() as conn:
                updated = conn.execute(
                    f"UPDATE blobs SET pinned = ?, {column} = ? WHERE address = ?",
                    (int(pinned), now_ms(), address),
                ).rowcount
        if updated == 0:
            action = "pin" if pinned else "unpin"
            logger.warning(f"Cannot {action} unknown content", extra={"address": address})
            return False
        logger.info("Pinned content" if pinned else "Unpinned content", extra={"address": address})
        return True

    async def pin(self, address: str) -> bool:
        return await self._set_pinned(address, True)

    async def unpin(self, address: str) -> bool:
        return await self._set_pinned(address, False)

    async def cleanup(self, max_age_seconds: float) -> int:
        cutoff = now_ms() - int(max_age_seconds * 1000)

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    expired = [
                        row["address"]
                        for row in conn.execute(
                            "SELECT address FROM blobs WHERE pinned = 0 AND stored_at < ?",
                            (cutoff,),
                        )
                    ]
                    for address in expired:
                        conn.execute("DELETE FROM chunks WHERE content_address = ?", (address,))
                        conn.execute("DELETE FROM blobs WHERE address = ?", (address,))
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

            for address in expired:
                self.cache.discard(address)
                try:
                    self._blob_path(address).unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(
                        f"Could not delete blob file: {e}", extra={"address": address}
                    )

        logger.info(f"Content cleanup removed {len(expired)} blobs")
        return len(expired)

    async def upload_chunk(self, data: bytes, chunk: ChunkInfo) -> ChunkRecord:
        filename = chunk.filename or f"chunk-{chunk.chunk_index}-{chunk.stream_id}.bin"
        address = await self.put(data, filename=filename)
        record = ChunkRecord(
            stream_id=chunk.stream_id,
            chunk_index=chunk.chunk_index,
            content_address=address,
            timestamp_ms=chunk.timestamp_ms,
            user_id=chunk.user_id,
            size=len(data),
            mimetype=chunk.mimetype,
            uploaded_at=now_ms(),
        )

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO chunks (stream_id, chunk_index, content_address,
                                                   timestamp_ms, user_id, size, mimetype,
                                                   uploaded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.stream_id,
                        record.chunk_index,
                        record.content_address,
                        record.timestamp_ms,
                        record.user_id,
                        record.size,
                        record.mimetype,
                        record.uploaded_at,
                    ),
                )

        logger.info(
            "Indexed stream chunk",
            extra={
                "stream_id": chunk.stream_id,
                "chunk_index": chunk.chunk_index,
                "address": address,
                "size": len(data),
            },
        )
        return record

    async def list_stream_chunks(self, stream_id: str) -> list[ChunkRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE stream_id = ? ORDER BY chunk_index",
                (stream_id,),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    _SUMMARY_SQL = """
        SELECT stream_id, MIN(user_id) AS user_id, COUNT(*) AS chunk_count,
               SUM(size) AS total_size, MIN(uploaded_at) AS created_at,
               MAX(uploaded_at) AS last_modified, MIN(timestamp_ms) AS first_ts,
               MAX(timestamp_ms) AS last_ts
        FROM chunks
    """

    async def get_stream(self, stream_id: str) -> StreamSummary | None:
        with self._get_connection() as conn:
            row = conn.execute(
                self._SUMMARY_SQL + " WHERE stream_id = ? GROUP BY stream_id",
                (stream_id,),
            ).fetchone()
        return self._row_to_summary(row) if row else None

    async def list_user_streams(self, user_id: str) -> list[StreamSummary]:
        with self._get_connection() as conn:
            rows = conn.execute(
                self._SUMMARY_SQL
                + " WHERE user_id = ? GROUP BY stream_id ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_summary(row) for row in rows]

    async def blob_info(self, address: str) -> BlobInfo | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM blobs WHERE address = ?", (address,)).fetchone()
        if row is None:
            return None
        return BlobInfo(
            address=row["address"],
            size=row["size"],
            stored_at=row["stored_at"],
            pinned=bool(row["pinned"]),
            mimetype=row["mimetype"],
            filename=row["filename"],
            pinned_at=row["pinned_at"],
            unpinned_at=row["unpinned_at"],
        )

    async def list_addresses(self) -> list[str]:
        with self._get_connection() as conn:
            return [row["address"] for row in conn.execute("SELECT address FROM blobs")]

    async def storage_stats(self) -> dict[str, Any]:
        with self._get_connection() as conn:
            blobs = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(size), 0) AS size, "
                "COALESCE(SUM(pinned), 0) AS pinned FROM blobs"
            ).fetchone()
            chunks = conn.execute(
                "SELECT COUNT(*) AS n, COUNT(DISTINCT stream_id) AS streams FROM chunks"
            ).fetchone()
        return {
            "backend": "local",
            "content_dir": str(self.content_dir),
            "total_blobs": blobs["n"],
            "total_size": blobs["size"],
            "pinned_count": blobs["pinned"],
            "total_chunks": chunks["n"],
            "total_streams": chunks["streams"],
            "cache_entries": len(self.cache),
            "cache_bytes": self.cache.size_bytes,
            "cache_hits": self.cache.hits,
            "cache_misses": self.cache.misses,
        }

    def _row_to_chunk(self, row: sqlite3.Row) -> ChunkRecord:
        return ChunkRecord(
            stream_id=row["stream_id"],
            chunk_index=row["chunk_index"],
            content_address=row["content_address"],
            timestamp_ms=row["timestamp_ms"],
            user_id=row["user_id"],
            size=row["size"],
            mimetype=row["mimetype"],
            uploaded_at=row["uploaded_at"],
        )

    def _row_to_summary(self, row: sqlite3.Row) -> StreamSummary:
        return StreamSummary(
            stream_id=row["stream_id"],
            user_id=row["user_id"],
            chunk_count=row["chunk_count"],
            total_size=row["total_size"],
            created_at=row["created_at"],
            last_modified=row["last_modified"],
            first_timestamp_ms=row["first_ts"],
            last_timestamp_ms=row["last_ts"],
        )
