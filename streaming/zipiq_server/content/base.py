"""
Base protocol and types for the content-addressed blob store.

A content store is a write-once mapping from content address to bytes.
Besides raw blobs it keeps a chunk index (stream_id, chunk_index) -> blob
and a stream index stream_id -> ordered chunks, so that stream listings are
lookups instead of scans.

Content addresses are CIDv1 strings: raw codec (0x55), sha2-256 multihash,
lowercase base32 multibase with the "b" prefix. Identical bytes always map to
the identical address.

Invariants:
    - put() is insert-if-absent; a stored blob is never modified
    - get() of an unknown address raises NotFoundError (a local miss only)
    - Pinned blobs are never removed by cleanup()
    - Chunk index entries always point at a blob that exists in the store

How to change safely:
    - Changing the address format orphans every existing blob file
    - Protocol changes require updating all implementations
"""

from __future__ import annotations

import base64
import hashlib
import json
import time
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ..errors import ZipiqError

CID_VERSION = 0x01
RAW_CODEC = 0x55
SHA2_256 = 0x12
SHA2_256_LENGTH = 0x20

DEFAULT_MIMETYPE = "application/octet-stream"
MIME_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".json": "application/json",
    ".txt": "text/plain",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}


class ContentStoreError(ZipiqError):
    """Base exception for content store operations."""

    def __init__(self, message: str, code: str = "CONTENT_STORE_ERROR", **details: Any) -> None:
        super().__init__(message, code=code, details=details)


class NotFoundError(ContentStoreError):
    """Content address is unknown to this store."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Content not found: {address}", code="NOT_FOUND", address=address)
        self.address = address


class StorageUnavailableError(ContentStoreError):
    """Blob storage could not be read or written."""

    transient = True

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="STORAGE_UNAVAILABLE", **details)


def compute_content_address(data: bytes) -> str:
    """Derive the CIDv1 content address of `data`."""
    digest = hashlib.sha256(data).digest()
    cid = bytes([CID_VERSION, RAW_CODEC, SHA2_256, SHA2_256_LENGTH]) + digest
    return "b" + base64.b32encode(cid).decode("ascii").lower().rstrip("=")


def is_content_address(value: str) -> bool:
    """Check that `value` looks like an address produced by this store."""
    if not value or not value.startswith("b"):
        return False
    body = value[1:].upper()
    body += "=" * (-len(body) % 8)
    try:
        raw = base64.b32decode(body)
    except (ValueError, TypeError):
        return False
    return len(raw) == 36 and raw[:4] == bytes([CID_VERSION, RAW_CODEC, SHA2_256, SHA2_256_LENGTH])


def guess_mimetype(filename: str | None) -> str:
    if not filename:
        return DEFAULT_MIMETYPE
    dot = filename.rfind(".")
    if dot < 0:
        return DEFAULT_MIMETYPE
    return MIME_TYPES.get(filename[dot:].lower(), DEFAULT_MIMETYPE)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class BlobInfo:
    """Metadata about a stored blob.

    Attributes:
        address: Content address
        size: Size in bytes
        stored_at: When the blob was first stored (Unix ms)
        pinned: Whether cleanup must keep the blob
        mimetype: Best-effort media type
        filename: Original file name, if known
        pinned_at: Last pin time (Unix ms)
        unpinned_at: Last unpin time (Unix ms)
    """

    address: str
    size: int
    stored_at: int
    pinned: bool = False
    mimetype: str = DEFAULT_MIMETYPE
    filename: str | None = None
    pinned_at: int | None = None
    unpinned_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "size": self.size,
            "stored_at": self.stored_at,
            "pinned": self.pinned,
            "mimetype": self.mimetype,
            "filename": self.filename,
            "pinned_at": self.pinned_at,
            "unpinned_at": self.unpinned_at,
        }


@dataclass(frozen=True)
class ContentBlob:
    """A stored blob together with its bytes."""

    info: BlobInfo
    data: bytes

    @property
    def address(self) -> str:
        return self.info.address


@dataclass(frozen=True)
class ChunkInfo:
    """Upload-side description of one stream chunk.

    Attributes:
        stream_id: Stream the chunk belongs to
        chunk_index: Position of the chunk within the stream
        timestamp_ms: Capture timestamp reported by the client
        user_id: Owner of the stream
        mimetype: Media type of the chunk
        filename: Original file name
    """

    stream_id: str
    chunk_index: int
    timestamp_ms: int
    user_id: str
    mimetype: str = "video/mp4"
    filename: str | None = None


@dataclass(frozen=True)
class ChunkRecord:
    """Index entry mapping a stream chunk to its blob."""

    stream_id: str
    chunk_index: int
    content_address: str
    timestamp_ms: int
    user_id: str
    size: int
    mimetype: str
    uploaded_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "chunk_index": self.chunk_index,
            "content_address": self.content_address,
            "timestamp_ms": self.timestamp_ms,
            "user_id": self.user_id,
            "size": self.size,
            "mimetype": self.mimetype,
            "uploaded_at": self.uploaded_at,
        }


@dataclass(frozen=True)
class StreamSummary:
    """Aggregated view of a stream's indexed chunks."""

    stream_id: str
    user_id: str
    chunk_count: int
    total_size: int
    created_at: int
    last_modified: int
    first_timestamp_ms: int | None
    last_timestamp_ms: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "user_id": self.user_id,
            "chunk_count": self.chunk_count,
            "total_size": self.total_size,
            "created_at": self.created_at,
            "last_modified": self.last_modified,
            "first_timestamp_ms": self.first_timestamp_ms,
            "last_timestamp_ms": self.last_timestamp_ms,
        }


def encode_json(obj: Any) -> bytes:
    """Canonical JSON encoding used by put_json()."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


@runtime_checkable
class ContentStore(Protocol):
    """Protocol for content-addressed blob stores.

    Example:
        >>> store = LocalContentStore("/var/lib/zipiq/blobs")
        >>> address = await store.put(b"chunk bytes")
        >>> assert await store.get(address) == b"chunk bytes"
    """

    @abstractmethod
    async def put(self, data: bytes, filename: str | None = None) -> str:
        """Store `data` if absent and return its content address.

        Raises:
            StorageUnavailableError: If the blob could not be written
        """
        ...

    @abstractmethod
    async def get(self, address: str) -> bytes:
        """Return the bytes stored under `address`.

        Raises:
            NotFoundError: If the address is unknown to this store
        """
        ...

    @abstractmethod
    async def has(self, address: str) -> bool:
        ...

    @abstractmethod
    async def pin(self, address: str) -> bool:
        """Protect a blob from cleanup. Unknown addresses are logged, not raised."""
        ...

    @abstractmethod
    async def unpin(self, address: str) -> bool:
        """Make a blob eligible for cleanup again."""
        ...

    @abstractmethod
    async def cleanup(self, max_age_seconds: float) -> int:
        """Remove unpinned blobs older than `max_age_seconds`.

        Returns:
            Number of blobs removed
        """
        ...

    @abstractmethod
    async def upload_chunk(self, data: bytes, chunk: ChunkInfo) -> ChunkRecord:
        """Store a stream chunk and index it under (stream_id, chunk_index)."""
        ...

    @abstractmethod
    async def list_stream_chunks(self, stream_id: str) -> list[ChunkRecord]:
        """Indexed chunks of a stream ordered by chunk_index."""
        ...

    @abstractmethod
    async def get_stream(self, stream_id: str) -> StreamSummary | None:
        ...

    @abstractmethod
    async def list_user_streams(self, user_id: str) -> list[StreamSummary]:
        """Streams of a user, newest first."""
        ...

    @abstractmethod
    async def blob_info(self, address: str) -> BlobInfo | None:
        ...

    @abstractmethod
    async def list_addresses(self) -> list[str]:
        ...

    @abstractmethod
    async def storage_stats(self) -> dict[str, Any]:
        ...

    async def get_blob(self, address: str) -> ContentBlob:
        """Return a blob together with its metadata.

        Raises:
            NotFoundError: If the address is unknown to this store
        """
        info = await self.blob_info(address)
        if info is None:
            raise NotFoundError(address)
        return ContentBlob(info=info, data=await self.get(address))

    async def put_json(self, obj: Any) -> str:
        """Store a JSON document and return its content address."""
        return await self.put(encode_json(obj), filename="metadata.json")

    async def health_check(self) -> dict[str, Any]:
        """Store and read back a probe blob."""
        probe = b"zipIQ content store health check"
        try:
            address = await self.put(probe, filename="health-check.txt")
            valid = await self.get(address) == probe
            return {
                "status": "healthy" if valid else "degraded",
                "probe_address": address,
                "stats": await self.storage_stats(),
                "last_check": now_ms(),
            }
        except ContentStoreError as e:
            return {"status": "unhealthy", "error": e.to_dict(), "last_check": now_ms()}


def summarize_stream(stream_id: str, chunks: list[ChunkRecord]) -> StreamSummary | None:
    """Build a StreamSummary from a stream's chunk records."""
    if not chunks:
        return None
    timestamps = [c.timestamp_ms for c in chunks]
    return StreamSummary(
        stream_id=stream_id,
        user_id=chunks[0].user_id,
        chunk_count=len(chunks),
        total_size=sum(c.size for c in chunks),
        created_at=min(c.uploaded_at for c in chunks),
        last_modified=max(c.uploaded_at for c in chunks),
        first_timestamp_ms=min(timestamps),
        last_timestamp_ms=max(timestamps),
    )
