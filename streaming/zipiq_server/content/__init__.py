"""
Content-addressed blob storage for zipIQ.

This module provides the write-once blob store that uploaded chunks land in
before archival:
- Local filesystem store with SQLite index and in-memory LRU cache
- In-memory store (for testing)

Invariants:
    - Identical bytes always yield the identical content address
    - Stored blobs are immutable; only insert-if-absent and retention cleanup
    - Pinned blobs survive cleanup
"""

from .base import (
    BlobInfo,
    ChunkInfo,
    ChunkRecord,
    ContentBlob,
    ContentStore,
    ContentStoreError,
    NotFoundError,
    StorageUnavailableError,
    StreamSummary,
    compute_content_address,
    is_content_address,
)
from .local import LocalContentStore
from .memory import MemoryContentStore

__all__ = [
    # Protocol and types
    "ContentStore",
    "ContentBlob",
    "BlobInfo",
    "ChunkInfo",
    "ChunkRecord",
    "StreamSummary",
    "ContentStoreError",
    "NotFoundError",
    "StorageUnavailableError",
    "compute_content_address",
    "is_content_address",
    # Implementations
    "LocalContentStore",
    "MemoryContentStore",
]
