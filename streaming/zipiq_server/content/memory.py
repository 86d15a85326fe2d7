"""
In-memory content store implementation.

This module provides a content store that keeps everything in process
memory, for:
- Unit and integration tests
- Local development without a data directory

Invariants:
    - All data is lost on process exit
    - Same addressing, pinning and indexing semantics as LocalContentStore
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any

from .base import (
    BlobInfo,
    ChunkInfo,
    ChunkRecord,
    ContentStore,
    NotFoundError,
    StreamSummary,
    compute_content_address,
    guess_mimetype,
    now_ms,
    summarize_stream,
)

logger = logging.getLogger(__name__)


class MemoryContentStore(ContentStore):
    """Content store held entirely in dictionaries.

    Thread safety:
        Uses an asyncio lock for all mutations. Safe to use from
        multiple coroutines.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._info: dict[str, BlobInfo] = {}
        # stream_id -> chunk_index -> record
        self._streams: dict[str, dict[int, ChunkRecord]] = {}
        self._user_streams: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, data: bytes, filename: str | None = None) -> str:
        address = compute_content_address(data)
        async with self._lock:
            if address not in self._blobs:
                self._blobs[address] = bytes(data)
                self._info[address] = BlobInfo(
                    address=address,
                    size=len(data),
                    stored_at=now_ms(),
                    mimetype=guess_mimetype(filename),
                    filename=filename,
                )
        return address

    async def get(self, address: str) -> bytes:
        try:
            return self._blobs[address]
        except KeyError:
            raise NotFoundError(address) from None

    async def has(self, address: str) -> bool:
        return address in self._blobs

    async def pin(self, address: str) -> bool:
        async with self._lock:
            info = self._info.get(address)
            if info is None:
                logger.warning("Cannot pin unknown content", extra={"address": address})
                return False
            self._info[address] = replace(info, pinned=True, pinned_at=now_ms())
            return True

    async def unpin(self, address: str) -> bool:
        async with self._lock:
            info = self._info.get(address)
            if info is None:
                logger.warning("Cannot unpin unknown content", extra={"address": address})
                return False
            self._info[address] = replace(info, pinned=False, unpinned_at=now_ms())
            return True

    async def cleanup(self, max_age_seconds: float) -> int:
        cutoff = now_ms() - int(max_age_seconds * 1000)
        async with self._lock:
            expired = [
                address
                for address, info in self._info.items()
                if info.stored_at < cutoff and not info.pinned
            ]
            for address in expired:
                del self._blobs[address]
                del self._info[address]
            self._drop_chunks_for(set(expired))
        logger.info(f"Content cleanup removed {len(expired)} blobs")
        return len(expired)

    def _drop_chunks_for(self, addresses: set[str]) -> None:
        if not addresses:
            return
        for stream_id in list(self._streams):
            chunks = self._streams[stream_id]
            for index in [i for i, c in chunks.items() if c.content_address in addresses]:
                del chunks[index]
            if not chunks:
                del self._streams[stream_id]
                for streams in self._user_streams.values():
                    streams.discard(stream_id)

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
            self._streams.setdefault(chunk.stream_id, {})[chunk.chunk_index] = record
            self._user_streams.setdefault(chunk.user_id, set()).add(chunk.stream_id)
        return record

    async def list_stream_chunks(self, stream_id: str) -> list[ChunkRecord]:
        chunks = self._streams.get(stream_id, {})
        return [chunks[i] for i in sorted(chunks)]

    async def get_stream(self, stream_id: str) -> StreamSummary | None:
        return summarize_stream(stream_id, await self.list_stream_chunks(stream_id))

    async def list_user_streams(self, user_id: str) -> list[StreamSummary]:
        summaries = []
        for stream_id in self._user_streams.get(user_id, set()):
            summary = await self.get_stream(stream_id)
            if summary is not None:
                summaries.append(summary)
        return sorted(summaries, key=lambda s: s.created_at, reverse=True)

    async def blob_info(self, address: str) -> BlobInfo | None:
        return self._info.get(address)

    async def list_addresses(self) -> list[str]:
        return list(self._blobs)

    async def storage_stats(self) -> dict[str, Any]:
        total_chunks = sum(len(c) for c in self._streams.values())
        return {
            "backend": "memory",
            "total_blobs": len(self._blobs),
            "total_size": sum(i.size for i in self._info.values()),
            "pinned_count": sum(1 for i in self._info.values() if i.pinned),
            "total_chunks": total_chunks,
            "total_streams": len(self._streams),
        }
