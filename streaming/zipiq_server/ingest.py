"""
Upload-side entry point: store a chunk and queue it for archival.

Once the content address is known the two side effects are independent,
so the blob write and the archival enqueue run concurrently and the caller
is acknowledged only after both finished.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .archive import ArchivalQueue, ArchivalRequest, EnqueueResult, PayloadTooLargeError
from .content import ChunkInfo, ChunkRecord, ContentStore, compute_content_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    content_address: str
    chunk: ChunkRecord
    archival: EnqueueResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "content_address": self.content_address,
            "chunk": self.chunk.to_dict(),
            "archival": self.archival.to_dict(),
        }


async def ingest_chunk(
    content_store: ContentStore,
    queue: ArchivalQueue,
    data: bytes,
    chunk: ChunkInfo,
) -> IngestResult:
    """Store `data` and enqueue it for archival concurrently.

    Both side effects always run to completion. When one of them fails its
    error is raised, but the other is not rolled back: a blob write failure
    still leaves the chunk queued for archival, and an enqueue failure
    leaves the blob stored. Retrying the call is safe since both are
    idempotent.

    Raises:
        ValidationError: If the chunk description is invalid
        PayloadTooLargeError: If the chunk exceeds the archival size limit
        StorageUnavailableError: If the blob could not be written
    """
    address = compute_content_address(data)
    request = ArchivalRequest(
        payload=data,
        stream_id=chunk.stream_id,
        chunk_index=chunk.chunk_index,
        timestamp_ms=chunk.timestamp_ms,
        user_id=chunk.user_id,
        content_address=address,
    ).validated()
    if len(data) > queue.config.max_payload_bytes:
        raise PayloadTooLargeError(len(data), queue.config.max_payload_bytes)

    results = await asyncio.gather(
        content_store.upload_chunk(data, chunk),
        queue.enqueue(request),
        return_exceptions=True,
    )
    record, archival = results
    for outcome in results:
        if isinstance(outcome, BaseException):
            logger.error(
                f"Chunk ingest incomplete: {outcome}",
                extra={
                    "stream_id": chunk.stream_id,
                    "chunk_index": chunk.chunk_index,
                    "stored": not isinstance(record, BaseException),
                    "queued": not isinstance(archival, BaseException),
                },
            )
            raise outcome
    logger.info(
        "Chunk ingested",
        extra={
            "stream_id": chunk.stream_id,
            "chunk_index": chunk.chunk_index,
            "content_address": address,
            "queued": archival.created,
        },
    )
    return IngestResult(content_address=address, chunk=record, archival=archival)
