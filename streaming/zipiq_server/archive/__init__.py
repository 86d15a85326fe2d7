"""
Durable archival queue for zipIQ.

Chunks uploaded to the content store are queued here and submitted one at
a time, under a global rate floor, to the archival network:
- QueueStore persists the backlog and the archived-record index (SQLite)
- ArchivalQueue runs the enqueue API and the single drain worker

Invariants:
    - Enqueue is idempotent per "{stream_id}_{chunk_index}"
    - Pending work survives process restarts
    - An item is archived only together with its ArchivedRecord
"""

from .engine import ArchivalQueue
from .models import (
    ArchivalRequest,
    ArchiveError,
    ArchivedRecord,
    ArchiveMetadata,
    ConfirmationState,
    EnqueueResult,
    ItemState,
    PayloadTooLargeError,
    QueueItem,
    QueueStats,
    StreamStatus,
    TransactionRef,
    UnexpectedSubmissionError,
    ValidationError,
    make_item_id,
)
from .store import QueueStore

__all__ = [
    # Engine and storage
    "ArchivalQueue",
    "QueueStore",
    # Model
    "ArchivalRequest",
    "ArchiveMetadata",
    "ArchivedRecord",
    "ConfirmationState",
    "EnqueueResult",
    "ItemState",
    "QueueItem",
    "QueueStats",
    "StreamStatus",
    "TransactionRef",
    "make_item_id",
    # Errors
    "ArchiveError",
    "ValidationError",
    "PayloadTooLargeError",
    "UnexpectedSubmissionError",
]
