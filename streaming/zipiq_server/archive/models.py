"""
Data model of the archival queue.

A QueueItem is one chunk's archival job, keyed by "{stream_id}_{chunk_index}".
It moves through

    pending -> in_flight -> archived
                         -> pending (retry, after backoff)
                         -> failed  (terminal, kept for operators)

and an ArchivedRecord is written in the same transaction that marks the
item archived.

Invariants:
    - ArchiveMetadata is immutable once the item is created
    - attempts only increases
    - transaction_id is set exactly once, on the transition to archived
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import ZipiqError


class ArchiveError(ZipiqError):
    """Base exception for archival queue operations."""

    def __init__(self, message: str, code: str = "ARCHIVE_ERROR", **details: Any) -> None:
        super().__init__(message, code=code, details=details)


class ValidationError(ArchiveError):
    """An archival request is missing or has malformed fields."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", field=field)
        self.field = field


class PayloadTooLargeError(ArchiveError):
    """The payload exceeds the configured maximum archival size."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Payload of {size} bytes exceeds the {limit} byte limit",
            code="PAYLOAD_TOO_LARGE",
            size=size,
            limit=limit,
        )


class UnexpectedSubmissionError(ArchiveError):
    """A submission cycle failed with an error outside the known taxonomy."""

    transient = True

    def __init__(self, message: str, error_type: str) -> None:
        super().__init__(message, code="UNEXPECTED_ERROR", error_type=error_type)


class ItemState(Enum):
    """Lifecycle state of a queue item."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    ARCHIVED = "archived"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ItemState.ARCHIVED, ItemState.FAILED)


class ConfirmationState(Enum):
    """Network confirmation of an archived transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"


def make_item_id(stream_id: str, chunk_index: int) -> str:
    return f"{stream_id}_{chunk_index}"


@dataclass(frozen=True)
class ArchiveMetadata:
    """Immutable description of the chunk an item archives.

    Attributes:
        stream_id: Stream the chunk belongs to
        chunk_index: Position of the chunk within the stream
        timestamp_ms: Capture timestamp reported by the client
        user_id: Owner of the stream
        content_address: Address of the chunk in the content store
        payload_size: Size of the payload in bytes
    """

    stream_id: str
    chunk_index: int
    timestamp_ms: int
    user_id: str
    content_address: str
    payload_size: int

    @property
    def item_id(self) -> str:
        return make_item_id(self.stream_id, self.chunk_index)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "chunk_index": self.chunk_index,
            "timestamp_ms": self.timestamp_ms,
            "user_id": self.user_id,
            "content_address": self.content_address,
            "payload_size": self.payload_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveMetadata:
        return cls(
            stream_id=data["stream_id"],
            chunk_index=int(data["chunk_index"]),
            timestamp_ms=int(data["timestamp_ms"]),
            user_id=data["user_id"],
            content_address=data["content_address"],
            payload_size=int(data["payload_size"]),
        )


def _field(data: dict[str, Any], name: str, alias: str) -> Any:
    if name in data:
        return data[name]
    return data.get(alias)


def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required", field=name)
    return value


def _require_int(value: Any, name: str, minimum: int | None = None) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be an integer", field=name)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", field=name) from None
    if minimum is not None and number < minimum:
        raise ValidationError(f"{name} must be >= {minimum}", field=name)
    return number


@dataclass(frozen=True)
class ArchivalRequest:
    """A validated request to archive one chunk."""

    payload: bytes
    stream_id: str
    chunk_index: int
    timestamp_ms: int
    user_id: str
    content_address: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchivalRequest:
        """Build a request from snake_case or camelCase fields.

        Raises:
            ValidationError: If a field is missing or malformed
        """
        payload = data.get("payload")
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise ValidationError("payload must be bytes", field="payload")
        request = cls(
            payload=bytes(payload),
            stream_id=_field(data, "stream_id", "streamId"),
            chunk_index=_field(data, "chunk_index", "chunkIndex"),
            timestamp_ms=_field(data, "timestamp_ms", "timestampMs"),
            user_id=_field(data, "user_id", "userId"),
            content_address=_field(data, "content_address", "contentAddress"),
        )
        return request.validated()

    def validated(self) -> ArchivalRequest:
        """Return a normalized copy, or raise ValidationError."""
        if not isinstance(self.payload, (bytes, bytearray, memoryview)):
            raise ValidationError("payload must be bytes", field="payload")
        if len(self.payload) == 0:
            raise ValidationError("payload must not be empty", field="payload")
        return ArchivalRequest(
            payload=bytes(self.payload),
            stream_id=_require_str(self.stream_id, "stream_id"),
            chunk_index=_require_int(self.chunk_index, "chunk_index", minimum=0),
            timestamp_ms=_require_int(self.timestamp_ms, "timestamp_ms", minimum=0),
            user_id=_require_str(self.user_id, "user_id"),
            content_address=_require_str(self.content_address, "content_address"),
        )

    @property
    def item_id(self) -> str:
        return make_item_id(self.stream_id, self.chunk_index)

    def metadata(self) -> ArchiveMetadata:
        return ArchiveMetadata(
            stream_id=self.stream_id,
            chunk_index=self.chunk_index,
            timestamp_ms=self.timestamp_ms,
            user_id=self.user_id,
            content_address=self.content_address,
            payload_size=len(self.payload),
        )


@dataclass
class QueueItem:
    """One chunk's archival job as persisted in the backlog.

    Attributes:
        id: "{stream_id}_{chunk_index}"
        payload: Bytes to archive; None once archived
        metadata: Immutable chunk description
        attempts: Submission attempts made so far
        state: Lifecycle state
        queued_at: Creation time (Unix ms)
        next_attempt_at: Earliest time the drain loop may pick it (Unix ms)
        transaction_id: Set on the transition to archived
        last_error: Message of the most recent failed attempt
        updated_at: Last state change (Unix ms)
    """

    id: str
    payload: bytes | None
    metadata: ArchiveMetadata
    attempts: int
    state: ItemState
    queued_at: int
    next_attempt_at: int
    transaction_id: str | None = None
    last_error: str | None = None
    last_error_code: str | None = None
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "metadata": self.metadata.to_dict(),
            "attempts": self.attempts,
            "state": self.state.value,
            "queued_at": self.queued_at,
            "next_attempt_at": self.next_attempt_at,
            "transaction_id": self.transaction_id,
            "last_error": self.last_error,
            "last_error_code": self.last_error_code,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ArchivedRecord:
    """Durable result of a successful submission."""

    item_id: str
    transaction_id: str
    archived_at: int
    metadata: ArchiveMetadata
    reward: int = 0
    owner_address: str | None = None
    confirmation: ConfirmationState = ConfirmationState.PENDING
    block_height: int | None = None
    confirmed_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "transaction_id": self.transaction_id,
            "archived_at": self.archived_at,
            "metadata": self.metadata.to_dict(),
            "reward": str(self.reward),
            "owner_address": self.owner_address,
            "confirmation": self.confirmation.value,
            "block_height": self.block_height,
            "confirmed_at": self.confirmed_at,
        }


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of an enqueue call.

    `created` is False when an item with the same id already existed in a
    non-failed state and the call was an idempotent no-op.
    """

    item_id: str
    created: bool
    state: ItemState

    @property
    def accepted(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "accepted": self.accepted,
            "created": self.created,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class TransactionRef:
    """One archived chunk of a stream."""

    chunk_index: int
    transaction_id: str
    archived_at: int
    confirmation: ConfirmationState
    block_height: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "transaction_id": self.transaction_id,
            "archived_at": self.archived_at,
            "confirmation": self.confirmation.value,
            "block_height": self.block_height,
        }


@dataclass(frozen=True)
class StreamStatus:
    """Archival progress of one stream; transactions sorted by chunk_index."""

    stream_id: str
    archived_count: int
    transactions: list[TransactionRef] = field(default_factory=list)
    pending_count: int = 0
    failed_count: int = 0

    @property
    def total_count(self) -> int:
        return self.archived_count + self.pending_count + self.failed_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "archived_count": self.archived_count,
            "pending_count": self.pending_count,
            "failed_count": self.failed_count,
            "total_count": self.total_count,
            "transactions": [t.to_dict() for t in self.transactions],
        }


@dataclass(frozen=True)
class QueueStats:
    """Backlog counters; sizes are payload bytes."""

    pending_count: int
    pending_size: int
    in_flight_count: int
    archived_count: int
    archived_size: int
    failed_count: int
    failed_size: int
    is_processing: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending_count": self.pending_count,
            "pending_size": self.pending_size,
            "in_flight_count": self.in_flight_count,
            "archived_count": self.archived_count,
            "archived_size": self.archived_size,
            "failed_count": self.failed_count,
            "failed_size": self.failed_size,
            "is_processing": self.is_processing,
        }
