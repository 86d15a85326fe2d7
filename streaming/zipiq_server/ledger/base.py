"""
Base protocol and types for the archival network (ledger) client.

The ledger client is the only component that talks to the external
archival network. It builds, signs and submits transactions carrying a
blob plus key/value tags, and answers status, balance and price queries.

Error contract:
    - NetworkUnavailableError: transient (timeouts, connection failures,
      rate limiting, 5xx). Retrying the same submission may succeed.
    - SubmissionRejectedError: permanent for this transaction (malformed,
      insufficient balance, verification failure).
    - get_status() answering NOT_FOUND right after submission is normal
      propagation delay, never a failure.

How to change safely:
    - Protocol changes require updating all implementations
    - Keep every network call bounded by a timeout
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..config import WINSTON_PER_AR
from ..errors import ZipiqError

if TYPE_CHECKING:
    from ..signing.identity import Wallet

Tags = list[tuple[str, str]]


class LedgerError(ZipiqError):
    """Base exception for ledger operations."""

    def __init__(self, message: str, code: str = "LEDGER_ERROR", **details: Any) -> None:
        super().__init__(message, code=code, details=details)


class NetworkUnavailableError(LedgerError):
    """The archival network could not be reached or asked us to back off."""

    transient = True

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="NETWORK_UNAVAILABLE", **details)


class SubmissionRejectedError(LedgerError):
    """The archival network refused the transaction."""

    def __init__(self, message: str, status_code: int | None = None, **details: Any) -> None:
        super().__init__(message, code="SUBMISSION_REJECTED", status_code=status_code, **details)
        self.status_code = status_code


class TransactionNotFoundError(LedgerError):
    """Transaction data is not (yet) available from the network."""

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            f"Transaction not found: {transaction_id}",
            code="TRANSACTION_NOT_FOUND",
            transaction_id=transaction_id,
        )


class TransactionStatus(Enum):
    """Confirmation state of a submitted transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    NOT_FOUND = "not_found"


def winston_to_ar(winston: int) -> str:
    """Format a winston amount as an AR decimal string."""
    ar = Decimal(winston) / Decimal(WINSTON_PER_AR)
    return format(ar.normalize(), "f")


@dataclass(frozen=True)
class StatusReport:
    """Result of a transaction status query.

    Attributes:
        transaction_id: Transaction identifier
        status: Confirmation state
        block_height: Height of the including block, once confirmed
        confirmations: Number of confirmations, once confirmed
    """

    transaction_id: str
    status: TransactionStatus
    block_height: int | None = None
    confirmations: int = 0

    @property
    def confirmed(self) -> bool:
        return self.status == TransactionStatus.CONFIRMED

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "status": self.status.value,
            "block_height": self.block_height,
            "confirmations": self.confirmations,
        }


@dataclass(frozen=True)
class SubmissionReceipt:
    """Result of an accepted submission.

    Attributes:
        transaction_id: Identifier assigned by signing
        reward: Fee paid in winston
        data_size: Payload size in bytes
        owner_address: Address of the signing identity
    """

    transaction_id: str
    reward: int
    data_size: int
    owner_address: str


@dataclass(frozen=True)
class CostEstimate:
    """Price of storing a payload of a given size."""

    size_bytes: int
    winston: int

    @property
    def ar(self) -> str:
        return winston_to_ar(self.winston)

    def to_dict(self) -> dict[str, Any]:
        return {"size_bytes": self.size_bytes, "winston": str(self.winston), "ar": self.ar}


@dataclass(frozen=True)
class NetworkInfo:
    """Summary of the archival network's current state."""

    network: str
    height: int
    blocks: int
    peers: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": self.network,
            "height": self.height,
            "blocks": self.blocks,
            "peers": self.peers,
        }


@runtime_checkable
class LedgerClient(Protocol):
    """Protocol for archival network clients.

    Example:
        >>> ledger = ArweaveLedgerClient(config)
        >>> await ledger.connect()
        >>> receipt = await ledger.submit(data, [("Stream-ID", "s1")], wallet)
        >>> report = await ledger.get_status(receipt.transaction_id)
    """

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def estimate_cost(self, size_bytes: int) -> CostEstimate:
        """Current price for storing `size_bytes` bytes.

        Raises:
            NetworkUnavailableError: If the network cannot be reached
        """
        ...

    @abstractmethod
    async def submit(self, data: bytes, tags: Tags, wallet: Wallet) -> SubmissionReceipt:
        """Build, sign and submit a transaction carrying `data` and `tags`.

        Raises:
            NetworkUnavailableError: Transient failure, retryable
            SubmissionRejectedError: The network refused the transaction
        """
        ...

    @abstractmethod
    async def get_status(self, transaction_id: str) -> StatusReport:
        ...

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Spendable balance of `address` in winston."""
        ...

    @abstractmethod
    async def get_network_info(self) -> NetworkInfo:
        ...

    @abstractmethod
    async def get_data(self, transaction_id: str) -> bytes:
        """Payload of an archived transaction.

        Raises:
            TransactionNotFoundError: If the data is not available
        """
        ...
