"""
Archival network (ledger) client abstraction for zipIQ.

This module provides the client the archival queue submits through:
- Arweave-compatible HTTP gateway client (production)
- In-memory client with scriptable failures (for testing)

Invariants:
    - Transient failures raise NetworkUnavailableError, permanent ones
      SubmissionRejectedError
    - A NOT_FOUND status right after submission is propagation delay
"""

from .arweave import ArweaveLedgerClient
from .base import (
    CostEstimate,
    LedgerClient,
    LedgerError,
    NetworkInfo,
    NetworkUnavailableError,
    StatusReport,
    SubmissionReceipt,
    SubmissionRejectedError,
    Tags,
    TransactionNotFoundError,
    TransactionStatus,
    winston_to_ar,
)
from .memory import InMemoryLedgerClient
from .transaction import Transaction, deep_hash

__all__ = [
    # Protocol and types
    "LedgerClient",
    "Tags",
    "TransactionStatus",
    "StatusReport",
    "SubmissionReceipt",
    "CostEstimate",
    "NetworkInfo",
    "LedgerError",
    "NetworkUnavailableError",
    "SubmissionRejectedError",
    "TransactionNotFoundError",
    "winston_to_ar",
    # Transactions
    "Transaction",
    "deep_hash",
    # Implementations
    "ArweaveLedgerClient",
    "InMemoryLedgerClient",
]
