"""
In-memory ledger client for testing.

Behaves like a gateway that accepts every well-funded transaction: fees are
linear in payload size, balances are debited on acceptance, and accepted
transactions stay pending until confirm() is called. Failures can be
scripted per call so that tests can drive the archival queue through retry
and rejection paths.

Invariants:
    - All data is lost on process exit
    - Transaction ids come from real signatures, so they are unique per payload/tags
    - Scripted failures are consumed in FIFO order, one per submit() call

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with LedgerClient protocol
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass

from ..signing.identity import Wallet
from .base import (
    CostEstimate,
    LedgerError,
    NetworkInfo,
    NetworkUnavailableError,
    StatusReport,
    SubmissionReceipt,
    SubmissionRejectedError,
    Tags,
    TransactionNotFoundError,
    TransactionStatus,
)
from .transaction import Transaction

logger = logging.getLogger(__name__)


@dataclass
class RecordedSubmission:
    """An accepted submission as seen by the in-memory gateway."""

    transaction_id: str
    owner_address: str
    data: bytes
    tags: Tags
    reward: int
    submitted_at: float
    status: TransactionStatus = TransactionStatus.PENDING
    block_height: int | None = None

    @property
    def tag_dict(self) -> dict[str, str]:
        return dict(self.tags)


@dataclass
class _ScriptedFailure:
    error: LedgerError
    remaining: int


class InMemoryLedgerClient:
    """In-memory implementation of LedgerClient.

    Example:
        >>> ledger = InMemoryLedgerClient(price_per_byte=1)
        >>> ledger.set_balance(wallet.address, 10**12)
        >>> ledger.fail_next(NetworkUnavailableError("down"), times=2)
        >>> receipt = await ledger.submit(b"data", [], wallet)  # raises twice first
    """

    def __init__(
        self,
        price_per_byte: int = 1,
        base_price: int = 0,
        submit_latency: float = 0.0,
    ) -> None:
        self.price_per_byte = price_per_byte
        self.base_price = base_price
        self.submit_latency = submit_latency
        self.available = True
        self.height = 0
        self.submissions: list[RecordedSubmission] = []
        self.submit_attempts = 0
        self._balances: dict[str, int] = {}
        self._by_id: dict[str, RecordedSubmission] = {}
        self._failures: deque[_ScriptedFailure] = deque()
        self._connected = False
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    # Test controls

    def set_balance(self, address: str, winston: int) -> None:
        self._balances[address] = winston

    def fail_next(self, error: LedgerError, times: int = 1) -> None:
        """Make the next `times` submit() calls raise `error`."""
        self._failures.append(_ScriptedFailure(error=error, remaining=times))

    def confirm(self, transaction_id: str, block_height: int | None = None) -> None:
        record = self._by_id.get(transaction_id)
        if record is None:
            raise TransactionNotFoundError(transaction_id)
        self.height += 1
        record.status = TransactionStatus.CONFIRMED
        record.block_height = block_height if block_height is not None else self.height

    def confirm_all(self) -> int:
        pending = [s for s in self.submissions if s.status != TransactionStatus.CONFIRMED]
        for record in pending:
            self.confirm(record.transaction_id)
        return len(pending)

    def submissions_for(self, stream_id: str) -> list[RecordedSubmission]:
        return [s for s in self.submissions if s.tag_dict.get("Stream-ID") == stream_id]

    # LedgerClient protocol

    def _check_available(self) -> None:
        if not self.available:
            raise NetworkUnavailableError("In-memory gateway marked unavailable")

    def _price(self, size_bytes: int) -> int:
        return self.base_price + self.price_per_byte * size_bytes

    async def estimate_cost(self, size_bytes: int) -> CostEstimate:
        self._check_available()
        return CostEstimate(size_bytes=size_bytes, winston=self._price(size_bytes))

    async def submit(self, data: bytes, tags: Tags, wallet: Wallet) -> SubmissionReceipt:
        self.submit_attempts += 1
        if self.submit_latency:
            await asyncio.sleep(self.submit_latency)
        self._check_available()

        async with self._lock:
            if self._failures:
                scripted = self._failures[0]
                scripted.remaining -= 1
                if scripted.remaining <= 0:
                    self._failures.popleft()
                raise scripted.error

            reward = self._price(len(data))
            balance = self._balances.get(wallet.address, 0)
            if balance < reward:
                raise SubmissionRejectedError(
                    "Insufficient balance for transaction",
                    status_code=410,
                    address=wallet.address,
                    balance=balance,
                    reward=reward,
                )

            tx = Transaction.create(data, reward=reward, last_tx="")
            for name, value in tags:
                tx.add_tag(name, value)
            tx.sign(wallet)

            self._balances[wallet.address] = balance - reward
            record = RecordedSubmission(
                transaction_id=tx.id,
                owner_address=wallet.address,
                data=data,
                tags=list(tags),
                reward=reward,
                submitted_at=time.monotonic(),
            )
            self.submissions.append(record)
            self._by_id[tx.id] = record

        logger.debug("In-memory submission accepted", extra={"transaction_id": tx.id})
        return SubmissionReceipt(
            transaction_id=tx.id,
            reward=reward,
            data_size=len(data),
            owner_address=wallet.address,
        )

    async def get_status(self, transaction_id: str) -> StatusReport:
        self._check_available()
        record = self._by_id.get(transaction_id)
        if record is None:
            return StatusReport(transaction_id, TransactionStatus.NOT_FOUND)
        if record.status != TransactionStatus.CONFIRMED:
            return StatusReport(transaction_id, TransactionStatus.PENDING)
        return StatusReport(
            transaction_id,
            TransactionStatus.CONFIRMED,
            block_height=record.block_height,
            confirmations=self.height - (record.block_height or 0) + 1,
        )

    async def get_balance(self, address: str) -> int:
        self._check_available()
        return self._balances.get(address, 0)

    async def get_network_info(self) -> NetworkInfo:
        self._check_available()
        return NetworkInfo(network="memory", height=self.height, blocks=self.height + 1, peers=0)

    async def get_data(self, transaction_id: str) -> bytes:
        self._check_available()
        record = self._by_id.get(transaction_id)
        if record is None:
            raise TransactionNotFoundError(transaction_id)
        return record.data

