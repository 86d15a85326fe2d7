"""
HTTP ledger client for an Arweave-compatible gateway.

Transactions are built and signed locally (see transaction.py) and posted
to the gateway. Payloads that fit in one data chunk travel inline with the
transaction header; larger payloads are posted as a header followed by one
request per chunk, each carrying its Merkle proof.

Gateway endpoints used:
    GET  /tx_anchor               anchor (last_tx) for a new transaction
    GET  /price/{size}            fee in winston for `size` bytes
    POST /tx                      submit a signed transaction
    POST /chunk                   upload one data chunk
    GET  /tx/{id}/status          200 confirmed, 202 pending, 404 unknown
    GET  /wallet/{addr}/balance   balance in winston
    GET  /info                    network name, height, blocks, peers
    GET  /{id}                    transaction data

Invariants:
    - Every request is bounded by the configured timeout
    - Timeouts, connection errors, 429 and 5xx map to NetworkUnavailableError
    - Any other 4xx on submission maps to SubmissionRejectedError

How to change safely:
    - Test against a local gateway before pointing at mainnet
    - Keep status mapping in _raise_for_status so submit and queries agree
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from ..config import LedgerConfig
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
from .transaction import MAX_CHUNK_SIZE, Transaction

logger = logging.getLogger(__name__)

# 208 means the gateway already has this exact transaction.
ACCEPTED_STATUSES = (200, 202, 208)


class ArweaveLedgerClient:
    """LedgerClient implementation speaking the Arweave gateway HTTP API.

    Example:
        >>> client = ArweaveLedgerClient(LedgerConfig(host="arweave.net"))
        >>> await client.connect()
        >>> receipt = await client.submit(data, tags, wallet)
    """

    def __init__(self, config: LedgerConfig) -> None:
        self.config = config
        self._session: aiohttp.ClientSession | None = None

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        if self.is_connected:
            return
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        self._session = aiohttp.ClientSession(base_url=self.config.base_url, timeout=timeout)
        logger.info(
            "Ledger client ready",
            extra={"gateway": self.config.base_url, "timeout_s": self.config.timeout_seconds},
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Ledger client closed")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
    ) -> tuple[int, bytes]:
        if self._session is None or self._session.closed:
            raise NetworkUnavailableError("Ledger client is not connected", path=path)
        try:
            async with self._session.request(method, path, json=body) as response:
                return response.status, await response.read()
        except asyncio.TimeoutError as e:
            raise NetworkUnavailableError(f"Gateway request timed out: {method} {path}", path=path) from e
        except aiohttp.ClientError as e:
            raise NetworkUnavailableError(f"Gateway request failed: {e}", path=path) from e

    @staticmethod
    def _raise_for_status(status: int, payload: bytes, path: str) -> None:
        if status in ACCEPTED_STATUSES:
            return
        message = payload.decode("utf-8", errors="replace")[:200]
        if status == 429 or status >= 500:
            raise NetworkUnavailableError(
                f"Gateway unavailable ({status}): {message}", path=path, status_code=status
            )
        raise SubmissionRejectedError(
            f"Gateway rejected request ({status}): {message}", status_code=status, path=path
        )

    async def _get_text(self, path: str) -> str:
        status, payload = await self._request("GET", path)
        if status != 200:
            self._raise_for_status(status, payload, path)
            raise LedgerError(f"Unexpected gateway status {status}", path=path)
        try:
            return payload.decode("utf-8").strip()
        except UnicodeDecodeError as e:
            raise LedgerError("Gateway returned undecodable text", path=path) from e

    async def _get_int(self, path: str) -> int:
        text = await self._get_text(path)
        try:
            return int(text)
        except ValueError as e:
            raise LedgerError(f"Gateway returned a non-integer: {text[:50]!r}", path=path) from e

    async def estimate_cost(self, size_bytes: int) -> CostEstimate:
        winston = await self._get_int(f"/price/{size_bytes}")
        return CostEstimate(size_bytes=size_bytes, winston=winston)

    async def submit(self, data: bytes, tags: Tags, wallet: Wallet) -> SubmissionReceipt:
        anchor = await self._get_text("/tx_anchor")
        reward = await self._get_int(f"/price/{len(data)}")

        tx = Transaction.create(data, reward=reward, last_tx=anchor)
        for name, value in tags:
            tx.add_tag(name, value)
        tx.sign(wallet)

        inline = len(data) <= MAX_CHUNK_SIZE
        status, payload = await self._request("POST", "/tx", body=tx.to_dict(include_data=inline))
        self._raise_for_status(status, payload, "/tx")

        if not inline:
            for chunk_body in tx.chunk_uploads():
                status, payload = await self._request("POST", "/chunk", body=chunk_body)
                self._raise_for_status(status, payload, "/chunk")

        logger.info(
            "Transaction submitted",
            extra={
                "transaction_id": tx.id,
                "data_size": tx.data_size,
                "reward": reward,
                "owner": wallet.address,
                "chunked": not inline,
            },
        )
        return SubmissionReceipt(
            transaction_id=tx.id,
            reward=reward,
            data_size=tx.data_size,
            owner_address=wallet.address,
        )

    async def get_status(self, transaction_id: str) -> StatusReport:
        path = f"/tx/{transaction_id}/status"
        status, payload = await self._request("GET", path)
        if status == 404:
            return StatusReport(transaction_id, TransactionStatus.NOT_FOUND)
        if status == 202:
            return StatusReport(transaction_id, TransactionStatus.PENDING)
        if status != 200:
            self._raise_for_status(status, payload, path)

        try:
            body = json.loads(payload)
            return StatusReport(
                transaction_id,
                TransactionStatus.CONFIRMED,
                block_height=body.get("block_height"),
                confirmations=int(body.get("number_of_confirmations", 0)),
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise LedgerError("Malformed status response", transaction_id=transaction_id) from e

    async def get_balance(self, address: str) -> int:
        return await self._get_int(f"/wallet/{address}/balance")

    async def get_network_info(self) -> NetworkInfo:
        text = await self._get_text("/info")
        try:
            body = json.loads(text)
            return NetworkInfo(
                network=str(body.get("network", "unknown")),
                height=int(body.get("height", 0)),
                blocks=int(body.get("blocks", 0)),
                peers=int(body.get("peers", 0)),
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise LedgerError("Malformed network info response") from e

    async def get_data(self, transaction_id: str) -> bytes:
        path = f"/{transaction_id}"
        status, payload = await self._request("GET", path)
        if status in (202, 404):
            raise TransactionNotFoundError(transaction_id)
        if status != 200:
            self._raise_for_status(status, payload, path)
        return payload
