"""
Arweave format-2 transactions: data root, deep hash and signing.

A format-2 transaction commits to its payload through a Merkle root over
256 KiB data chunks, and is signed (RSA-PSS) over the SHA-384 "deep hash"
of its header fields. Its id is the base64url SHA-256 of the signature.

Chunking rule: full 256 KiB chunks are cut while at least that much
remains, except that when the next remainder would be smaller than 32 KiB
the remaining bytes are split in two balanced halves. Proof paths for each
chunk are produced for the chunk upload endpoint.

Invariants:
    - Signing is deterministic over the header; tags are signed in order
    - data_root and data_size always describe the attached payload
    - The transaction id changes whenever any signed field changes
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Union

from ..signing.identity import Wallet, b64url_decode, b64url_encode

MAX_CHUNK_SIZE = 256 * 1024
MIN_CHUNK_SIZE = 32 * 1024
NOTE_SIZE = 32

DeepHashChunk = Union[bytes, list["DeepHashChunk"]]


def deep_hash(chunk: DeepHashChunk) -> bytes:
    """SHA-384 deep hash of a blob or nested list of blobs."""
    if isinstance(chunk, (bytes, bytearray)):
        tag = b"blob" + str(len(chunk)).encode("ascii")
        return _sha384(_sha384(tag) + _sha384(bytes(chunk)))

    tag = b"list" + str(len(chunk)).encode("ascii")
    acc = _sha384(tag)
    for item in chunk:
        acc = _sha384(acc + deep_hash(item))
    return acc


def _sha384(data: bytes) -> bytes:
    return hashlib.sha384(data).digest()


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _note(value: int) -> bytes:
    return value.to_bytes(NOTE_SIZE, "big")


@dataclass(frozen=True)
class DataChunk:
    data_hash: bytes
    min_byte_range: int
    max_byte_range: int


@dataclass
class _Node:
    id: bytes
    max_byte_range: int
    data_hash: bytes | None = None
    byte_range: int = 0
    left: _Node | None = None
    right: _Node | None = None


def chunk_data(data: bytes) -> list[DataChunk]:
    """Split a payload into Arweave data chunks."""
    chunks = []
    rest = memoryview(data)
    cursor = 0

    while len(rest) >= MAX_CHUNK_SIZE:
        chunk_size = MAX_CHUNK_SIZE
        next_chunk_size = len(rest) - MAX_CHUNK_SIZE
        if 0 < next_chunk_size < MIN_CHUNK_SIZE:
            chunk_size = -(-len(rest) // 2)

        piece = bytes(rest[:chunk_size])
        chunks.append(DataChunk(_sha256(piece), cursor, cursor + len(piece)))
        cursor += len(piece)
        rest = rest[chunk_size:]

    chunks.append(DataChunk(_sha256(bytes(rest)), cursor, cursor + len(rest)))
    return chunks


def _build_tree(chunks: list[DataChunk]) -> _Node:
    nodes = [
        _Node(
            id=_sha256(_sha256(c.data_hash) + _sha256(_note(c.max_byte_range))),
            max_byte_range=c.max_byte_range,
            data_hash=c.data_hash,
        )
        for c in chunks
    ]
    while len(nodes) > 1:
        layer = []
        for i in range(0, len(nodes), 2):
            left = nodes[i]
            right = nodes[i + 1] if i + 1 < len(nodes) else None
            if right is None:
                layer.append(left)
                continue
            layer.append(
                _Node(
                    id=_sha256(
                        _sha256(left.id) + _sha256(right.id) + _sha256(_note(left.max_byte_range))
                    ),
                    max_byte_range=right.max_byte_range,
                    byte_range=left.max_byte_range,
                    left=left,
                    right=right,
                )
            )
        nodes = layer
    return nodes[0]


def _proofs(node: _Node, path: bytes = b"") -> list[tuple[int, bytes]]:
    if node.data_hash is not None:
        return [(node.max_byte_range - 1, path + node.data_hash + _note(node.max_byte_range))]
    assert node.left is not None and node.right is not None
    partial = path + node.left.id + node.right.id + _note(node.byte_range)
    return _proofs(node.left, partial) + _proofs(node.right, partial)


@dataclass
class ChunkedData:
    """Merkle commitment over a payload plus per-chunk proofs."""

    data_root: bytes
    chunks: list[DataChunk]
    proofs: list[tuple[int, bytes]]  # (offset, data_path)

    @classmethod
    def from_data(cls, data: bytes) -> ChunkedData:
        chunks = chunk_data(data)
        root = _build_tree(chunks)
        proofs = _proofs(root)
        # A zero-length trailing chunk is part of the root but never uploaded.
        if len(chunks) > 1 and chunks[-1].max_byte_range == chunks[-1].min_byte_range:
            chunks = chunks[:-1]
            proofs = proofs[:-1]
        return cls(data_root=root.id, chunks=chunks, proofs=proofs)


@dataclass
class Transaction:
    """An Arweave format-2 data transaction.

    Example:
        >>> tx = Transaction.create(data, reward=price, last_tx=anchor)
        >>> tx.add_tag("Stream-ID", "s1")
        >>> tx.sign(wallet)
        >>> body = tx.to_dict(include_data=True)
    """

    data: bytes
    reward: int
    last_tx: str
    tags: list[tuple[str, str]] = field(default_factory=list)
    target: str = ""
    quantity: str = "0"
    owner: str = ""
    signature: str = ""
    id: str = ""
    chunked: ChunkedData | None = None

    format = 2

    @classmethod
    def create(cls, data: bytes, reward: int, last_tx: str) -> Transaction:
        return cls(
            data=data,
            reward=reward,
            last_tx=last_tx,
            chunked=ChunkedData.from_data(data) if data else None,
        )

    def add_tag(self, name: str, value: str) -> None:
        if self.signature:
            raise ValueError("Cannot add tags to a signed transaction")
        self.tags.append((name, value))

    @property
    def data_size(self) -> int:
        return len(self.data)

    @property
    def data_root(self) -> bytes:
        return self.chunked.data_root if self.chunked else b""

    def signature_data(self, owner: bytes) -> bytes:
        """Deep hash of the signed header fields."""
        return deep_hash(
            [
                str(self.format).encode("ascii"),
                owner,
                b64url_decode(self.target) if self.target else b"",
                self.quantity.encode("ascii"),
                str(self.reward).encode("ascii"),
                b64url_decode(self.last_tx) if self.last_tx else b"",
                [[name.encode("utf-8"), value.encode("utf-8")] for name, value in self.tags],
                str(self.data_size).encode("ascii"),
                self.data_root,
            ]
        )

    def sign(self, wallet: Wallet) -> None:
        raw_signature = wallet.sign(self.signature_data(wallet.owner))
        self.owner = b64url_encode(wallet.owner)
        self.signature = b64url_encode(raw_signature)
        self.id = b64url_encode(_sha256(raw_signature))

    def to_dict(self, include_data: bool = True) -> dict[str, Any]:
        """JSON body for the transaction submission endpoint."""
        return {
            "format": self.format,
            "id": self.id,
            "last_tx": self.last_tx,
            "owner": self.owner,
            "tags": [
                {
                    "name": b64url_encode(name.encode("utf-8")),
                    "value": b64url_encode(value.encode("utf-8")),
                }
                for name, value in self.tags
            ],
            "target": self.target,
            "quantity": self.quantity,
            "data": b64url_encode(self.data) if include_data else "",
            "data_size": str(self.data_size),
            "data_root": b64url_encode(self.data_root),
            "reward": str(self.reward),
            "signature": self.signature,
        }

    def chunk_uploads(self) -> list[dict[str, Any]]:
        """JSON bodies for the chunk upload endpoint, in payload order."""
        if self.chunked is None:
            return []
        bodies = []
        for chunk, (offset, data_path) in zip(self.chunked.chunks, self.chunked.proofs):
            bodies.append(
                {
                    "data_root": b64url_encode(self.data_root),
                    "data_size": str(self.data_size),
                    "data_path": b64url_encode(data_path),
                    "offset": str(offset),
                    "chunk": b64url_encode(self.data[chunk.min_byte_range : chunk.max_byte_range]),
                }
            )
        return bodies
