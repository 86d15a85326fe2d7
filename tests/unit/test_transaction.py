"""
Unit tests for archival-network transactions.

Tests cover:
- Deep hash of blobs and nested lists
- Chunking rule and Merkle data root
- Signing, verification and transaction id
- Wallet JWK round trip
"""

import hashlib
import json

import pytest

from streaming.zipiq_server.ledger.transaction import (
    MAX_CHUNK_SIZE,
    MIN_CHUNK_SIZE,
    ChunkedData,
    Transaction,
    chunk_data,
    deep_hash,
)
from streaming.zipiq_server.signing.identity import (
    Wallet,
    WalletLoadError,
    b64url_decode,
    b64url_encode,
)


def sha384(data):
    return hashlib.sha384(data).digest()


def sha256(data):
    return hashlib.sha256(data).digest()


class TestDeepHash:
    """Tests for deep_hash()."""

    def test_blob(self):
        expected = sha384(sha384(b"blob3") + sha384(b"abc"))
        assert deep_hash(b"abc") == expected

    def test_list(self):
        acc = sha384(b"list2")
        acc = sha384(acc + deep_hash(b"a"))
        acc = sha384(acc + deep_hash(b"bc"))
        assert deep_hash([b"a", b"bc"]) == acc

    def test_nesting_matters(self):
        assert deep_hash([b"a", [b"b"]]) != deep_hash([b"a", b"b"])
        assert deep_hash([]) == sha384(b"list0")


class TestChunking:
    """Tests for chunk_data() and ChunkedData."""

    def test_small_payload_single_chunk(self):
        chunks = chunk_data(b"x" * 1000)
        assert len(chunks) == 1
        assert chunks[0].min_byte_range == 0
        assert chunks[0].max_byte_range == 1000
        assert chunks[0].data_hash == sha256(b"x" * 1000)

    def test_small_remainder_is_balanced(self):
        """A remainder below the minimum chunk size splits the tail in two."""
        size = MAX_CHUNK_SIZE + MIN_CHUNK_SIZE // 2
        chunks = chunk_data(b"\x01" * size)

        sizes = [c.max_byte_range - c.min_byte_range for c in chunks]
        assert sizes == [-(-size // 2), size - -(-size // 2)]
        assert all(s >= MIN_CHUNK_SIZE for s in sizes)

    def test_large_remainder_keeps_full_chunks(self):
        size = 2 * MAX_CHUNK_SIZE + MIN_CHUNK_SIZE
        sizes = [c.max_byte_range - c.min_byte_range for c in chunk_data(b"\x02" * size)]
        assert sizes == [MAX_CHUNK_SIZE, MAX_CHUNK_SIZE, MIN_CHUNK_SIZE]

    def test_ranges_are_contiguous(self):
        chunks = chunk_data(b"\x03" * (3 * MAX_CHUNK_SIZE + 12345))
        for previous, current in zip(chunks, chunks[1:]):
            assert previous.max_byte_range == current.min_byte_range

    def test_single_leaf_root(self):
        data = b"hello"
        leaf_id = sha256(sha256(sha256(data)) + sha256((5).to_bytes(32, "big")))
        chunked = ChunkedData.from_data(data)

        assert chunked.data_root == leaf_id
        offset, path = chunked.proofs[0]
        assert offset == 4
        assert path == sha256(data) + (5).to_bytes(32, "big")

    def test_two_leaf_root_and_proofs(self):
        data = b"\x04" * (MAX_CHUNK_SIZE + MIN_CHUNK_SIZE)
        chunked = ChunkedData.from_data(data)
        left, right = chunked.chunks

        def leaf(c):
            return sha256(sha256(c.data_hash) + sha256(c.max_byte_range.to_bytes(32, "big")))

        root = sha256(
            sha256(leaf(left)) + sha256(leaf(right)) + sha256(left.max_byte_range.to_bytes(32, "big"))
        )
        assert chunked.data_root == root

        branch = leaf(left) + leaf(right) + left.max_byte_range.to_bytes(32, "big")
        assert chunked.proofs[0][1].startswith(branch)
        assert chunked.proofs[1][0] == len(data) - 1

    def test_exact_multiple_drops_empty_chunk(self):
        chunked = ChunkedData.from_data(b"\x05" * (2 * MAX_CHUNK_SIZE))
        assert len(chunked.chunks) == 2
        assert len(chunked.proofs) == 2


class TestTransaction:
    """Tests for Transaction signing and serialization."""

    def test_sign_and_verify(self, wallet):
        tx = Transaction.create(b"chunk data", reward=1234, last_tx=b64url_encode(b"anchor"))
        tx.add_tag("Stream-ID", "s1")
        tx.add_tag("Chunk-Index", "0")
        tx.sign(wallet)

        signature = b64url_decode(tx.signature)
        assert wallet.verify(signature, tx.signature_data(wallet.owner))
        assert tx.id == b64url_encode(sha256(signature))
        assert tx.owner == b64url_encode(wallet.owner)

    def test_signature_covers_tags(self, wallet):
        tx = Transaction.create(b"data", reward=1, last_tx="")
        tx.add_tag("Stream-ID", "s1")
        tx.sign(wallet)

        tampered = Transaction.create(b"data", reward=1, last_tx="")
        tampered.add_tag("Stream-ID", "s2")
        assert not wallet.verify(b64url_decode(tx.signature), tampered.signature_data(wallet.owner))

    def test_cannot_tag_signed_transaction(self, wallet):
        tx = Transaction.create(b"data", reward=1, last_tx="")
        tx.sign(wallet)
        with pytest.raises(ValueError):
            tx.add_tag("Late", "tag")

    def test_to_dict(self, wallet):
        tx = Transaction.create(b"payload", reward=99, last_tx="")
        tx.add_tag("App-Name", "zipIQ")
        tx.sign(wallet)
        body = tx.to_dict()

        assert body["format"] == 2
        assert body["id"] == tx.id
        assert body["reward"] == "99"
        assert body["data_size"] == "7"
        assert b64url_decode(body["data"]) == b"payload"
        assert b64url_decode(body["data_root"]) == tx.data_root
        assert body["tags"] == [
            {"name": b64url_encode(b"App-Name"), "value": b64url_encode(b"zipIQ")}
        ]
        assert tx.to_dict(include_data=False)["data"] == ""

    def test_empty_data(self, wallet):
        tx = Transaction.create(b"", reward=0, last_tx="")
        tx.sign(wallet)
        assert tx.data_root == b""
        assert tx.chunk_uploads() == []

    def test_chunk_uploads_cover_payload(self, wallet):
        data = bytes(range(256)) * (3 * MAX_CHUNK_SIZE // 256 + 7)
        tx = Transaction.create(data, reward=1, last_tx="")
        tx.sign(wallet)

        uploads = tx.chunk_uploads()
        assert len(uploads) == len(tx.chunked.chunks)
        assert b"".join(b64url_decode(u["chunk"]) for u in uploads) == data
        assert all(u["data_root"] == b64url_encode(tx.data_root) for u in uploads)


class TestWallet:
    """Tests for Wallet key handling."""

    def test_address_is_owner_hash(self, wallet):
        assert wallet.address == b64url_encode(sha256(wallet.owner))
        assert len(wallet.owner) == 256

    def test_jwk_round_trip(self, wallet, tmp_path):
        path = tmp_path / "wallet.json"
        path.write_text(json.dumps(wallet.to_jwk()))

        loaded = Wallet.from_file(path)
        assert loaded.address == wallet.address
        assert loaded.verify(wallet.sign(b"message"), b"message")

    def test_missing_file(self, tmp_path):
        with pytest.raises(WalletLoadError) as exc:
            Wallet.from_file(tmp_path / "absent.json")
        assert exc.value.details["path"].endswith("absent.json")

    def test_incomplete_jwk(self, wallet):
        jwk = wallet.to_jwk()
        del jwk["d"]
        with pytest.raises(WalletLoadError):
            Wallet.from_jwk(jwk)

    def test_wrong_key_type(self):
        with pytest.raises(WalletLoadError):
            Wallet.from_jwk({"kty": "EC"})
