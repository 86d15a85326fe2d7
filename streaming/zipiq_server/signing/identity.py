"""
Signing identities for archival submissions.

A signing identity is an Arweave wallet: an RSA key pair in JWK form whose
address is the base64url SHA-256 of the public modulus. Each identity
carries a cached balance used by the key manager to choose who pays for
the next submission.

Invariants:
    - Private key material never leaves the Wallet object and is never logged
    - An identity's ref is its wallet address
    - IdentityState is derived from the cached balance, never set directly
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..errors import ZipiqError

logger = logging.getLogger(__name__)

# Arweave signs with RSA-PSS / SHA-256 and a 32 byte salt.
PSS_SALT_LENGTH = 32
DEFAULT_KEY_SIZE = 4096


class SigningError(ZipiqError):
    """Base exception for signing identity errors."""

    def __init__(self, message: str, code: str = "SIGNING_ERROR", **details: Any) -> None:
        super().__init__(message, code=code, details=details)


class WalletLoadError(SigningError):
    """A wallet key file could not be read or parsed."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, code="WALLET_LOAD_ERROR", path=path)


class NoIdentityConfiguredError(SigningError):
    """No signing identities exist at all. Not retryable."""

    def __init__(self) -> None:
        super().__init__("No signing identity configured", code="NO_IDENTITY_CONFIGURED")


class NoFundedIdentityError(SigningError):
    """Identities exist but none has enough balance right now."""

    transient = True

    def __init__(self, min_balance: int, identity_count: int) -> None:
        super().__init__(
            f"No signing identity with balance >= {min_balance} winston",
            code="NO_FUNDED_IDENTITY",
            min_balance=min_balance,
            identity_count=identity_count,
        )


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _int_to_b64url(value: int) -> str:
    return b64url_encode(value.to_bytes((value.bit_length() + 7) // 8, "big"))


def _b64url_to_int(value: str) -> int:
    return int.from_bytes(b64url_decode(value), "big")


class Wallet:
    """An RSA signing key in Arweave JWK form.

    Example:
        >>> wallet = Wallet.from_file("/secrets/wallet.json")
        >>> wallet.address
        'Hb7l...'
        >>> signature = wallet.sign(message)
    """

    def __init__(self, private_key: rsa.RSAPrivateKey) -> None:
        self._key = private_key
        n = private_key.public_key().public_numbers().n
        self.owner = n.to_bytes((n.bit_length() + 7) // 8, "big")
        self.address = b64url_encode(hashlib.sha256(self.owner).digest())

    @classmethod
    def generate(cls, key_size: int = DEFAULT_KEY_SIZE) -> Wallet:
        """Create a fresh wallet (it must be funded before use)."""
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    @classmethod
    def from_jwk(cls, jwk: dict[str, Any]) -> Wallet:
        """Load a wallet from its JWK dictionary.

        Raises:
            WalletLoadError: If the JWK is not a complete RSA private key
        """
        try:
            if jwk.get("kty") != "RSA":
                raise WalletLoadError(f"Unsupported key type: {jwk.get('kty')}")
            public = rsa.RSAPublicNumbers(_b64url_to_int(jwk["e"]), _b64url_to_int(jwk["n"]))
            private = rsa.RSAPrivateNumbers(
                p=_b64url_to_int(jwk["p"]),
                q=_b64url_to_int(jwk["q"]),
                d=_b64url_to_int(jwk["d"]),
                dmp1=_b64url_to_int(jwk["dp"]),
                dmq1=_b64url_to_int(jwk["dq"]),
                iqmp=_b64url_to_int(jwk["qi"]),
                public_numbers=public,
            )
            return cls(private.private_key())
        except KeyError as e:
            raise WalletLoadError(f"JWK is missing field {e}") from e
        except ValueError as e:
            raise WalletLoadError(f"Invalid RSA key: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> Wallet:
        """Load a wallet from a JWK key file.

        Raises:
            WalletLoadError: If the file is missing or malformed
        """
        try:
            jwk = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise WalletLoadError(f"Cannot read wallet file: {e}", path=str(path)) from e
        try:
            wallet = cls.from_jwk(jwk)
        except WalletLoadError as e:
            raise WalletLoadError(e.message, path=str(path)) from e
        logger.info("Loaded signing wallet", extra={"address": wallet.address, "path": str(path)})
        return wallet

    def to_jwk(self) -> dict[str, str]:
        private = self._key.private_numbers()
        public = private.public_numbers
        return {
            "kty": "RSA",
            "e": _int_to_b64url(public.e),
            "n": _int_to_b64url(public.n),
            "d": _int_to_b64url(private.d),
            "p": _int_to_b64url(private.p),
            "q": _int_to_b64url(private.q),
            "dp": _int_to_b64url(private.dmp1),
            "dq": _int_to_b64url(private.dmq1),
            "qi": _int_to_b64url(private.iqmp),
        }

    def sign(self, message: bytes) -> bytes:
        return self._key.sign(
            message,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=PSS_SALT_LENGTH),
            hashes.SHA256(),
        )

    def verify(self, signature: bytes, message: bytes) -> bool:
        try:
            self._key.public_key().verify(
                signature,
                message,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=PSS_SALT_LENGTH),
                hashes.SHA256(),
            )
            return True
        except InvalidSignature:
            return False

    def __repr__(self) -> str:
        return f"Wallet(address={self.address!r})"


class IdentityState(Enum):
    """Funding state of a signing identity."""

    UNFUNDED = "unfunded"
    LOW_BALANCE = "low_balance"
    FUNDED = "funded"


@dataclass
class SigningIdentity:
    """A wallet plus the key manager's bookkeeping about it.

    Attributes:
        wallet: Key material
        cached_balance: Last known balance minus optimistic spends (winston)
        last_balance_check: When the balance was last read from the network (Unix s)
        consecutive_failures: Submission failures since the last success
        total_spent: Winston recorded as spent since startup
        submissions: Successful submissions since startup
    """

    wallet: Wallet
    cached_balance: int = 0
    last_balance_check: float | None = None
    consecutive_failures: int = 0
    total_spent: int = 0
    submissions: int = 0
    last_error: str | None = field(default=None)

    @property
    def ref(self) -> str:
        return self.wallet.address

    def state(self, min_balance: int) -> IdentityState:
        if self.cached_balance <= 0:
            return IdentityState.UNFUNDED
        if self.cached_balance < min_balance:
            return IdentityState.LOW_BALANCE
        return IdentityState.FUNDED

    def balance_age(self, now: float | None = None) -> float | None:
        if self.last_balance_check is None:
            return None
        return (now or time.time()) - self.last_balance_check

    def to_dict(self, min_balance: int) -> dict[str, Any]:
        return {
            "ref": self.ref,
            "state": self.state(min_balance).value,
            "cached_balance": str(self.cached_balance),
            "last_balance_check": self.last_balance_check,
            "consecutive_failures": self.consecutive_failures,
            "submissions": self.submissions,
            "total_spent": str(self.total_spent),
            "last_error": self.last_error,
        }
