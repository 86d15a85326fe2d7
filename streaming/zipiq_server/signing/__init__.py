"""
Signing identities and the key manager for zipIQ archival submissions.

Invariants:
    - Identity key material is owned here and never logged
    - Zero configured identities is a permanent, distinguishable error
"""

from .identity import (
    IdentityState,
    NoFundedIdentityError,
    NoIdentityConfiguredError,
    SigningError,
    SigningIdentity,
    Wallet,
    WalletLoadError,
)
from .manager import SigningKeyManager

__all__ = [
    "Wallet",
    "SigningIdentity",
    "IdentityState",
    "SigningKeyManager",
    "SigningError",
    "WalletLoadError",
    "NoIdentityConfiguredError",
    "NoFundedIdentityError",
]
