"""
Shared fixtures for the zipIQ test suite.

RSA key generation is slow, so signing wallets are created once per session.
"""

import pytest

from streaming.zipiq_server.signing.identity import Wallet


@pytest.fixture(scope="session")
def wallet():
    """A 2048-bit signing wallet shared by the session."""
    return Wallet.generate(key_size=2048)


@pytest.fixture(scope="session")
def second_wallet():
    """Another signing wallet, distinct from `wallet`."""
    return Wallet.generate(key_size=2048)
