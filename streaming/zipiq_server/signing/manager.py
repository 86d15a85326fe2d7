"""
Signing key manager for archival submissions.

The key manager owns every signing identity and answers one question for
the archival queue: "which identity should pay for the next submission?"
The queue never touches key material beyond handing the chosen wallet to
the ledger client, and reports each outcome back so the manager can keep
its cached balances and rotation state current.

Selection:
    Starting at the current identity and going round robin, the first
    identity whose cached balance is at least the minimum is chosen. When
    none qualifies, balances are refreshed from the network once before
    failing with NoFundedIdentityError. Balances older than the refresh
    interval are re-read before selection.

Invariants:
    - With zero identities every request fails with NoIdentityConfiguredError
    - record_spend() debits the cached balance immediately (optimistic)
    - A failed balance read never raises; the previous cached value is kept
    - Each balance read is bounded by balance_timeout_seconds
    - After max_consecutive_failures failures the current identity rotates

How to change safely:
    - The cached balance is advisory; never skip the periodic refresh
    - Keep selection under the lock so concurrent callers see one rotation
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from ..config import SigningConfig
from ..errors import ZipiqError
from ..ledger.base import LedgerClient
from .identity import (
    IdentityState,
    NoFundedIdentityError,
    NoIdentityConfiguredError,
    SigningIdentity,
    Wallet,
)

logger = logging.getLogger(__name__)


class SigningKeyManager:
    """Selects, rotates and tracks the balances of signing identities.

    Attributes:
        ledger: Client used for balance reads
        min_balance: Winston an identity needs to be considered funded
        balance_refresh_seconds: Maximum age of a cached balance
        max_consecutive_failures: Failures before rotating away from an identity
        balance_timeout_seconds: Bound on a single balance read

    Example:
        >>> manager = SigningKeyManager(ledger, [SigningIdentity(wallet)])
        >>> identity = await manager.get_active_identity()
        >>> receipt = await ledger.submit(data, tags, identity.wallet)
        >>> manager.record_spend(identity.ref, receipt.reward)
        >>> manager.record_success(identity.ref)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        identities: list[SigningIdentity] | None = None,
        min_balance: int = 10**11,
        balance_refresh_seconds: float = 300.0,
        max_consecutive_failures: int = 3,
        balance_timeout_seconds: float = 30.0,
    ) -> None:
        self.ledger = ledger
        self.min_balance = min_balance
        self.balance_refresh_seconds = balance_refresh_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self.balance_timeout_seconds = balance_timeout_seconds

        self._identities: list[SigningIdentity] = list(identities or [])
        self._current = 0
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        ledger: LedgerClient,
        config: SigningConfig,
        balance_timeout_seconds: float = 30.0,
    ) -> SigningKeyManager:
        """Create a manager with the wallets listed in the configuration.

        Raises:
            WalletLoadError: If any configured wallet file cannot be loaded
        """
        manager = cls(
            ledger,
            min_balance=config.min_balance_winston,
            balance_refresh_seconds=config.balance_refresh_seconds,
            max_consecutive_failures=config.max_consecutive_failures,
            balance_timeout_seconds=balance_timeout_seconds,
        )
        for path in config.wallet_paths:
            manager.add_wallet(Wallet.from_file(path))
        return manager

    def add_wallet(self, wallet: Wallet) -> SigningIdentity:
        for identity in self._identities:
            if identity.ref == wallet.address:
                return identity
        identity = SigningIdentity(wallet=wallet)
        self._identities.append(identity)
        return identity

    @property
    def identities(self) -> list[SigningIdentity]:
        return list(self._identities)

    @property
    def active_identity(self) -> SigningIdentity | None:
        """The identity rotation currently points at, without any refresh."""
        if not self._identities:
            return None
        return self._identities[self._current]

    def get_identity(self, ref: str) -> SigningIdentity | None:
        for identity in self._identities:
            if identity.ref == ref:
                return identity
        return None

    async def get_active_identity(self) -> SigningIdentity:
        """Return an identity funded for the next submission.

        Raises:
            NoIdentityConfiguredError: If no identities exist
            NoFundedIdentityError: If none is funded even after a refresh
        """
        if not self._identities:
            raise NoIdentityConfiguredError()

        async with self._lock:
            await self._refresh(only_stale=True)
            identity = self._select()
            if identity is None:
                logger.info("No funded identity cached, refreshing all balances")
                await self._refresh(only_stale=False)
                identity = self._select()
            if identity is None:
                raise NoFundedIdentityError(self.min_balance, len(self._identities))
            return identity

    def _select(self) -> SigningIdentity | None:
        count = len(self._identities)
        for step in range(count):
            index = (self._current + step) % count
            identity = self._identities[index]
            if identity.state(self.min_balance) == IdentityState.FUNDED:
                if index != self._current:
                    logger.info(
                        "Switching signing identity",
                        extra={"from": self._identities[self._current].ref, "to": identity.ref},
                    )
                self._current = index
                return identity
        return None

    def record_spend(self, ref: str, amount: int) -> None:
        identity = self.get_identity(ref)
        if identity is None:
            logger.warning("Spend recorded for unknown identity", extra={"identity": ref})
            return
        before = identity.state(self.min_balance)
        identity.cached_balance -= amount
        identity.total_spent += amount
        after = identity.state(self.min_balance)
        if after != before:
            logger.warning(
                "Signing identity balance state changed",
                extra={"identity": ref, "state": after.value, "cached_balance": identity.cached_balance},
            )

    def record_success(self, ref: str) -> None:
        identity = self.get_identity(ref)
        if identity is None:
            return
        identity.consecutive_failures = 0
        identity.submissions += 1
        identity.last_error = None

    def record_failure(self, ref: str, error: str | None = None) -> None:
        identity = self.get_identity(ref)
        if identity is None:
            return
        identity.consecutive_failures += 1
        identity.last_error = error
        if identity.consecutive_failures >= self.max_consecutive_failures:
            identity.consecutive_failures = 0
            if identity is self.active_identity:
                self.rotate()

    def rotate(self) -> SigningIdentity | None:
        """Advance to the next identity in round-robin order."""
        if not self._identities:
            return None
        previous = self._identities[self._current]
        self._current = (self._current + 1) % len(self._identities)
        current = self._identities[self._current]
        logger.warning(
            "Rotated signing identity",
            extra={"from": previous.ref, "to": current.ref},
        )
        return current

    async def refresh_balances(self) -> int:
        """Re-read every identity's balance from the network.

        Returns:
            Number of identities whose balance was refreshed
        """
        async with self._lock:
            return await self._refresh(only_stale=False)

    async def _refresh(self, only_stale: bool) -> int:
        now = time.time()
        refreshed = 0
        for identity in self._identities:
            age = identity.balance_age(now)
            if only_stale and age is not None and age < self.balance_refresh_seconds:
                continue
            try:
                balance = await asyncio.wait_for(
                    self.ledger.get_balance(identity.ref), timeout=self.balance_timeout_seconds
                )
            except ZipiqError as e:
                identity.last_error = e.message
                logger.warning(
                    "Balance refresh failed",
                    extra={"identity": identity.ref, "error": e.message},
                )
                continue
            except asyncio.TimeoutError:
                identity.last_error = f"Balance read timed out after {self.balance_timeout_seconds}s"
                logger.warning("Balance refresh timed out", extra={"identity": identity.ref})
                continue
            except Exception as e:
                identity.last_error = str(e) or type(e).__name__
                logger.error(
                    f"Unexpected balance refresh error: {e}",
                    exc_info=True,
                    extra={"identity": identity.ref},
                )
                continue
            identity.cached_balance = balance
            identity.last_balance_check = now
            refreshed += 1
            logger.debug(
                "Balance refreshed",
                extra={"identity": identity.ref, "balance": balance},
            )
        return refreshed

    def status(self) -> dict[str, Any]:
        active = self.active_identity
        return {
            "identity_count": len(self._identities),
            "funded_count": sum(
                1 for i in self._identities if i.state(self.min_balance) == IdentityState.FUNDED
            ),
            "active_identity": active.ref if active else None,
            "active_balance": str(active.cached_balance) if active else None,
            "active_state": active.state(self.min_balance).value if active else None,
            "min_balance": str(self.min_balance),
            "identities": [i.to_dict(self.min_balance) for i in self._identities],
        }
