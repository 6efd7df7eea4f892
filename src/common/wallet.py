from __future__ import annotations

import logging
from typing import Optional

from state.models import Identity
from .ledger import LedgerClient, LedgerError, UnsupportedNetworkError
from .networks import Supported, is_chain_supported


logger = logging.getLogger(__name__)


class WalletError(RuntimeError):
    """Generic wallet connection failure (not a network mismatch)."""


class WalletConnector:
    """
    Boundary to whatever supplies the user's account.

    `connect()` returns the connected identity, raising
    `UnsupportedNetworkError` when the wallet is on the wrong chain and
    `WalletError` for any other connection failure.
    """

    async def connect(self) -> Identity:
        raise NotImplementedError

    def current_identity(self) -> Optional[Identity]:
        raise NotImplementedError

    def disconnect(self) -> None:
        raise NotImplementedError


class GatewayWallet(WalletConnector):
    """Wallet backed by a signer account managed by the ledger gateway."""

    def __init__(
        self,
        ledger: LedgerClient,
        address: Identity,
        *,
        supported_chains: Optional[Supported] = None,
    ) -> None:
        if not address:
            raise ValueError("address is required")
        self._ledger = ledger
        self._address = address
        self._supported: Supported = set(supported_chains or ())
        self._connected: Optional[Identity] = None

    async def connect(self) -> Identity:
        try:
            chain_id = await self._ledger.get_chain_id(self._address)
        except UnsupportedNetworkError:
            self._connected = None
            raise
        except LedgerError as exc:
            self._connected = None
            raise WalletError(f"Could not connect wallet {self._address}: {exc.reason}") from exc

        if not is_chain_supported(chain_id, self._supported):
            self._connected = None
            raise UnsupportedNetworkError(
                f"Wallet {self._address} is on chain {chain_id}; switch to a supported network"
            )
        self._connected = self._address
        logger.info("Wallet connected: %s (chain %s)", self._address, chain_id)
        return self._address

    def current_identity(self) -> Optional[Identity]:
        return self._connected

    def disconnect(self) -> None:
        self._connected = None


__all__ = ["GatewayWallet", "WalletConnector", "WalletError"]
