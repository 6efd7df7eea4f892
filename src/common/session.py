from __future__ import annotations

from dataclasses import dataclass

from state.models import Identity
from .ledger import LedgerClient


@dataclass(frozen=True)
class LedgerSession:
    """
    Per-connection context handed to every component call.

    - identity: the connected account.
    - ledger: a `LedgerClient` bound to that account as signer.
    - epoch: session number from `SessionStore`; results are only committed
      while it is still current.
    """

    identity: Identity
    ledger: LedgerClient
    epoch: int = 0

    @classmethod
    def open(cls, ledger: LedgerClient, identity: Identity, *, epoch: int = 0) -> "LedgerSession":
        return cls(identity=identity, ledger=ledger.bind(identity), epoch=epoch)
