from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Set

from state.models import Identity, MembershipStatus
from .ledger import LedgerError, LedgerRevertedError
from .membership import MembershipResolver
from .session import LedgerSession


logger = logging.getLogger(__name__)


class ClaimErrorKind(str, Enum):
    ALREADY_IN_PROGRESS = "already_in_progress"
    REVERTED = "reverted"
    NETWORK_FAILURE = "network_failure"


class ClaimError(RuntimeError):
    def __init__(self, kind: ClaimErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class ClaimWorkflow:
    """
    Mints the membership NFT for a non-member.

    not_claimed -> claiming -> claimed | claim_failed. At most one claim per
    identity is outstanding; a second call while one runs is refused. A mined
    claim flips the resolver to claimed right away and schedules one
    reconciliation read of the owned count to catch reverted mints.
    """

    def __init__(
        self,
        resolver: MembershipResolver,
        *,
        token_id: str = "0",
        quantity: int = 1,
        reconcile_delay: float = 0.0,
    ) -> None:
        self._resolver = resolver
        self.token_id = token_id
        self.quantity = quantity
        self.reconcile_delay = reconcile_delay
        self._in_flight: Set[Identity] = set()
        self._reconciliations: Set[asyncio.Task] = set()

    def in_progress(self, identity: Identity) -> bool:
        return identity in self._in_flight

    async def claim(self, session: LedgerSession) -> MembershipStatus:
        identity = session.identity
        if identity in self._in_flight:
            raise ClaimError(ClaimErrorKind.ALREADY_IN_PROGRESS, f"A claim for {identity} is already in progress")
        if self._resolver.status(identity) is MembershipStatus.CLAIMED:
            return MembershipStatus.CLAIMED

        prev = self._resolver.status(identity)
        self._in_flight.add(identity)
        try:
            self._resolver.mark(identity, MembershipStatus.CLAIMING)
            try:
                tx = await session.ledger.claim(self.token_id, self.quantity)
                logger.info("Claim submitted for %s (%r)", identity, tx)
                await tx.wait()
            except LedgerError as exc:
                self._resolver.mark(identity, MembershipStatus.CLAIM_FAILED)
                logger.error("Failed to claim membership NFT for %s: %s", identity, exc)
                kind = ClaimErrorKind.REVERTED if isinstance(exc, LedgerRevertedError) else ClaimErrorKind.NETWORK_FAILURE
                raise ClaimError(kind, f"Claim failed: {exc.reason}") from exc
            except asyncio.CancelledError:
                # Session changed mid-claim; the next resolve decides the status
                self._resolver.mark(identity, prev)
                raise
            self._resolver.mark(identity, MembershipStatus.CLAIMED)
        finally:
            self._in_flight.discard(identity)

        logger.info(
            "Successfully minted membership NFT %s/%s for %s",
            session.ledger.contracts.bundle_drop, self.token_id, identity,
        )
        task = asyncio.ensure_future(self._reconcile(session))
        self._reconciliations.add(task)
        task.add_done_callback(self._reconciliations.discard)
        return MembershipStatus.CLAIMED

    def cancel_reconciliations(self) -> None:
        for task in list(self._reconciliations):
            task.cancel()

    async def wait_reconciled(self) -> None:
        while self._reconciliations:
            await asyncio.gather(*list(self._reconciliations), return_exceptions=True)

    async def _reconcile(self, session: LedgerSession) -> MembershipStatus:
        if self.reconcile_delay > 0:
            await asyncio.sleep(self.reconcile_delay)
        status = await self._resolver.resolve(session)
        if status is not MembershipStatus.CLAIMED:
            logger.warning("Reconciliation after claim found %s for %s", status.value, session.identity)
        return status


__all__ = ["ClaimError", "ClaimErrorKind", "ClaimWorkflow"]
