from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from state.models import Identity, MembershipStatus, Proposal, VotePhase, VoteStatus
from .ledger import LedgerError, LedgerNetworkError, LedgerRevertedError
from .session import LedgerSession


logger = logging.getLogger(__name__)

VoteListener = Callable[[Identity, VoteStatus], None]


class VoteErrorKind(str, Enum):
    ALREADY_VOTED = "already_voted"
    NOT_A_MEMBER = "not_a_member"
    REVERTED = "reverted"
    NETWORK_FAILURE = "network_failure"
    UNKNOWN_PROPOSAL = "unknown_proposal"


class VoteError(RuntimeError):
    def __init__(self, kind: VoteErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


def _vote_error_from(exc: LedgerError, proposal_id: str) -> VoteError:
    kind = VoteErrorKind.REVERTED if isinstance(exc, LedgerRevertedError) else VoteErrorKind.NETWORK_FAILURE
    return VoteError(kind, f"Vote on proposal {proposal_id} failed: {exc.reason}")


class GovernanceView:
    """
    Proposals of the vote contract and the caller's vote on each.

    Vote phase per (identity, proposal): not_voted -> pending -> confirmed,
    with a failed transaction rolling back to not_voted after re-checking the
    ledger. The phase is set to pending before the first await of
    `cast_vote`, so a second call racing the first is refused locally.
    """

    def __init__(self, *, on_change: Optional[VoteListener] = None) -> None:
        self.on_change = on_change
        self._proposals: Optional[List[Proposal]] = None
        self._phases: Dict[Tuple[Identity, str], VotePhase] = {}

    @property
    def proposals(self) -> List[Proposal]:
        return list(self._proposals or [])

    def reset(self) -> None:
        self._proposals = None
        self._phases.clear()

    def cached_status(self, identity: Identity, proposal_id: str) -> Optional[VoteStatus]:
        phase = self._phases.get((identity, proposal_id))
        if phase is None:
            return None
        return VoteStatus(proposal_id=proposal_id, phase=phase)

    async def load_proposals(self, session: LedgerSession) -> List[Proposal]:
        proposals = await session.ledger.list_proposals()
        ids = [p.id for p in proposals]
        unique = set(ids)
        if len(unique) != len(ids):
            raise LedgerNetworkError(f"Duplicate proposal ids from vote contract: {ids}")
        self._proposals = proposals
        # Derived statuses are recomputed; only in-flight votes survive a reload
        self._phases = {k: v for k, v in self._phases.items() if k[1] in unique and v is VotePhase.PENDING}
        logger.info("Proposals: %d", len(proposals))
        return list(proposals)

    async def vote_status(self, session: LedgerSession, proposal_id: str) -> VoteStatus:
        cached = self.cached_status(session.identity, proposal_id)
        if cached is not None:
            return cached
        voted = await session.ledger.has_voted(proposal_id, session.identity)
        if (session.identity, proposal_id) in self._phases:
            # A vote started while the read was in flight; it wins
            return self.cached_status(session.identity, proposal_id)  # type: ignore[return-value]
        phase = VotePhase.CONFIRMED if voted else VotePhase.NOT_VOTED
        if voted:
            logger.info("%s has already voted on proposal %s", session.identity, proposal_id)
        self._set(session.identity, proposal_id, phase)
        return VoteStatus(proposal_id=proposal_id, phase=phase)

    async def current_vote_status(self, session: LedgerSession) -> Optional[VoteStatus]:
        """Vote status for the first proposal only; None while there are none."""
        proposals = self._proposals if self._proposals is not None else await self.load_proposals(session)
        if not proposals:
            return None
        return await self.vote_status(session, proposals[0].id)

    async def refresh_vote_statuses(self, session: LedgerSession) -> Dict[str, VoteStatus]:
        if self._proposals is None:
            raise RuntimeError("load_proposals() must complete before vote statuses are read")
        out: Dict[str, VoteStatus] = {}
        for p in self._proposals:
            out[p.id] = await self.vote_status(session, p.id)
        return out

    async def cast_vote(
        self,
        session: LedgerSession,
        proposal_id: str,
        choice: str,
        membership: MembershipStatus,
    ) -> VoteStatus:
        identity = session.identity
        key = (identity, proposal_id)

        # Local preconditions: no ledger contact on any of these
        if membership is not MembershipStatus.CLAIMED:
            raise VoteError(VoteErrorKind.NOT_A_MEMBER, f"{identity} does not hold the membership NFT")
        if self._phases.get(key) in (VotePhase.PENDING, VotePhase.CONFIRMED):
            raise VoteError(VoteErrorKind.ALREADY_VOTED, f"{identity} already voted on proposal {proposal_id}")
        proposal = self._find(proposal_id)
        try:
            vote_type = proposal.choice_index(choice)
        except KeyError:
            raise VoteError(
                VoteErrorKind.UNKNOWN_PROPOSAL,
                f"{choice!r} is not a choice of proposal {proposal_id} ({', '.join(proposal.choices)})",
            ) from None

        known = key in self._phases
        self._set(identity, proposal_id, VotePhase.PENDING)

        if not known:
            try:
                voted = await session.ledger.has_voted(proposal_id, identity)
            except LedgerError as exc:
                self._set(identity, proposal_id, VotePhase.NOT_VOTED)
                raise _vote_error_from(exc, proposal_id) from exc
            if voted:
                self._set(identity, proposal_id, VotePhase.CONFIRMED)
                raise VoteError(VoteErrorKind.ALREADY_VOTED, f"{identity} already voted on proposal {proposal_id}")

        try:
            tx = await session.ledger.cast_vote(proposal_id, vote_type)
        except LedgerError as exc:
            self._set(identity, proposal_id, VotePhase.NOT_VOTED)
            logger.warning("Vote on %s by %s was not submitted: %s", proposal_id, identity, exc)
            raise _vote_error_from(exc, proposal_id) from exc
        logger.info("Vote %r on proposal %s submitted by %s (%r)", choice, proposal_id, identity, tx)

        try:
            await tx.wait()
        except LedgerError as exc:
            return await self._reconcile_failed_vote(session, proposal_id, exc)

        self._set(identity, proposal_id, VotePhase.CONFIRMED)
        logger.info("Vote on proposal %s by %s confirmed", proposal_id, identity)
        return VoteStatus(proposal_id=proposal_id, phase=VotePhase.CONFIRMED)

    async def _reconcile_failed_vote(
        self, session: LedgerSession, proposal_id: str, exc: LedgerError
    ) -> VoteStatus:
        identity = session.identity
        try:
            voted = await session.ledger.has_voted(proposal_id, identity)
        except LedgerError as check_exc:
            logger.warning("Could not re-check vote on %s after failure: %s", proposal_id, check_exc)
            voted = False
        if voted:
            # The transaction landed even though confirmation failed
            self._set(identity, proposal_id, VotePhase.CONFIRMED)
            logger.warning("Vote on %s reported %s but the ledger records it", proposal_id, exc)
            return VoteStatus(proposal_id=proposal_id, phase=VotePhase.CONFIRMED)
        self._set(identity, proposal_id, VotePhase.NOT_VOTED)
        logger.warning("Vote on %s by %s rolled back: %s", proposal_id, identity, exc)
        raise _vote_error_from(exc, proposal_id) from exc

    def _find(self, proposal_id: str) -> Proposal:
        for p in self._proposals or []:
            if p.id == proposal_id:
                return p
        raise VoteError(VoteErrorKind.UNKNOWN_PROPOSAL, f"Unknown proposal {proposal_id}")

    def _set(self, identity: Identity, proposal_id: str, phase: VotePhase) -> None:
        prev = self._phases.get((identity, proposal_id))
        self._phases[(identity, proposal_id)] = phase
        if prev is not phase and self.on_change is not None:
            self.on_change(identity, VoteStatus(proposal_id=proposal_id, phase=phase))


__all__ = ["GovernanceView", "VoteError", "VoteErrorKind"]
