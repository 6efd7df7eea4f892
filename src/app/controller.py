from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from common.claim import ClaimError, ClaimWorkflow
from common.governance import GovernanceView, VoteError
from common.ledger import LedgerClient, LedgerError, UnsupportedNetworkError
from common.membership import MembershipResolver
from common.roster import AggregationError, RosterAggregator
from common.session import LedgerSession
from common.wallet import WalletConnector, WalletError
from state.models import (
    AppState,
    ConnectionState,
    Identity,
    MemberRecord,
    MembershipStatus,
    Proposal,
    VoteStatus,
)
from state.store import SessionStore, StaleSessionError


logger = logging.getLogger(__name__)


def _describe(exc: Exception) -> str:
    kind = getattr(exc, "kind", None)
    return f"{kind.value}: {exc}" if kind is not None else str(exc)


class AppController:
    """
    Single surface the UI/CLI talks to.

    Queries return the cached `AppState` immediately; commands start
    background work and return the current cached value. Subscribers are
    notified whenever a background step commits. Every background task is
    tied to the session epoch it was dispatched in, and its results are
    dropped once that epoch is over (identity change or disconnect).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        wallet: WalletConnector,
        *,
        resolver: Optional[MembershipResolver] = None,
        roster: Optional[RosterAggregator] = None,
        governance: Optional[GovernanceView] = None,
        claims: Optional[ClaimWorkflow] = None,
        store: Optional[SessionStore] = None,
        gating_token_id: str = "0",
    ) -> None:
        self._ledger = ledger
        self._wallet = wallet
        self._store = store or SessionStore()
        self._resolver = resolver or MembershipResolver(gating_token_id)
        self._roster = roster or RosterAggregator(gating_token_id)
        self._governance = governance or GovernanceView()
        self._claims = claims or ClaimWorkflow(self._resolver, token_id=gating_token_id)
        self._resolver.on_change = self._on_membership_change
        self._governance.on_change = self._on_vote_change
        self._session: Optional[LedgerSession] = None
        self._tasks: Set[asyncio.Task] = set()

    # --------------- Queries ---------------
    def snapshot(self) -> AppState:
        return self._store.state

    def connection_state(self) -> ConnectionState:
        return self._store.state.connection

    def identity(self) -> Optional[Identity]:
        return self._store.state.identity

    def membership_state(self) -> MembershipStatus:
        return self._store.state.membership

    def roster(self) -> List[MemberRecord]:
        return list(self._store.state.roster)

    def proposals(self) -> List[Proposal]:
        return list(self._store.state.proposals)

    def vote_status(self, proposal_id: str) -> Optional[VoteStatus]:
        return self._store.state.vote_statuses.get(proposal_id)

    def subscribe(self, fn: Callable[[AppState], None]) -> Callable[[], None]:
        return self._store.subscribe(fn)

    # --------------- Connection ---------------
    async def connect(self) -> ConnectionState:
        await self._cancel_tasks()
        self._reset_session()
        epoch = self._store.begin_epoch(AppState(connection=ConnectionState.CONNECTING))
        try:
            identity = await self._wallet.connect()
        except UnsupportedNetworkError as exc:
            self._commit(epoch, lambda s: _set_connection(s, ConnectionState.UNSUPPORTED_NETWORK, _describe(exc)))
            return self.connection_state()
        except (WalletError, LedgerError) as exc:
            logger.error("Wallet connection failed: %s", exc)
            self._commit(epoch, lambda s: _set_connection(s, ConnectionState.FAILED, _describe(exc)))
            return self.connection_state()

        if epoch != self._store.epoch:
            # Superseded by a disconnect or another connect while waiting
            return self.connection_state()
        # Membership is cached per identity per session
        self._resolver.forget(identity)
        session = LedgerSession.open(self._ledger, identity, epoch=epoch)
        self._session = session

        def _connected(s: AppState) -> None:
            s.connection = ConnectionState.CONNECTED
            s.identity = identity

        self._commit(epoch, _connected)
        self._spawn(self._load(session))
        return self.connection_state()

    def disconnect(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._reset_session()
        self._wallet.disconnect()
        self._store.begin_epoch(AppState(connection=ConnectionState.DISCONNECTED))

    def refresh(self) -> None:
        """Reload membership and, for members, roster and proposals."""
        session = self._session
        if session is None:
            return
        self._spawn(self._load(session))

    # --------------- Commands ---------------
    def claim(self) -> MembershipStatus:
        session = self._session
        if session is None:
            self._store.commit(lambda s: setattr(s, "claim_error", "Connect a wallet before claiming"))
            return self.membership_state()
        self._commit(session.epoch, lambda s: setattr(s, "claim_error", None))
        self._spawn(self._run_claim(session))
        return self.membership_state()

    def cast_vote(self, proposal_id: str, choice: str) -> Optional[VoteStatus]:
        session = self._session
        if session is None:
            self._store.commit(lambda s: setattr(s, "vote_error", "Connect a wallet before voting"))
            return self.vote_status(proposal_id)
        self._commit(session.epoch, lambda s: setattr(s, "vote_error", None))
        self._spawn(self._run_vote(session, proposal_id, choice))
        return self.vote_status(proposal_id)

    # --------------- Lifecycle ---------------
    async def wait_idle(self) -> None:
        """Wait for every background task, including post-claim reconciliation."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._claims.wait_reconciled()

    async def aclose(self) -> None:
        await self._cancel_tasks()
        self._reset_session()
        await self._ledger.aclose()

    # --------------- Background work ---------------
    async def _load(self, session: LedgerSession) -> None:
        epoch = session.epoch
        self._commit(epoch, lambda s: _add_loading(s, "membership"))
        try:
            status = await self._resolver.resolve(session)
            err = self._resolver.last_error(session.identity)

            def _resolved(s: AppState) -> None:
                s.membership = status
                s.membership_error = _describe(err) if err else None

            current = self._commit(epoch, _resolved)
        finally:
            self._commit(epoch, lambda s: _done_loading(s, "membership"))
        if not current:
            return
        if status is MembershipStatus.CLAIMED:
            await self._load_member_view(session)

    async def _load_member_view(self, session: LedgerSession) -> None:
        await asyncio.gather(self._load_roster(session), self._load_proposals(session))

    async def _load_roster(self, session: LedgerSession) -> None:
        epoch = session.epoch
        self._commit(epoch, lambda s: _add_loading(s, "roster"))
        try:
            members = await self._roster.build_roster(session)
        except AggregationError as exc:
            logger.warning("Failed to get member list: %s", exc)
            # Keep the previous roster on screen
            self._set_error(epoch, "roster_error", _describe(exc.cause))
        except Exception as exc:
            logger.exception("Unexpected failure building member list")
            self._set_error(epoch, "roster_error", _describe(exc))
        else:
            self._commit(epoch, lambda s: _set_roster(s, members))
        finally:
            self._commit(epoch, lambda s: _done_loading(s, "roster"))

    async def _load_proposals(self, session: LedgerSession) -> None:
        epoch = session.epoch
        self._commit(epoch, lambda s: _add_loading(s, "proposals"))
        try:
            proposals = await self._governance.load_proposals(session)
            statuses = await self._governance.refresh_vote_statuses(session)
        except LedgerError as exc:
            logger.warning("Failed to get proposals: %s", exc)
            self._set_error(epoch, "proposals_error", _describe(exc))
        except Exception as exc:
            logger.exception("Unexpected failure loading proposals")
            self._set_error(epoch, "proposals_error", _describe(exc))
        else:
            self._commit(epoch, lambda s: _set_proposals(s, proposals, statuses))
        finally:
            self._commit(epoch, lambda s: _done_loading(s, "proposals"))

    async def _run_claim(self, session: LedgerSession) -> None:
        try:
            status = await self._claims.claim(session)
        except ClaimError as exc:
            self._commit(session.epoch, lambda s: setattr(s, "claim_error", _describe(exc)))
            return
        if status is MembershipStatus.CLAIMED:
            await self._load_member_view(session)

    async def _run_vote(self, session: LedgerSession, proposal_id: str, choice: str) -> None:
        membership = self._resolver.status(session.identity)
        try:
            await self._governance.cast_vote(session, proposal_id, choice, membership)
        except VoteError as exc:
            self._commit(session.epoch, lambda s: setattr(s, "vote_error", _describe(exc)))
            return
        # Vote weights changed on chain
        await self._load_proposals(session)

    # --------------- Component listeners ---------------
    def _on_membership_change(self, identity: Identity, status: MembershipStatus) -> None:
        session = self._session
        if session is None or session.identity != identity:
            return
        self._commit(session.epoch, lambda s: setattr(s, "membership", status))

    def _on_vote_change(self, identity: Identity, status: VoteStatus) -> None:
        session = self._session
        if session is None or session.identity != identity:
            return
        self._commit(session.epoch, lambda s: s.vote_statuses.__setitem__(status.proposal_id, status))

    # --------------- Internal ---------------
    def _commit(self, epoch: int, mutator: Callable[[AppState], None]) -> bool:
        try:
            self._store.commit(mutator, if_epoch=epoch)
        except StaleSessionError as exc:
            logger.debug("Dropping stale result: %s", exc)
            return False
        return True

    def _set_error(self, epoch: int, field: str, message: str) -> None:
        self._commit(epoch, lambda s: setattr(s, field, message))

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", exc_info=exc)

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        self._claims.cancel_reconciliations()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._claims.wait_reconciled()

    def _reset_session(self) -> None:
        session = self._session
        self._session = None
        if session is not None:
            self._resolver.forget(session.identity)
        self._claims.cancel_reconciliations()
        self._governance.reset()


def _set_connection(s: AppState, state: ConnectionState, error: Optional[str]) -> None:
    s.connection = state
    s.connection_error = error
    s.identity = None


def _set_roster(s: AppState, members: List[MemberRecord]) -> None:
    s.roster = members
    s.roster_error = None


def _set_proposals(s: AppState, proposals: List[Proposal], statuses: Dict[str, VoteStatus]) -> None:
    s.proposals = proposals
    s.vote_statuses = dict(statuses)
    s.proposals_error = None


def _add_loading(s: AppState, what: str) -> None:
    if what not in s.loading:
        s.loading.append(what)


def _done_loading(s: AppState, what: str) -> None:
    if what in s.loading:
        s.loading.remove(what)


__all__ = ["AppController"]
