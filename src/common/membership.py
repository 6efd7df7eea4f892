from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from state.models import Identity, MembershipStatus
from .ledger import LedgerError
from .session import LedgerSession


logger = logging.getLogger(__name__)

StatusListener = Callable[[Identity, MembershipStatus], None]


class MembershipResolver:
    """
    Decides whether an identity holds the gating NFT and caches the answer.

    A failed ledger read returns the last known status instead of
    downgrading it, so a transient outage never revokes a member's view.
    """

    def __init__(self, gating_token_id: str = "0", *, on_change: Optional[StatusListener] = None) -> None:
        self.gating_token_id = gating_token_id
        self.on_change = on_change
        self._status: Dict[Identity, MembershipStatus] = {}
        self._errors: Dict[Identity, LedgerError] = {}

    def status(self, identity: Identity) -> MembershipStatus:
        return self._status.get(identity, MembershipStatus.UNKNOWN)

    def last_error(self, identity: Identity) -> Optional[LedgerError]:
        """Error of the most recent failed `resolve()` for `identity`, if any."""
        return self._errors.get(identity)

    def mark(self, identity: Identity, status: MembershipStatus) -> None:
        prev = self._status.get(identity)
        self._status[identity] = status
        if prev is not status and self.on_change is not None:
            self.on_change(identity, status)

    def forget(self, identity: Identity) -> None:
        self._status.pop(identity, None)
        self._errors.pop(identity, None)

    async def resolve(self, session: LedgerSession) -> MembershipStatus:
        identity = session.identity
        try:
            count = await session.ledger.get_owned_count(identity, self.gating_token_id)
        except LedgerError as exc:
            prev = self.status(identity)
            self._errors[identity] = exc
            logger.warning(
                "Membership check for %s failed (%s); keeping status %s", identity, exc, prev.value
            )
            return prev

        self._errors.pop(identity, None)
        if self.status(identity) is MembershipStatus.CLAIMING:
            # An outstanding claim owns the status until it settles
            return MembershipStatus.CLAIMING

        if count > 0:
            logger.info("%s holds the membership NFT (%d)", identity, count)
            self.mark(identity, MembershipStatus.CLAIMED)
        else:
            logger.info("%s does not hold the membership NFT", identity)
            self.mark(identity, MembershipStatus.NOT_CLAIMED)
        return self.status(identity)
