from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Mapping, Sequence

from state.models import Identity, MemberRecord
from .ledger import LedgerError
from .session import LedgerSession


logger = logging.getLogger(__name__)


class AggregationError(RuntimeError):
    """Roster could not be built; `cause` is the first ledger failure."""

    def __init__(self, cause: LedgerError) -> None:
        super().__init__(f"Failed to build member roster: {cause}")
        self.cause = cause


def merge_roster(holders: Sequence[Identity], balances: Mapping[Identity, Decimal]) -> List[MemberRecord]:
    """
    One record per holder, in holder order, balance defaulting to zero.

    Addresses are matched case-insensitively (hex addresses differ only in
    checksum casing); the holder list's spelling is kept. Balances for
    addresses outside `holders` are ignored.
    """
    by_address: Dict[str, Decimal] = {a.lower(): amount for a, amount in balances.items()}
    seen: set[str] = set()
    out: List[MemberRecord] = []
    for address in holders:
        key = address.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(MemberRecord(address=address, token_balance=by_address.get(key, Decimal(0))))
    return out


class RosterAggregator:
    """Joins the NFT holder list with governance-token balances."""

    def __init__(self, token_id: str = "0") -> None:
        self.token_id = token_id

    async def build_roster(self, session: LedgerSession) -> List[MemberRecord]:
        ledger = session.ledger
        holders_task = asyncio.ensure_future(ledger.get_holder_addresses(self.token_id))
        balances_task = asyncio.ensure_future(ledger.get_all_balances())
        tasks = (holders_task, balances_task)
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()

        failure = None
        for t in tasks:
            if t in done and not t.cancelled() and t.exception() is not None:
                failure = failure or t.exception()
        if failure is not None:
            if isinstance(failure, LedgerError):
                raise AggregationError(failure) from failure
            raise failure

        holders = holders_task.result()
        balances = balances_task.result()
        logger.info("Members addresses: %d, token balances: %d", len(holders), len(balances))
        return merge_roster(holders, balances)


__all__ = ["AggregationError", "RosterAggregator", "merge_roster"]
