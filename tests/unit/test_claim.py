from __future__ import annotations

import asyncio

import pytest

from common.claim import ClaimError, ClaimErrorKind, ClaimWorkflow
from common.ledger import LedgerNetworkError, LedgerRevertedError
from common.membership import MembershipResolver
from common.session import LedgerSession
from state.models import MembershipStatus


def _workflow():
    changes = []
    resolver = MembershipResolver(on_change=lambda ident, st: changes.append(st))
    return ClaimWorkflow(resolver), resolver, changes


@pytest.mark.asyncio
async def test_claim_then_resolve_yields_claimed(fake_ledger):
    workflow, resolver, changes = _workflow()
    session = LedgerSession.open(fake_ledger, "0xA")

    status = await workflow.claim(session)
    await workflow.wait_reconciled()

    assert status is MembershipStatus.CLAIMED
    assert changes == [MembershipStatus.CLAIMING, MembershipStatus.CLAIMED]
    assert fake_ledger.calls[0] == ("claim", ("0", 1))
    # Background reconciliation read the owned count once
    assert fake_ledger.count("get_owned_count") == 1
    assert await resolver.resolve(session) is MembershipStatus.CLAIMED


@pytest.mark.asyncio
async def test_concurrent_claims_one_transition_one_rejection(fake_ledger):
    gate = asyncio.Event()
    fake_ledger.gates["claim_tx"] = gate
    workflow, resolver, changes = _workflow()
    session = LedgerSession.open(fake_ledger, "0xA")

    first = asyncio.ensure_future(workflow.claim(session))
    await asyncio.sleep(0)
    assert workflow.in_progress("0xA")
    assert resolver.status("0xA") is MembershipStatus.CLAIMING

    with pytest.raises(ClaimError) as ei:
        await workflow.claim(session)
    assert ei.value.kind is ClaimErrorKind.ALREADY_IN_PROGRESS

    gate.set()
    assert await first is MembershipStatus.CLAIMED
    await workflow.wait_reconciled()

    assert fake_ledger.count("claim") == 1
    assert changes == [MembershipStatus.CLAIMING, MembershipStatus.CLAIMED]
    assert not workflow.in_progress("0xA")


@pytest.mark.asyncio
async def test_failed_claim_never_reports_claimed(fake_ledger):
    fake_ledger.failures["claim_tx"] = LedgerRevertedError("execution reverted")
    workflow, resolver, changes = _workflow()
    session = LedgerSession.open(fake_ledger, "0xA")

    with pytest.raises(ClaimError) as ei:
        await workflow.claim(session)

    assert ei.value.kind is ClaimErrorKind.REVERTED
    assert resolver.status("0xA") is MembershipStatus.CLAIM_FAILED
    assert MembershipStatus.CLAIMED not in changes
    assert not workflow.in_progress("0xA")


@pytest.mark.asyncio
async def test_submission_network_failure_allows_retry(fake_ledger):
    fake_ledger.failures["claim"] = LedgerNetworkError("gateway down")
    workflow, resolver, _ = _workflow()
    session = LedgerSession.open(fake_ledger, "0xA")

    with pytest.raises(ClaimError) as ei:
        await workflow.claim(session)
    assert ei.value.kind is ClaimErrorKind.NETWORK_FAILURE

    del fake_ledger.failures["claim"]
    assert await workflow.claim(session) is MembershipStatus.CLAIMED


@pytest.mark.asyncio
async def test_reconciliation_corrects_reverted_mint(fake_ledger):
    fake_ledger.mint_on_claim = False  # tx "mined" but nothing owned
    workflow, resolver, changes = _workflow()
    session = LedgerSession.open(fake_ledger, "0xA")

    assert await workflow.claim(session) is MembershipStatus.CLAIMED
    await workflow.wait_reconciled()

    assert resolver.status("0xA") is MembershipStatus.NOT_CLAIMED
    assert changes[-1] is MembershipStatus.NOT_CLAIMED


@pytest.mark.asyncio
async def test_reconciliation_read_failure_keeps_claimed(fake_ledger):
    fake_ledger.failures["get_owned_count"] = LedgerNetworkError("timeout")
    workflow, resolver, _ = _workflow()
    session = LedgerSession.open(fake_ledger, "0xA")

    await workflow.claim(session)
    await workflow.wait_reconciled()

    assert resolver.status("0xA") is MembershipStatus.CLAIMED


@pytest.mark.asyncio
async def test_existing_member_is_not_minted_again(fake_ledger):
    workflow, resolver, _ = _workflow()
    resolver.mark("0xA", MembershipStatus.CLAIMED)

    assert await workflow.claim(LedgerSession.open(fake_ledger, "0xA")) is MembershipStatus.CLAIMED
    assert fake_ledger.count("claim") == 0
