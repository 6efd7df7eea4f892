from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict

import pytest

from app import handler
from app.controller import AppController
from common.config import DaoConfig
from common.ledger import UnsupportedNetworkError
from state.models import Proposal


def _config() -> DaoConfig:
    return DaoConfig(
        gateway_url="https://gateway.example",
        bundle_drop_address="0xdrop",
        token_module_address="0xtoken",
        voting_module_address="0xvote",
        wallet_address="0xAAA",
    )


def _member_dao(fake_ledger) -> None:
    fake_ledger.holders = ["0xAAA"]
    fake_ledger.balances = {"0xAAA": Decimal(7)}
    fake_ledger.owned = {"0xAAA": 1}
    fake_ledger.proposals = [Proposal(id="P1", description="Fund the treasury", choices=["Against", "For"])]


@pytest.mark.asyncio
async def test_status_summary(fake_ledger, fake_wallet):
    _member_dao(fake_ledger)
    app = AppController(fake_ledger, fake_wallet)

    result = await handler.run_async(_config(), controller=app)

    assert result["ok"] is True
    assert result["connection"] == "connected"
    assert result["membership"] == "claimed"
    assert result["members"] == [{"address": "0xAAA", "token_balance": "7"}]
    assert result["proposals"][0]["id"] == "P1"
    assert result["vote_statuses"] == {"P1": "not_voted"}
    assert fake_ledger.closed


@pytest.mark.asyncio
async def test_claim_command(fake_ledger, fake_wallet):
    fake_ledger.proposals = []
    app = AppController(fake_ledger, fake_wallet)

    result = await handler.run_async(_config(), command="claim", controller=app)

    assert result["ok"] is True
    assert result["membership"] == "claimed"
    assert fake_ledger.count("claim") == 1


@pytest.mark.asyncio
async def test_vote_command_reports_vote_error(fake_ledger, fake_wallet):
    _member_dao(fake_ledger)
    fake_ledger.voted = {("P1", "0xAAA")}
    app = AppController(fake_ledger, fake_wallet)

    result = await handler.run_async(_config(), command="vote", proposal_id="P1", choice="For", controller=app)

    assert result["ok"] is False
    assert result["errors"]["vote"].startswith("already_voted")
    assert fake_ledger.count("cast_vote") == 0


@pytest.mark.asyncio
async def test_unsupported_network_not_ok(fake_ledger, fake_wallet):
    fake_wallet.error = UnsupportedNetworkError("chain 1")
    app = AppController(fake_ledger, fake_wallet)

    result = await handler.run_async(_config(), controller=app)

    assert result["ok"] is False
    assert result["connection"] == "unsupported_network"


def test_main_prints_summary_and_exit_code(monkeypatch: pytest.MonkeyPatch, capsys):
    calls: Dict[str, Any] = {}

    def fake_run_once(**kwargs):
        calls.update(kwargs)
        return {"ok": True, "membership": "claimed"}

    monkeypatch.setattr(handler, "run_once", fake_run_once)

    code = handler.main(["vote", "P1", "For"])

    assert code == 0
    assert calls == {"command": "vote", "proposal_id": "P1", "choice": "For"}
    assert json.loads(capsys.readouterr().out) == {"membership": "claimed", "ok": True}
