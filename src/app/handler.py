from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from common.claim import ClaimWorkflow
from common.config import DaoConfig
from common.ledger import ContractAddresses, LedgerClient
from common.membership import MembershipResolver
from common.wallet import GatewayWallet
from state.models import ConnectionState, MembershipStatus
from .controller import AppController


logger = logging.getLogger(__name__)


def build_controller(config: DaoConfig) -> AppController:
    contracts = ContractAddresses(
        bundle_drop=config.bundle_drop_address,
        token=config.token_module_address,
        vote=config.voting_module_address,
    )
    ledger = LedgerClient(
        config.gateway_url,
        contracts,
        chain=config.chain,
        access_token=config.access_token,
        decimals=config.token_decimals,
        timeout=config.timeout,
        max_per_second=config.max_per_second,
        tx_poll_interval=config.tx_poll_interval,
        tx_max_wait=config.tx_max_wait,
    )
    wallet = GatewayWallet(ledger, config.wallet_address, supported_chains=config.supported())
    resolver = MembershipResolver(config.gating_token_id)
    claims = ClaimWorkflow(resolver, token_id=config.gating_token_id, reconcile_delay=config.tx_poll_interval)
    return AppController(ledger, wallet, resolver=resolver, claims=claims, gating_token_id=config.gating_token_id)


async def run_async(
    config: DaoConfig,
    *,
    command: str = "status",
    proposal_id: Optional[str] = None,
    choice: Optional[str] = None,
    controller: Optional[AppController] = None,
) -> Dict[str, Any]:
    app = controller or build_controller(config)
    try:
        connection = await app.connect()
        if connection is not ConnectionState.CONNECTED:
            summary = app.snapshot().summary()
            return {"ok": False, **summary}
        await app.wait_idle()

        if command == "claim":
            if app.membership_state() is MembershipStatus.CLAIMED:
                logger.info("Already a member; nothing to claim")
            else:
                app.claim()
                await app.wait_idle()
        elif command == "vote":
            if not proposal_id or not choice:
                raise ValueError("vote requires a proposal id and a choice")
            app.cast_vote(proposal_id, choice)
            await app.wait_idle()

        state = app.snapshot()
        ok = not (state.claim_error or state.vote_error or state.membership_error)
        return {"ok": ok, **state.summary()}
    finally:
        await app.aclose()


def run_once(
    config: Optional[DaoConfig] = None,
    *,
    command: str = "status",
    proposal_id: Optional[str] = None,
    choice: Optional[str] = None,
) -> Dict[str, Any]:
    cfg = config or DaoConfig.from_env()
    return asyncio.run(run_async(cfg, command=command, proposal_id=proposal_id, choice=choice))


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    event = event or {}
    return run_once(
        command=str(event.get("command", "status")),
        proposal_id=event.get("proposal_id"),
        choice=event.get("choice"),
    )


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dao-client", description="Token-gated DAO membership client")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="command")
    sub.add_parser("status", help="show membership, members and proposals")
    sub.add_parser("claim", help="mint the membership NFT")
    vote = sub.add_parser("vote", help="vote on a proposal")
    vote.add_argument("proposal_id")
    vote.add_argument("choice", help="choice label, e.g. For / Against / Abstain")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    result = run_once(
        command=args.command or "status",
        proposal_id=getattr(args, "proposal_id", None),
        choice=getattr(args, "choice", None),
    )
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
