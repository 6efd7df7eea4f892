import asyncio
import os
import sys
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


class FakeTx:
    def __init__(self, ledger: "FakeLedger", step: str, on_success) -> None:
        self._ledger = ledger
        self._step = step
        self._on_success = on_success
        self.queue_id = f"q-{step}-{len(ledger.calls)}"

    async def wait(self) -> str:
        await self._ledger._step(self._step)
        self._on_success()
        return "0xhash"


class FakeLedger:
    """
    In-memory stand-in for `LedgerClient`.

    - failures[name]: exception raised by every call of that step
      ("get_owned_count", "claim", "claim_tx", "cast_vote", "vote_tx", ...).
    - gates[name]: asyncio.Event the step waits on before answering.
    - calls: (step, args) in call order.
    """

    def __init__(self) -> None:
        from common.ledger import ContractAddresses

        self.contracts = ContractAddresses(bundle_drop="0xdrop", token="0xtoken", vote="0xvote")
        self.signer: Optional[str] = None
        self.bound_to: List[str] = []
        self.holders: List[str] = []
        self.balances: Dict[str, Decimal] = {}
        self.owned: Dict[str, int] = {}
        self.proposals: list = []
        self.voted: Set[Tuple[str, str]] = set()
        self.failures: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.mint_on_claim = True
        self.closed = False

    def bind(self, signer: str) -> "FakeLedger":
        self.signer = signer
        self.bound_to.append(signer)
        return self

    def count(self, step: str) -> int:
        return sum(1 for name, _ in self.calls if name == step)

    async def _step(self, name: str, *args) -> None:
        self.calls.append((name, args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    async def get_holder_addresses(self, token_id: str = "0") -> List[str]:
        await self._step("get_holder_addresses", token_id)
        return list(self.holders)

    async def get_all_balances(self) -> Dict[str, Decimal]:
        await self._step("get_all_balances")
        return dict(self.balances)

    async def get_balance(self, identity: str) -> Decimal:
        await self._step("get_balance", identity)
        return self.balances.get(identity, Decimal(0))

    async def get_owned_count(self, identity: str, token_id: str = "0") -> int:
        await self._step("get_owned_count", identity, token_id)
        return self.owned.get(identity, 0)

    async def claim(self, token_id: str = "0", quantity: int = 1) -> FakeTx:
        await self._step("claim", token_id, quantity)
        signer = self.signer

        def _minted() -> None:
            if self.mint_on_claim and signer:
                self.owned[signer] = self.owned.get(signer, 0) + quantity

        return FakeTx(self, "claim_tx", _minted)

    async def list_proposals(self) -> list:
        await self._step("list_proposals")
        return list(self.proposals)

    async def has_voted(self, proposal_id: str, identity: str) -> bool:
        await self._step("has_voted", proposal_id, identity)
        return (proposal_id, identity) in self.voted

    async def cast_vote(self, proposal_id: str, vote_type: int, *, reason: str = "") -> FakeTx:
        await self._step("cast_vote", proposal_id, vote_type)
        signer = self.signer

        def _recorded() -> None:
            self.voted.add((proposal_id, signer))

        return FakeTx(self, "vote_tx", _recorded)

    async def get_chain_id(self, address: str) -> int:
        await self._step("get_chain_id", address)
        return 4

    async def aclose(self) -> None:
        self.closed = True


class FakeWallet:
    def __init__(self, identity: str = "0xAAA", *, error: Optional[Exception] = None) -> None:
        self.identity = identity
        self.error = error
        self.connected: Optional[str] = None

    async def connect(self) -> str:
        if self.error is not None:
            raise self.error
        self.connected = self.identity
        return self.identity

    def current_identity(self) -> Optional[str]:
        return self.connected

    def disconnect(self) -> None:
        self.connected = None


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def fake_wallet() -> FakeWallet:
    return FakeWallet()
