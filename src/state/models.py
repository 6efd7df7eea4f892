from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


Identity = str


class MembershipStatus(str, Enum):
    UNKNOWN = "unknown"
    NOT_CLAIMED = "not_claimed"
    CLAIMING = "claiming"
    CLAIMED = "claimed"
    CLAIM_FAILED = "claim_failed"


class VotePhase(str, Enum):
    NOT_VOTED = "not_voted"
    PENDING = "pending"
    CONFIRMED = "confirmed"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNSUPPORTED_NETWORK = "unsupported_network"
    FAILED = "failed"


class MemberRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: Identity
    token_balance: Decimal = Field(default=Decimal(0), ge=0)


class Proposal(BaseModel):
    """
    A governance proposal as read from the voting contract.

    `choices` keeps the contract's option order (the index is what gets cast);
    `vote_counts` maps each choice label to its accumulated token weight.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    description: str = ""
    choices: List[str] = Field(default_factory=list)
    vote_counts: Dict[str, Decimal] = Field(default_factory=dict)

    def choice_index(self, label: str) -> int:
        wanted = label.strip().lower()
        for i, choice in enumerate(self.choices):
            if choice.lower() == wanted:
                return i
        raise KeyError(label)


class VoteStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    proposal_id: str
    phase: VotePhase = VotePhase.NOT_VOTED

    @property
    def has_voted(self) -> bool:
        # Pending counts as voted so a second submission is refused
        return self.phase is not VotePhase.NOT_VOTED

    @property
    def confirmed(self) -> bool:
        return self.phase is VotePhase.CONFIRMED


class AppState(BaseModel):
    """
    Observable session snapshot handed to UI/CLI subscribers.

    Fields
    - connection / identity: wallet connection as last reported.
    - membership: gating-NFT status of the current identity.
    - roster / proposals: last successfully loaded values; a failed reload
      keeps them and sets the matching `*_error`.
    - vote_statuses: per-proposal vote phase for the current identity.
    - loading: names of background loads in flight ("membership", "roster", ...).
    """

    connection: ConnectionState = ConnectionState.DISCONNECTED
    identity: Optional[Identity] = None
    membership: MembershipStatus = MembershipStatus.UNKNOWN
    roster: List[MemberRecord] = Field(default_factory=list)
    proposals: List[Proposal] = Field(default_factory=list)
    vote_statuses: Dict[str, VoteStatus] = Field(default_factory=dict)
    loading: List[str] = Field(default_factory=list)

    connection_error: Optional[str] = None
    membership_error: Optional[str] = None
    roster_error: Optional[str] = None
    proposals_error: Optional[str] = None
    claim_error: Optional[str] = None
    vote_error: Optional[str] = None

    @classmethod
    def empty(cls) -> "AppState":
        """Convenience constructor for a fresh, disconnected state."""
        return cls()

    def summary(self) -> Dict[str, object]:
        """JSON-friendly view used by the CLI."""
        return {
            "connection": self.connection.value,
            "identity": self.identity,
            "membership": self.membership.value,
            "members": [
                {"address": m.address, "token_balance": str(m.token_balance)}
                for m in self.roster
            ],
            "proposals": [
                {
                    "id": p.id,
                    "description": p.description,
                    "choices": list(p.choices),
                    "vote_counts": {k: str(v) for k, v in p.vote_counts.items()},
                }
                for p in self.proposals
            ],
            "vote_statuses": {pid: s.phase.value for pid, s in self.vote_statuses.items()},
            "errors": {
                k: v
                for k, v in {
                    "connection": self.connection_error,
                    "membership": self.membership_error,
                    "roster": self.roster_error,
                    "proposals": self.proposals_error,
                    "claim": self.claim_error,
                    "vote": self.vote_error,
                }.items()
                if v
            },
        }
