"""
Session state models and the in-memory observable store.

Nothing here is persisted; every value is rebuilt from the ledger on
connect, identity change or refresh.
"""

from .models import (
    AppState,
    ConnectionState,
    Identity,
    MemberRecord,
    MembershipStatus,
    Proposal,
    VotePhase,
    VoteStatus,
)
from .store import SessionStore, StaleSessionError

__all__ = [
    "AppState",
    "ConnectionState",
    "Identity",
    "MemberRecord",
    "MembershipStatus",
    "Proposal",
    "SessionStore",
    "StaleSessionError",
    "VotePhase",
    "VoteStatus",
]
