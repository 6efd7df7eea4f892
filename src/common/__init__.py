"""
Common building blocks for the DAO membership client.

Modules:
- ledger: async ledger-gateway client (NFT drop, governance token, vote)
- membership: gating-NFT ownership resolver
- roster: holder + balance aggregation
- governance: proposals and vote casting
- claim: membership NFT claim workflow
- wallet / networks: connection boundary and supported-chain checks
- config: env / SSM configuration
"""

__all__ = [
    "claim",
    "config",
    "governance",
    "ledger",
    "membership",
    "networks",
    "rate_limiter",
    "roster",
    "session",
    "wallet",
]
