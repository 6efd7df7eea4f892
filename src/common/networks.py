from __future__ import annotations

import re
from typing import Dict, Optional, Set, Union


Supported = Set[int]

KNOWN_CHAINS: Dict[str, int] = {
    "mainnet": 1,
    "ethereum": 1,
    "rinkeby": 4,
    "goerli": 5,
    "sepolia": 11155111,
    "polygon": 137,
    "mumbai": 80001,
}

_SEPARATORS = re.compile(r"[\s,]+")


def chain_id_for(chain: Union[int, str]) -> Optional[int]:
    """Resolve a chain name or numeric string to its id; None if unknown."""
    if isinstance(chain, int):
        return chain
    name = chain.strip().lower()
    if name.isdigit():
        return int(name)
    return KNOWN_CHAINS.get(name)


def parse_supported_chains(raw: Optional[str]) -> Supported:
    """Chain ids from a list of ids or names such as "4, goerli".

    Names are resolved through KNOWN_CHAINS; an unknown name raises ValueError
    so a typo cannot silently lock every wallet out.
    """
    if not raw:
        return set()
    out: Supported = set()
    for tok in _SEPARATORS.split(raw.strip()):
        if not tok:
            continue
        chain_id = chain_id_for(tok)
        if chain_id is None:
            raise ValueError(f"Unknown chain {tok!r}; use a chain id or one of {sorted(KNOWN_CHAINS)}")
        out.add(chain_id)
    return out


def is_chain_supported(chain_id: int, supported: Supported) -> bool:
    """An empty `supported` set means no restriction is configured."""
    return not supported or chain_id in supported


__all__ = [
    "KNOWN_CHAINS",
    "chain_id_for",
    "is_chain_supported",
    "parse_supported_chains",
]
