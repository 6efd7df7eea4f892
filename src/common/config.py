from __future__ import annotations

import os
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from .networks import Supported, parse_supported_chains


# Environment variable names; contract ones match the provisioning scripts
ENV_GATEWAY_URL = "DAO_GATEWAY_URL"
ENV_CHAIN = "DAO_CHAIN"
ENV_BUNDLE_DROP = "BUNDLE_DROP_ADDRESS"
ENV_TOKEN_MODULE = "TOKEN_MODULE_ADDRESS"
ENV_VOTING_MODULE = "VOTING_MODULE_ADDRESS"
ENV_WALLET = "DAO_WALLET_ADDRESS"
ENV_SUPPORTED_CHAINS = "DAO_SUPPORTED_CHAINS"
ENV_ACCESS_TOKEN = "DAO_GATEWAY_ACCESS_TOKEN"
ENV_PARAM_PREFIX = "DAO_PARAM_PREFIX"

# SSM parameter names (under DAO_PARAM_PREFIX) standing in for missing env values
_SSM_NAMES: Dict[str, str] = {
    "gateway_url": "gateway_url",
    "bundle_drop_address": "bundle_drop_address",
    "token_module_address": "token_module_address",
    "voting_module_address": "voting_module_address",
    "wallet_address": "wallet_address",
    "access_token": "gateway_access_token",
}


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


class DaoConfig(BaseModel):
    """
    Startup configuration for the DAO client.

    The three contract addresses are opaque; only non-emptiness is checked.
    """

    gateway_url: str
    chain: str = "rinkeby"
    bundle_drop_address: str
    token_module_address: str
    voting_module_address: str
    wallet_address: str
    access_token: Optional[str] = None
    supported_chains: List[str] = Field(default_factory=lambda: ["rinkeby"])
    gating_token_id: str = "0"
    token_decimals: int = Field(default=18, ge=0)
    timeout: float = Field(default=15.0, gt=0)
    max_per_second: int = Field(default=10, gt=0)
    tx_poll_interval: float = Field(default=2.0, gt=0)
    tx_max_wait: float = Field(default=120.0, gt=0)

    @field_validator(
        "gateway_url", "bundle_drop_address", "token_module_address", "voting_module_address", "wallet_address"
    )
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    def supported(self) -> Supported:
        return parse_supported_chains(",".join(self.supported_chains))

    @classmethod
    def from_env(cls) -> "DaoConfig":
        values: Dict[str, Optional[str]] = {
            "gateway_url": _getenv(ENV_GATEWAY_URL),
            "bundle_drop_address": _getenv(ENV_BUNDLE_DROP),
            "token_module_address": _getenv(ENV_TOKEN_MODULE),
            "voting_module_address": _getenv(ENV_VOTING_MODULE),
            "wallet_address": _getenv(ENV_WALLET),
            "access_token": _getenv(ENV_ACCESS_TOKEN),
        }

        prefix = _getenv(ENV_PARAM_PREFIX)
        missing = [k for k, v in values.items() if not v]
        if prefix and missing:
            params = _load_ssm_params(prefix, [_SSM_NAMES[k] for k in missing])
            for k in missing:
                values[k] = params.get(_SSM_NAMES[k])

        env_names = {
            "gateway_url": ENV_GATEWAY_URL,
            "bundle_drop_address": ENV_BUNDLE_DROP,
            "token_module_address": ENV_TOKEN_MODULE,
            "voting_module_address": ENV_VOTING_MODULE,
            "wallet_address": ENV_WALLET,
        }
        for field, env_name in env_names.items():
            _require(values[field], env_name)

        chain = _getenv(ENV_CHAIN, "rinkeby") or "rinkeby"
        supported_raw = _getenv(ENV_SUPPORTED_CHAINS)
        supported = sorted(str(c) for c in parse_supported_chains(supported_raw)) if supported_raw else [chain]
        return cls(chain=chain, supported_chains=supported, **values)  # type: ignore[arg-type]


__all__ = ["DaoConfig"]
