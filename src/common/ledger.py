from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from state.models import Identity, Proposal
from .rate_limiter import SlidingWindowRateLimiter, RateLimitError


logger = logging.getLogger(__name__)

DEFAULT_CHAIN = "rinkeby"
DEFAULT_DECIMALS = 18
SIGNER_HEADER = "x-backend-wallet-address"

_RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
_TX_DONE = "mined"
_TX_FAILED = ("errored", "cancelled")


class LedgerErrorKind(str, Enum):
    NETWORK_FAILURE = "network_failure"
    REVERTED = "reverted"
    RATE_LIMITED = "rate_limited"
    UNSUPPORTED_NETWORK = "unsupported_network"


class LedgerError(RuntimeError):
    """Base error for ledger gateway calls."""

    kind = LedgerErrorKind.NETWORK_FAILURE

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class LedgerNetworkError(LedgerError):
    """Gateway unreachable, timed out, or returned something unusable."""


class LedgerRevertedError(LedgerError):
    """The contract call or transaction was rejected or reverted."""

    kind = LedgerErrorKind.REVERTED


class LedgerRateLimitError(LedgerError):
    """Local or remote rate limiting prevented the request."""

    kind = LedgerErrorKind.RATE_LIMITED


class UnsupportedNetworkError(LedgerError):
    """The connected wallet or gateway is on a chain this DAO does not run on."""

    kind = LedgerErrorKind.UNSUPPORTED_NETWORK


@dataclass(frozen=True)
class ContractAddresses:
    """Addresses of the NFT-drop, governance token and vote contracts."""

    bundle_drop: str
    token: str
    vote: str

    def __post_init__(self) -> None:
        for name in ("bundle_drop", "token", "vote"):
            if not getattr(self, name):
                raise ValueError(f"{name} contract address is required")


def to_units(raw: Any, decimals: int = DEFAULT_DECIMALS) -> Decimal:
    """
    Convert a base-unit integer amount (as str/int, or a gateway
    `{"value": ..., "decimals": ...}` object) into a Decimal token amount.
    """
    if isinstance(raw, dict):
        try:
            decimals = int(raw.get("decimals", decimals))
        except (TypeError, ValueError) as exc:
            raise LedgerNetworkError(f"Invalid token decimals: {raw.get('decimals')!r}") from exc
        raw = raw.get("value", 0)
    if raw is None or raw == "":
        return Decimal(0)
    try:
        base = int(str(raw), 0) if str(raw).startswith("0x") else int(str(raw))
    except ValueError as exc:
        raise LedgerNetworkError(f"Invalid token amount: {raw!r}") from exc
    if base < 0:
        raise LedgerNetworkError(f"Negative token amount: {raw!r}")
    return Decimal(base).scaleb(-decimals)


class PendingTransaction:
    """
    Handle to a write queued by the gateway.

    `wait()` polls the gateway until the transaction is mined (returns its
    hash) or fails (raises `LedgerRevertedError`). Submission and
    confirmation are separate steps so callers can tell "submitted" from
    "confirmed".
    """

    def __init__(self, ledger: "LedgerClient", queue_id: str, *, label: str = "") -> None:
        self._ledger = ledger
        self.queue_id = queue_id
        self.label = label

    def __repr__(self) -> str:
        return f"PendingTransaction({self.label or 'tx'}:{self.queue_id})"

    async def status(self) -> Dict[str, Any]:
        return await self._ledger.transaction_status(self.queue_id)

    async def wait(
        self,
        *,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> str:
        interval = self._ledger.tx_poll_interval if poll_interval is None else poll_interval
        limit = self._ledger.tx_max_wait if max_wait is None else max_wait
        deadline = time.monotonic() + limit
        while True:
            info = await self.status()
            state = str(info.get("status", "")).lower()
            if state == _TX_DONE:
                return str(info.get("transactionHash") or "")
            if state in _TX_FAILED:
                reason = info.get("errorMessage") or f"transaction {state}"
                raise LedgerRevertedError(f"{self!r}: {reason}")
            if time.monotonic() >= deadline:
                raise LedgerNetworkError(f"{self!r}: not confirmed after {limit:.0f}s (last status {state or 'unknown'})")
            await asyncio.sleep(interval)


class LedgerClient:
    """
    Async client for the ledger gateway fronting the DAO's three contracts.

    Notes
    - Reads are retried on transport errors, 429 and 5xx with exponential
      backoff (at most `max_attempts`). Writes are only retried on 429, which
      the gateway answers before queueing anything.
    - A local sliding-window limiter (`max_per_second`) keeps bursts from the
      concurrent membership fetches under the gateway's quota.
    - Writes are signed by the gateway on behalf of the bound signer. `bind()`
      returns a new client; an existing client never changes signer, so calls
      already in flight finish against the binding they started with.
    - Empty reads (no holders, no proposals) come back as empty values, not
      errors.
    """

    def __init__(
        self,
        base_url: str,
        contracts: ContractAddresses,
        *,
        chain: str = DEFAULT_CHAIN,
        access_token: Optional[str] = None,
        signer: Optional[Identity] = None,
        decimals: int = DEFAULT_DECIMALS,
        timeout: float = 15.0,
        max_per_second: int = 10,
        max_attempts: int = 4,
        retry_backoff: float = 0.5,
        tx_poll_interval: float = 2.0,
        tx_max_wait: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._contracts = contracts
        self._chain = chain
        self._signer = signer
        self._decimals = decimals
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff = retry_backoff
        self.tx_poll_interval = tx_poll_interval
        self.tx_max_wait = tx_max_wait
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout, headers=headers
        )
        self._limiter = SlidingWindowRateLimiter(max_calls=max_per_second, per_seconds=1.0)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def signer(self) -> Optional[Identity]:
        return self._signer

    @property
    def contracts(self) -> ContractAddresses:
        return self._contracts

    def bind(self, signer: Identity) -> "LedgerClient":
        """Return a client sharing this one's connection pool, signing as `signer`."""
        if not signer:
            raise ValueError("signer is required")
        bound = copy.copy(self)
        bound._signer = signer
        bound._owns_client = False
        return bound

    # --------------- NFT drop ---------------
    async def get_holder_addresses(self, token_id: str = "0") -> List[Identity]:
        data = await self._request(
            "GET", self._contract_path(self._contracts.bundle_drop, "erc1155/claimers"),
            params={"tokenId": token_id},
        )
        if data is None:
            return []
        if not isinstance(data, list) or not all(isinstance(a, str) for a in data):
            raise LedgerNetworkError("Malformed holder list from gateway")
        return list(data)

    async def get_owned_count(self, identity: Identity, token_id: str = "0") -> int:
        data = await self._request(
            "GET", self._contract_path(self._contracts.bundle_drop, "erc1155/balance-of"),
            params={"walletAddress": identity, "tokenId": token_id},
        )
        try:
            return int(str(data if data is not None else 0))
        except ValueError as exc:
            raise LedgerNetworkError(f"Malformed NFT balance: {data!r}") from exc

    async def claim(self, token_id: str = "0", quantity: int = 1) -> PendingTransaction:
        signer = self._require_signer()
        data = await self._request(
            "POST", self._contract_path(self._contracts.bundle_drop, "erc1155/claim-to"),
            json_body={"receiver": signer, "tokenId": token_id, "quantity": str(quantity)},
            idempotent=False,
        )
        return PendingTransaction(self, self._queue_id(data), label="claim")

    # --------------- Governance token ---------------
    async def get_balance(self, identity: Identity) -> Decimal:
        data = await self._request(
            "GET", self._contract_path(self._contracts.token, "erc20/balance-of"),
            params={"walletAddress": identity},
        )
        return to_units(data, self._decimals)

    async def get_all_balances(self) -> Dict[Identity, Decimal]:
        data = await self._request(
            "GET", self._contract_path(self._contracts.token, "erc20/holder-balances"),
        )
        if data is None:
            return {}
        out: Dict[Identity, Decimal] = {}
        if isinstance(data, dict):
            for address, raw in data.items():
                out[str(address)] = to_units(raw, self._decimals)
            return out
        if isinstance(data, list):
            # [{"holder": "0x..", "balance": "123"}, ...]
            for item in data:
                if not isinstance(item, dict):
                    raise LedgerNetworkError("Malformed holder balances from gateway")
                address = item.get("holder") or item.get("address")
                if not isinstance(address, str) or not address:
                    raise LedgerNetworkError("Holder balance entry without address")
                out[address] = to_units(item.get("balance"), self._decimals)
            return out
        raise LedgerNetworkError("Malformed holder balances from gateway")

    # --------------- Vote ---------------
    async def list_proposals(self) -> List[Proposal]:
        data = await self._request(
            "GET", self._contract_path(self._contracts.vote, "vote/proposals"),
        )
        if data is None:
            return []
        if not isinstance(data, list):
            raise LedgerNetworkError("Malformed proposal list from gateway")
        try:
            return [self._parse_proposal(item) for item in data]
        except (ValidationError, KeyError, TypeError, ValueError, AttributeError) as exc:
            raise LedgerNetworkError(f"Failed to parse proposals: {exc}") from exc

    async def has_voted(self, proposal_id: str, identity: Identity) -> bool:
        data = await self._request(
            "GET", self._contract_path(self._contracts.vote, "vote/has-voted"),
            params={"proposalId": proposal_id, "account": identity},
        )
        if not isinstance(data, bool):
            raise LedgerNetworkError(f"Malformed has-voted answer: {data!r}")
        return data

    async def cast_vote(self, proposal_id: str, vote_type: int, *, reason: str = "") -> PendingTransaction:
        self._require_signer()
        data = await self._request(
            "POST", self._contract_path(self._contracts.vote, "vote/cast"),
            json_body={"proposalId": proposal_id, "voteType": vote_type, "reason": reason},
            idempotent=False,
        )
        return PendingTransaction(self, self._queue_id(data), label=f"vote:{proposal_id}")

    # --------------- Chain / transactions ---------------
    async def get_chain_id(self, address: Identity) -> int:
        data = await self._request("GET", f"/wallet/{address}/chain")
        if isinstance(data, dict):
            data = data.get("chainId")
        try:
            return int(str(data))
        except (TypeError, ValueError) as exc:
            raise LedgerNetworkError(f"Malformed chain id: {data!r}") from exc

    async def transaction_status(self, queue_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/transaction/status/{queue_id}")
        if not isinstance(data, dict):
            raise LedgerNetworkError("Malformed transaction status from gateway")
        return data

    # --------------- Internal ---------------
    def _contract_path(self, address: str, suffix: str) -> str:
        return f"/contract/{self._chain}/{address}/{suffix}"

    def _require_signer(self) -> Identity:
        if not self._signer:
            raise RuntimeError("LedgerClient is not bound to a signer; call bind() first")
        return self._signer

    def _parse_proposal(self, item: Dict[str, Any]) -> Proposal:
        votes = item.get("votes") or []
        choices: List[str] = []
        counts: Dict[str, Decimal] = {}
        for v in sorted(votes, key=lambda v: int(v.get("type", 0))):
            label = str(v["label"])
            choices.append(label)
            counts[label] = to_units(v.get("count", 0), self._decimals)
        return Proposal(
            id=str(item["proposalId"]),
            description=str(item.get("description", "")),
            choices=choices,
            vote_counts=counts,
        )

    @staticmethod
    def _queue_id(data: Any) -> str:
        if isinstance(data, dict) and data.get("queueId"):
            return str(data["queueId"])
        raise LedgerNetworkError("Gateway did not return a queue id for the transaction")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> Any:
        headers = {SIGNER_HEADER: self._signer} if self._signer else {}

        # Throttle locally using sliding window
        try:
            await self._limiter.acquire(blocking=True)
        except RateLimitError as rl:
            raise LedgerRateLimitError("Local rate limiter prevented request") from rl

        attempt = 0
        backoff = self._retry_backoff
        last_err: Optional[LedgerError] = None
        last_cause: Optional[BaseException] = None
        while attempt < self._max_attempts:
            try:
                resp = await self._client.request(
                    method, path, params=params, json=json_body, headers=headers
                )
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_err = LedgerNetworkError(f"{method} {path}: {exc.__class__.__name__}")
                last_cause = exc
            else:
                if resp.status_code == 200:
                    return self._unwrap(resp, idempotent=idempotent)
                if resp.status_code in _RETRYABLE_STATUSES:
                    last_err = self._error_from_response(resp, idempotent=idempotent)
                    last_cause = None
                else:
                    raise self._error_from_response(resp, idempotent=idempotent)

            attempt += 1
            if not idempotent and not isinstance(last_err, LedgerRateLimitError):
                break
            if attempt < self._max_attempts:
                logger.debug("Retrying %s %s after %s (attempt %d)", method, path, last_err, attempt)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if last_err is not None:
            raise last_err from last_cause
        raise LedgerNetworkError(f"{method} {path}: failed after retries")

    def _unwrap(self, resp: httpx.Response, *, idempotent: bool) -> Any:
        try:
            payload = resp.json()
        except ValueError as exc:
            raise LedgerNetworkError("Failed to parse JSON from ledger gateway") from exc
        if not isinstance(payload, dict):
            raise LedgerNetworkError("Malformed response from ledger gateway")
        if payload.get("error"):
            raise self._error_from_payload(resp.status_code, payload["error"], idempotent=idempotent)
        if "result" not in payload:
            raise LedgerNetworkError("Malformed response from ledger gateway")
        return payload["result"]

    def _error_from_response(self, resp: httpx.Response, *, idempotent: bool) -> LedgerError:
        err: Any = None
        try:
            body = resp.json()
            if isinstance(body, dict):
                err = body.get("error")
        except ValueError:
            pass
        if err is None:
            err = {"message": resp.text[:200]}
        return self._error_from_payload(resp.status_code, err, idempotent=idempotent)

    @staticmethod
    def _error_from_payload(status: int, err: Any, *, idempotent: bool) -> LedgerError:
        if isinstance(err, dict):
            message = str(err.get("message") or "ledger gateway error")
            code = str(err.get("code") or "")
        else:
            message, code = str(err), ""
        text = f"{code} {message}".lower()
        detail = f"HTTP {status}: {message}" + (f" (code={code})" if code else "")
        if status == 429 or "rate limit" in text:
            return LedgerRateLimitError(detail)
        if "unsupported" in text and ("chain" in text or "network" in text):
            return UnsupportedNetworkError(detail)
        if "revert" in text:
            return LedgerRevertedError(detail)
        if status >= 500:
            return LedgerNetworkError(detail)
        # Rejected writes never reached the chain but the contract refused them
        if not idempotent and 400 <= status < 500:
            return LedgerRevertedError(detail)
        return LedgerNetworkError(detail)


__all__ = [
    "ContractAddresses",
    "LedgerClient",
    "LedgerError",
    "LedgerErrorKind",
    "LedgerNetworkError",
    "LedgerRateLimitError",
    "LedgerRevertedError",
    "PendingTransaction",
    "UnsupportedNetworkError",
    "to_units",
]
