from __future__ import annotations

import httpx
import pytest

from common.ledger import ContractAddresses, LedgerClient, UnsupportedNetworkError
from common.networks import parse_supported_chains
from common.wallet import GatewayWallet, WalletError


def _ledger(handler) -> LedgerClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gateway.test")
    contracts = ContractAddresses(bundle_drop="0xdrop", token="0xtoken", vote="0xvote")
    return LedgerClient("http://gateway.test", contracts, client=client, retry_backoff=0.0, max_attempts=1)


@pytest.mark.asyncio
async def test_connect_on_supported_chain():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/wallet/0xA/chain"
        return httpx.Response(200, json={"result": {"chainId": 4}})

    wallet = GatewayWallet(_ledger(handler), "0xA", supported_chains=parse_supported_chains("rinkeby"))

    assert await wallet.connect() == "0xA"
    assert wallet.current_identity() == "0xA"
    wallet.disconnect()
    assert wallet.current_identity() is None


@pytest.mark.asyncio
async def test_wrong_chain_is_unsupported_network():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"result": {"chainId": 1}})

    wallet = GatewayWallet(_ledger(handler), "0xA", supported_chains=parse_supported_chains("rinkeby"))

    with pytest.raises(UnsupportedNetworkError):
        await wallet.connect()
    assert wallet.current_identity() is None


@pytest.mark.asyncio
async def test_gateway_failure_is_generic_wallet_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="down")

    wallet = GatewayWallet(_ledger(handler), "0xA")

    with pytest.raises(WalletError):
        await wallet.connect()
