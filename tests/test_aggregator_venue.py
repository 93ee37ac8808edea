from __future__ import annotations

import base64
import json
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from conftest import SOL_MINT, USDC_MINT
from phoenix_mm.aggregator_venue import JupiterVenue
from phoenix_mm.rpc import TransactionFailedError

API = "https://jup.test/v6"

QUOTE_RESPONSE = {
    "inputMint": USDC_MINT,
    "outputMint": SOL_MINT,
    "inAmount": "10000000",
    "outAmount": "66512345",
    "routePlan": [{"swapInfo": {"label": "Phoenix"}, "percent": 100}],
}


def _swap_tx_b64(payer: Keypair) -> str:
    message = MessageV0.try_compile(payer.pubkey(), [], [], Hash.default())
    return base64.b64encode(bytes(VersionedTransaction(message, [payer]))).decode()


def _venue(handler, rpc=None) -> JupiterVenue:
    rpc = rpc or SimpleNamespace(
        signer_pubkey=Keypair().pubkey(),
        send_versioned=AsyncMock(return_value="swap-sig"),
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JupiterVenue(rpc, api_url=API, token_list_url="https://tokens.test/all", client=client)


@pytest.mark.asyncio
async def test_quote_converts_amount_to_atoms():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json=QUOTE_RESPONSE)

    venue = _venue(handler)
    route = await venue.quote(USDC_MINT, SOL_MINT, Decimal("10"), 100)
    await venue.close()

    assert seen == {
        "inputMint": USDC_MINT,
        "outputMint": SOL_MINT,
        "amount": "10000000",
        "slippageBps": "100",
    }
    assert route.out_amount_atoms == 66_512_345
    assert route.output_token.symbol == "SOL"
    assert route.label == "Phoenix"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="upstream down"),
        httpx.Response(200, json={"error": "no route"}),
        httpx.Response(200, json={**QUOTE_RESPONSE, "routePlan": []}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={**QUOTE_RESPONSE, "outAmount": "lots"}),
        httpx.Response(200, json={**QUOTE_RESPONSE, "inAmount": None}),
    ],
    ids=["http-error", "bad-shape", "empty-route", "bad-json", "bad-out-amount", "null-in-amount"],
)
@pytest.mark.asyncio
async def test_quote_failures_return_none(response):
    venue = _venue(lambda request: response)
    assert await venue.quote(USDC_MINT, SOL_MINT, Decimal("10"), 100) is None


@pytest.mark.asyncio
async def test_unknown_mint_uses_token_list():
    bonk = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "tokens.test":
            return httpx.Response(200, json=[{"address": bonk, "symbol": "Bonk", "decimals": 5}])
        return httpx.Response(200, json={**QUOTE_RESPONSE, "inputMint": bonk, "inAmount": "150000"})

    venue = _venue(handler)
    route = await venue.quote(bonk, USDC_MINT, Decimal("1.5"), 50)

    assert route is not None
    assert route.input_token.decimals == 5
    assert route.in_amount_atoms == 150_000


@pytest.mark.asyncio
async def test_unresolvable_mint_returns_none():
    venue = _venue(lambda request: httpx.Response(200, json=[]))
    assert await venue.quote("unknown-mint", USDC_MINT, Decimal("1"), 50) is None


@pytest.mark.asyncio
async def test_execute_signs_and_submits_swap_transaction():
    payer = Keypair()
    rpc = SimpleNamespace(signer_pubkey=payer.pubkey(), send_versioned=AsyncMock(return_value="swap-sig"))
    posted = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/quote"):
            return httpx.Response(200, json=QUOTE_RESPONSE)
        posted.update(json.loads(request.content))
        return httpx.Response(200, json={"swapTransaction": _swap_tx_b64(payer)})

    venue = _venue(handler, rpc)
    route = await venue.quote(USDC_MINT, SOL_MINT, Decimal("10"), 100)
    result = await venue.execute(route)

    assert result.ok
    assert result.signature == "swap-sig"
    assert posted["userPublicKey"] == str(payer.pubkey())
    assert posted["wrapAndUnwrapSol"] is False
    assert posted["quoteResponse"]["outAmount"] == "66512345"
    rpc.send_versioned.assert_awaited_once()


@pytest.mark.asyncio
async def test_execute_reports_failed_submission():
    payer = Keypair()
    rpc = SimpleNamespace(
        signer_pubkey=payer.pubkey(),
        send_versioned=AsyncMock(side_effect=TransactionFailedError("slippage exceeded", "bad-sig")),
    )

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/quote"):
            return httpx.Response(200, json=QUOTE_RESPONSE)
        return httpx.Response(200, json={"swapTransaction": _swap_tx_b64(payer)})

    venue = _venue(handler, rpc)
    route = await venue.quote(USDC_MINT, SOL_MINT, Decimal("10"), 100)
    result = await venue.execute(route)

    assert not result.ok
    assert result.signature == "bad-sig"
    assert "slippage" in result.error


@pytest.mark.asyncio
async def test_execute_reports_unbuildable_swap():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/quote"):
            return httpx.Response(200, json=QUOTE_RESPONSE)
        return httpx.Response(200, json={"swapTransaction": "bm90IGEgdHg="})

    venue = _venue(handler)
    route = await venue.quote(USDC_MINT, SOL_MINT, Decimal("10"), 100)
    result = await venue.execute(route)

    assert not result.ok
    assert result.signature is None
