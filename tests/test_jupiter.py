from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import Callable

import httpx
import pytest
from solders.pubkey import Pubkey

from rent_reclaimer.errors import ConversionInstructionInvalid, QuoteUnavailable, RouteNotFound
from rent_reclaimer.jupiter import JupiterClient
from rent_reclaimer.models import Quote

MINT = str(Pubkey.new_unique())
SOL = "So11111111111111111111111111111111111111112"


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> JupiterClient:
    async def async_handler(request: httpx.Request) -> httpx.Response:
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(async_handler))
    return JupiterClient(swap_api="https://swap.test/v1", client=http)


def _ix(data: bytes = b"\x01\x02") -> dict:
    return {
        "programId": str(Pubkey.new_unique()),
        "accounts": [{"pubkey": str(Pubkey.new_unique()), "isSigner": False, "isWritable": True}],
        "data": base64.b64encode(data).decode(),
    }


def test_quote_parses_route() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "inAmount": "1000",
                "outAmount": "25000",
                "priceImpactPct": "0.53",
                "routePlan": [{"swapInfo": {}}, {"swapInfo": {}}],
            },
        )

    quote = asyncio.run(_client(handler).quote(MINT, SOL, 1000))

    assert quote.out_amount == 25_000
    assert quote.in_amount == 1000
    assert quote.price_impact_pct == pytest.approx(0.53)
    assert quote.route_hops == 2
    assert seen[0].url.path == "/v1/quote"
    assert seen[0].url.params["inputMint"] == MINT
    assert seen[0].url.params["amount"] == "1000"


@pytest.mark.parametrize(
    "status, body",
    [
        (400, {"error": "Could not find any route", "errorCode": "COULD_NOT_FIND_ANY_ROUTE"}),
        (200, {"error": "could not find any route for this pair"}),
    ],
)
def test_quote_no_route(status: int, body: dict) -> None:
    with pytest.raises(RouteNotFound):
        asyncio.run(_client(lambda _: httpx.Response(status, json=body)).quote(MINT, SOL, 1))


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "internal"}),
        httpx.Response(200, json={"inAmount": "1"}),
        httpx.Response(200, content=b"<html>"),
    ],
)
def test_quote_unavailable(response: httpx.Response) -> None:
    with pytest.raises(QuoteUnavailable):
        asyncio.run(_client(lambda _: response).quote(MINT, SOL, 1))


def test_quote_transport_error_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(QuoteUnavailable):
        asyncio.run(_client(handler).quote(MINT, SOL, 1))


def test_swap_instructions_decodes_all_parts() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "setupInstructions": [_ix(), _ix()],
                "swapInstruction": _ix(b"\x09" * 30),
                "cleanupInstruction": _ix(),
                "addressLookupTableAddresses": [],
            },
        )

    quote = Quote(MINT, SOL, 1000, 25_000, raw={"outAmount": "25000"})
    payer = Pubkey.new_unique()
    swap = asyncio.run(_client(handler).swap_instructions(quote, payer))

    assert len(swap.all()) == 4
    assert bytes(swap.swap.data) == b"\x09" * 30
    assert bodies[0]["userPublicKey"] == str(payer)
    assert bodies[0]["quoteResponse"] == {"outAmount": "25000"}
    assert bodies[0]["wrapAndUnwrapSol"] is True


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, json={"setupInstructions": []}),
        httpx.Response(200, json={"swapInstruction": {"programId": "bad", "accounts": [], "data": ""}}),
    ],
)
def test_swap_instructions_invalid(response: httpx.Response) -> None:
    quote = Quote(MINT, SOL, 1, 1)
    with pytest.raises(ConversionInstructionInvalid):
        asyncio.run(_client(lambda _: response).swap_instructions(quote, Pubkey.new_unique()))
