"""Jupiter swap API client: quotes and executable swap instructions."""

from __future__ import annotations

from logging import getLogger
from typing import Any, Dict

import httpx
from solders.pubkey import Pubkey

from .constants import DEFAULT_SLIPPAGE_BPS
from .errors import ConversionInstructionInvalid, QuoteUnavailable, RouteNotFound
from .models import Quote, SwapInstructionSet
from .payload import parse_instruction

log = getLogger(__name__)

DEFAULT_SWAP_API = "https://lite-api.jup.ag/swap/v1"
_DEFAULT_TIMEOUT_SECONDS = 15.0

_NO_ROUTE_CODES = {"RouteNotFound", "COULD_NOT_FIND_ANY_ROUTE", "NO_ROUTES_FOUND"}
_NO_ROUTE_MESSAGE = "could not find any route"


def _is_no_route(payload: Dict[str, Any]) -> bool:
    if payload.get("errorCode") in _NO_ROUTE_CODES:
        return True
    return _NO_ROUTE_MESSAGE in str(payload.get("error") or "").lower()


class JupiterClient:
    """Implements both the quote and the conversion-instruction contracts.

    Pass an existing ``httpx.AsyncClient`` to share a connection pool (or a
    mock transport in tests); otherwise the client owns one.
    """

    def __init__(
        self,
        *,
        swap_api: str = DEFAULT_SWAP_API,
        client: httpx.AsyncClient | None = None,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.swap_api = swap_api.rstrip("/")
        self.slippage_bps = slippage_bps
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def __aenter__(self) -> JupiterClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def quote(self, input_mint: str, output_mint: str, amount: int) -> Quote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(self.slippage_bps),
        }
        try:
            resp = await self._client.get(f"{self.swap_api}/quote", params=params)
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise QuoteUnavailable(f"Quote request failed for {input_mint}: {exc}") from exc

        if not isinstance(payload, dict):
            raise QuoteUnavailable(f"Unexpected quote payload for {input_mint}")
        if _is_no_route(payload):
            raise RouteNotFound(f"No route for {input_mint}")
        if resp.status_code >= 400 or payload.get("errorCode") or payload.get("error"):
            raise QuoteUnavailable(
                f"Quote error for {input_mint}: {payload.get('error') or payload.get('errorCode') or resp.status_code}"
            )
        try:
            out_amount = int(payload["outAmount"])
        except (KeyError, TypeError, ValueError) as exc:
            raise QuoteUnavailable(f"Quote for {input_mint} has no usable outAmount") from exc

        impact = payload.get("priceImpactPct")
        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(payload.get("inAmount") or amount),
            out_amount=out_amount,
            price_impact_pct=float(impact) if impact not in (None, "") else None,
            route_hops=len(payload.get("routePlan") or []) or 1,
            raw=payload,
        )

    async def swap_instructions(
        self,
        quote: Quote,
        payer: Pubkey,
        *,
        wrap_and_unwrap_sol: bool = True,
    ) -> SwapInstructionSet:
        body = {
            "quoteResponse": quote.raw,
            "userPublicKey": str(payer),
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
        }
        try:
            resp = await self._client.post(f"{self.swap_api}/swap-instructions", json=body)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ConversionInstructionInvalid(f"Swap instruction request failed for {quote.input_mint}: {exc}") from exc

        if not isinstance(payload, dict) or not payload.get("swapInstruction"):
            raise ConversionInstructionInvalid(f"Swap instruction missing for {quote.input_mint}")

        setup = [parse_instruction(ix) for ix in payload.get("setupInstructions") or []]
        swap = parse_instruction(payload["swapInstruction"])
        cleanup_raw = payload.get("cleanupInstruction")
        cleanup = parse_instruction(cleanup_raw) if cleanup_raw else None
        log.debug(
            "swap instructions for %s: %d setup, cleanup=%s",
            quote.input_mint,
            len(setup),
            cleanup is not None,
        )
        return SwapInstructionSet(swap=swap, setup=setup, cleanup=cleanup)
