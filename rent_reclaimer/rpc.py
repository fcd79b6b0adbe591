"""Async Solana JSON-RPC connection over httpx."""

from __future__ import annotations

import asyncio
import base64
import os
import time
from logging import getLogger
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from solders.hash import Hash
from solders.transaction import VersionedTransaction

from .constants import CONFIRM_TIMEOUT_SECONDS
from .errors import BlockHeightExceeded, ConfirmationTimeout, RpcError, classify_failure
from .models import BlockReference, SignatureStatus

log = getLogger(__name__)

PUBLIC_MAINNET_RPC = "https://api.mainnet-beta.solana.com"
# getMultipleAccounts accepts at most 100 keys per call
MULTIPLE_ACCOUNTS_CHUNK = 100


def default_rpc_url() -> str:
    override = (os.getenv("RPC_URL") or os.getenv("SOLANA_URL") or "").strip()
    if override:
        return override
    api_key = (os.getenv("HELIUS_API_KEY") or "").strip()
    if api_key:
        return f"https://mainnet.helius-rpc.com/?api-key={api_key}"
    log.warning("HELIUS_API_KEY not set; using public mainnet RPC (slower).")
    return PUBLIC_MAINNET_RPC


class RpcConnection:
    """Implements the Connection capability against a JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        commitment: str = "confirmed",
        max_retries: int = 8,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.max_retries = max_retries
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._next_id = 0

    async def __aenter__(self) -> RpcConnection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ---------------- Transport ----------------
    async def call(self, method: str, params: list) -> Any:
        """Raw JSON-RPC call with basic 429/backoff handling. Returns ``result``."""
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}

        last_err: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await self._client.post(self.rpc_url, json=payload)
            except httpx.TransportError as exc:
                last_err = exc
                await self._sleep(min(1.25 * attempt, 8))
                continue

            if resp.status_code == 429:
                last_err = RpcError(f"rate limited on {method}")
                await self._sleep(min(2 * attempt, 10))
                continue
            if resp.status_code >= 400:
                raise RpcError(f"RPC HTTPError {resp.status_code} on {method}: {resp.text}")

            try:
                out = resp.json()
            except ValueError as exc:
                raise RpcError(f"RPC returned invalid JSON for {method}") from exc
            if "error" in out:
                raise RpcError(f"RPC error: {out['error']}")
            return out.get("result")

        raise RpcError(f"RPC call failed after retries: {method} (last={last_err})")

    # ---------------- Connection capability ----------------
    async def get_latest_blockhash(self) -> BlockReference:
        result = await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = (result or {}).get("value") or {}
        if not value.get("blockhash"):
            raise RpcError(f"getLatestBlockhash failed: {result}")
        return BlockReference(
            blockhash=Hash.from_string(str(value["blockhash"])),
            last_valid_block_height=int(value.get("lastValidBlockHeight") or 0),
        )

    async def get_block_height(self) -> int:
        return int(await self.call("getBlockHeight", [{"commitment": self.commitment}]) or 0)

    async def send_raw_transaction(self, tx: VersionedTransaction, *, skip_preflight: bool = False) -> str:
        tx_b64 = base64.b64encode(bytes(tx)).decode("utf-8")
        try:
            sig = await self.call(
                "sendTransaction",
                [
                    tx_b64,
                    {
                        "encoding": "base64",
                        "skipPreflight": bool(skip_preflight),
                        "preflightCommitment": self.commitment,
                    },
                ],
            )
        except RpcError as exc:
            # Preflight failures carry the program logs; classify them.
            raise classify_failure(str(exc)) from exc
        if not sig:
            raise RpcError("sendTransaction returned no signature")
        return str(sig)

    async def get_signature_status(self, signature: str) -> SignatureStatus | None:
        result = await self.call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        val = ((result or {}).get("value") or [None])[0]
        if val is None:
            return None
        return SignatureStatus(err=val.get("err"), confirmation_status=val.get("confirmationStatus"))

    async def confirm_transaction(
        self,
        signature: str,
        block: BlockReference,
        *,
        timeout: float = CONFIRM_TIMEOUT_SECONDS,
        poll_interval: float = 0.8,
    ) -> SignatureStatus:
        """Poll until confirmed, the transaction errors, the blockhash expires or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            status = await self.get_signature_status(signature)
            if status is not None:
                if status.err:
                    return status
                if (status.confirmation_status or "").lower() in {"confirmed", "finalized"}:
                    return status
            elif block.last_valid_block_height and await self.get_block_height() > block.last_valid_block_height:
                raise BlockHeightExceeded(f"Block height exceeded while confirming {signature}")
            await self._sleep(poll_interval)
        raise ConfirmationTimeout(f"Timed out waiting for confirmation: {signature}")

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> List[Optional[Dict[str, Any]]]:
        out: List[Optional[Dict[str, Any]]] = []
        for i in range(0, len(addresses), MULTIPLE_ACCOUNTS_CHUNK):
            chunk = list(addresses[i : i + MULTIPLE_ACCOUNTS_CHUNK])
            result = await self.call("getMultipleAccounts", [chunk, {"encoding": "jsonParsed"}])
            values = (result or {}).get("value") or []
            if len(values) != len(chunk):
                raise RpcError(f"getMultipleAccounts returned {len(values)} entries for {len(chunk)} keys")
            out.extend(values)
        return out

    async def get_token_accounts_by_owner(self, owner: str, program_id: str) -> List[Dict[str, Any]]:
        result = await self.call(
            "getTokenAccountsByOwner",
            [owner, {"programId": program_id}, {"encoding": "jsonParsed"}],
        )
        return (result or {}).get("value") or []

    async def get_balance(self, pubkey: str) -> int:
        result = await self.call("getBalance", [pubkey, {"commitment": self.commitment}])
        return int((result or {}).get("value", 0) or 0)

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "base64",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
