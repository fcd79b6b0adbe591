"""Deposit verification: re-derive what a reclaim transaction actually did from chain data.

Used by the platform side to credit a user after a batch lands. The amounts
credited come from balance deltas in the confirmed transaction, never from
what the client claims.
"""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Dict, List, Mapping, Protocol

from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .constants import CLOSE_ACCOUNT_IX, PLATFORM_FEE_FRACTION, RENT_RECLAIM_LAMPORTS, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from .models import SessionMode

log = getLogger(__name__)

# Wallet gain below this is not taken as evidence of any closure
MIN_BALANCE_INCREASE_LAMPORTS = 1_000_000
FEE_TOLERANCE = 0.10
WAGER_MIN_FRACTION = 0.90

# Raised by base64 and solders decoding of an unexpected getTransaction payload
_DECODE_ERRORS = (KeyError, IndexError, TypeError, ValueError)


class TransactionSource(Protocol):
    async def get_transaction(self, signature: str) -> Dict[str, Any] | None: ...


@dataclass(slots=True, frozen=True)
class VerificationResult:
    success: bool
    # Lamports credited to the user's balance
    amount_lamports: int = 0
    mode: SessionMode | None = None
    closed_accounts: int = 0
    error: str | None = None


@dataclass(slots=True)
class TransactionRecord:
    signature: str
    wallet_address: str
    amount_lamports: int
    timestamp: float = field(default_factory=time.time)


class TransactionRegistry:
    """Signatures already credited. In memory; pass a shared instance to persist across verifiers."""

    def __init__(self) -> None:
        self._records: Dict[str, TransactionRecord] = {}

    def __contains__(self, signature: str) -> bool:
        return signature in self._records

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: TransactionRecord) -> None:
        self._records[record.signature] = record

    def get(self, signature: str) -> TransactionRecord | None:
        return self._records.get(signature)


# ---------------- Transaction decoding ----------------
@dataclass(slots=True)
class DecodedTransaction:
    account_keys: List[str]
    # (program id, instruction data) in message order
    instructions: List[tuple]
    meta: Mapping[str, Any]

    def balance_delta(self, address: str) -> int | None:
        if address not in self.account_keys:
            return None
        idx = self.account_keys.index(address)
        pre = self.meta.get("preBalances") or []
        post = self.meta.get("postBalances") or []
        if idx >= len(pre) or idx >= len(post):
            return None
        return int(post[idx]) - int(pre[idx])


def decode_transaction(payload: Mapping[str, Any]) -> DecodedTransaction:
    """Decode a ``getTransaction`` response fetched with ``encoding: base64``."""
    raw = payload["transaction"]
    if isinstance(raw, (list, tuple)):
        raw = raw[0]
    tx = VersionedTransaction.from_bytes(base64.b64decode(raw))
    meta = payload.get("meta") or {}

    keys = [str(k) for k in tx.message.account_keys]
    loaded = meta.get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])

    instructions = [(keys[ix.program_id_index], bytes(ix.data)) for ix in tx.message.instructions]
    return DecodedTransaction(account_keys=keys, instructions=instructions, meta=meta)


def count_closed_accounts(decoded: DecodedTransaction, wallet_address: str) -> int:
    """Closed token accounts, from token balances first, then instructions, then the wallet's gain."""
    pre = {entry["accountIndex"] for entry in decoded.meta.get("preTokenBalances") or []}
    post = {entry["accountIndex"] for entry in decoded.meta.get("postTokenBalances") or []}
    closed = len(pre - post)
    if closed:
        return closed

    token_programs = {str(TOKEN_PROGRAM_ID), str(TOKEN_2022_PROGRAM_ID)}
    closed = sum(
        1 for program, data in decoded.instructions if program in token_programs and data[:1] == bytes([CLOSE_ACCOUNT_IX])
    )
    if closed:
        return closed

    gain = decoded.balance_delta(wallet_address) or 0
    if gain > MIN_BALANCE_INCREASE_LAMPORTS:
        return max(1, gain // RENT_RECLAIM_LAMPORTS)
    return 0


class DepositVerifier:
    def __init__(
        self,
        source: TransactionSource,
        fee_wallet: Pubkey | str,
        *,
        registry: TransactionRegistry | None = None,
        fee_fraction: float = PLATFORM_FEE_FRACTION,
    ) -> None:
        self.source = source
        self.fee_wallet = str(fee_wallet)
        self.registry = registry if registry is not None else TransactionRegistry()
        self.fee_fraction = fee_fraction

    async def _fetch(self, signature: str) -> DecodedTransaction | None:
        payload = await self.source.get_transaction(signature)
        if not payload:
            return None
        return decode_transaction(payload)

    def _fee_delta(self, decoded: DecodedTransaction) -> int:
        return decoded.balance_delta(self.fee_wallet) or 0

    def _observed_value(self, decoded: DecodedTransaction, wallet_address: str) -> int:
        """Value the transaction released: what the wallet kept, plus the transfer, plus the network fee.

        This covers converted value, which the closed-account count alone misses.
        """
        gain = decoded.balance_delta(wallet_address) or 0
        network_fee = int(decoded.meta.get("fee") or 0)
        return gain + self._fee_delta(decoded) + network_fee

    async def verify(
        self,
        wallet_address: str,
        signature: str,
        fee_signature: str | None = None,
    ) -> VerificationResult:
        if signature in self.registry:
            return VerificationResult(False, error="Transaction already processed")

        try:
            decoded = await self._fetch(signature)
            if decoded is None:
                return VerificationResult(False, error="Reclaim transaction not found")
            closed = count_closed_accounts(decoded, wallet_address)
        except _DECODE_ERRORS as exc:
            log.warning("could not decode transaction %s: %s", signature, exc)
            return VerificationResult(False, error="Reclaim transaction could not be decoded")

        if decoded.account_keys[0] != wallet_address:
            log.warning("transaction %s fee payer %s is not %s", signature, decoded.account_keys[0], wallet_address)

        if closed == 0:
            return VerificationResult(False, error="No token accounts were closed in the reclaim transaction")

        # Rent is the floor; conversions only add to the batch value.
        rent_total = closed * RENT_RECLAIM_LAMPORTS
        expected_total = max(rent_total, self._observed_value(decoded, wallet_address))
        min_fee = rent_total * self.fee_fraction * (1 - FEE_TOLERANCE)
        max_fee = expected_total * self.fee_fraction * (1 + FEE_TOLERANCE)
        log.info("verified %d closed accounts in %s (batch value %d lamports)", closed, signature, expected_total)

        mode: SessionMode | None = None
        credited = 0
        delta = self._fee_delta(decoded)
        if delta >= expected_total * WAGER_MIN_FRACTION:
            mode = SessionMode.WAGER
            credited = delta
        elif min_fee <= delta <= max_fee:
            mode = SessionMode.DIRECT

        if mode is None and fee_signature:
            if fee_signature in self.registry:
                return VerificationResult(False, closed_accounts=closed, error="Fee transaction already processed")
            try:
                fee_tx = await self._fetch(fee_signature)
            except _DECODE_ERRORS as exc:
                log.warning("could not decode fee transaction %s: %s", fee_signature, exc)
                fee_tx = None
            if fee_tx is None:
                return VerificationResult(False, closed_accounts=closed, error="Fee transaction not found")
            if self._fee_delta(fee_tx) >= min_fee:
                mode = SessionMode.DIRECT

        if mode is None:
            return VerificationResult(
                False,
                closed_accounts=closed,
                error=f"Required fee of {int(rent_total * self.fee_fraction)} lamports was not paid",
            )

        if mode is SessionMode.DIRECT:
            credited = int(expected_total * (1 - self.fee_fraction))

        record = TransactionRecord(signature=signature, wallet_address=wallet_address, amount_lamports=credited)
        self.registry.add(record)
        if fee_signature:
            self.registry.add(
                TransactionRecord(signature=fee_signature, wallet_address=wallet_address, amount_lamports=credited)
            )
        return VerificationResult(True, amount_lamports=credited, mode=mode, closed_accounts=closed)
