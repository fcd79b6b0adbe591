"""Candidate discovery from the wallet's token accounts."""

from __future__ import annotations

import asyncio
from logging import getLogger
from typing import Any, Dict, Iterable, List, Protocol

from solders.pubkey import Pubkey

from .constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from .errors import DiscoveryTimeout
from .models import CandidateAccount

log = getLogger(__name__)

DEFAULT_DISCOVERY_TIMEOUT_SECONDS = 30.0

# Stablecoins are never treated as dust.
DEFAULT_EXCLUDED_MINTS = frozenset(
    {
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",  # USDC
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",  # USDT
    }
)


class TokenAccountSource(Protocol):
    async def get_token_accounts_by_owner(self, owner: str, program_id: str) -> List[Dict[str, Any]]: ...


def parse_token_accounts(
    entries: Iterable[Dict[str, Any]],
    owner: str,
    token_program: Pubkey,
    *,
    excluded_mints: Iterable[str] = DEFAULT_EXCLUDED_MINTS,
) -> List[CandidateAccount]:
    """Turn ``jsonParsed`` token account entries into candidates.

    Accounts whose close authority is someone other than the owner cannot be
    closed by this wallet and are left out.
    """
    excluded = set(excluded_mints)
    out: List[CandidateAccount] = []
    for entry in entries:
        try:
            info = entry["account"]["data"]["parsed"]["info"]
            pubkey = entry["pubkey"]
            mint = info.get("mint")
        except (AttributeError, KeyError, TypeError):
            log.debug("ignoring unparsed token account entry")
            continue
        if mint in excluded:
            continue
        close_auth = info.get("closeAuthority")
        if close_auth not in (None, owner):
            log.info("ignoring %s: close authority %s", pubkey, close_auth)
            continue
        try:
            out.append(CandidateAccount.from_parsed(pubkey, info, token_program))
        except (KeyError, TypeError, ValueError) as exc:
            log.debug("ignoring malformed token account %s: %s", pubkey, exc)
    return out


async def _discover(source: TokenAccountSource, owner: str, excluded_mints: Iterable[str]) -> List[CandidateAccount]:
    candidates: List[CandidateAccount] = []
    for program in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
        entries = await source.get_token_accounts_by_owner(owner, str(program))
        found = parse_token_accounts(entries, owner, program, excluded_mints=excluded_mints)
        log.info("found %d token accounts under %s", len(found), program)
        candidates.extend(found)
    return candidates


async def discover_candidates(
    source: TokenAccountSource,
    owner: Pubkey | str,
    *,
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
    excluded_mints: Iterable[str] = DEFAULT_EXCLUDED_MINTS,
) -> List[CandidateAccount]:
    """All token accounts of ``owner`` across SPL Token and Token-2022, bounded by ``timeout``."""
    try:
        return await asyncio.wait_for(_discover(source, str(owner), excluded_mints), timeout)
    except asyncio.TimeoutError as exc:
        raise DiscoveryTimeout(f"Token account discovery timed out after {timeout:g}s") from exc
