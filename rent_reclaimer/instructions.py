"""Instruction builders for the token, system and compute-budget programs."""

from __future__ import annotations

import struct
from typing import List

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from .constants import (
    BURN_IX,
    CLOSE_ACCOUNT_IX,
    COMPUTE_UNIT_LIMIT,
    COMPUTE_UNIT_PRICE_MICRO_LAMPORTS,
)


def build_transfer_ix(from_pubkey: Pubkey, to_pubkey: Pubkey, lamports: int) -> Instruction:
    return transfer(TransferParams(from_pubkey=from_pubkey, to_pubkey=to_pubkey, lamports=int(lamports)))


def build_close_token_account_ix(
    token_program_id: Pubkey,
    token_account: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
) -> Instruction:
    return Instruction(
        program_id=token_program_id,
        accounts=[
            AccountMeta(pubkey=token_account, is_signer=False, is_writable=True),
            AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
            AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
        ],
        data=bytes([CLOSE_ACCOUNT_IX]),
    )


def build_burn_ix(
    token_program_id: Pubkey,
    token_account: Pubkey,
    mint: Pubkey,
    authority: Pubkey,
    amount: int,
) -> Instruction:
    """SPL Token ``Burn``: destroys ``amount`` raw units held by ``token_account``."""
    return Instruction(
        program_id=token_program_id,
        accounts=[
            AccountMeta(pubkey=token_account, is_signer=False, is_writable=True),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
            AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
        ],
        data=bytes([BURN_IX]) + struct.pack("<Q", int(amount)),
    )


def build_compute_budget_ixs(
    unit_limit: int = COMPUTE_UNIT_LIMIT,
    unit_price_micro_lamports: int = COMPUTE_UNIT_PRICE_MICRO_LAMPORTS,
) -> List[Instruction]:
    return [
        set_compute_unit_price(int(unit_price_micro_lamports)),
        set_compute_unit_limit(int(unit_limit)),
    ]
