"""Exact wire size of a signed transaction, computed without serializing it.

Layout (legacy and v0 messages)::

    shortvec(num_signatures) + 64 * num_signatures
    [0x80 version prefix, v0 only]
    3-byte header
    shortvec(num_keys) + 32 * num_keys
    32-byte recent blockhash
    shortvec(num_instructions)
      per instruction: 1 program index byte
                       shortvec(num_accounts) + 1 byte per account index
                       shortvec(len(data)) + data
    [shortvec(num_lookups) = 1 byte for no lookups, v0 only]
"""

from __future__ import annotations

from typing import Dict, Iterable, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .constants import BLOCKHASH_SIZE, MESSAGE_HEADER_SIZE, PUBKEY_SIZE, SIGNATURE_SIZE


def shortvec_length(n: int) -> int:
    """Bytes used by Solana's compact-u16 encoding of ``n``."""
    if n < 0:
        raise ValueError(f"shortvec length must be non-negative: {n}")
    if n <= 0x7F:
        return 1
    if n <= 0x3FFF:
        return 2
    return 3


def _collect_keys(instructions: Iterable[Instruction], payer: Pubkey) -> Dict[Pubkey, bool]:
    """Unique keys referenced by the message, mapped to whether they must sign."""
    keys: Dict[Pubkey, bool] = {payer: True}
    for ix in instructions:
        for meta in ix.accounts:
            keys[meta.pubkey] = keys.get(meta.pubkey, False) or meta.is_signer
        keys.setdefault(ix.program_id, False)
    return keys


def instruction_size(ix: Instruction) -> int:
    """Bytes one compiled instruction adds to the message body."""
    n_accounts = len(ix.accounts)
    n_data = len(bytes(ix.data))
    return 1 + shortvec_length(n_accounts) + n_accounts + shortvec_length(n_data) + n_data


def estimate(instructions: Sequence[Instruction], payer: Pubkey, *, versioned: bool = True) -> int:
    """Serialized length of the signed transaction carrying ``instructions``."""
    keys = _collect_keys(instructions, payer)
    num_signatures = sum(1 for is_signer in keys.values() if is_signer)

    size = shortvec_length(num_signatures) + SIGNATURE_SIZE * num_signatures
    if versioned:
        size += 1
    size += MESSAGE_HEADER_SIZE
    size += shortvec_length(len(keys)) + PUBKEY_SIZE * len(keys)
    size += BLOCKHASH_SIZE
    size += shortvec_length(len(instructions))
    size += sum(instruction_size(ix) for ix in instructions)
    if versioned:
        size += shortvec_length(0)
    return size
