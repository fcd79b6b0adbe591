"""Normalization of instructions received from HTTP collaborators.

Instruction payloads arrive as a base64 string, raw bytes, or a JSON array of
numbers depending on the service and transport. Everything past this module
only ever sees ``bytes``.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, List, Mapping

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .errors import ConversionInstructionInvalid


def normalize_instruction_data(data: Any) -> bytes:
    if isinstance(data, str):
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConversionInstructionInvalid(f"Invalid base64 instruction data: {data[:32]!r}") from exc
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, (list, tuple)):
        try:
            return bytes(int(x) for x in data)
        except (TypeError, ValueError) as exc:
            raise ConversionInstructionInvalid("Instruction data array must hold integers 0-255") from exc
    raise ConversionInstructionInvalid(f"Unsupported instruction data type: {type(data).__name__}")


def parse_instruction(raw: Mapping[str, Any]) -> Instruction:
    """Convert ``{programId, accounts: [{pubkey, isSigner, isWritable}], data}`` into an Instruction."""
    if not isinstance(raw, Mapping):
        raise ConversionInstructionInvalid(f"Instruction must be an object, got {type(raw).__name__}")
    try:
        program_id = Pubkey.from_string(str(raw["programId"]))
        accounts: List[AccountMeta] = [
            AccountMeta(
                pubkey=Pubkey.from_string(str(acc["pubkey"])),
                is_signer=bool(acc.get("isSigner", False)),
                is_writable=bool(acc.get("isWritable", False)),
            )
            for acc in raw["accounts"]
        ]
    except (KeyError, TypeError, ValueError) as exc:
        raise ConversionInstructionInvalid(f"Malformed instruction: {exc}") from exc
    if "data" not in raw or raw["data"] is None:
        raise ConversionInstructionInvalid("Instruction has no data field")
    return Instruction(program_id=program_id, accounts=accounts, data=normalize_instruction_data(raw["data"]))
