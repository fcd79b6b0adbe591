"""Value types shared by the planner, orchestrator and aggregator."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .constants import MAX_TRANSACTION_SIZE, RENT_RECLAIM_LAMPORTS, TOKEN_PROGRAM_ID
from .instructions import build_transfer_ix
from .wire_size import estimate


class SessionMode(str, Enum):
    # Platform fee goes to the fee destination, the rest stays with the user.
    DIRECT = "direct"
    # Full reclaimed value goes to the platform and is credited as wagering balance.
    WAGER = "wager"


class OperationKind(str, Enum):
    DIRECT_CLOSE = "direct_close"
    CONVERT_AND_CLOSE = "convert_and_close"
    CONVERT_ONLY = "convert_only"
    # Planner decisions that put nothing into the batch
    SKIP = "skip"
    DEFER = "defer"


class SessionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


# ---------------- Accounts & operations ----------------
@dataclass(slots=True)
class CandidateAccount:
    address: Pubkey
    mint: Pubkey
    amount: int = 0
    decimals: int = 0
    value_quote_lamports: int | None = None
    has_route: bool = True
    is_frozen: bool = False
    token_program: Pubkey = TOKEN_PROGRAM_ID

    # The only attribute the packer writes to.
    planned: OperationKind | None = None

    @property
    def ui_amount(self) -> Decimal:
        return Decimal(self.amount).scaleb(-self.decimals)

    @property
    def is_empty(self) -> bool:
        return self.amount == 0

    @classmethod
    def from_parsed(cls, pubkey: str, parsed_info: Mapping[str, Any], token_program: Pubkey) -> CandidateAccount:
        """Build from the ``jsonParsed`` token account ``info`` object returned by RPC."""
        token_amount = parsed_info.get("tokenAmount") or {}
        return cls(
            address=Pubkey.from_string(pubkey),
            mint=Pubkey.from_string(parsed_info["mint"]),
            amount=int(token_amount.get("amount") or 0),
            decimals=int(token_amount.get("decimals") or 0),
            is_frozen=parsed_info.get("state") == "frozen",
            token_program=token_program,
        )


@dataclass(slots=True)
class PlannedOperation:
    kind: OperationKind
    account: CandidateAccount
    instructions: List[Instruction] = field(default_factory=list)
    byte_cost: int = 0
    converted_lamports: int = 0
    burned: bool = False
    reason: str = ""

    @property
    def closes_account(self) -> bool:
        return self.kind in (OperationKind.DIRECT_CLOSE, OperationKind.CONVERT_AND_CLOSE)

    @property
    def converted(self) -> bool:
        return self.kind in (OperationKind.CONVERT_AND_CLOSE, OperationKind.CONVERT_ONLY)

    @property
    def reclaim_lamports(self) -> int:
        rent = RENT_RECLAIM_LAMPORTS if self.closes_account else 0
        return rent + self.converted_lamports


# ---------------- Collaborator payloads ----------------
@dataclass(slots=True)
class Quote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float | None = None
    route_hops: int = 1
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SwapInstructionSet:
    swap: Instruction
    setup: List[Instruction] = field(default_factory=list)
    cleanup: Instruction | None = None

    def all(self) -> List[Instruction]:
        out = list(self.setup)
        out.append(self.swap)
        if self.cleanup is not None:
            out.append(self.cleanup)
        return out


@dataclass(slots=True, frozen=True)
class BlockReference:
    blockhash: Hash
    last_valid_block_height: int


@dataclass(slots=True, frozen=True)
class SignatureStatus:
    err: Any = None
    confirmation_status: str | None = None


@dataclass(slots=True, frozen=True)
class SubmissionReceipt:
    signature: str
    confirmed: bool
    transfer_lamports: int = 0


# ---------------- Batch ----------------
@dataclass(slots=True)
class Batch:
    """Framing + planned operations + one trailing value transfer.

    ``estimated_size`` always includes the framing and the trailing transfer,
    whose lamport amount does not change its encoded length.
    """

    payer: Pubkey
    destination: Pubkey
    mode: SessionMode
    framing: List[Instruction] = field(default_factory=list)
    operations: List[PlannedOperation] = field(default_factory=list)
    ceiling: int = MAX_TRANSACTION_SIZE
    fee_fraction: float = 0.0

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def value_lamports(self) -> int:
        return sum(op.reclaim_lamports for op in self.operations)

    @property
    def transfer_lamports(self) -> int:
        if self.mode is SessionMode.WAGER:
            return self.value_lamports
        return int(self.value_lamports * self.fee_fraction)

    @property
    def closed_count(self) -> int:
        return sum(1 for op in self.operations if op.closes_account)

    @property
    def converted_not_closed(self) -> int:
        return sum(1 for op in self.operations if op.kind is OperationKind.CONVERT_ONLY)

    @property
    def account_ids(self) -> List[str]:
        return [str(op.account.address) for op in self.operations]

    def body(self) -> List[Instruction]:
        out: List[Instruction] = []
        for op in self.operations:
            out.extend(op.instructions)
        return out

    def transfer_ix(self) -> Instruction:
        return build_transfer_ix(self.payer, self.destination, self.transfer_lamports)

    def instructions(self) -> List[Instruction]:
        return [*self.framing, *self.body(), self.transfer_ix()]

    def size_with(self, extra: Sequence[Instruction] = ()) -> int:
        """Estimated size if ``extra`` were appended after the current operations."""
        ixs = [*self.framing, *self.body(), *extra, self.transfer_ix()]
        return estimate(ixs, self.payer)

    @property
    def estimated_size(self) -> int:
        return self.size_with()

    def fits(self, extra: Sequence[Instruction]) -> bool:
        return self.size_with(extra) <= self.ceiling

    def add(self, op: PlannedOperation) -> None:
        op.account.planned = op.kind
        self.operations.append(op)


# ---------------- Session result ----------------
@dataclass(slots=True)
class SessionResult:
    status: SessionStatus
    message: str
    total_count: int = 0
    closed_count: int = 0
    converted_not_closed: int = 0
    signatures: List[str] = field(default_factory=list)
    verified_signatures: List[str] = field(default_factory=list)
    processed_accounts: List[str] = field(default_factory=list)
    skipped_accounts: List[str] = field(default_factory=list)
    total_reclaimed_lamports: int = 0
    fee_lamports: int = 0
    routed_lamports: int = 0

    @property
    def success(self) -> bool:
        return self.status is not SessionStatus.FAILURE
