"""Merges sequential batch outcomes into one SessionResult."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from .constants import PLATFORM_FEE_FRACTION, fmt_sol
from .models import Batch, SessionMode, SessionResult, SessionStatus, SubmissionReceipt


@dataclass(slots=True)
class ResultAggregator:
    mode: SessionMode
    total_count: int = 0
    fee_fraction: float = PLATFORM_FEE_FRACTION

    closed_count: int = 0
    converted_not_closed: int = 0
    total_reclaimed_lamports: int = 0
    transferred_lamports: int = 0
    signatures: List[str] = field(default_factory=list)
    verified_signatures: List[str] = field(default_factory=list)
    processed_accounts: List[str] = field(default_factory=list)
    skipped_accounts: List[str] = field(default_factory=list)

    def record_batch(self, batch: Batch, receipt: SubmissionReceipt) -> None:
        # An unconfirmed batch found landed has no signature to report.
        if receipt.signature:
            self.signatures.append(receipt.signature)
        self.closed_count += batch.closed_count
        self.converted_not_closed += batch.converted_not_closed
        self.total_reclaimed_lamports += batch.value_lamports
        self.transferred_lamports += receipt.transfer_lamports
        self.processed_accounts.extend(batch.account_ids)

    def record_skipped(self, account_id: str) -> None:
        if account_id not in self.skipped_accounts:
            self.skipped_accounts.append(account_id)

    def record_verified(self, signature: str) -> None:
        self.verified_signatures.append(signature)

    @property
    def processed_count(self) -> int:
        return len(self.processed_accounts)

    @property
    def fee_lamports(self) -> int:
        return self.transferred_lamports if self.mode is SessionMode.DIRECT else 0

    @property
    def routed_lamports(self) -> int:
        """Value reaching the user's side: their wallet (direct) or their wagering balance."""
        if self.mode is SessionMode.WAGER:
            return self.transferred_lamports
        return self.total_reclaimed_lamports - self.fee_lamports

    def status(self) -> SessionStatus:
        # Nothing to reclaim is not a failure; a repeated session lands here.
        if self.total_count == 0:
            return SessionStatus.SUCCESS
        if self.processed_count == 0:
            return SessionStatus.FAILURE
        if self.skipped_accounts or self.processed_count < self.total_count:
            return SessionStatus.PARTIAL
        return SessionStatus.SUCCESS

    def compose_message(self) -> str:
        status = self.status()
        if self.total_count == 0:
            return "No token accounts available to reclaim"
        if status is SessionStatus.FAILURE:
            message = "Failed to reclaim any token accounts"
        elif status is SessionStatus.PARTIAL:
            message = f"Partially completed: {self.processed_count} of {self.total_count} token accounts processed"
        else:
            message = f"Successfully processed all {self.total_count} token accounts"

        if self.processed_count:
            destination = "wagering balance" if self.mode is SessionMode.WAGER else "your wallet"
            message += f" ({fmt_sol(self.routed_lamports)} SOL to {destination})"
        if self.converted_not_closed:
            message += (
                f". Note: {self.converted_not_closed} token accounts were swapped"
                " but remain in your wallet with zero balance."
            )
        return message

    def result(self) -> SessionResult:
        return SessionResult(
            status=self.status(),
            message=self.compose_message(),
            total_count=self.total_count,
            closed_count=self.closed_count,
            converted_not_closed=self.converted_not_closed,
            signatures=list(self.signatures),
            verified_signatures=list(self.verified_signatures),
            processed_accounts=list(self.processed_accounts),
            skipped_accounts=list(self.skipped_accounts),
            total_reclaimed_lamports=self.total_reclaimed_lamports,
            fee_lamports=self.fee_lamports,
            routed_lamports=self.routed_lamports,
        )
