"""Drives the planner and submission engine across a whole candidate list.

One session is a single coroutine: batch N+1 is only planned once batch N has
reached a terminal state. The remaining-candidates list and the aggregator are
owned by the running session and nothing else touches them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from typing import TYPE_CHECKING, Awaitable, Callable, List, Protocol, Sequence

from solders.pubkey import Pubkey

from .aggregator import ResultAggregator
from .constants import (
    BATCH_DELAY_SECONDS,
    COMPUTE_RETRY_DELAY_SECONDS,
    COMPUTE_RETRY_LIMIT,
    COMPUTE_UNIT_LIMIT,
    COMPUTE_UNIT_PRICE_MICRO_LAMPORTS,
    EMPTY_BATCH_CEILING,
    MAX_TRANSACTION_SIZE,
    PLATFORM_FEE_FRACTION,
    VALUED_BATCH_CEILING,
)
from .errors import (
    ComputeBudgetExceeded,
    ConfirmationTimeout,
    ReclaimError,
    RpcError,
    SessionFatalError,
    SignerUnavailable,
)
from .instructions import build_compute_budget_ixs
from .models import Batch, CandidateAccount, OperationKind, SessionMode, SessionResult, SubmissionReceipt
from .planner import InstructionPlanner
from .submission import SubmissionEngine, WalletCapability

if TYPE_CHECKING:
    from .verification import VerificationResult

log = getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class BatchVerifier(Protocol):
    async def verify(
        self, wallet_address: str, signature: str, fee_signature: str | None = None
    ) -> VerificationResult: ...


class OrchestratorState(str, Enum):
    SIZING = "sizing"
    SUBMITTING = "submitting"
    SHRINK_AND_RETRY = "shrink_and_retry"
    DONE = "done"
    FAILED = "failed"


class Recovery(str, Enum):
    RETRY_SAME = "retry_same"
    SHRINK = "shrink"
    SKIP = "skip"
    FATAL = "fatal"


@dataclass(slots=True)
class RetryPolicy:
    """Decides how a failed batch is recovered.

    Compute-budget failures get a bounded number of identical resubmissions.
    Everything else shrinks the batch, and a single-operation batch that still
    fails has its account skipped so the session always terminates.
    """

    compute_retry_limit: int = COMPUTE_RETRY_LIMIT
    compute_attempts: int = 0

    def decide(self, exc: ReclaimError, batch_len: int) -> Recovery:
        if isinstance(exc, SessionFatalError):
            return Recovery.FATAL
        if isinstance(exc, ComputeBudgetExceeded) and self.compute_attempts < self.compute_retry_limit:
            self.compute_attempts += 1
            return Recovery.RETRY_SAME
        if batch_len <= 1:
            return Recovery.SKIP
        return Recovery.SHRINK

    def reset(self) -> None:
        self.compute_attempts = 0

    @staticmethod
    def shrunk_size(exc: ReclaimError, batch_len: int) -> int:
        recommended = getattr(exc, "recommended_size", None)
        if recommended and 0 < recommended < batch_len:
            return recommended
        return max(1, batch_len // 2)


class BatchOrchestrator:
    def __init__(
        self,
        planner: InstructionPlanner,
        engine: SubmissionEngine,
        wallet: WalletCapability,
        *,
        mode: SessionMode,
        destination: Pubkey,
        fee_fraction: float = PLATFORM_FEE_FRACTION,
        ceiling: int = MAX_TRANSACTION_SIZE,
        empty_batch_ceiling: int = EMPTY_BATCH_CEILING,
        valued_batch_ceiling: int = VALUED_BATCH_CEILING,
        batch_delay: float = BATCH_DELAY_SECONDS,
        compute_retry_delay: float = COMPUTE_RETRY_DELAY_SECONDS,
        compute_retry_limit: int = COMPUTE_RETRY_LIMIT,
        compute_unit_limit: int = COMPUTE_UNIT_LIMIT,
        compute_unit_price: int = COMPUTE_UNIT_PRICE_MICRO_LAMPORTS,
        verifier: BatchVerifier | None = None,
        progress: ProgressCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.planner = planner
        self.engine = engine
        self.wallet = wallet
        self.mode = mode
        self.destination = destination
        self.fee_fraction = fee_fraction
        self.ceiling = ceiling
        self.empty_batch_ceiling = empty_batch_ceiling
        self.valued_batch_ceiling = valued_batch_ceiling
        self.batch_delay = batch_delay
        self.compute_retry_delay = compute_retry_delay
        self.compute_retry_limit = compute_retry_limit
        self.compute_unit_limit = compute_unit_limit
        self.compute_unit_price = compute_unit_price
        self.verifier = verifier
        self.progress = progress
        self._sleep = sleep
        self.state = OrchestratorState.DONE
        # Operation counts of every batch handed to the engine, in order.
        self.attempted_batch_sizes: List[int] = []

    # ---------------- Helpers ----------------
    def _notify(self, total: int, remaining: int, message: str) -> None:
        if self.progress is None:
            return
        percent = 100 if total == 0 else int((total - remaining) * 100 / total)
        self.progress(percent, message)

    def default_batch_size(self, remaining: Sequence[CandidateAccount]) -> int:
        """Dense empty-account batches first, smaller ones once value-bearing accounts dominate."""
        empty = sum(1 for acc in remaining if acc.is_empty)
        if empty:
            return min(self.empty_batch_ceiling, empty)
        return min(self.valued_batch_ceiling, len(remaining))

    def new_batch(self) -> Batch:
        fee_fraction = self.fee_fraction if self.mode is SessionMode.DIRECT else 0.0
        return Batch(
            payer=self.wallet.pubkey,
            destination=self.destination,
            mode=self.mode,
            framing=build_compute_budget_ixs(self.compute_unit_limit, self.compute_unit_price),
            ceiling=self.ceiling,
            fee_fraction=fee_fraction,
        )

    def _skip(self, account: CandidateAccount, agg: ResultAggregator, reason: str) -> None:
        log.warning("skipping %s: %s", account.address, reason)
        account.planned = OperationKind.SKIP
        agg.record_skipped(str(account.address))

    async def _live_candidates(self, candidates: Sequence[CandidateAccount]) -> List[CandidateAccount]:
        """Drop accounts that no longer exist on chain (already closed by an earlier session)."""
        if not candidates:
            return []
        connection = await self.wallet.get_connection()
        try:
            infos = await connection.get_multiple_accounts([str(acc.address) for acc in candidates])
        except RpcError as exc:
            log.warning("could not check account existence, using the full list: %s", exc)
            return list(candidates)
        live = [acc for acc, info in zip(candidates, infos) if info is not None]
        if len(live) != len(candidates):
            log.info("%d candidate accounts no longer exist", len(candidates) - len(live))
        return live

    async def build_batch(
        self,
        remaining: List[CandidateAccount],
        size: int,
        agg: ResultAggregator,
    ) -> Batch | None:
        """Plan accounts from the front of ``remaining`` until ``size`` or the byte ceiling is reached.

        Skipped accounts are removed from ``remaining``; the planned ones are
        always ``remaining[:len(batch)]``.
        """
        batch = self.new_batch()
        index = 0
        deferred = False
        while index < len(remaining) and len(batch) < size:
            account = remaining[index]
            op = await self.planner.plan(account, batch)
            if op.kind is OperationKind.DEFER:
                deferred = True
                break
            if op.kind is OperationKind.SKIP:
                self._skip(account, agg, op.reason)
                del remaining[index]
                continue
            batch.add(op)
            index += 1

        if batch.operations:
            return batch
        if deferred:
            # Does not fit even into an empty batch.
            self._skip(remaining.pop(0), agg, "operation exceeds transaction size on its own")
        return None

    async def _verify(self, signature: str, agg: ResultAggregator) -> None:
        if self.verifier is None:
            return
        try:
            outcome = await self.verifier.verify(str(self.wallet.pubkey), signature)
        except (ReclaimError, KeyError, IndexError, TypeError, ValueError) as exc:
            log.error("verification of %s failed: %s", signature, exc)
            return
        if outcome.success:
            agg.record_verified(signature)
        else:
            log.warning("verification warning for %s: %s", signature, outcome.error)

    async def _batch_landed(self, batch: Batch) -> bool:
        """After a confirmation timeout: did the transaction land anyway?

        A transaction is atomic, so one vanished closing account means all of it landed.
        """
        closing = [op.account for op in batch.operations if op.closes_account]
        if not closing:
            return False
        live = await self._live_candidates(closing)
        return len(live) < len(closing)

    # ---------------- Session ----------------
    async def run(self, candidates: Sequence[CandidateAccount]) -> SessionResult:
        """Reclaim every candidate; raises only SessionFatalError subclasses."""
        self.attempted_batch_sizes = []
        if not self.wallet.is_connected():
            raise SignerUnavailable("Wallet not connected")

        live = await self._live_candidates(candidates)
        agg = ResultAggregator(mode=self.mode, total_count=len(live), fee_fraction=self.fee_fraction)

        remaining: List[CandidateAccount] = []
        for account in live:
            if account.is_frozen:
                self._skip(account, agg, "frozen")
            else:
                remaining.append(account)
        # Stable: empty accounts first, original order otherwise.
        remaining.sort(key=lambda acc: not acc.is_empty)

        total = len(remaining)
        policy = RetryPolicy(compute_retry_limit=self.compute_retry_limit)
        batch_size = self.default_batch_size(remaining)
        batch: Batch | None = None
        failure: ReclaimError | None = None
        self.state = OrchestratorState.SIZING
        log.info("starting session: %d candidates, mode=%s", total, self.mode.value)

        while self.state not in (OrchestratorState.DONE, OrchestratorState.FAILED):
            if self.state is OrchestratorState.SIZING:
                if not remaining:
                    self.state = OrchestratorState.DONE
                    continue
                batch = await self.build_batch(remaining, batch_size, agg)
                if batch is not None:
                    self.state = OrchestratorState.SUBMITTING

            elif self.state is OrchestratorState.SUBMITTING:
                assert batch is not None
                self._notify(total, len(remaining), f"Processing batch of {len(batch)} token accounts...")
                self.attempted_batch_sizes.append(len(batch))
                try:
                    receipt = await self.engine.submit(batch, self.wallet)
                except SessionFatalError:
                    raise
                except ReclaimError as exc:
                    log.warning("batch of %d failed: %s", len(batch), exc)
                    failure = exc
                    self.state = OrchestratorState.SHRINK_AND_RETRY
                    continue

                agg.record_batch(batch, receipt)
                del remaining[: len(batch)]
                policy.reset()
                await self._verify(receipt.signature, agg)
                batch_size = self.default_batch_size(remaining)
                batch = None
                self.state = OrchestratorState.SIZING
                if remaining:
                    self._notify(total, len(remaining), "Waiting between batches...")
                    await self._sleep(self.batch_delay)

            elif self.state is OrchestratorState.SHRINK_AND_RETRY:
                assert batch is not None and failure is not None
                if isinstance(failure, ConfirmationTimeout) and await self._batch_landed(batch):
                    log.warning("batch of %d landed despite the confirmation timeout", len(batch))
                    receipt = SubmissionReceipt(signature="", confirmed=False, transfer_lamports=batch.transfer_lamports)
                    agg.record_batch(batch, receipt)
                    del remaining[: len(batch)]
                    batch_size = self.default_batch_size(remaining)
                    policy.reset()
                    batch = None
                    failure = None
                    self.state = OrchestratorState.SIZING
                    continue
                recovery = policy.decide(failure, len(batch))
                if recovery is Recovery.FATAL:
                    raise failure
                if recovery is Recovery.RETRY_SAME:
                    log.info("compute budget exceeded, resubmitting (attempt %d)", policy.compute_attempts)
                    await self._sleep(self.compute_retry_delay)
                    self.state = OrchestratorState.SUBMITTING
                    continue
                if recovery is Recovery.SKIP:
                    self._skip(remaining.pop(0), agg, f"cannot be processed individually ({failure})")
                    batch_size = self.default_batch_size(remaining)
                else:
                    batch_size = policy.shrunk_size(failure, len(batch))
                    log.info("reducing batch size to %d", batch_size)
                    self._notify(total, len(remaining), f"Reducing batch size to {batch_size} token accounts...")
                policy.reset()
                batch = None
                failure = None
                self.state = OrchestratorState.SIZING

        if agg.processed_count == 0 and total:
            self.state = OrchestratorState.FAILED
        self._notify(total, 0, "Processing complete")
        result = agg.result()
        log.info("session finished: %s", result.message)
        return result
