"""Reclaim rent from near-worthless SPL token accounts.

The packer plans burn/close/convert operations per account, packs them into
size-bounded transactions, submits them sequentially and aggregates the
outcome into one session result.
"""

from __future__ import annotations

from .aggregator import ResultAggregator
from .errors import (
    ComputeBudgetExceeded,
    ConfirmationTimeout,
    ReclaimError,
    SessionFatalError,
    SignerRejected,
    SignerUnavailable,
    SizeExceeded,
    SubmissionRejected,
)
from .models import (
    Batch,
    CandidateAccount,
    OperationKind,
    PlannedOperation,
    SessionMode,
    SessionResult,
    SessionStatus,
)
from .orchestrator import BatchOrchestrator
from .planner import InstructionPlanner, PlannerConfig
from .submission import SubmissionEngine
from .wire_size import estimate

__all__ = [
    "Batch",
    "BatchOrchestrator",
    "CandidateAccount",
    "ComputeBudgetExceeded",
    "ConfirmationTimeout",
    "InstructionPlanner",
    "OperationKind",
    "PlannedOperation",
    "PlannerConfig",
    "ReclaimError",
    "ResultAggregator",
    "SessionFatalError",
    "SessionMode",
    "SessionResult",
    "SessionStatus",
    "SignerRejected",
    "SignerUnavailable",
    "SizeExceeded",
    "SubmissionEngine",
    "SubmissionRejected",
    "estimate",
]
