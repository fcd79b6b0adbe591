"""Signs, submits and confirms one assembled batch.

The wallet, its connection and its signer are capabilities handed in by the
caller; the engine never constructs them.
"""

from __future__ import annotations

import asyncio
from logging import getLogger
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .constants import CONFIRM_TIMEOUT_SECONDS, STATUS_CHECK_DELAY_SECONDS
from .errors import (
    ComputeBudgetExceeded,
    ConfirmationTimeout,
    ReclaimError,
    SignerUnavailable,
    SizeExceeded,
    SubmissionRejected,
    classify_failure,
)
from .models import Batch, BlockReference, SignatureStatus, SubmissionReceipt

log = getLogger(__name__)


class Connection(Protocol):
    async def get_latest_blockhash(self) -> BlockReference: ...

    async def confirm_transaction(
        self, signature: str, block: BlockReference, *, timeout: float
    ) -> SignatureStatus: ...

    async def get_signature_status(self, signature: str) -> SignatureStatus | None: ...

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> List[Optional[Dict[str, Any]]]: ...

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]: ...


class Signer(Protocol):
    async def sign_and_send_transaction(self, tx: VersionedTransaction) -> str: ...


class WalletCapability(Protocol):
    @property
    def pubkey(self) -> Pubkey: ...

    def is_connected(self) -> bool: ...

    async def get_connection(self) -> Connection: ...

    async def get_signer(self) -> Signer | None: ...


def recommend_batch_size(operations: int, actual_size: int, ceiling: int) -> int:
    """Largest operation count that should fit, assuming roughly uniform operations."""
    if operations <= 1 or actual_size <= 0:
        return 1
    fitted = operations * ceiling // actual_size
    return max(1, min(fitted, operations - 1))


class SubmissionEngine:
    def __init__(
        self,
        *,
        confirm_timeout: float = CONFIRM_TIMEOUT_SECONDS,
        status_check_delay: float = STATUS_CHECK_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.confirm_timeout = confirm_timeout
        self.status_check_delay = status_check_delay
        self._sleep = sleep

    def _too_large(self, batch: Batch, size: int) -> SizeExceeded:
        rec = recommend_batch_size(len(batch), size, batch.ceiling)
        return SizeExceeded(
            f"Transaction too large: {size} bytes (max: {batch.ceiling}). Recommended batch size: {rec}",
            recommended_size=rec,
        )

    def assemble(self, batch: Batch, block: BlockReference) -> VersionedTransaction:
        """Compile the batch into an unsigned v0 transaction and check its real size."""
        try:
            message = MessageV0.try_compile(batch.payer, batch.instructions(), [], block.blockhash)
        except Exception as exc:
            err = classify_failure(str(exc))
            if isinstance(err, SizeExceeded):
                raise err from exc
            raise SubmissionRejected(f"Could not compile transaction: {exc}") from exc

        placeholders = [Signature.default()] * message.header.num_required_signatures
        tx = VersionedTransaction.populate(message, placeholders)
        size = len(bytes(tx))
        if size != batch.estimated_size:
            log.warning("size estimate %d differs from serialized size %d", batch.estimated_size, size)
        if size > batch.ceiling:
            raise self._too_large(batch, size)
        return tx

    async def submit(self, batch: Batch, wallet: WalletCapability) -> SubmissionReceipt:
        if not wallet.is_connected():
            raise SignerUnavailable("Wallet not connected")

        estimated = batch.estimated_size
        if estimated > batch.ceiling:
            raise self._too_large(batch, estimated)

        connection = await wallet.get_connection()
        block = await connection.get_latest_blockhash()
        tx = self.assemble(batch, block)

        signer = await wallet.get_signer()
        if signer is None:
            raise SignerUnavailable("No wallet available to sign transactions")

        log.info(
            "submitting batch: %d operations, %d bytes, transfer %d lamports",
            len(batch),
            estimated,
            batch.transfer_lamports,
        )
        try:
            signature = await signer.sign_and_send_transaction(tx)
        except ReclaimError:
            raise
        except Exception as exc:
            raise classify_failure(str(exc)) from exc

        await self._confirm(connection, signature, block)
        log.info("batch confirmed: %s", signature)
        return SubmissionReceipt(signature=signature, confirmed=True, transfer_lamports=batch.transfer_lamports)

    async def _confirm(self, connection: Connection, signature: str, block: BlockReference) -> None:
        try:
            status = await connection.confirm_transaction(signature, block, timeout=self.confirm_timeout)
        except ConfirmationTimeout as exc:
            log.warning("confirmation of %s did not complete (%s); checking status directly", signature, exc)
            await self._sleep(self.status_check_delay)
            direct = await connection.get_signature_status(signature)
            if direct is None:
                raise ConfirmationTimeout(f"Unable to determine status of {signature}") from exc
            status = direct

        if status.err:
            failure = classify_failure(f"Transaction {signature} failed: {status.err}")
            if isinstance(failure, ComputeBudgetExceeded):
                raise failure
            raise SubmissionRejected(str(failure))
