from __future__ import annotations

import asyncio

import pytest
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from rent_reclaimer.constants import COMPUTE_BUDGET_PROGRAM_ID
from rent_reclaimer.errors import (
    BlockHeightExceeded,
    ComputeBudgetExceeded,
    ConfirmationTimeout,
    SignerRejected,
    SignerUnavailable,
    SizeExceeded,
    SubmissionRejected,
)
from rent_reclaimer.instructions import build_close_token_account_ix, build_compute_budget_ixs
from rent_reclaimer.models import Batch, OperationKind, PlannedOperation, SessionMode, SignatureStatus
from rent_reclaimer.submission import SubmissionEngine, recommend_batch_size
from tests.helpers.fakes import FakeSigner, FakeWallet, SleepRecorder, empty_account


def _batch(wallet: FakeWallet, accounts: int = 3, ceiling: int = 1232) -> Batch:
    batch = Batch(
        payer=wallet.pubkey,
        destination=Pubkey.new_unique(),
        mode=SessionMode.DIRECT,
        framing=build_compute_budget_ixs(),
        ceiling=ceiling,
        fee_fraction=0.021,
    )
    for _ in range(accounts):
        account = empty_account()
        ix = build_close_token_account_ix(account.token_program, account.address, wallet.pubkey, wallet.pubkey)
        batch.add(PlannedOperation(OperationKind.DIRECT_CLOSE, account, instructions=[ix]))
    return batch


def _wallet() -> FakeWallet:
    return FakeWallet(signer=FakeSigner())


def test_submit_signs_estimated_transaction() -> None:
    wallet = _wallet()
    batch = _batch(wallet)

    receipt = asyncio.run(SubmissionEngine().submit(batch, wallet))

    assert receipt.signature == "sig-1"
    assert receipt.confirmed is True
    assert receipt.transfer_lamports == batch.transfer_lamports
    (tx,) = wallet.signer.sent
    assert isinstance(tx, VersionedTransaction)
    assert len(bytes(tx)) == batch.estimated_size
    # framing first, transfer last
    keys = tx.message.account_keys
    program_order = [str(keys[ix.program_id_index]) for ix in tx.message.instructions]
    assert program_order[0] == program_order[1] == str(COMPUTE_BUDGET_PROGRAM_ID)
    assert program_order[-1] == "11111111111111111111111111111111"


def test_block_height_expiry_falls_back_to_status_check() -> None:
    wallet = _wallet()
    wallet.connection.confirm_outcome = BlockHeightExceeded("expired")
    wallet.connection.direct_status = SignatureStatus(confirmation_status="confirmed")
    sleeps = SleepRecorder()

    receipt = asyncio.run(SubmissionEngine(status_check_delay=5.0, sleep=sleeps).submit(_batch(wallet), wallet))

    assert receipt.confirmed is True
    assert sleeps.calls == [5.0]


def test_unknown_status_after_expiry_times_out() -> None:
    wallet = _wallet()
    wallet.connection.confirm_outcome = BlockHeightExceeded("expired")
    engine = SubmissionEngine(sleep=SleepRecorder())

    with pytest.raises(ConfirmationTimeout):
        asyncio.run(engine.submit(_batch(wallet), wallet))


def test_on_chain_error_after_expiry_is_rejection() -> None:
    wallet = _wallet()
    wallet.connection.confirm_outcome = BlockHeightExceeded("expired")
    wallet.connection.direct_status = SignatureStatus(err={"InstructionError": [2, {"Custom": 1}]})

    with pytest.raises(SubmissionRejected):
        asyncio.run(SubmissionEngine(sleep=SleepRecorder()).submit(_batch(wallet), wallet))


def test_compute_error_is_classified() -> None:
    wallet = _wallet()
    wallet.connection.confirm_outcome = SignatureStatus(err={"InstructionError": [3, "ComputationalBudgetExceeded"]})

    with pytest.raises(ComputeBudgetExceeded):
        asyncio.run(SubmissionEngine().submit(_batch(wallet), wallet))


def test_oversized_batch_is_never_signed() -> None:
    wallet = _wallet()
    batch = _batch(wallet, accounts=6, ceiling=400)

    with pytest.raises(SizeExceeded) as excinfo:
        asyncio.run(SubmissionEngine().submit(batch, wallet))

    assert excinfo.value.recommended_size is not None
    assert 1 <= excinfo.value.recommended_size < 6
    assert f"Recommended batch size: {excinfo.value.recommended_size}" in str(excinfo.value)
    assert wallet.signer.sent == []


def test_missing_signer_is_unavailable() -> None:
    wallet = FakeWallet(signer=None)

    with pytest.raises(SignerUnavailable):
        asyncio.run(SubmissionEngine().submit(_batch(wallet), wallet))


def test_disconnected_wallet_is_unavailable() -> None:
    wallet = _wallet()
    wallet.connected = False

    with pytest.raises(SignerUnavailable):
        asyncio.run(SubmissionEngine().submit(_batch(wallet), wallet))
    assert wallet.connection.blockhashes == 0


def test_wallet_rejection_is_fatal() -> None:
    wallet = _wallet()
    wallet.signer.errors.append(RuntimeError("User rejected the request."))

    with pytest.raises(SignerRejected):
        asyncio.run(SubmissionEngine().submit(_batch(wallet), wallet))


def test_fresh_blockhash_per_submission() -> None:
    wallet = _wallet()
    engine = SubmissionEngine()

    asyncio.run(engine.submit(_batch(wallet), wallet))
    asyncio.run(engine.submit(_batch(wallet), wallet))

    assert wallet.connection.blockhashes == 2


@pytest.mark.parametrize(
    "operations, actual, expected",
    [(15, 1400, 13), (15, 2464, 7), (1, 5000, 1), (4, 1233, 3)],
)
def test_recommend_batch_size(operations: int, actual: int, expected: int) -> None:
    assert recommend_batch_size(operations, actual, 1232) == expected
