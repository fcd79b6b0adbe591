from __future__ import annotations

import asyncio

import pytest
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from rent_reclaimer.errors import ConversionInstructionInvalid, InsufficientLiquidity, QuoteUnavailable
from rent_reclaimer.instructions import build_close_token_account_ix, build_compute_budget_ixs
from rent_reclaimer.models import Batch, CandidateAccount, OperationKind, PlannedOperation, SessionMode
from rent_reclaimer.planner import InstructionPlanner, PlannerConfig, check_liquidity
from tests.helpers.fakes import (
    FakeConversions,
    FakeMetadata,
    FakeQuotes,
    empty_account,
    quote_for,
    valued_account,
)

PAYER = Pubkey.new_unique()


def _batch(ceiling: int = 1232) -> Batch:
    return Batch(
        payer=PAYER,
        destination=Pubkey.new_unique(),
        mode=SessionMode.DIRECT,
        framing=build_compute_budget_ixs(),
        ceiling=ceiling,
        fee_fraction=0.021,
    )


def _planner(quotes: FakeQuotes | None = None, conversions: FakeConversions | None = None, **kwargs) -> InstructionPlanner:
    return InstructionPlanner(PAYER, quotes or FakeQuotes(), conversions or FakeConversions(), **kwargs)


def _plan(planner: InstructionPlanner, account: CandidateAccount, batch: Batch) -> PlannedOperation:
    return asyncio.run(planner.plan(account, batch))


def _fill(batch: Batch, target: int) -> None:
    """Add close operations until the batch estimate is at least ``target`` bytes."""
    while batch.estimated_size < target:
        account = empty_account()
        ix = build_close_token_account_ix(account.token_program, account.address, PAYER, PAYER)
        batch.add(PlannedOperation(OperationKind.DIRECT_CLOSE, account, instructions=[ix]))


def test_empty_account_is_closed_without_quote() -> None:
    quotes = FakeQuotes()
    op = _plan(_planner(quotes), empty_account(), _batch())

    assert op.kind is OperationKind.DIRECT_CLOSE
    assert len(op.instructions) == 1
    assert op.burned is False
    assert op.byte_cost > 0
    assert quotes.calls == []


def test_no_route_burns_then_closes() -> None:
    account = valued_account()
    op = _plan(_planner(FakeQuotes()), account, _batch())

    assert op.kind is OperationKind.DIRECT_CLOSE
    assert op.burned is True
    assert [bytes(ix.data)[0] for ix in op.instructions] == [8, 9]


def test_has_route_false_skips_quote() -> None:
    quotes = FakeQuotes()
    account = valued_account(has_route=False)
    op = _plan(_planner(quotes), account, _batch())

    assert op.burned is True
    assert quotes.calls == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"out_amount": 4_999},
        {"price_impact_pct": 25.0},
        {"route_hops": 3},
    ],
)
def test_unattractive_quote_burns_then_closes(overrides: dict) -> None:
    account = valued_account()
    fields = {"out_amount": 50_000, **overrides}
    quotes = FakeQuotes({str(account.mint): quote_for(account, **fields)})
    conversions = FakeConversions()
    op = _plan(_planner(quotes, conversions), account, _batch())

    assert op.kind is OperationKind.DIRECT_CLOSE
    assert op.burned is True
    assert conversions.calls == []


def test_dust_value_per_token_is_insufficient() -> None:
    # 1e12 whole tokens for 50_000 lamports is 5e-17 SOL per token
    account = valued_account(amount=10**18, decimals=6)
    with pytest.raises(InsufficientLiquidity):
        check_liquidity(account, quote_for(account, out_amount=50_000), PlannerConfig())


def test_good_quote_converts_and_closes() -> None:
    account = valued_account()
    quotes = FakeQuotes({str(account.mint): quote_for(account, out_amount=80_000)})
    op = _plan(_planner(quotes), account, _batch())

    assert op.kind is OperationKind.CONVERT_AND_CLOSE
    assert op.converted_lamports == 80_000
    assert bytes(op.instructions[-1].data) == bytes([9])
    assert op.reclaim_lamports == 2_039_280 + 80_000


def test_supplied_quote_is_used_without_request() -> None:
    account = valued_account()
    quotes = FakeQuotes()
    planner = _planner(quotes)
    op = asyncio.run(planner.plan(account, _batch(), quote_for(account, out_amount=70_000)))

    assert op.kind is OperationKind.CONVERT_AND_CLOSE
    assert quotes.calls == []


def test_full_batch_burns_instead_of_converting() -> None:
    batch = _batch()
    _fill(batch, int(1232 * 0.8) + 1)
    account = valued_account()
    quotes = FakeQuotes({str(account.mint): quote_for(account)})
    op = _plan(_planner(quotes), account, batch)

    assert op.kind is OperationKind.DIRECT_CLOSE
    assert op.burned is True
    assert quotes.calls == []


def test_conversion_instruction_failure_burns_then_closes() -> None:
    account = valued_account()
    quotes = FakeQuotes({str(account.mint): quote_for(account)})
    conversions = FakeConversions(error=ConversionInstructionInvalid("bad payload"))
    op = _plan(_planner(quotes, conversions), account, _batch())

    assert op.kind is OperationKind.DIRECT_CLOSE
    assert op.burned is True


def _close_only_fits_without(batch: Batch, account: CandidateAccount) -> int:
    """Swap payload length for which the swap fits but swap plus close does not."""
    close = build_close_token_account_ix(account.token_program, account.address, PAYER, PAYER)
    program = Pubkey.new_unique()
    for data_len in range(1, 1232):
        metas = [AccountMeta(PAYER, True, True)] + [AccountMeta(Pubkey.new_unique(), False, True) for _ in range(3)]
        swap = Instruction(program, bytes(data_len), metas)
        if batch.fits([swap]) and not batch.fits([swap, close]):
            return data_len
    raise AssertionError("no payload length isolates the close")


def test_convert_only_when_close_no_longer_fits() -> None:
    batch = _batch()
    account = valued_account()
    data_len = _close_only_fits_without(batch, account)
    quotes = FakeQuotes({str(account.mint): quote_for(account)})
    planner = _planner(quotes, FakeConversions(data_len))
    op = _plan(planner, account, batch)

    assert op.kind is OperationKind.CONVERT_ONLY
    assert op.closes_account is False
    assert op.converted_lamports == 50_000


def test_oversized_conversion_falls_back_to_burn() -> None:
    account = valued_account()
    quotes = FakeQuotes({str(account.mint): quote_for(account)})
    op = _plan(_planner(quotes, FakeConversions(1_200)), account, _batch())

    assert op.kind is OperationKind.DIRECT_CLOSE
    assert op.burned is True


def test_frozen_account_is_skipped() -> None:
    op = _plan(_planner(), valued_account(is_frozen=True), _batch())

    assert op.kind is OperationKind.SKIP
    assert op.instructions == []


def test_operation_that_does_not_fit_is_deferred() -> None:
    batch = _batch()
    batch.ceiling = batch.estimated_size + 3
    op = _plan(_planner(), empty_account(), batch)

    assert op.kind is OperationKind.DEFER


def test_unquoted_valuable_token_is_skipped() -> None:
    account = valued_account(amount=5_000_000, decimals=6)
    quotes = FakeQuotes({str(account.mint): QuoteUnavailable("HTTP 503")})
    planner = _planner(quotes, metadata=FakeMetadata(price_usd=2.0))
    op = _plan(planner, account, _batch())

    assert op.kind is OperationKind.SKIP


@pytest.mark.parametrize("metadata", [None, FakeMetadata(price_usd=None), FakeMetadata(price_usd=1e-9)])
def test_unquoted_worthless_token_is_burned(metadata: FakeMetadata | None) -> None:
    account = valued_account()
    quotes = FakeQuotes({str(account.mint): QuoteUnavailable("HTTP 503")})
    op = _plan(_planner(quotes, metadata=metadata), account, _batch())

    assert op.kind is OperationKind.DIRECT_CLOSE
    assert op.burned is True


@pytest.mark.parametrize("value, expected", [(2_000_000, OperationKind.SKIP), (10, OperationKind.DIRECT_CLOSE)])
def test_upstream_value_decides_unquoted_token(value: int, expected: OperationKind) -> None:
    account = valued_account(value_quote_lamports=value)
    quotes = FakeQuotes({str(account.mint): QuoteUnavailable("HTTP 503")})
    metadata = FakeMetadata(price_usd=None)
    op = _plan(_planner(quotes, metadata=metadata), account, _batch())

    assert op.kind is expected
