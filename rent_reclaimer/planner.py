"""Per-account operation planning.

For one candidate the planner picks a close, a swap followed by a close, or a
swap alone, and emits the instructions for it. It always prefers draining or
closing an account over squeezing out the last lamport of value, and never
lets an unconvertible account block a batch.
"""

from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import List, Protocol, Sequence

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from .constants import (
    CONVERSION_SIZE_CUTOFF,
    LAMPORTS_PER_SOL,
    MAX_PRICE_IMPACT_PCT,
    MAX_ROUTE_HOPS,
    MAX_TRANSACTION_SIZE,
    NATIVE_MINT,
    NEGLIGIBLE_OUTPUT_LAMPORTS,
)
from .errors import (
    ConversionInstructionInvalid,
    InsufficientLiquidity,
    QuoteUnavailable,
    RouteNotFound,
)
from .instructions import build_burn_ix, build_close_token_account_ix
from .metadata import TokenMetadata
from .models import Batch, CandidateAccount, OperationKind, PlannedOperation, Quote, SwapInstructionSet

log = getLogger(__name__)


class QuoteService(Protocol):
    async def quote(self, input_mint: str, output_mint: str, amount: int) -> Quote: ...


class ConversionService(Protocol):
    async def swap_instructions(
        self, quote: Quote, payer: Pubkey, *, wrap_and_unwrap_sol: bool = True
    ) -> SwapInstructionSet: ...


class MetadataLookup(Protocol):
    async def get(self, mint: str) -> TokenMetadata: ...


@dataclass(slots=True, frozen=True)
class PlannerConfig:
    """Heuristic thresholds. Empirical defaults, not derived values."""

    ceiling: int = MAX_TRANSACTION_SIZE
    conversion_size_cutoff: float = CONVERSION_SIZE_CUTOFF
    negligible_output_lamports: int = NEGLIGIBLE_OUTPUT_LAMPORTS
    max_price_impact_pct: float = MAX_PRICE_IMPACT_PCT
    max_route_hops: int = MAX_ROUTE_HOPS
    # Dust by unit price: below 1e-11 SOL per token while worth under 0.0001 SOL in total
    min_value_per_token_sol: float = 1e-11
    low_value_lamports: int = 100_000
    # Used only to turn a USD price into lamports when no quote could be had
    sol_price_usd: float = 20.0
    wrap_and_unwrap_sol: bool = True

    @property
    def conversion_size_limit(self) -> float:
        return self.ceiling * self.conversion_size_cutoff


def check_liquidity(account: CandidateAccount, quote: Quote, config: PlannerConfig) -> None:
    """Raise InsufficientLiquidity when a quoted swap is not worth doing."""
    if quote.out_amount < config.negligible_output_lamports:
        raise InsufficientLiquidity(f"negligible output {quote.out_amount} lamports")
    ui_amount = float(account.ui_amount)
    if ui_amount > 0:
        per_token_sol = quote.out_amount / LAMPORTS_PER_SOL / ui_amount
        if per_token_sol < config.min_value_per_token_sol and quote.out_amount < config.low_value_lamports:
            raise InsufficientLiquidity(f"negligible value per token ({per_token_sol:.3e} SOL)")
    if quote.price_impact_pct is not None and quote.price_impact_pct > config.max_price_impact_pct:
        raise InsufficientLiquidity(f"price impact {quote.price_impact_pct:.2f}%")
    if quote.route_hops > config.max_route_hops:
        raise InsufficientLiquidity(f"route too complex ({quote.route_hops} hops)")


class InstructionPlanner:
    def __init__(
        self,
        payer: Pubkey,
        quotes: QuoteService,
        conversions: ConversionService,
        *,
        metadata: MetadataLookup | None = None,
        config: PlannerConfig | None = None,
    ) -> None:
        self.payer = payer
        self.quotes = quotes
        self.conversions = conversions
        self.metadata = metadata
        self.config = config or PlannerConfig()

    # ---------------- Instruction helpers ----------------
    def _close_ix(self, account: CandidateAccount) -> Instruction:
        return build_close_token_account_ix(
            account.token_program,
            account.address,
            destination=self.payer,
            authority=self.payer,
        )

    def _burn_ix(self, account: CandidateAccount) -> Instruction:
        return build_burn_ix(account.token_program, account.address, account.mint, self.payer, account.amount)

    def _fit(
        self,
        kind: OperationKind,
        account: CandidateAccount,
        batch: Batch,
        ixs: Sequence[Instruction],
        *,
        reason: str,
        converted_lamports: int = 0,
    ) -> PlannedOperation:
        before = batch.estimated_size
        after = batch.size_with(ixs)
        if after > batch.ceiling:
            return PlannedOperation(OperationKind.DEFER, account, reason=f"does not fit ({after} bytes)")
        return PlannedOperation(
            kind,
            account,
            instructions=list(ixs),
            byte_cost=after - before,
            converted_lamports=converted_lamports,
            burned=not account.is_empty and kind is OperationKind.DIRECT_CLOSE,
            reason=reason,
        )

    def _burn_and_close(self, account: CandidateAccount, batch: Batch, reason: str) -> PlannedOperation:
        log.info("burn+close %s (%s)", account.mint, reason)
        ixs: List[Instruction] = []
        if not account.is_empty:
            ixs.append(self._burn_ix(account))
        ixs.append(self._close_ix(account))
        return self._fit(OperationKind.DIRECT_CLOSE, account, batch, ixs, reason=reason)

    # ---------------- Policy ----------------
    async def plan(self, account: CandidateAccount, batch: Batch, quote: Quote | None = None) -> PlannedOperation:
        """Decide what ``account`` contributes to ``batch``.

        ``batch.estimated_size`` is the running size the decision is made
        against. A supplied ``quote`` is used instead of requesting one.
        Returns a SKIP or DEFER decision when nothing should be added.
        """
        if account.is_frozen:
            return PlannedOperation(OperationKind.SKIP, account, reason="frozen")

        if account.is_empty:
            return self._fit(OperationKind.DIRECT_CLOSE, account, batch, [self._close_ix(account)], reason="empty")

        if batch.estimated_size > self.config.conversion_size_limit:
            return self._burn_and_close(account, batch, "batch too full to convert")
        if not account.has_route:
            return self._burn_and_close(account, batch, "no conversion route")

        try:
            if quote is None:
                quote = await self.quotes.quote(str(account.mint), str(NATIVE_MINT), account.amount)
            check_liquidity(account, quote, self.config)
        except (RouteNotFound, InsufficientLiquidity) as exc:
            return self._burn_and_close(account, batch, str(exc) or "no route")
        except QuoteUnavailable as exc:
            return await self._plan_unquoted(account, batch, exc)

        try:
            swap = await self.conversions.swap_instructions(
                quote, self.payer, wrap_and_unwrap_sol=self.config.wrap_and_unwrap_sol
            )
        except (ConversionInstructionInvalid, QuoteUnavailable) as exc:
            log.warning("conversion instructions unavailable for %s: %s", account.mint, exc)
            return self._burn_and_close(account, batch, "conversion instructions invalid")

        swap_ixs = swap.all()
        close_ix = self._close_ix(account)
        if batch.fits([*swap_ixs, close_ix]):
            return self._fit(
                OperationKind.CONVERT_AND_CLOSE,
                account,
                batch,
                [*swap_ixs, close_ix],
                reason="converted",
                converted_lamports=quote.out_amount,
            )
        if batch.fits(swap_ixs):
            log.info("converting %s without close; close does not fit", account.mint)
            return self._fit(
                OperationKind.CONVERT_ONLY,
                account,
                batch,
                swap_ixs,
                reason="close does not fit",
                converted_lamports=quote.out_amount,
            )
        return self._burn_and_close(account, batch, "conversion does not fit")

    async def _plan_unquoted(self, account: CandidateAccount, batch: Batch, exc: Exception) -> PlannedOperation:
        """No quote and no definite "no route": skip only if the holding looks valuable."""
        if account.value_quote_lamports is not None:
            if account.value_quote_lamports < self.config.negligible_output_lamports:
                return self._burn_and_close(account, batch, "quote unavailable, negligible upstream value")
            log.info("skipping %s: valued upstream at %d lamports but no quote", account.mint, account.value_quote_lamports)
            return PlannedOperation(OperationKind.SKIP, account, reason="valuable but not convertible")
        if self.metadata is None:
            return self._burn_and_close(account, batch, f"quote unavailable: {exc}")
        meta = await self.metadata.get(str(account.mint))
        if meta.price_usd is None:
            return self._burn_and_close(account, batch, "quote unavailable, no price data")
        est_lamports = int(meta.price_usd * float(account.ui_amount) / self.config.sol_price_usd * LAMPORTS_PER_SOL)
        if est_lamports < self.config.negligible_output_lamports:
            return self._burn_and_close(account, batch, "quote unavailable, negligible priced value")
        log.info("skipping %s: priced at ~%d lamports but no quote (%s)", account.mint, est_lamports, exc)
        return PlannedOperation(OperationKind.SKIP, account, reason="valuable but not convertible")
