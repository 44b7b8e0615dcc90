from __future__ import annotations

from typing import TYPE_CHECKING

from dca_executor.config import EngineSettings
from dca_executor.core.exceptions import QuoteExpired, QuoteRejected, UpstreamRateLimited
from dca_executor.core.retry import RetryPolicy, with_retry
from dca_executor.data.routing.schemas import QuoteResponse, SwapResponse
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.models import SwapQuote, WalletData

if TYPE_CHECKING:
    from dca_executor.orchestrator.context import RunContext

logger = get_logger(__name__)


class QuoteBudgetExceeded(UpstreamRateLimited):
    # the budget does not refill within a run
    retryable = False


class QuoteBudget:
    """Upper bound on routing quotes requested during one run."""

    def __init__(self, limit: int) -> None:
        self.limit = max(0, limit)
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def consume(self) -> None:
        if self.used >= self.limit:
            raise QuoteBudgetExceeded(f"Quote budget of {self.limit} per run exceeded")
        self.used += 1


def slippage_for(value_usd: float, settings: EngineSettings) -> int:
    if value_usd < settings.slippage_threshold_usd:
        return settings.slippage_small_bps
    return settings.slippage_large_bps


def min_amount_out(expected: int, slippage_bps: int, denominator: int = 10_000) -> int:
    return expected * (denominator - slippage_bps) // denominator


def validate_quote(
    quote: QuoteResponse,
    swap: SwapResponse,
    slippage_bps: int,
    routers: list[str],
    acquired_at: float,
) -> SwapQuote:
    expected = quote.output_amount
    if expected <= 0:
        raise QuoteRejected("Quote returned zero output amount")
    allowed = {router.lower() for router in routers}
    if swap.swap.to.lower() not in allowed:
        raise QuoteRejected(f"Swap target {swap.swap.to} is not an allowed router")
    return SwapQuote(
        quote=quote,
        call=swap.swap,
        expected_output=expected,
        min_amount_out=min_amount_out(expected, slippage_bps),
        slippage_bps=slippage_bps,
        acquired_at=acquired_at,
    )


def ensure_fresh(quote: SwapQuote, now: float, validity_sec: float) -> None:
    if not quote.is_fresh(now, validity_sec):
        age = now - quote.acquired_at
        raise QuoteExpired(f"Quote expired ({age:.1f}s old, validity {validity_sec:.0f}s)")


async def fetch_quote(ctx: "RunContext", wallet: WalletData, amount: int) -> tuple[QuoteResponse, SwapResponse, int]:
    """Fetch quote plus executable swap, retried with backoff on transient failure.

    Validation happens afterwards so a rejected quote is never retried.
    """
    settings = ctx.settings
    slippage_bps = slippage_for(wallet.swap_value_usd, settings)

    async def _fetch() -> tuple[QuoteResponse, SwapResponse]:
        if ctx.quote_budget is not None:
            ctx.quote_budget.consume()
        quote = await ctx.routing.get_quote(
            wallet.account,
            wallet.token_in.address,
            wallet.token_out.address,
            amount,
            slippage_bps,
        )
        swap = await ctx.routing.build_swap(quote)
        return quote, swap

    if ctx.quote_budget is not None and ctx.quote_budget.remaining == 0:
        raise QuoteBudgetExceeded(f"Quote budget of {ctx.quote_budget.limit} per run exceeded")
    outcome = await with_retry(
        _fetch,
        RetryPolicy.from_settings(settings.retry),
        operation=f"quote {wallet.account}",
        sleep=ctx.sleep,
        rng=ctx.rng,
    )
    if not outcome.ok:
        raise outcome.error.error or RuntimeError(outcome.error.message)
    quote, swap = outcome.result
    return quote, swap, slippage_bps


async def acquire_quote(ctx: "RunContext", wallet: WalletData, amount: int) -> SwapQuote:
    quote, swap, slippage_bps = await fetch_quote(ctx, wallet, amount)
    validated = validate_quote(quote, swap, slippage_bps, ctx.settings.routers, ctx.monotonic())
    logger.debug(
        "%s quote: %s in, %s expected out, min %s (%d bps)",
        wallet.account,
        amount,
        validated.expected_output,
        validated.min_amount_out,
        slippage_bps,
    )
    return validated


__all__ = [
    "QuoteBudget",
    "QuoteBudgetExceeded",
    "acquire_quote",
    "ensure_fresh",
    "fetch_quote",
    "min_amount_out",
    "slippage_for",
    "validate_quote",
]
