import pytest

from conftest import USDC, account
from dca_executor.core.exceptions import NetworkError, QuoteExpired, QuoteRejected
from dca_executor.data.routing.provider import MockRoutingProvider
from dca_executor.orchestrator.quotes import (
    QuoteBudget,
    QuoteBudgetExceeded,
    acquire_quote,
    ensure_fresh,
    min_amount_out,
    slippage_for,
)
from dca_executor.orchestrator.submission import StageFailure, quote_stage


async def _wallet(world, n=1, usdc=1_000 * USDC):
    world.enroll(n, usdc=usdc)
    (wallet,) = await world.size_wallets()
    return wallet


def test_slippage_tiers(settings):
    assert slippage_for(99.99, settings) == 50
    assert slippage_for(100.0, settings) == 30
    assert min_amount_out(1_000_000, 50) == 995_000


def test_quote_budget_caps_requests():
    budget = QuoteBudget(2)
    budget.consume()
    budget.consume()
    assert budget.remaining == 0
    with pytest.raises(QuoteBudgetExceeded):
        budget.consume()


@pytest.mark.asyncio
async def test_acquire_quote_sets_minimum_output(world):
    wallet = await _wallet(world)
    ctx = world.context()
    quote = await acquire_quote(ctx, wallet, wallet.swap_amount_after_fee)
    assert quote.slippage_bps == 50
    assert quote.expected_output == world.routing.expected_output(
        world.usdc.address, world.weth.address, wallet.swap_amount_after_fee
    )
    assert quote.min_amount_out == quote.expected_output * 9_950 // 10_000
    assert quote.acquired_at == world.clock.monotonic()
    assert world.routing.quote_calls[0]["swapper"] == account(1)
    assert world.routing.quote_calls[0]["amount"] == 49_900_000


@pytest.mark.asyncio
async def test_transient_quote_failure_retried(world):
    wallet = await _wallet(world)
    world.routing.fail_next(account(1), NetworkError("connection reset"))
    quote = await acquire_quote(world.context(), wallet, wallet.swap_amount_after_fee)
    assert quote.expected_output > 0
    assert len(world.routing.quote_calls) == 2
    assert world.clock.sleeps


@pytest.mark.asyncio
async def test_persistent_quote_failure_tagged_quote_fetch(world):
    wallet = await _wallet(world)
    world.routing.fail_next(account(1), *[NetworkError("connection reset")] * 3)
    with pytest.raises(StageFailure) as excinfo:
        await quote_stage(world.context(), wallet, wallet.swap_amount_after_fee)
    assert excinfo.value.stage == "quote_fetch"
    assert isinstance(excinfo.value.error, NetworkError)


@pytest.mark.asyncio
async def test_zero_output_rejected_at_validation(world):
    wallet = await _wallet(world)
    world.routing.zero_output = True
    with pytest.raises(StageFailure) as excinfo:
        await quote_stage(world.context(), wallet, wallet.swap_amount_after_fee)
    assert excinfo.value.stage == "quote_validation"
    assert isinstance(excinfo.value.error, QuoteRejected)


@pytest.mark.asyncio
async def test_unknown_router_rejected(world):
    wallet = await _wallet(world)
    world.routing = MockRoutingProvider(router="0x" + "12" * 20)
    with pytest.raises(StageFailure) as excinfo:
        await quote_stage(world.context(), wallet, wallet.swap_amount_after_fee)
    assert "not an allowed router" in str(excinfo.value.error)


@pytest.mark.asyncio
async def test_quote_goes_stale_after_validity_window(world):
    wallet = await _wallet(world)
    quote = await acquire_quote(world.context(), wallet, wallet.swap_amount_after_fee)
    ensure_fresh(quote, world.clock.monotonic() + 30, world.settings.quote_validity_sec)
    with pytest.raises(QuoteExpired):
        ensure_fresh(quote, world.clock.monotonic() + 30.5, world.settings.quote_validity_sec)


@pytest.mark.asyncio
async def test_exhausted_budget_is_not_retried(world):
    wallet = await _wallet(world)
    world.routing.fail_next(account(1), NetworkError("connection reset"))
    ctx = world.context()
    ctx.quote_budget = QuoteBudget(1)
    with pytest.raises(StageFailure) as excinfo:
        await quote_stage(ctx, wallet, wallet.swap_amount_after_fee)
    assert excinfo.value.stage == "quote_fetch"
    assert isinstance(excinfo.value.error, QuoteBudgetExceeded)
    # one backoff after the network failure, none after the budget ran out
    assert len(world.clock.sleeps) == 1
