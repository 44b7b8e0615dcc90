import pytest

from conftest import USDC, account, make_record
from dca_executor.core.cache import TtlCache
from dca_executor.core.exceptions import NetworkError
from dca_executor.orchestrator.eligibility import ReferencePriceOracle, compute_amounts, compute_eligibility
from dca_executor.policies.decision import decide

WEI = 10**18


def test_amounts_scenario_buy_five_percent_capped():
    gross, fee, net = compute_amounts(1_000 * USDC, 5.0, 100 * USDC)
    assert (gross, fee, net) == (50 * USDC, 100_000, 49_900_000)


def test_cap_binds_before_percentage():
    gross, fee, net = compute_amounts(10_000 * USDC, 5.0, 100 * USDC)
    assert gross == 100 * USDC
    assert fee == 200_000
    assert net == gross - fee


@pytest.mark.parametrize(
    "balance, pct, cap",
    [(0, 5.0, 100), (1, 2.5, 10**9), (999_999, 2.5, 10**9), (123_456_789, 5.0, 7_000_000), (10**30, 2.5, 0)],
)
def test_amount_invariant(balance, pct, cap):
    gross, fee, net = compute_amounts(balance, pct, cap)
    assert 0 <= gross <= balance
    assert gross <= max(cap, 0)
    assert fee == gross * 20 // 10_000
    assert net + fee == gross


def test_percentage_uses_integer_basis_points():
    gross, _, _ = compute_amounts(333, 2.5, 10**9)
    assert gross == 333 * 250 // 10_000


@pytest.mark.asyncio
async def test_buy_eligibility_spends_usdc(world):
    world.enroll(1, usdc=1_000 * USDC)
    oracle = ReferencePriceOracle(world.routing, world.settings, world.relay.operator_address)
    outcome = await compute_eligibility([(0, world.records[0])], decide(10), world.chain, world.settings, oracle)
    assert outcome.rejected == {}
    wallet = outcome.eligible[0]
    assert wallet.token_in.key == "usdc"
    assert wallet.token_out.key == "weth"
    assert wallet.action == "buy"
    assert (wallet.swap_amount, wallet.fee, wallet.swap_amount_after_fee) == (50 * USDC, 100_000, 49_900_000)
    assert wallet.total_value_usd == pytest.approx(1_000.0)
    assert wallet.pair == "USDC→ETH"


@pytest.mark.asyncio
async def test_sell_eligibility_spends_target_and_counts_target_value(world):
    world.enroll(2, usdc=0, weth=WEI, cap=10**18)
    oracle = ReferencePriceOracle(world.routing, world.settings, world.relay.operator_address)
    outcome = await compute_eligibility([(0, world.records[0])], decide(80), world.chain, world.settings, oracle)
    wallet = outcome.eligible[0]
    assert wallet.action == "sell"
    assert wallet.token_in.key == "weth"
    assert wallet.swap_amount == WEI * 500 // 10_000
    assert wallet.total_value_usd == pytest.approx(2_500.0)
    assert wallet.swap_value_usd == pytest.approx(2_500.0 * 0.05 * 0.998)


@pytest.mark.asyncio
async def test_low_value_and_dust_accounts_rejected(world):
    world.enroll(1, usdc=5 * USDC)
    world.enroll(2, usdc=20 * USDC, cap=50_000)
    oracle = ReferencePriceOracle(world.routing, world.settings, world.relay.operator_address)
    pairs = list(enumerate(world.records))
    outcome = await compute_eligibility(pairs, decide(10), world.chain, world.settings, oracle)
    assert outcome.eligible == []
    assert "below $10.00 minimum" in outcome.rejected[account(1)]
    assert "below minimum trade size" in outcome.rejected[account(2)]


@pytest.mark.asyncio
async def test_balance_read_failure_drops_only_that_account(world):
    world.enroll(1, usdc=500 * USDC)
    world.enroll(2, usdc=500 * USDC)
    world.chain.failing.add(account(1).lower())
    oracle = ReferencePriceOracle(world.routing, world.settings, world.relay.operator_address)
    outcome = await compute_eligibility(list(enumerate(world.records)), decide(10), world.chain, world.settings, oracle)
    assert [wallet.account for wallet in outcome.eligible] == [account(2)]
    assert outcome.rejected[account(1)].startswith("Balance read failed")


@pytest.mark.asyncio
async def test_unsupported_target_rejected(world):
    record = make_record(3, target="doge")
    oracle = ReferencePriceOracle(world.routing, world.settings, world.relay.operator_address)
    outcome = await compute_eligibility([(0, record)], decide(10), world.chain, world.settings, oracle)
    assert "Unsupported target asset" in outcome.rejected[account(3)]


@pytest.mark.asyncio
async def test_reference_price_is_cached(world):
    oracle = ReferencePriceOracle(world.routing, world.settings, world.relay.operator_address)
    first = await oracle.price_usd(world.weth)
    second = await oracle.price_usd(world.weth)
    assert first == pytest.approx(2_500.0)
    assert second == first
    assert len(world.routing.quote_calls) == 1


@pytest.mark.asyncio
async def test_reference_price_falls_back_to_stale_then_configured(world):
    now = [0.0]
    cache = TtlCache(60, clock=lambda: now[0])
    oracle = ReferencePriceOracle(world.routing, world.settings, world.relay.operator_address, cache=cache)
    operator = world.relay.operator_address
    world.routing.tokens[world.weth.address.lower()] = (18, 2_000.0)
    assert await oracle.price_usd(world.weth) == pytest.approx(2_000.0)

    now[0] = 120.0
    world.routing.fail_next(operator, NetworkError("connection reset"))
    assert await oracle.price_usd(world.weth) == pytest.approx(2_000.0)

    cache.clear()
    world.routing.fail_next(operator, NetworkError("connection reset"))
    assert await oracle.price_usd(world.weth) == pytest.approx(2_500.0)
