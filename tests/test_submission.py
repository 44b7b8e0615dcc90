from dataclasses import replace

import pytest

from conftest import START, USDC, SlowPrepareRelay, account
from dca_executor.core.exceptions import NetworkError
from dca_executor.orchestrator.nonce import PHASE_RETRY, PHASE_SWAP, encode_nonce, sequence_key
from dca_executor.orchestrator.submission import ConcurrentBatch, SequentialSafe

RUN_TS_MS = int(START.timestamp() * 1000)


@pytest.mark.asyncio
async def test_concurrent_batch_swaps_every_account(world):
    world.settings = replace(world.settings, batch_size=2)
    for n in (1, 2, 3):
        world.enroll(n, usdc=1_000 * USDC)
    wallets = await world.size_wallets()

    results = await ConcurrentBatch(world.context()).execute(wallets)

    assert [result.success for result in results] == [True, True, True]
    assert world.clock.sleeps == [world.settings.batch_delay_sec]
    first = results[0]
    assert first.amount_in == 49_900_000
    assert first.fee_collected == 100_000
    assert first.amount_out == world.routing.expected_output(world.usdc.address, world.weth.address, 49_900_000)
    assert first.tx_hash and first.operation_hash
    expected = {encode_nonce(sequence_key(RUN_TS_MS, PHASE_SWAP, wallet.index, 0)) for wallet in wallets}
    assert {op.nonce for op in world.relay.sent} == expected


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_batch(world):
    for n in (1, 2, 3):
        world.enroll(n, usdc=1_000 * USDC)
    wallets = await world.size_wallets()
    world.routing.fail_next(account(2), *[NetworkError("connection reset")] * 3)

    results = await ConcurrentBatch(world.context()).execute(wallets)

    by_account = {result.wallet_address: result for result in results}
    assert by_account[account(1)].success
    assert by_account[account(3)].success
    failed = by_account[account(2)]
    assert not failed.success
    assert failed.stage == "quote_fetch"
    assert failed.error_type == "network"
    assert failed.error_detail.startswith("[quote_fetch] ")
    assert failed.error_detail.endswith("| Pair: USDC→ETH")
    assert world.relay.sent_for(account(2)) == []


@pytest.mark.asyncio
async def test_stale_quote_is_not_submitted(world):
    world.relay = SlowPrepareRelay(world.clock, [31], operator_address=world.relay.operator_address, chain=world.chain)
    world.enroll(1, usdc=1_000 * USDC)
    wallets = await world.size_wallets()

    (result,) = await ConcurrentBatch(world.context()).execute(wallets)

    assert not result.success
    assert result.stage == "quote_expired"
    assert result.error_type == "quote_expired"
    assert world.relay.sent == []


@pytest.mark.asyncio
async def test_confirm_timeout_is_transient(world):
    world.enroll(1, usdc=1_000 * USDC)
    wallets = await world.size_wallets()
    world.relay.pending_polls = 10_000

    (result,) = await ConcurrentBatch(world.context()).execute(wallets)

    assert result.stage == "confirm"
    assert result.error_type == "timeout"


@pytest.mark.asyncio
async def test_sequential_rechecks_balance(world):
    world.enroll(1, usdc=1_000 * USDC)
    (wallet,) = await world.size_wallets()
    world.chain.set_balance(world.usdc.address, account(1), 10 * USDC)

    (result,) = await SequentialSafe(world.context()).execute([(wallet, "original")])

    assert result.stage == "balance_check"
    assert result.error_type == "revert"
    assert "Insufficient balance" in result.error
    assert result.is_retry and result.retry_of == "original"
    assert world.relay.sent == []


@pytest.mark.asyncio
async def test_sequential_retries_submit_with_same_nonce(world):
    world.enroll(1, usdc=1_000 * USDC)
    (wallet,) = await world.size_wallets()
    world.relay.fail_next(account(1), "send", NetworkError("relay connection refused"))

    (result,) = await SequentialSafe(world.context(), initial_delay_sec=30).execute([(wallet, "original")])

    assert result.success
    assert result.retry_count == 1
    assert result.retry_of == "original"
    assert world.clock.sleeps[0] == 30
    (sent,) = world.relay.sent
    assert sent.nonce == encode_nonce(sequence_key(RUN_TS_MS, PHASE_RETRY, wallet.index, 0))


@pytest.mark.asyncio
async def test_resend_after_confirm_timeout_cannot_double_execute(world):
    world.enroll(1, usdc=1_000 * USDC)
    (wallet,) = await world.size_wallets()
    world.relay.pending_polls = 10_000

    (result,) = await SequentialSafe(world.context()).execute([(wallet, None)])

    assert not result.success
    assert result.stage == "submit"
    assert result.error_type == "revert"
    assert "AA25" in result.error
    assert len(world.relay.sent) == 1


@pytest.mark.asyncio
async def test_sequential_spaces_items(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.enroll(2, usdc=1_000 * USDC)
    wallets = await world.size_wallets()

    results = await SequentialSafe(world.context(), item_delay_sec=2).execute([(w, None) for w in wallets])

    assert all(result.success for result in results)
    assert world.clock.sleeps == [2]
