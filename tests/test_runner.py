from decimal import Decimal

import httpx
import pytest

from conftest import OPERATOR, STRANGER, USDC, SlowPrepareRelay, account, owner
from dca_executor.core.exceptions import NetworkError

FULL_PATH = [
    "IDLE",
    "CHECK_IDEMPOTENCY",
    "CHECK_OPERATOR_FUNDS",
    "FETCH_SIGNAL",
    "DECIDE",
    "FILTER_DELEGATIONS",
    "DEPLOY_PENDING_ACCOUNTS",
    "COMPUTE_ELIGIBILITY",
    "RUN_APPROVAL_PHASE",
    "RUN_SWAP_PHASE",
    "RECORD_RESULTS",
    "RETRY_TRANSIENT_FAILURES",
    "UPDATE_AGGREGATE_STATS",
    "DONE",
]


def _rows_for(world, n):
    return [row for row in world.store.executions if row["wallet_address"] == account(n)]


@pytest.mark.asyncio
async def test_extreme_fear_buys_capped_amount(world):
    world.enroll(1, usdc=1_000 * USDC)

    report = await world.orchestrator().run()

    assert report.status == "completed"
    assert report.states == FULL_PATH
    assert report.decision.action == "buy"
    assert report.decision.percentage == 5.0
    (result,) = report.results
    assert result.success
    assert result.amount_in == 49_900_000
    assert result.fee_collected == 100_000
    assert report.volume == 49_900_000
    assert report.fees == 100_000
    (row,) = world.store.executions
    assert row["status"] == "success"
    assert row["amount_in"] == "49900000"
    assert row["fee_collected"] == "100000"
    assert row["fear_greed_index"] == 10
    assert world.store.stats["total_volume"] == Decimal(49_900_000)
    assert world.store.stats["total_fees"] == Decimal(100_000)
    (summary,) = world.store.run_summaries
    assert summary["status"] == "completed"
    assert summary["succeeded"] == 1


@pytest.mark.asyncio
async def test_greed_sells_target_asset(world):
    world.sentiment.score = 80
    world.enroll(1, weth=10**18, cap=10**18)

    report = await world.orchestrator().run()

    (result,) = report.results
    assert result.success
    assert result.action == "sell"
    assert result.pair == "ETH→USDC"
    assert result.amount_in == 5 * 10**16 - 10**14
    assert result.amount_out == world.routing.expected_output(world.weth.address, world.usdc.address, result.amount_in)


@pytest.mark.asyncio
async def test_neutral_sentiment_holds_without_side_effects(world):
    world.sentiment.score = 50
    world.enroll(1, usdc=1_000 * USDC)

    report = await world.orchestrator().run()

    assert report.status == "hold"
    assert report.states[-1] == "HOLD"
    assert world.relay.sent == []
    assert world.routing.quote_calls == []
    assert world.store.executions == []
    (summary,) = world.store.run_summaries
    assert summary["status"] == "hold"
    assert summary["action"] == "hold"


@pytest.mark.asyncio
async def test_foreign_grantee_excluded_before_approvals(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.enroll(2, usdc=1_000 * USDC, approved=False, delegate=STRANGER)

    report = await world.orchestrator().run()

    assert "does not match operator" in report.excluded[account(2)]
    assert world.relay.sent_for(account(2)) == []
    assert [call["swapper"] for call in world.routing.quote_calls if call["swapper"] != OPERATOR] == [account(1)]
    assert _rows_for(world, 2) == []
    assert [result.wallet_address for result in report.succeeded] == [account(1)]


@pytest.mark.asyncio
async def test_unanswerable_idempotency_query_fails_closed(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.store.fail_on.add("has_activity_since")

    report = await world.orchestrator().run()

    assert report.status == "skipped_fail_closed"
    assert report.states == ["IDLE", "CHECK_IDEMPOTENCY", "SKIPPED"]
    assert world.sentiment.calls == 0
    assert world.relay.sent == []
    assert world.store.executions == []
    assert world.store.run_summaries == []


@pytest.mark.asyncio
async def test_second_run_same_day_is_skipped_unless_forced(world):
    world.enroll(1, usdc=1_000 * USDC)
    first = await world.orchestrator().run()
    assert first.status == "completed"

    world.clock.advance(60)
    second = await world.orchestrator().run()
    assert second.status == "skipped_already_ran"
    assert len(world.relay.sent) == 1

    world.clock.advance(60)
    forced = await world.orchestrator().run(force=True)
    assert forced.status == "completed"
    assert len(world.relay.sent) == 2


@pytest.mark.asyncio
async def test_expired_quote_retried_at_end_of_run(world):
    world.relay = SlowPrepareRelay(world.clock, [31], operator_address=OPERATOR, chain=world.chain)
    world.enroll(1, usdc=1_000 * USDC)

    report = await world.orchestrator().run()

    first, retried = report.results
    assert not first.success
    assert first.stage == "quote_expired"
    assert first.error_type == "quote_expired"
    assert retried.success
    assert retried.is_retry
    assert retried.retry_of == first.result_id
    assert retried.amount_in == first.amount_in == 49_900_000
    assert 30 in world.clock.sleeps
    assert [row["status"] for row in world.store.executions] == ["failed", "success"]
    assert report.volume == 49_900_000


@pytest.mark.asyncio
async def test_retry_reuses_original_amounts(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.routing.fail_next(account(1), *[NetworkError("connection reset")] * 3)

    def top_up(seconds):
        if seconds == 30:
            world.chain.set_balance(world.usdc.address, account(1), 600 * USDC)

    world.clock.on_sleep = top_up
    report = await world.orchestrator().run()

    retried = report.results[-1]
    assert retried.success
    assert retried.amount_in == 49_900_000
    assert retried.fee_collected == 100_000


@pytest.mark.asyncio
async def test_retry_fails_when_balance_drained(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.routing.fail_next(account(1), *[NetworkError("connection reset")] * 3)

    def drain(seconds):
        if seconds == 30:
            world.chain.set_balance(world.usdc.address, account(1), 10 * USDC)

    world.clock.on_sleep = drain
    report = await world.orchestrator().run()

    retried = report.results[-1]
    assert not retried.success
    assert retried.stage == "balance_check"
    row = world.store.executions[-1]
    assert row["status"] == "retry_failed"
    assert row["error_message"].startswith("[RETRY] Insufficient balance")
    assert report.volume == 0
    assert world.store.stats["total_volume"] == Decimal(0)


@pytest.mark.asyncio
async def test_reverts_are_not_retried(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.enroll(2, usdc=1_000 * USDC)
    world.relay.revert_next(account(2), "0xd81b2f2e")

    report = await world.orchestrator().run()

    by_account = {result.wallet_address: result for result in report.results}
    assert by_account[account(1)].success
    assert by_account[account(2)].error_type == "revert"
    assert not any(result.is_retry for result in report.results)
    assert 30 not in world.clock.sleeps


@pytest.mark.asyncio
async def test_too_many_transient_failures_skip_retry(world):
    for n in range(1, 22):
        world.enroll(n, usdc=1_000 * USDC)
        world.routing.fail_next(account(n), *[NetworkError("connection reset")] * 3)

    report = await world.orchestrator().run()

    assert len(report.results) == 21
    assert not any(result.success or result.is_retry for result in report.results)
    assert 30 not in world.clock.sleeps
    (summary,) = world.store.run_summaries
    assert summary["failed"] == 21


@pytest.mark.asyncio
async def test_undeployed_account_deployed_before_swap(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.chain.set_code(account(1), "0x")
    world.relay.counterfactual[owner(1)] = account(1)

    report = await world.orchestrator().run()

    assert report.succeeded
    deploy, swap = world.relay.sent_for(account(1))
    assert deploy.operation["calls"][0]["to"] == world.settings.account_factory
    assert deploy.operation["calls"][0]["data"].startswith("0xfbfa77cf")
    assert await world.chain.get_code(account(1)) == "0x6080"


@pytest.mark.asyncio
async def test_counterfactual_mismatch_excludes_account(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.enroll(2, usdc=1_000 * USDC)
    world.chain.set_code(account(2), "0x")
    world.relay.counterfactual[owner(2)] = account(9)

    report = await world.orchestrator().run()

    by_account = {result.wallet_address: result for result in report.results}
    assert by_account[account(1)].success
    failure = by_account[account(2)]
    assert failure.stage == "deploy"
    assert failure.error_type == "revert"
    assert "does not match enrolled account" in failure.error
    assert world.relay.sent_for(account(2)) == []
    assert _rows_for(world, 2)[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_low_value_account_excluded(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.enroll(2, usdc=5 * USDC)

    report = await world.orchestrator().run()

    assert "below $10.00 minimum" in report.excluded[account(2)]
    assert [result.wallet_address for result in report.results] == [account(1)]


@pytest.mark.asyncio
async def test_low_operator_balance_aborts(world):
    world.chain.set_native(OPERATOR, 0)
    world.enroll(1, usdc=1_000 * USDC)

    report = await world.orchestrator().run()

    assert report.status == "aborted"
    assert report.states[-1] == "ABORTED"
    assert world.sentiment.calls == 0
    assert world.relay.sent == []
    assert world.store.run_summaries == []


@pytest.mark.asyncio
async def test_sentiment_outage_aborts(world):
    world.sentiment.error_mode = "offline"
    world.enroll(1, usdc=1_000 * USDC)

    report = await world.orchestrator().run()

    assert report.status == "aborted"
    assert "sentiment unavailable" in report.reason
    assert world.relay.sent == []


@pytest.mark.asyncio
async def test_dry_run_previews_without_submitting(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.store.fail_on.add("has_activity_since")

    report = await world.orchestrator().run(dry_run=True)

    assert report.status == "dry_run"
    assert "CHECK_IDEMPOTENCY" not in report.states
    (preview,) = report.previews
    assert preview["account"] == account(1)
    assert preview["net"] == "49900000"
    assert preview["status"] == "ok (50 bps)"
    assert world.relay.sent == []
    assert world.store.executions == []
    assert world.store.run_summaries == []


@pytest.mark.asyncio
async def test_wallet_filter_limits_run(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.enroll(2, usdc=1_000 * USDC)

    report = await world.orchestrator().run(wallet=account(2).upper().replace("0X", "0x"))

    assert [result.wallet_address for result in report.results] == [account(2)]
    assert world.relay.sent_for(account(1)) == []


@pytest.mark.asyncio
async def test_store_outage_during_recording_is_dumped(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.store.fail_on.add("insert_execution")

    orchestrator = world.orchestrator()
    report = await orchestrator.run()

    assert report.status == "completed"
    assert report.succeeded
    (dumped,) = orchestrator.execution_log.dumped
    assert dumped["kind"] == "execution"
    assert dumped["record"]["status"] == "success"


def _slow_confirmation(world, revert: bool = False):
    # longer than the swap receipt timeout, then included during the pre-retry pause
    world.relay.pending_polls = 70

    def land(seconds):
        if seconds == 30:
            world.relay.pending_polls = 0
            if revert:
                world.relay.revert_next(account(1), "0xd81b2f2e")
            world.relay.land_pending()

    world.clock.on_sleep = land


@pytest.mark.asyncio
async def test_late_confirmation_recorded_without_resubmitting(world):
    world.enroll(1, usdc=1_000 * USDC)
    _slow_confirmation(world)

    report = await world.orchestrator().run()

    first, settled = report.results
    assert first.stage == "confirm"
    assert first.error_type == "timeout"
    assert first.operation_hash
    assert settled.success
    assert settled.is_retry
    assert settled.retry_of == first.result_id
    assert settled.operation_hash == first.operation_hash
    assert len(world.relay.sent_for(account(1))) == 1
    assert [row["status"] for row in world.store.executions] == ["failed", "success"]
    assert report.volume == 49_900_000


@pytest.mark.asyncio
async def test_still_pending_operation_is_not_resubmitted(world):
    world.enroll(1, usdc=1_000 * USDC)
    world.relay.pending_polls = 10_000

    report = await world.orchestrator().run()

    first, retried = report.results
    assert first.stage == retried.stage == "confirm"
    assert not retried.success
    assert retried.error_type == "timeout"
    assert "not resubmitted" in retried.error
    assert len(world.relay.sent_for(account(1))) == 1
    assert report.volume == 0


@pytest.mark.asyncio
async def test_reverted_late_operation_is_resubmitted(world):
    world.enroll(1, usdc=1_000 * USDC)
    _slow_confirmation(world, revert=True)

    report = await world.orchestrator().run()

    first, retried = report.results
    assert first.stage == "confirm"
    assert retried.success
    assert retried.operation_hash != first.operation_hash
    assert len(world.relay.sent_for(account(1))) == 2


@pytest.mark.asyncio
async def test_unexpected_error_stays_with_one_account(world):
    for n in (1, 2, 3):
        world.enroll(n, usdc=1_000 * USDC)
    world.relay.fail_next(account(2), "send", httpx.DecodingError("malformed gzip body"))

    report = await world.orchestrator().run()

    assert report.status == "completed"
    failed = [result for result in report.results if not result.success]
    assert [(result.wallet_address, result.stage) for result in failed] == [(account(2), "submit")]
    assert {result.wallet_address for result in report.succeeded} == {account(1), account(2), account(3)}
    assert len(world.store.executions) == 4
    assert all(len(world.relay.sent_for(account(n))) == 1 for n in (1, 2, 3))
