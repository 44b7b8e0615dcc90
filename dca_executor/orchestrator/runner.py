from __future__ import annotations

import asyncio
import random
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from rich.console import Console

from dca_executor.config import EngineSettings
from dca_executor.core.retry import RetryPolicy, is_retryable
from dca_executor.data.chain.provider import ChainReader
from dca_executor.data.relay.provider import Relay
from dca_executor.data.routing.provider import RoutingProvider
from dca_executor.data.sentiment.provider import SentimentProvider
from dca_executor.data.store.provider import Store
from dca_executor.data.store.schemas import DelegationRecord, utc_now
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.approvals import run_approval_phase
from dca_executor.orchestrator.context import RunContext
from dca_executor.orchestrator.delegation import validate_delegation
from dca_executor.orchestrator.deployment import deploy_pending_accounts
from dca_executor.orchestrator.eligibility import ReferencePriceOracle, compute_eligibility
from dca_executor.orchestrator.execution_log import ExecutionLog
from dca_executor.orchestrator.idempotency import check_idempotency
from dca_executor.orchestrator.models import (
    RUN_ABORTED,
    RUN_COMPLETED,
    RUN_DRY_RUN,
    RUN_HOLD,
    SWAP_STAGES,
    ExecutionResult,
    RunReport,
    WalletData,
)
from dca_executor.orchestrator.nonce import NonceAllocator, PHASE_RETRY
from dca_executor.orchestrator.operations import check_operator_funds
from dca_executor.orchestrator.quotes import QuoteBudget
from dca_executor.orchestrator.state_machine import (
    STATE_ABORTED,
    STATE_CHECK_IDEMPOTENCY,
    STATE_CHECK_OPERATOR_FUNDS,
    STATE_COMPUTE_ELIGIBILITY,
    STATE_DECIDE,
    STATE_DEPLOY_PENDING_ACCOUNTS,
    STATE_DONE,
    STATE_FETCH_SIGNAL,
    STATE_FILTER_DELEGATIONS,
    STATE_HOLD,
    STATE_IDLE,
    STATE_RECORD_RESULTS,
    STATE_RETRY_TRANSIENT_FAILURES,
    STATE_RUN_APPROVAL_PHASE,
    STATE_RUN_SWAP_PHASE,
    STATE_SKIPPED,
    STATE_UPDATE_AGGREGATE_STATS,
    check_transition,
)
from dca_executor.orchestrator.submission import ConcurrentBatch, SequentialSafe, StageFailure, quote_stage
from dca_executor.orchestrator.trade_log import TradeLogger, print_previews
from dca_executor.policies.decision import decide

logger = get_logger(__name__)


def _new_run_id(now: datetime) -> str:
    return f"{now.strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:8]}"


def retry_candidates(results: List[ExecutionResult]) -> List[ExecutionResult]:
    """Swap-phase failures whose category says another attempt may succeed."""
    return [
        result
        for result in results
        if not result.success and result.stage in SWAP_STAGES and is_retryable(result.error_type)
    ]


class Orchestrator:
    """Drives one daily run through its states and returns the run report.

    Collaborators, clocks and sleep are injected so a whole run can execute
    in-process against mocks without waiting in real time.
    """

    def __init__(
        self,
        settings: EngineSettings,
        sentiment: SentimentProvider,
        chain: ChainReader,
        routing: RoutingProvider,
        relay: Relay,
        store: Store,
        wall_clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        log_dir: Optional[Path] = None,
        write_artifacts: bool = True,
        console: Optional[Console] = None,
    ) -> None:
        self.settings = settings
        self.sentiment = sentiment
        self.chain = chain
        self.routing = routing
        self.relay = relay
        self.store = store
        self.wall_clock = wall_clock
        self.monotonic = monotonic
        self.sleep = sleep
        self.rng = rng
        self.log_dir = log_dir
        self.write_artifacts = write_artifacts
        self.console = console
        self.execution_log = ExecutionLog(
            store,
            policy=RetryPolicy.from_settings(settings.retry, kind="db"),
            sleep=sleep,
            rng=rng,
            wall_clock=wall_clock,
        )

    def _transition(self, report: RunReport, target: str) -> None:
        check_transition(report.states[-1], target)
        report.enter(target)
        logger.info("[%s] -> %s", report.run_id, target)

    def _abort(self, report: RunReport, reason: str) -> RunReport:
        logger.error("Run aborted: %s", reason)
        self._transition(report, STATE_ABORTED)
        report.status = RUN_ABORTED
        report.reason = reason
        return report

    def _context(self, run_id: str, now: datetime) -> RunContext:
        return RunContext(
            settings=self.settings,
            chain=self.chain,
            routing=self.routing,
            relay=self.relay,
            store=self.store,
            run_id=run_id,
            allocator=NonceAllocator(int(now.timestamp() * 1000)),
            wall_clock=self.wall_clock,
            monotonic=self.monotonic,
            sleep=self.sleep,
            rng=self.rng,
            quote_budget=QuoteBudget(self.settings.max_quotes_per_run),
        )

    async def run(self, dry_run: bool = False, wallet: Optional[str] = None, force: bool = False) -> RunReport:
        now = self.wall_clock()
        run_id = _new_run_id(now)
        report = RunReport(run_id=run_id, started_at=now)
        report.enter(STATE_IDLE)
        ctx = self._context(run_id, now)
        logger.info("Starting run %s (dry_run=%s, wallet=%s, force=%s)", run_id, dry_run, wallet, force)

        if not dry_run:
            self._transition(report, STATE_CHECK_IDEMPOTENCY)
            verdict = await check_idempotency(self.store, now, force=force)
            if not verdict.proceed:
                self._transition(report, STATE_SKIPPED)
                report.status = verdict.status or STATE_SKIPPED.lower()
                report.reason = verdict.reason
                return report

        self._transition(report, STATE_CHECK_OPERATOR_FUNDS)
        try:
            balance = await check_operator_funds(ctx)
        except (RuntimeError, OSError) as exc:
            return self._abort(report, f"operator funds check failed: {exc}")
        logger.info("Operator %s native balance %d", ctx.operator, balance)

        self._transition(report, STATE_FETCH_SIGNAL)
        try:
            reading = await self.sentiment.fetch_index()
        except (RuntimeError, ValueError, OSError) as exc:
            return self._abort(report, f"sentiment unavailable: {exc}")
        report.score = ctx.score = reading.score

        self._transition(report, STATE_DECIDE)
        settings = self.settings
        decision = decide(reading.score, settings.thresholds, settings.strong_pct, settings.mild_pct)
        report.decision = ctx.decision = decision
        logger.info("Sentiment %d (%s): %s %.2f%%", reading.score, reading.classification, decision.action, decision.percentage)

        if decision.is_hold:
            self._transition(report, STATE_HOLD)
            report.status = RUN_HOLD
            report.reason = decision.reason
            if not dry_run:
                await self.execution_log.record_run_summary(report)
            return report

        self._transition(report, STATE_FILTER_DELEGATIONS)
        try:
            candidates = await self._filter_delegations(ctx, report, wallet)
        except (RuntimeError, OSError) as exc:
            return self._abort(report, f"could not load delegations: {exc}")

        if dry_run:
            return await self._dry_run(ctx, report, candidates)

        self._transition(report, STATE_DEPLOY_PENDING_ACCOUNTS)
        candidates, deploy_failures = await deploy_pending_accounts(ctx, candidates)
        report.results.extend(deploy_failures)

        self._transition(report, STATE_COMPUTE_ELIGIBILITY)
        oracle = ReferencePriceOracle(self.routing, settings, ctx.operator)
        eligibility = await compute_eligibility(candidates, decision, self.chain, settings, oracle)
        report.excluded.update(eligibility.rejected)

        self._transition(report, STATE_RUN_APPROVAL_PHASE)
        ready, approval_failures = await run_approval_phase(ctx, eligibility.eligible)
        report.results.extend(approval_failures)

        self._transition(report, STATE_RUN_SWAP_PHASE)
        swap_results = await ConcurrentBatch(ctx).execute(ready)
        report.results.extend(swap_results)

        trade_logger = self._trade_logger()
        self._transition(report, STATE_RECORD_RESULTS)
        for result in report.results:
            await self._record(result, reading.score, trade_logger)

        self._transition(report, STATE_RETRY_TRANSIENT_FAILURES)
        retried = await self._retry_transient(ctx, swap_results, ready)
        for result in retried:
            await self._record(result, reading.score, trade_logger)
        report.results.extend(retried)

        self._transition(report, STATE_UPDATE_AGGREGATE_STATS)
        report.volume = sum(result.amount_in for result in report.succeeded)
        report.fees = sum(result.fee_collected for result in report.succeeded)
        await self.execution_log.update_stats(report.volume, report.fees)
        report.status = RUN_COMPLETED
        await self.execution_log.record_run_summary(report)

        self._transition(report, STATE_DONE)
        if trade_logger is not None:
            trade_logger.write_summary(report)
            trade_logger.summarize(report)
            trade_logger.close()
        logger.info(
            "Run %s complete: %d succeeded, %d failed, volume %d, fees %d",
            run_id,
            len(report.succeeded),
            len(report.failed),
            report.volume,
            report.fees,
        )
        return report

    async def _filter_delegations(
        self, ctx: RunContext, report: RunReport, wallet: Optional[str]
    ) -> List[Tuple[int, DelegationRecord]]:
        records = await self.store.active_delegations(ctx.now())
        # stable account indices for the run's nonce keys
        records.sort(key=lambda record: (record.smart_account_address.lower(), record.id))
        if wallet:
            records = [record for record in records if record.smart_account_address.lower() == wallet.lower()]
            if not records:
                logger.warning("No active delegation for wallet %s", wallet)
        valid: List[Tuple[int, DelegationRecord]] = []
        seen: Dict[str, int] = {}
        for index, record in enumerate(records):
            account = record.smart_account_address.lower()
            if account in seen:
                report.excluded[record.smart_account_address] = "Duplicate delegation for account"
                continue
            _, check = validate_delegation(record, ctx.operator, ctx.now(), self.settings)
            if not check.valid:
                report.excluded[record.smart_account_address] = check.reason or "invalid delegation"
                logger.info("%s excluded: %s", record.smart_account_address, check.reason)
                continue
            seen[account] = index
            valid.append((index, record))
        logger.info("%d of %d delegations valid", len(valid), len(records))
        return valid

    async def _dry_run(
        self, ctx: RunContext, report: RunReport, candidates: List[Tuple[int, DelegationRecord]]
    ) -> RunReport:
        self._transition(report, STATE_COMPUTE_ELIGIBILITY)
        oracle = ReferencePriceOracle(self.routing, self.settings, ctx.operator)
        eligibility = await compute_eligibility(candidates, ctx.decision, self.chain, self.settings, oracle)
        report.excluded.update(eligibility.rejected)
        for wallet in eligibility.eligible:
            preview = {
                "account": wallet.account,
                "pair": wallet.pair,
                "amount_in": str(wallet.swap_amount),
                "fee": str(wallet.fee),
                "net": str(wallet.swap_amount_after_fee),
            }
            try:
                quote = await quote_stage(ctx, wallet, wallet.swap_amount_after_fee)
            except StageFailure as failure:
                preview["status"] = f"{failure.stage}: {failure.error}"
            else:
                preview.update(
                    expected_out=str(quote.expected_output),
                    min_out=str(quote.min_amount_out),
                    status=f"ok ({quote.slippage_bps} bps)",
                )
            report.previews.append(preview)
        self._transition(report, STATE_DONE)
        report.status = RUN_DRY_RUN
        if self.write_artifacts:
            print_previews(report.previews, self.console)
        return report

    async def _retry_transient(
        self, ctx: RunContext, swap_results: List[ExecutionResult], ready: List[WalletData]
    ) -> List[ExecutionResult]:
        candidates = retry_candidates(swap_results)
        if not candidates:
            return []
        retry = self.settings.retry
        cap = int(retry.get("end_of_run_max_wallets", 20))
        if len(candidates) > cap:
            logger.warning(
                "%d transient failures exceed the end-of-run retry cap of %d; skipping retries", len(candidates), cap
            )
            return []
        wallets = {wallet.account.lower(): wallet for wallet in ready}
        # swaps that timed out after sending are settled before any resubmission
        items = [
            (wallets[result.wallet_address.lower()], result.result_id, result.operation_hash) for result in candidates
        ]
        logger.info("Retrying %d transient failure(s) sequentially with original amounts", len(items))
        strategy = SequentialSafe(
            ctx,
            phase=PHASE_RETRY,
            item_delay_sec=retry.get("end_of_run_item_delay_sec", 2.0),
            initial_delay_sec=retry.get("end_of_run_initial_delay_sec", 30.0),
        )
        return await strategy.execute(items)

    def _trade_logger(self) -> Optional[TradeLogger]:
        if not self.write_artifacts:
            return None
        return TradeLogger(base_dir=self.log_dir or Path(self.settings.log_dir), console=self.console)

    async def _record(self, result: ExecutionResult, score: int, trade_logger: Optional[TradeLogger]) -> None:
        await self.execution_log.record(result, score)
        if trade_logger is not None:
            trade_logger.log(result)


__all__ = ["Orchestrator", "retry_candidates"]
