"""Swap submission strategies.

``ConcurrentBatch`` drives the daily swap phase: accounts are processed in
fixed-size batches and every pipeline step fans out across the batch.
``SequentialSafe`` handles the end-of-run retry and manual corrections: one
account at a time, re-checking the balance first and wrapping send+confirm in
the retry classifier. Both share the same stage primitives so failures carry
identical stage tags.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, List, Optional, Sequence, Tuple, TypeVar

from dca_executor.core.exceptions import InsufficientBalance, UpstreamTimeout
from dca_executor.core.retry import RetryPolicy, with_retry
from dca_executor.data.relay.schemas import OperationReceipt
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.context import RunContext
from dca_executor.orchestrator.delegation import parse_delegation
from dca_executor.orchestrator.models import (
    STAGE_BALANCE_CHECK,
    STAGE_CONFIRM,
    STAGE_DELEGATION_PARSE,
    STAGE_QUOTE_EXPIRED,
    STAGE_QUOTE_FETCH,
    STAGE_QUOTE_VALIDATION,
    STAGE_SUBMIT,
    STAGE_USEROP_PREPARE,
    ExecutionResult,
    PreparedSwap,
    SwapQuote,
    WalletData,
)
from dca_executor.orchestrator.nonce import PHASE_RETRY, PHASE_SWAP
from dca_executor.orchestrator.operations import (
    build_delegated_call,
    confirm,
    failure_result,
    prepare,
    success_result,
)
from dca_executor.orchestrator.quotes import ensure_fresh, fetch_quote, validate_quote

logger = get_logger(__name__)

T = TypeVar("T")

# any failure inside one account's pipeline stays with that account
CONTAINED_ERRORS = (Exception,)


class StageFailure(Exception):
    def __init__(self, stage: str, error: BaseException) -> None:
        super().__init__(f"[{stage}] {error}")
        self.stage = stage
        self.error = error


async def run_stage(stage: str, awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except CONTAINED_ERRORS as exc:
        raise StageFailure(stage, exc) from exc


async def quote_stage(ctx: RunContext, wallet: WalletData, amount: int) -> SwapQuote:
    quote, swap, slippage_bps = await run_stage(STAGE_QUOTE_FETCH, fetch_quote(ctx, wallet, amount))
    try:
        return validate_quote(quote, swap, slippage_bps, ctx.settings.routers, ctx.monotonic())
    except CONTAINED_ERRORS as exc:
        raise StageFailure(STAGE_QUOTE_VALIDATION, exc) from exc


async def prepare_stage(ctx: RunContext, wallet: WalletData, quote: SwapQuote, phase: int) -> PreparedSwap:
    try:
        parsed = parse_delegation(wallet.record.delegation_data)
        call = build_delegated_call(
            parsed,
            ctx.settings.delegation_manager,
            quote.call.to,
            quote.call.value_wei,
            quote.call.data,
        )
    except CONTAINED_ERRORS as exc:
        raise StageFailure(STAGE_DELEGATION_PARSE, exc) from exc
    try:
        nonce = ctx.allocator.nonce(phase, wallet.index, 0)
    except CONTAINED_ERRORS as exc:
        raise StageFailure(STAGE_USEROP_PREPARE, exc) from exc
    operation = await run_stage(STAGE_USEROP_PREPARE, prepare(ctx, [call], nonce, wallet.account))
    return PreparedSwap(wallet=wallet, quote=quote, nonce=nonce, operation=operation)


def freshness_stage(ctx: RunContext, item: PreparedSwap) -> None:
    try:
        ensure_fresh(item.quote, ctx.monotonic(), ctx.settings.quote_validity_sec)
    except CONTAINED_ERRORS as exc:
        raise StageFailure(STAGE_QUOTE_EXPIRED, exc) from exc


async def send_stage(ctx: RunContext, item: PreparedSwap) -> str:
    item.operation_hash = await run_stage(STAGE_SUBMIT, ctx.relay.send_operation(item.operation))
    return item.operation_hash


async def confirm_stage(ctx: RunContext, item: PreparedSwap) -> OperationReceipt:
    return await run_stage(
        STAGE_CONFIRM, confirm(ctx, item.operation_hash, ctx.settings.swap_receipt_timeout_sec)
    )


class ConcurrentBatch:
    name = "concurrent_batch"

    def __init__(self, ctx: RunContext, phase: int = PHASE_SWAP) -> None:
        self.ctx = ctx
        self.phase = phase

    async def execute(self, wallets: Sequence[WalletData]) -> List[ExecutionResult]:
        settings = self.ctx.settings
        results: List[ExecutionResult] = []
        batches = [wallets[i : i + settings.batch_size] for i in range(0, len(wallets), settings.batch_size)]
        for number, batch in enumerate(batches, start=1):
            logger.info("Batch %d/%d: %d account(s)", number, len(batches), len(batch))
            results.extend(await self.execute_batch(batch))
            if number < len(batches):
                await self.ctx.sleep(settings.batch_delay_sec)
        return results

    async def execute_batch(self, batch: Sequence[WalletData]) -> List[ExecutionResult]:
        ctx = self.ctx
        results: List[ExecutionResult] = []

        def _fail(item, failure: StageFailure) -> None:
            wallet = _wallet_of(item)
            # a sent operation may still land; keep its hash for the end-of-run retry
            operation_hash = item.operation_hash if isinstance(item, PreparedSwap) else None
            logger.warning("%s failed at %s: %s", wallet.account, failure.stage, failure.error)
            results.append(failure_result(ctx, wallet, failure.stage, failure.error, operation_hash=operation_hash))

        quoted = await _gather_stage(batch, lambda w: quote_stage(ctx, w, w.swap_amount_after_fee), _fail)
        prepared = await _gather_stage(
            quoted, lambda pair: prepare_stage(ctx, pair[0], pair[1], self.phase), _fail
        )

        fresh: List[PreparedSwap] = []
        for _, item in prepared:
            try:
                freshness_stage(ctx, item)
            except StageFailure as failure:
                _fail(item, failure)
                continue
            fresh.append(item)

        sent = await _gather_stage(fresh, lambda item: send_stage(ctx, item), _fail)
        confirmed = await _gather_stage([item for item, _ in sent], lambda item: confirm_stage(ctx, item), _fail)
        for item, receipt in confirmed:
            logger.info("%s swap confirmed: %s", item.wallet.account, receipt.transaction_hash)
            results.append(
                success_result(ctx, item.wallet, receipt, item.operation_hash, item.quote.expected_output)
            )
        return results


async def _gather_stage(items, step, on_failure) -> List[Tuple]:
    """Run ``step`` over ``items`` concurrently; return (item, value) for survivors.

    ``items`` may be wallets, prepared swaps, or (wallet, value) pairs from a
    previous stage; ``on_failure`` receives the item as passed.
    """

    async def _one(item):
        try:
            return item, await step(item), None
        except StageFailure as failure:
            return item, None, failure

    survivors = []
    for item, value, failure in await asyncio.gather(*(_one(item) for item in items)):
        if failure is not None:
            on_failure(item, failure)
        else:
            survivors.append((item, value))
    return survivors


def _wallet_of(item) -> WalletData:
    if isinstance(item, WalletData):
        return item
    if isinstance(item, PreparedSwap):
        return item.wallet
    return _wallet_of(item[0])


class SequentialSafe:
    name = "sequential_safe"

    def __init__(
        self,
        ctx: RunContext,
        phase: int = PHASE_RETRY,
        item_delay_sec: Optional[float] = None,
        initial_delay_sec: float = 0.0,
    ) -> None:
        self.ctx = ctx
        self.phase = phase
        retry = ctx.settings.retry
        self.item_delay_sec = item_delay_sec if item_delay_sec is not None else retry.get("end_of_run_item_delay_sec", 2.0)
        self.initial_delay_sec = initial_delay_sec
        self.submit_policy = RetryPolicy.from_settings(retry, kind="submit")

    async def execute(self, items: Sequence[Tuple]) -> List[ExecutionResult]:
        """Process ``(wallet, retry_of)`` pairs strictly one after another.

        A third element, when present, is the hash of an operation from an
        earlier attempt whose confirmation never arrived.
        """
        results: List[ExecutionResult] = []
        if not items:
            return results
        if self.initial_delay_sec > 0:
            logger.info("Waiting %.0fs before sequential processing", self.initial_delay_sec)
            await self.ctx.sleep(self.initial_delay_sec)
        for position, (wallet, retry_of, *in_flight) in enumerate(items):
            if position:
                await self.ctx.sleep(self.item_delay_sec)
            results.append(await self.execute_item(wallet, retry_of, in_flight[0] if in_flight else None))
        return results

    async def execute_item(
        self, wallet: WalletData, retry_of: Optional[str] = None, in_flight: Optional[str] = None
    ) -> ExecutionResult:
        ctx = self.ctx
        if in_flight:
            settled = await self._settle_in_flight(wallet, retry_of, in_flight)
            if settled is not None:
                return settled
        try:
            await run_stage(STAGE_BALANCE_CHECK, self._check_balance(wallet))
            quote = await quote_stage(ctx, wallet, wallet.swap_amount_after_fee)
            item = await prepare_stage(ctx, wallet, quote, self.phase)
            freshness_stage(ctx, item)
        except StageFailure as failure:
            logger.warning("%s failed at %s: %s", wallet.account, failure.stage, failure.error)
            return failure_result(ctx, wallet, failure.stage, failure.error, retry_of=retry_of)

        stage = [STAGE_SUBMIT]

        async def _send_and_confirm() -> OperationReceipt:
            # the prepared operation keeps its nonce across attempts
            stage[0] = STAGE_SUBMIT
            item.operation_hash = await ctx.relay.send_operation(item.operation)
            stage[0] = STAGE_CONFIRM
            return await confirm(ctx, item.operation_hash, ctx.settings.swap_receipt_timeout_sec)

        outcome = await with_retry(
            _send_and_confirm,
            self.submit_policy,
            operation=f"submit {wallet.account}",
            sleep=ctx.sleep,
            rng=ctx.rng,
        )
        if not outcome.ok:
            error = outcome.error.error or outcome.error.message
            return failure_result(
                ctx,
                wallet,
                stage[0],
                error,
                retry_count=outcome.attempts - 1,
                retry_of=retry_of,
                operation_hash=item.operation_hash,
            )
        logger.info("%s sequential swap confirmed: %s", wallet.account, outcome.result.transaction_hash)
        return success_result(
            ctx,
            wallet,
            outcome.result,
            item.operation_hash,
            quote.expected_output,
            retry_count=outcome.attempts - 1,
            retry_of=retry_of,
        )

    async def _settle_in_flight(
        self, wallet: WalletData, retry_of: Optional[str], operation_hash: str
    ) -> Optional[ExecutionResult]:
        """Resolve an earlier operation before anything new is sent for ``wallet``.

        Returns the final result when the earlier operation landed or its state
        is unknown, and ``None`` when it reverted and a fresh swap is safe.
        """
        ctx = self.ctx
        try:
            receipt = await ctx.relay.get_receipt(operation_hash)
        except Exception as exc:
            logger.warning("%s could not read receipt for %s: %s", wallet.account, operation_hash, exc)
            return failure_result(ctx, wallet, STAGE_CONFIRM, exc, retry_of=retry_of, operation_hash=operation_hash)
        if receipt is None:
            logger.warning("%s operation %s still pending; not resubmitting", wallet.account, operation_hash)
            pending = UpstreamTimeout(f"Operation {operation_hash} still pending; not resubmitted")
            return failure_result(ctx, wallet, STAGE_CONFIRM, pending, retry_of=retry_of, operation_hash=operation_hash)
        if receipt.success:
            logger.info("%s earlier operation landed late: %s", wallet.account, receipt.transaction_hash)
            return success_result(ctx, wallet, receipt, operation_hash, None, retry_of=retry_of)
        logger.info("%s earlier operation %s reverted; resubmitting", wallet.account, operation_hash)
        return None

    async def _check_balance(self, wallet: WalletData) -> None:
        balance = await self.ctx.chain.erc20_balance(wallet.token_in.address, wallet.account)
        if balance < wallet.swap_amount:
            raise InsufficientBalance(
                f"Insufficient balance for retry: have {balance}, need {wallet.swap_amount} {wallet.token_in.symbol}"
            )


__all__ = [
    "CONTAINED_ERRORS",
    "ConcurrentBatch",
    "SequentialSafe",
    "StageFailure",
    "confirm_stage",
    "freshness_stage",
    "prepare_stage",
    "quote_stage",
    "run_stage",
    "send_stage",
]
