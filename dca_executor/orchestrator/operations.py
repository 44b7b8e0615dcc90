from __future__ import annotations

from typing import Optional

from dca_executor.core.abi import encode_redeem_delegations
from dca_executor.core.exceptions import RunAborted
from dca_executor.core.retry import classify_error
from dca_executor.data.relay.provider import wait_for_receipt
from dca_executor.data.relay.schemas import OperationReceipt, PreparedOperation, RelayCall
from dca_executor.data.store.schemas import DelegationRecord
from dca_executor.orchestrator.context import RunContext
from dca_executor.orchestrator.delegation import ParsedDelegation
from dca_executor.orchestrator.models import ExecutionResult, WalletData, format_error_detail


def build_delegated_call(
    parsed: ParsedDelegation,
    delegation_manager: str,
    target: str,
    value: int,
    call_data: str,
) -> RelayCall:
    """Wrap one execution in a ``redeemDelegations`` call on the delegation manager."""
    data = encode_redeem_delegations(parsed.raw, target, value, call_data)
    return RelayCall(to=delegation_manager, data=data, value=0)


async def prepare(ctx: RunContext, calls: list[RelayCall], nonce: int, account: str) -> PreparedOperation:
    return await ctx.relay.prepare_operation(calls, nonce, account)


async def send_and_confirm(ctx: RunContext, prepared: PreparedOperation, timeout_sec: float) -> OperationReceipt:
    operation_hash = await ctx.relay.send_operation(prepared)
    return await confirm(ctx, operation_hash, timeout_sec)


async def confirm(ctx: RunContext, operation_hash: str, timeout_sec: float) -> OperationReceipt:
    return await wait_for_receipt(
        ctx.relay,
        operation_hash,
        timeout_sec=timeout_sec,
        poll_sec=ctx.settings.receipt_poll_sec,
        sleep=ctx.sleep,
        clock=ctx.monotonic,
    )


async def check_operator_funds(ctx: RunContext) -> int:
    """Native balance of the operator identity; below the floor the run cannot pay for anything."""
    settings = ctx.settings
    balance = await ctx.chain.native_balance(ctx.operator)
    floor = int(round(settings.min_operator_balance_native * 10**settings.native_decimals))
    if balance < floor:
        raise RunAborted(
            f"Operator {ctx.operator} balance {balance} below required {floor} (native base units)"
        )
    return balance


def failure_result(
    ctx: RunContext,
    wallet: WalletData,
    stage: str,
    error: BaseException | str,
    retry_count: int = 0,
    retry_of: Optional[str] = None,
    operation_hash: Optional[str] = None,
) -> ExecutionResult:
    classified = classify_error(error)
    return ExecutionResult(
        run_id=ctx.run_id,
        wallet_address=wallet.account,
        user_address=wallet.record.user_address,
        delegation_id=wallet.record.id,
        action=wallet.action,
        pair=wallet.pair,
        success=False,
        amount_in=wallet.swap_amount_after_fee,
        operation_hash=operation_hash,
        fee_collected=0,
        error_type=classified.category,
        error=classified.message,
        error_detail=format_error_detail(stage, classified.message, wallet.pair),
        stage=stage,
        retry_count=retry_count,
        last_error=classified.message,
        is_retry=retry_of is not None,
        retry_of=retry_of,
    )


def record_failure_result(
    ctx: RunContext,
    record: DelegationRecord,
    stage: str,
    error: BaseException | str,
    pair: str = "",
) -> ExecutionResult:
    """Failure for an account that never reached amount sizing."""
    classified = classify_error(error)
    return ExecutionResult(
        run_id=ctx.run_id,
        wallet_address=record.smart_account_address,
        user_address=record.user_address,
        delegation_id=record.id,
        action=ctx.decision.action if ctx.decision else "",
        pair=pair,
        success=False,
        error_type=classified.category,
        error=classified.message,
        error_detail=format_error_detail(stage, classified.message, pair or "n/a"),
        stage=stage,
        last_error=classified.message,
    )


def success_result(
    ctx: RunContext,
    wallet: WalletData,
    receipt: OperationReceipt,
    operation_hash: Optional[str],
    amount_out: Optional[int],
    retry_count: int = 0,
    retry_of: Optional[str] = None,
) -> ExecutionResult:
    return ExecutionResult(
        run_id=ctx.run_id,
        wallet_address=wallet.account,
        user_address=wallet.record.user_address,
        delegation_id=wallet.record.id,
        action=wallet.action,
        pair=wallet.pair,
        success=True,
        tx_hash=receipt.transaction_hash,
        operation_hash=operation_hash,
        amount_in=wallet.swap_amount_after_fee,
        amount_out=amount_out,
        fee_collected=wallet.fee,
        retry_count=retry_count,
        is_retry=retry_of is not None,
        retry_of=retry_of,
    )


__all__ = [
    "build_delegated_call",
    "check_operator_funds",
    "confirm",
    "failure_result",
    "prepare",
    "record_failure_result",
    "send_and_confirm",
    "success_result",
]
