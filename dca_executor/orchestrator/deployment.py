from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

from dca_executor.core.exceptions import RejectedError
from dca_executor.data.relay.schemas import RelayCall
from dca_executor.data.store.schemas import DelegationRecord
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.context import RunContext
from dca_executor.orchestrator.models import STAGE_DEPLOY, ExecutionResult
from dca_executor.orchestrator.nonce import PHASE_DEPLOY
from dca_executor.orchestrator.operations import prepare, record_failure_result, send_and_confirm
from dca_executor.policies.decision import ACTION_BUY

logger = get_logger(__name__)


class DeploymentMismatch(RejectedError):
    """Computed counterfactual address differs from the enrolled account."""


def _is_deployed(code: Optional[str]) -> bool:
    return bool(code) and code not in ("0x", "0x0")


def pair_label(ctx: RunContext, record: DelegationRecord) -> str:
    try:
        target = ctx.settings.target_token(record.target_asset)
    except ValueError:
        return ""
    usdc = ctx.settings.usdc
    if ctx.decision.action == ACTION_BUY:
        return f"{usdc.symbol}→{target.symbol}"
    return f"{target.symbol}→{usdc.symbol}"


async def deploy_account(ctx: RunContext, index: int, record: DelegationRecord) -> bool:
    """Materialize the account if needed; returns True when a deployment was sent."""
    account = record.smart_account_address
    if _is_deployed(await ctx.chain.get_code(account)):
        return False

    logger.info("%s not deployed; deploying for owner %s", account, record.user_address)
    counterfactual = await ctx.relay.counterfactual_account(record.user_address, ctx.settings.account_factory)
    if counterfactual.address.lower() != account.lower():
        raise DeploymentMismatch(
            f"Counterfactual address {counterfactual.address} does not match enrolled account {account}"
        )
    nonce = ctx.allocator.nonce(PHASE_DEPLOY, index, 0)
    call = RelayCall(to=counterfactual.factory, data=counterfactual.factory_data, value=0)
    prepared = await prepare(ctx, [call], nonce, account)
    receipt = await send_and_confirm(ctx, prepared, ctx.settings.approval_receipt_timeout_sec)
    if not _is_deployed(await ctx.chain.get_code(account)):
        raise RejectedError(f"Deployment confirmed ({receipt.transaction_hash}) but no code at {account}")
    logger.info("%s deployed (%s)", account, receipt.transaction_hash)
    return True


async def deploy_pending_accounts(
    ctx: RunContext,
    records: List[Tuple[int, DelegationRecord]],
) -> Tuple[List[Tuple[int, DelegationRecord]], List[ExecutionResult]]:
    async def _one(index: int, record: DelegationRecord) -> Optional[ExecutionResult]:
        try:
            await deploy_account(ctx, index, record)
        except Exception as exc:
            logger.error("%s deployment failed: %s", record.smart_account_address, exc)
            return record_failure_result(ctx, record, STAGE_DEPLOY, exc, pair_label(ctx, record))
        return None

    outcomes = await asyncio.gather(*(_one(index, record) for index, record in records))
    ready = [entry for entry, failure in zip(records, outcomes) if failure is None]
    failures = [failure for failure in outcomes if failure is not None]
    return ready, failures


__all__ = ["DeploymentMismatch", "deploy_account", "deploy_pending_accounts", "pair_label"]
