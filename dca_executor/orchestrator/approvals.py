from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple

from dca_executor.core.abi import MAX_UINT160, MAX_UINT256, erc20_approve, permit2_approve
from dca_executor.core.exceptions import UpstreamError
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.context import RunContext
from dca_executor.orchestrator.delegation import parse_delegation
from dca_executor.orchestrator.models import STAGE_APPROVAL, ExecutionResult, WalletData
from dca_executor.orchestrator.nonce import PHASE_APPROVAL
from dca_executor.orchestrator.operations import build_delegated_call, failure_result, prepare, send_and_confirm

logger = get_logger(__name__)

SUB_STEP_ERC20 = 0
SUB_STEP_PERMIT2 = 1


@dataclass(frozen=True)
class ApprovalNeeds:
    erc20: bool
    permit2: bool

    @property
    def any(self) -> bool:
        return self.erc20 or self.permit2


async def check_approvals(ctx: RunContext, account: str, token: str) -> ApprovalNeeds:
    """Read both allowance layers; a failed read counts as a missing grant."""
    settings = ctx.settings
    router = settings.routers[0]
    erc20_read, permit2_read = await asyncio.gather(
        ctx.chain.erc20_allowance(token, account, settings.permit2),
        ctx.chain.permit2_allowance(settings.permit2, account, token, router),
        return_exceptions=True,
    )
    if isinstance(erc20_read, UpstreamError):
        logger.warning("%s: ERC20 allowance read failed (%s); treating as missing", account, erc20_read)
        needs_erc20 = True
    elif isinstance(erc20_read, BaseException):
        raise erc20_read
    else:
        needs_erc20 = erc20_read <= 0
    if isinstance(permit2_read, UpstreamError):
        logger.warning("%s: Permit2 allowance read failed (%s); treating as missing", account, permit2_read)
        needs_permit2 = True
    elif isinstance(permit2_read, BaseException):
        raise permit2_read
    else:
        needs_permit2 = not permit2_read.is_active(ctx.now_ts())
    return ApprovalNeeds(erc20=needs_erc20, permit2=needs_permit2)


async def ensure_approvals(ctx: RunContext, wallet: WalletData, phase: int = PHASE_APPROVAL) -> ApprovalNeeds:
    """Grant whichever allowance layers are missing, ERC20 first, confirming each."""
    settings = ctx.settings
    token = wallet.token_in.address
    needs = await check_approvals(ctx, wallet.account, token)
    if not needs.any:
        return needs

    parsed = parse_delegation(wallet.record.delegation_data)
    steps: List[Tuple[int, str, str, str]] = []
    if needs.erc20:
        steps.append((SUB_STEP_ERC20, "erc20", token, erc20_approve(settings.permit2, MAX_UINT256)))
    if needs.permit2:
        expiration = int((ctx.now() + timedelta(days=settings.permit2_expiry_days)).timestamp())
        steps.append(
            (
                SUB_STEP_PERMIT2,
                "permit2",
                settings.permit2,
                permit2_approve(token, settings.routers[0], MAX_UINT160, expiration),
            )
        )
    for sub_step, label, target, call_data in steps:
        nonce = ctx.allocator.nonce(phase, wallet.index, sub_step)
        call = build_delegated_call(parsed, settings.delegation_manager, target, 0, call_data)
        prepared = await prepare(ctx, [call], nonce, wallet.account)
        receipt = await send_and_confirm(ctx, prepared, settings.approval_receipt_timeout_sec)
        logger.info("%s: %s approval confirmed (%s)", wallet.account, label, receipt.transaction_hash)
    return needs


async def run_approval_phase(
    ctx: RunContext,
    wallets: List[WalletData],
    phase: int = PHASE_APPROVAL,
) -> Tuple[List[WalletData], List[ExecutionResult]]:
    """Approve every account concurrently; failed accounts sit out the swap phase."""

    async def _one(wallet: WalletData) -> Optional[ExecutionResult]:
        try:
            needs = await ensure_approvals(ctx, wallet, phase)
        except Exception as exc:
            logger.error("%s: approval failed: %s", wallet.account, exc)
            return failure_result(ctx, wallet, STAGE_APPROVAL, exc)
        if not needs.any:
            logger.debug("%s: approvals already in place", wallet.account)
        return None

    outcomes = await asyncio.gather(*(_one(wallet) for wallet in wallets))
    ready = [wallet for wallet, failure in zip(wallets, outcomes) if failure is None]
    failures = [failure for failure in outcomes if failure is not None]
    logger.info("Approval phase: %d ready, %d failed", len(ready), len(failures))
    return ready, failures


__all__ = ["ApprovalNeeds", "check_approvals", "ensure_approvals", "run_approval_phase"]
