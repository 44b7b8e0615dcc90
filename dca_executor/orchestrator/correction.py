"""Manual correction batch.

Reverses or tops up positions for a hand-supplied list of accounts, e.g. after
a duplicate execution. Each target names the account, the asset pair and the
amount (in whole tokens) to move; the amount is clamped to the live balance.
No fee is charged. Swaps go through ``SequentialSafe`` under the correction
nonce phase so they can never collide with a daily run's keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from dca_executor.core.exceptions import UpstreamError
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.approvals import run_approval_phase
from dca_executor.orchestrator.context import RunContext
from dca_executor.orchestrator.delegation import validate_delegation
from dca_executor.orchestrator.eligibility import ReferencePriceOracle
from dca_executor.orchestrator.execution_log import ExecutionLog
from dca_executor.orchestrator.models import ExecutionResult, WalletData
from dca_executor.orchestrator.nonce import PHASE_CORRECTION
from dca_executor.orchestrator.operations import check_operator_funds
from dca_executor.orchestrator.submission import SequentialSafe

logger = get_logger(__name__)

CORRECTION_NOTE = "Manual correction. No fee charged."


class CorrectionTarget(BaseModel):
    wallet: str
    token_in: str
    token_out: str
    amount: float

    @field_validator("token_in", "token_out")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("amount")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("amount must be positive")
        return value


def load_targets(path: Path | str) -> List[CorrectionTarget]:
    """Read a YAML or JSON list of correction targets."""
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or []
    if isinstance(data, dict):
        data = data.get("targets", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of targets")
    try:
        return [CorrectionTarget.model_validate(item) for item in data]
    except ValidationError as exc:
        raise ValueError(f"{path}: invalid correction target: {exc}") from exc


@dataclass
class CorrectionReport:
    run_id: str
    dry_run: bool
    planned: List[WalletData] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    results: List[ExecutionResult] = field(default_factory=list)
    previews: List[Dict[str, str]] = field(default_factory=list)


async def _plan(ctx: RunContext, targets: List[CorrectionTarget], report: CorrectionReport) -> List[WalletData]:
    settings = ctx.settings
    records = await ctx.store.active_delegations(ctx.now())
    valid = {}
    for record in records:
        _, check = validate_delegation(record, ctx.operator, ctx.now(), settings)
        if check.valid:
            valid[record.smart_account_address.lower()] = record
    logger.info("Valid delegations found: %d", len(valid))

    oracle = ReferencePriceOracle(ctx.routing, settings, ctx.operator)
    planned: List[WalletData] = []
    for index, target in enumerate(targets):
        record = valid.get(target.wallet.lower())
        if record is None:
            report.skipped[target.wallet] = "No valid delegation found"
            continue
        token_in = settings.tokens.get(target.token_in)
        token_out = settings.tokens.get(target.token_out)
        if token_in is None or token_out is None or token_in.key == token_out.key:
            report.skipped[target.wallet] = f"Unsupported pair {target.token_in}->{target.token_out}"
            continue
        try:
            balance = await ctx.chain.erc20_balance(token_in.address, record.smart_account_address)
            price = 1.0 if token_in.key == "usdc" else await oracle.price_usd(token_in)
        except UpstreamError as exc:
            report.skipped[target.wallet] = f"Balance read failed: {exc}"
            continue
        amount = min(token_in.to_base_units(target.amount), balance)
        if amount <= 0:
            report.skipped[target.wallet] = f"No {token_in.symbol} balance to swap"
            continue
        planned.append(
            WalletData(
                record=record,
                account=record.smart_account_address,
                index=index,
                token_in=token_in,
                token_out=token_out,
                balance=balance,
                swap_amount=amount,
                fee=0,
                swap_amount_after_fee=amount,
                total_value_usd=token_in.to_human(balance) * price,
                swap_value_usd=token_in.to_human(amount) * price,
            )
        )
    return planned


async def run_correction(
    ctx: RunContext,
    targets: List[CorrectionTarget],
    dry_run: bool = False,
    execution_log: ExecutionLog | None = None,
) -> CorrectionReport:
    report = CorrectionReport(run_id=ctx.run_id, dry_run=dry_run)
    await check_operator_funds(ctx)
    report.planned = await _plan(ctx, targets, report)
    for wallet in report.planned:
        report.previews.append(
            {
                "account": wallet.account,
                "pair": wallet.pair,
                "amount_in": str(wallet.swap_amount),
                "fee": "0",
                "net": str(wallet.swap_amount_after_fee),
                "status": "planned",
            }
        )
    if dry_run or not report.planned:
        logger.info("Correction %s: %d planned, nothing submitted", "preview" if dry_run else "batch", len(report.planned))
        return report

    ready, failures = await run_approval_phase(ctx, report.planned)
    report.results.extend(failures)
    strategy = SequentialSafe(ctx, phase=PHASE_CORRECTION)
    report.results.extend(await strategy.execute([(wallet, None) for wallet in ready]))

    log = execution_log or ExecutionLog(ctx.store, sleep=ctx.sleep, rng=ctx.rng, wall_clock=ctx.wall_clock)
    for result in report.results:
        if result.success:
            result.error = CORRECTION_NOTE
        await log.record(result, fear_greed_index=0)
    succeeded = sum(1 for result in report.results if result.success)
    logger.info("Correction complete: %d/%d succeeded", succeeded, len(report.results))
    return report


__all__ = ["CORRECTION_NOTE", "CorrectionReport", "CorrectionTarget", "load_targets", "run_correction"]
