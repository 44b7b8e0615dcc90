from __future__ import annotations

import asyncio
import json
import random
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from dca_executor.core.retry import RetryPolicy, with_retry
from dca_executor.data.store.provider import Store
from dca_executor.data.store.schemas import (
    STATUS_FAILED,
    STATUS_RETRY_FAILED,
    STATUS_SUCCESS,
    ExecutionRow,
    FailedAttemptRow,
    RunSummaryRow,
    utc_now,
)
from dca_executor.logging_utils import get_logger
from dca_executor.orchestrator.models import ExecutionResult, RunReport

logger = get_logger(__name__)

RETRY_PREFIX = "[RETRY] "


class ExecutionLog:
    """Append-only writer for execution rows, failure context and run summaries.

    Writes are retried with the DB policy; a write that still fails is dumped
    to the log as JSON so it can be replayed by hand, and never raised.
    """

    def __init__(
        self,
        store: Store,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        wall_clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.policy = policy or RetryPolicy(base_delay=0.5, max_delay=5.0)
        self.sleep = sleep
        self.rng = rng
        self.wall_clock = wall_clock
        self.dumped: list[Dict[str, Any]] = []

    async def _write(self, kind: str, record: Dict[str, Any], write: Callable[[], Awaitable[None]]) -> bool:
        outcome = await with_retry(write, self.policy, operation=f"db {kind}", sleep=self.sleep, rng=self.rng)
        if outcome.ok:
            return True
        self.dumped.append({"kind": kind, "record": record})
        logger.error(
            "Failed to write %s after %d attempt(s); manual recovery payload: %s",
            kind,
            outcome.attempts,
            json.dumps(record, sort_keys=True, default=str),
        )
        return False

    def execution_row(self, result: ExecutionResult, fear_greed_index: int) -> ExecutionRow:
        if result.success:
            status = STATUS_SUCCESS
        elif result.is_retry:
            status = STATUS_RETRY_FAILED
        else:
            status = STATUS_FAILED
        message = result.error
        if message and result.is_retry:
            message = RETRY_PREFIX + message
        return ExecutionRow(
            result_id=result.result_id,
            run_id=result.run_id,
            delegation_id=result.delegation_id,
            user_address=result.user_address,
            wallet_address=result.wallet_address,
            fear_greed_index=fear_greed_index,
            action=result.action,
            amount_in=str(result.amount_in),
            amount_out=str(result.amount_out) if result.amount_out is not None else None,
            fee_collected=str(result.fee_collected),
            tx_hash=result.tx_hash,
            status=status,
            error_message=message,
            error_type=result.error_type,
            error_detail=result.error_detail,
            retry_count=result.retry_count,
            last_error=result.last_error,
            retry_of=result.retry_of,
            created_at=self.wall_clock(),
        )

    async def record(self, result: ExecutionResult, fear_greed_index: int) -> bool:
        row = self.execution_row(result, fear_greed_index)
        written = await self._write("execution", row.as_record(), lambda: self.store.insert_execution(row))
        if not result.success:
            await self.record_failed_attempt(result)
        return written

    async def record_failed_attempt(self, result: ExecutionResult) -> bool:
        row = FailedAttemptRow(
            delegation_id=result.delegation_id,
            user_address=result.user_address,
            stage=result.stage or "unknown",
            error_type=result.error_type or "unknown",
            error_message=result.error or "",
            retryable=result.error_type not in (None, "revert"),
            context={
                "run_id": result.run_id,
                "result_id": result.result_id,
                "wallet_address": result.wallet_address,
                "pair": result.pair,
                "amount_in": str(result.amount_in),
                "retry_of": result.retry_of,
            },
            created_at=self.wall_clock(),
        )
        return await self._write("failed attempt", row.as_record(), lambda: self.store.insert_failed_attempt(row))

    async def record_run_summary(self, report: RunReport) -> bool:
        decision = report.decision
        row = RunSummaryRow(
            run_id=report.run_id,
            status=report.status,
            fear_greed_index=report.score,
            action=decision.action if decision else None,
            percentage=decision.percentage if decision else 0.0,
            processed=len(report.results),
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            volume=str(report.volume),
            fees=str(report.fees),
            created_at=self.wall_clock(),
        )
        return await self._write("run summary", row.as_record(), lambda: self.store.insert_run_summary(row))

    async def update_stats(self, volume: int, fees: int) -> bool:
        if volume <= 0:
            return False
        record = {"volume_delta": str(volume), "fees_delta": str(fees)}
        return await self._write("protocol stats", record, lambda: self.store.increment_protocol_stats(volume, fees))


__all__ = ["ExecutionLog", "RETRY_PREFIX"]
