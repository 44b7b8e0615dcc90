from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dca_executor.config import TokenInfo
from dca_executor.data.routing.schemas import QuoteResponse, SwapCall
from dca_executor.data.store.schemas import DelegationRecord
from dca_executor.policies.decision import Decision

STAGE_QUOTE_FETCH = "quote_fetch"
STAGE_QUOTE_VALIDATION = "quote_validation"
STAGE_DELEGATION_PARSE = "delegation_parse"
STAGE_USEROP_PREPARE = "userop_prepare"
STAGE_QUOTE_EXPIRED = "quote_expired"
STAGE_SUBMIT = "submit"
STAGE_CONFIRM = "confirm"
STAGE_BALANCE_CHECK = "balance_check"
STAGE_APPROVAL = "approval"
STAGE_DEPLOY = "deploy"

# failures in these stages belong to the swap phase and may be retried at end of run
SWAP_STAGES = frozenset(
    {
        STAGE_QUOTE_FETCH,
        STAGE_QUOTE_VALIDATION,
        STAGE_DELEGATION_PARSE,
        STAGE_USEROP_PREPARE,
        STAGE_QUOTE_EXPIRED,
        STAGE_SUBMIT,
        STAGE_CONFIRM,
    }
)

RUN_COMPLETED = "completed"
RUN_HOLD = "hold"
RUN_DRY_RUN = "dry_run"
RUN_SKIPPED_ALREADY_RAN = "skipped_already_ran"
RUN_SKIPPED_FAIL_CLOSED = "skipped_fail_closed"
RUN_ABORTED = "aborted"


def format_error_detail(stage: str, reason: str, pair: str) -> str:
    return f"[{stage}] {reason} | Pair: {pair}"


@dataclass
class WalletData:
    """Per-account amounts computed once per run and reused verbatim on retry."""

    record: DelegationRecord
    account: str
    index: int
    token_in: TokenInfo
    token_out: TokenInfo
    balance: int
    swap_amount: int
    fee: int
    swap_amount_after_fee: int
    total_value_usd: float
    swap_value_usd: float

    @property
    def pair(self) -> str:
        return f"{self.token_in.symbol}→{self.token_out.symbol}"

    @property
    def action(self) -> str:
        # spending the funding asset accumulates, receiving it reduces
        return "buy" if self.token_in.key == "usdc" else "sell"


@dataclass
class SwapQuote:
    quote: QuoteResponse
    call: SwapCall
    expected_output: int
    min_amount_out: int
    slippage_bps: int
    acquired_at: float

    def is_fresh(self, now: float, validity_sec: float) -> bool:
        return (now - self.acquired_at) <= validity_sec


@dataclass
class PreparedSwap:
    wallet: WalletData
    quote: SwapQuote
    nonce: int
    operation: Any = None
    operation_hash: Optional[str] = None


class ExecutionResult(BaseModel):
    result_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    run_id: str
    wallet_address: str
    user_address: str
    delegation_id: Optional[str] = None
    action: str
    pair: str = ""
    success: bool
    tx_hash: Optional[str] = None
    operation_hash: Optional[str] = None
    amount_in: int = 0
    amount_out: Optional[int] = None
    fee_collected: int = 0
    error_type: Optional[str] = None
    error: Optional[str] = None
    error_detail: Optional[str] = None
    stage: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    is_retry: bool = False
    retry_of: Optional[str] = None


@dataclass
class RunReport:
    run_id: str
    started_at: datetime
    status: str = RUN_COMPLETED
    states: List[str] = field(default_factory=list)
    decision: Optional[Decision] = None
    score: Optional[int] = None
    results: List[ExecutionResult] = field(default_factory=list)
    excluded: Dict[str, str] = field(default_factory=dict)
    volume: int = 0
    fees: int = 0
    reason: Optional[str] = None
    previews: List[Dict[str, Any]] = field(default_factory=list)

    def enter(self, state: str) -> None:
        self.states.append(state)

    @property
    def succeeded(self) -> List[ExecutionResult]:
        return [result for result in self.results if result.success]

    @property
    def failed(self) -> List[ExecutionResult]:
        return [result for result in self.results if not result.success]

    def summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "reason": self.reason,
            "score": self.score,
            "action": self.decision.action if self.decision else None,
            "percentage": self.decision.percentage if self.decision else None,
            "states": list(self.states),
            "processed": len(self.results),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "retried": sum(1 for result in self.results if result.is_retry),
            "excluded": dict(self.excluded),
            "volume": str(self.volume),
            "fees": str(self.fees),
        }


__all__ = [
    "ExecutionResult",
    "PreparedSwap",
    "RUN_ABORTED",
    "RUN_COMPLETED",
    "RUN_DRY_RUN",
    "RUN_HOLD",
    "RUN_SKIPPED_ALREADY_RAN",
    "RUN_SKIPPED_FAIL_CLOSED",
    "RunReport",
    "STAGE_APPROVAL",
    "STAGE_BALANCE_CHECK",
    "STAGE_CONFIRM",
    "STAGE_DELEGATION_PARSE",
    "STAGE_DEPLOY",
    "STAGE_QUOTE_EXPIRED",
    "STAGE_QUOTE_FETCH",
    "STAGE_QUOTE_VALIDATION",
    "STAGE_SUBMIT",
    "STAGE_USEROP_PREPARE",
    "SWAP_STAGES",
    "SwapQuote",
    "WalletData",
    "format_error_detail",
]
