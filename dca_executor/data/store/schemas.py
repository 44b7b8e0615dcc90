from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_RETRY_FAILED = "retry_failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DelegationRecord(BaseModel):
    """Enrollment row; the engine only ever reads these."""

    id: str
    user_address: str
    smart_account_address: str
    delegation_data: Union[str, Dict[str, Any]]
    max_amount_per_swap: int
    expires_at: datetime
    created_at: Optional[datetime] = None
    target_asset: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("max_amount_per_swap", mode="before")
    @classmethod
    def _numeric_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return int(value.split(".")[0])
        if isinstance(value, float):
            return int(value)
        return value

    @field_validator("id", mode="before")
    @classmethod
    def _id_text(cls, value: Any) -> Any:
        return str(value)

    @field_validator("expires_at", "created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value) if value is not None else None

    def delegation_payload(self) -> Dict[str, Any]:
        if isinstance(self.delegation_data, str):
            return json.loads(self.delegation_data)
        return dict(self.delegation_data)


class ExecutionRow(BaseModel):
    """One append-only row of the execution log (``dca_executions``)."""

    result_id: str
    run_id: str
    delegation_id: Optional[str] = None
    user_address: str
    wallet_address: Optional[str] = None
    fear_greed_index: int
    action: str
    amount_in: str
    amount_out: Optional[str] = None
    fee_collected: str = "0"
    tx_hash: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    error_detail: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    def as_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class FailedAttemptRow(BaseModel):
    delegation_id: Optional[str] = None
    user_address: str
    stage: str
    error_type: str
    error_message: str
    retryable: bool
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    def as_record(self) -> Dict[str, Any]:
        record = self.model_dump(mode="json")
        record["context"] = json.dumps(record["context"], sort_keys=True, default=str)
        return record


class RunSummaryRow(BaseModel):
    run_id: str
    status: str
    fear_greed_index: Optional[int] = None
    action: Optional[str] = None
    percentage: float = 0.0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    volume: str = "0"
    fees: str = "0"
    created_at: datetime = Field(default_factory=utc_now)

    def as_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class HistoryEntry(BaseModel):
    """Per-owner execution-history feed row, newest first."""

    action: str
    amount_in: str
    amount_out: Optional[str] = None
    fear_greed_index: int
    status: str
    error_message: Optional[str] = None
    tx_hash: Optional[str] = None
    timestamp: datetime

    model_config = ConfigDict(extra="ignore")
