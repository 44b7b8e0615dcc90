from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class RelayCall(BaseModel):
    to: str
    data: str
    value: int = 0

    def as_rpc(self) -> Dict[str, Any]:
        return {"to": self.to, "value": hex(self.value), "data": self.data}


class PreparedOperation(BaseModel):
    hash: str
    operation: Dict[str, Any]
    account: str = ""
    nonce: int = 0

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class OperationReceipt(BaseModel):
    success: bool
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")
    reason: Optional[str] = None
    revert_data: Optional[str] = Field(default=None, alias="revertData")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class CounterfactualAccount(BaseModel):
    address: str
    factory: str
    factory_data: str = Field(alias="factoryData")

    model_config = ConfigDict(populate_by_name=True, extra="allow")
