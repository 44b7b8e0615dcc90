from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class TokenAmount(BaseModel):
    amount: str
    token: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ClassicQuote(BaseModel):
    input: TokenAmount
    output: TokenAmount
    swapper: Optional[str] = None
    chain_id: Optional[int] = Field(default=None, alias="chainId")
    slippage: Optional[float] = None
    gas_fee_usd: Optional[str] = Field(default=None, alias="gasFeeUSD")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class QuoteResponse(BaseModel):
    request_id: Optional[str] = Field(default=None, alias="requestId")
    routing: Optional[str] = None
    quote: ClassicQuote
    permit_data: Optional[Dict[str, Any]] = Field(default=None, alias="permitData")
    permit_transaction: Optional[Dict[str, Any]] = Field(default=None, alias="permitTransaction")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def output_amount(self) -> int:
        return int(self.quote.output.amount or 0)


class SwapCall(BaseModel):
    to: str
    data: str
    value: str = "0x0"
    from_: Optional[str] = Field(default=None, alias="from")
    gas_limit: Optional[str] = Field(default=None, alias="gasLimit")
    chain_id: Optional[int] = Field(default=None, alias="chainId")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def value_wei(self) -> int:
        text = self.value or "0"
        return int(text, 16) if text.startswith("0x") else int(text)


class SwapResponse(BaseModel):
    request_id: Optional[str] = Field(default=None, alias="requestId")
    swap: SwapCall

    model_config = ConfigDict(populate_by_name=True, extra="allow")
