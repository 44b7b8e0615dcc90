from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FearGreedEntry(BaseModel):
    value: int
    value_classification: str
    timestamp: Optional[int] = None
    time_until_update: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class FearGreedResponse(BaseModel):
    name: Optional[str] = None
    data: List[FearGreedEntry]

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class SentimentReading(BaseModel):
    score: int = Field(ge=0, le=100)
    classification: str
    timestamp: Optional[int] = None
