from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Protocol

from pydantic import ValidationError

from dca_executor.core.exceptions import NetworkError, UpstreamBadResponse
from dca_executor.core.http import ProviderHttpClient
from dca_executor.data.sentiment.request_factory import SentimentRequestFactory
from dca_executor.data.sentiment.schemas import FearGreedResponse, SentimentReading


class SentimentProvider(Protocol):
    async def fetch_index(self) -> SentimentReading:
        ...


@dataclass(frozen=True)
class SentimentSettings:
    base_url: str
    live: bool

    @classmethod
    def from_env(cls) -> "SentimentSettings":
        base_url = os.getenv("SENTIMENT_BASE_URL", "https://api.alternative.me").strip().rstrip("/")
        live_flag = os.getenv("SENTIMENT_LIVE", "0").strip().lower() in {"1", "true", "yes"}
        return cls(base_url=base_url, live=live_flag)


def _parse_index(payload) -> SentimentReading:
    try:
        response = FearGreedResponse.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamBadResponse("Sentiment index response invalid") from exc
    if not response.data:
        raise UpstreamBadResponse("Sentiment index response has no data")
    entry = response.data[0]
    if not 0 <= entry.value <= 100:
        raise UpstreamBadResponse(f"Sentiment index out of range: {entry.value}")
    return SentimentReading(score=entry.value, classification=entry.value_classification, timestamp=entry.timestamp)


class FearGreedProvider:
    def __init__(self, settings: SentimentSettings, http_client: Optional[ProviderHttpClient] = None) -> None:
        self.settings = settings
        self.request_factory = SentimentRequestFactory(base_url=settings.base_url)
        self._client = http_client or ProviderHttpClient("sentiment", rps=1.0)
        self._owns_client = http_client is None

    async def __aenter__(self) -> "FearGreedProvider":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client:
            await self._client.__aexit__(exc_type, exc, tb)

    async def fetch_index(self) -> SentimentReading:
        payload = await self._client.request(self.request_factory.build_index_request())
        return _parse_index(payload)


class MockSentimentProvider:
    def __init__(self, score: int = 50, classification: str = "Neutral", error_mode: Optional[str] = None) -> None:
        self.score = score
        self.classification = classification
        self.error_mode = error_mode
        self.calls = 0

    async def fetch_index(self) -> SentimentReading:
        self.calls += 1
        if self.error_mode == "offline":
            raise NetworkError("Sentiment feed connection refused")
        if self.error_mode == "malformed":
            return _parse_index({"data": []})
        return _parse_index({"data": [{"value": str(self.score), "value_classification": self.classification}]})


def get_sentiment_provider(settings: Optional[SentimentSettings] = None, http_client: Optional[ProviderHttpClient] = None):
    cfg = settings or SentimentSettings.from_env()
    if cfg.live:
        return FearGreedProvider(cfg, http_client=http_client)
    return MockSentimentProvider()


__all__ = [
    "FearGreedProvider",
    "MockSentimentProvider",
    "SentimentProvider",
    "SentimentSettings",
    "get_sentiment_provider",
]
