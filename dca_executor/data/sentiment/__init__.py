from dca_executor.data.sentiment.provider import (
    FearGreedProvider,
    MockSentimentProvider,
    SentimentProvider,
    SentimentSettings,
    get_sentiment_provider,
)
from dca_executor.data.sentiment.request_factory import SentimentRequestFactory
from dca_executor.data.sentiment.schemas import FearGreedResponse, SentimentReading

__all__ = [
    "FearGreedProvider",
    "FearGreedResponse",
    "MockSentimentProvider",
    "SentimentProvider",
    "SentimentReading",
    "SentimentRequestFactory",
    "SentimentSettings",
    "get_sentiment_provider",
]
