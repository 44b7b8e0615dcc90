"""Failure classification and retry with exponential backoff.

Every failure crossing a collaborator boundary is mapped onto one of six
categories. Typed errors raised by the adapters carry their category
directly; anything else (an untyped exception from a library we do not wrap)
falls back to ordered message-substring rules so classification stays
deterministic for a given error.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from dca_executor.core.exceptions import (
    CATEGORY_NETWORK,
    CATEGORY_QUOTE_EXPIRED,
    CATEGORY_RATE_LIMIT,
    CATEGORY_REVERT,
    CATEGORY_TIMEOUT,
    CATEGORY_UNKNOWN,
    RETRYABLE_CATEGORIES,
)
from dca_executor.logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_NETWORK_MARKERS = ("fetch", "network", "econnrefused", "enotfound", "socket", "connection")
_TIMEOUT_MARKERS = ("timeout", "timed out")
_RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests", "exceeded")
_REVERT_MARKERS = (
    "aa10",
    "aa23",
    "aa24",
    "aa25",
    "aa31",
    "aa33",
    "useroperation reverted",
    "out of gas",
    "signature error",
    "invalid delegation",
    "delegation missing signature",
    "revert",
    "insufficient",
    "transfer amount exceeds",
)


@dataclass(frozen=True)
class ClassifiedError:
    category: str
    message: str
    retryable: bool
    error: Optional[BaseException] = None


def _classify_message(message: str) -> str:
    text = message.lower()
    if any(marker in text for marker in _NETWORK_MARKERS):
        return CATEGORY_NETWORK
    if any(marker in text for marker in _TIMEOUT_MARKERS):
        return CATEGORY_TIMEOUT
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return CATEGORY_RATE_LIMIT
    if "quote" in text and ("expired" in text or "stale" in text):
        return CATEGORY_QUOTE_EXPIRED
    if any(marker in text for marker in _REVERT_MARKERS):
        return CATEGORY_REVERT
    return CATEGORY_UNKNOWN


def classify_error(error: BaseException | str) -> ClassifiedError:
    if isinstance(error, str):
        category = _classify_message(error)
        return ClassifiedError(category, error, category in RETRYABLE_CATEGORIES)
    message = str(error) or error.__class__.__name__
    category = getattr(error, "category", None)
    if category is None:
        if isinstance(error, asyncio.TimeoutError):
            category = CATEGORY_TIMEOUT
        elif isinstance(error, ConnectionError):
            category = CATEGORY_NETWORK
        else:
            category = _classify_message(message)
    # an error may opt out of retries its category would otherwise allow
    retryable = getattr(error, "retryable", True) and category in RETRYABLE_CATEGORIES
    return ClassifiedError(category, message, retryable, error)


def is_retryable(category: Optional[str]) -> bool:
    return category in RETRYABLE_CATEGORIES


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.2

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Backoff before attempt ``attempt + 1`` (attempt is 1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        roll = (rng or random).random()
        return max(0.0, delay * (1.0 + self.jitter * (2.0 * roll - 1.0)))

    @classmethod
    def from_settings(cls, retry: dict, kind: str = "default") -> "RetryPolicy":
        attempts = int(retry.get("max_attempts", 3))
        jitter = float(retry.get("jitter", 0.2))
        if kind == "db":
            return cls(attempts, float(retry.get("db_base_delay_sec", 0.5)), float(retry.get("db_max_delay_sec", 5.0)), jitter)
        if kind == "submit":
            return cls(attempts, float(retry.get("submit_base_delay_sec", 2.0)), float(retry.get("max_delay_sec", 10.0)), jitter)
        return cls(attempts, float(retry.get("base_delay_sec", 1.0)), float(retry.get("max_delay_sec", 10.0)), jitter)


DEFAULT_POLICY = RetryPolicy()
DB_POLICY = RetryPolicy(base_delay=0.5, max_delay=5.0)


@dataclass
class RetryOutcome(Generic[T]):
    result: Optional[T]
    error: Optional[ClassifiedError]
    attempts: int

    @property
    def ok(self) -> bool:
        return self.error is None


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_POLICY,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> RetryOutcome[T]:
    last: Optional[ClassifiedError] = None
    attempts = 0
    for attempt in range(1, max(1, policy.max_attempts) + 1):
        attempts = attempt
        try:
            result = await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last = classify_error(exc)
            logger.warning(
                "[%s] attempt %d/%d failed (%s): %s",
                operation,
                attempt,
                policy.max_attempts,
                last.category,
                last.message,
            )
            if not last.retryable:
                logger.info("[%s] %s is terminal, giving up", operation, last.category)
                break
            if last.category == CATEGORY_UNKNOWN:
                logger.warning("[%s] unrecognized failure shape, retrying conservatively", operation)
            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt, rng)
                logger.debug("[%s] retrying in %.2fs", operation, delay)
                await sleep(delay)
            continue
        if attempt > 1:
            logger.info("[%s] succeeded on attempt %d", operation, attempt)
        return RetryOutcome(result=result, error=None, attempts=attempt)
    return RetryOutcome(result=None, error=last, attempts=attempts)


__all__ = [
    "ClassifiedError",
    "DB_POLICY",
    "DEFAULT_POLICY",
    "RetryOutcome",
    "RetryPolicy",
    "classify_error",
    "is_retryable",
    "with_retry",
]
