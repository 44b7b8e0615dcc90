from __future__ import annotations

from typing import Optional

CATEGORY_NETWORK = "network"
CATEGORY_TIMEOUT = "timeout"
CATEGORY_RATE_LIMIT = "rate_limit"
CATEGORY_QUOTE_EXPIRED = "quote_expired"
CATEGORY_REVERT = "revert"
CATEGORY_UNKNOWN = "unknown"

RETRYABLE_CATEGORIES = frozenset(
    {CATEGORY_NETWORK, CATEGORY_TIMEOUT, CATEGORY_RATE_LIMIT, CATEGORY_QUOTE_EXPIRED, CATEGORY_UNKNOWN}
)


class ProviderMisconfigured(RuntimeError):
    pass


class ProviderOffline(RuntimeError):
    pass


class RunAborted(RuntimeError):
    """Run-fatal condition; the orchestrator stops before any further side effect."""


class NonceCollision(RuntimeError):
    pass


class UpstreamError(RuntimeError):
    category = CATEGORY_UNKNOWN

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamRateLimited(UpstreamError):
    category = CATEGORY_RATE_LIMIT


class UpstreamBadResponse(UpstreamError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, status_code=status_code)
        # 5xx and malformed bodies are transport trouble; a 4xx is an unexplained refusal
        if status_code is None or status_code >= 500:
            self.category = CATEGORY_NETWORK
        else:
            self.category = CATEGORY_UNKNOWN


class UpstreamTimeout(UpstreamError):
    category = CATEGORY_TIMEOUT


class NetworkError(UpstreamError):
    category = CATEGORY_NETWORK


class CircuitBreakerOpen(UpstreamError):
    category = CATEGORY_NETWORK


class QuoteExpired(RuntimeError):
    category = CATEGORY_QUOTE_EXPIRED


class RejectedError(RuntimeError):
    """Terminal rejection: retrying the same operation cannot succeed."""

    category = CATEGORY_REVERT


class OperationReverted(RejectedError):
    def __init__(self, message: str, revert_data: Optional[str] = None) -> None:
        super().__init__(message)
        self.revert_data = revert_data


class InsufficientBalance(RejectedError):
    pass


class CaveatViolation(RejectedError):
    pass


class QuoteRejected(RejectedError):
    pass


class RelayRejected(RejectedError):
    """Relay refused the operation during preparation or simulation."""


__all__ = [
    "CATEGORY_NETWORK",
    "CATEGORY_QUOTE_EXPIRED",
    "CATEGORY_RATE_LIMIT",
    "CATEGORY_REVERT",
    "CATEGORY_TIMEOUT",
    "CATEGORY_UNKNOWN",
    "RETRYABLE_CATEGORIES",
    "CaveatViolation",
    "CircuitBreakerOpen",
    "InsufficientBalance",
    "NetworkError",
    "NonceCollision",
    "OperationReverted",
    "ProviderMisconfigured",
    "ProviderOffline",
    "QuoteExpired",
    "QuoteRejected",
    "RejectedError",
    "RelayRejected",
    "RunAborted",
    "UpstreamBadResponse",
    "UpstreamError",
    "UpstreamRateLimited",
    "UpstreamTimeout",
]
