from dca_executor.core.cache import TtlCache
from dca_executor.core.exceptions import (
    CaveatViolation,
    CircuitBreakerOpen,
    InsufficientBalance,
    NetworkError,
    NonceCollision,
    OperationReverted,
    ProviderMisconfigured,
    ProviderOffline,
    QuoteExpired,
    QuoteRejected,
    RejectedError,
    RelayRejected,
    RunAborted,
    UpstreamBadResponse,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from dca_executor.core.http import ProviderHttpClient
from dca_executor.core.request_spec import JsonRpcSpec, RequestSpec
from dca_executor.core.retry import RetryOutcome, RetryPolicy, classify_error, with_retry

__all__ = [
    "CaveatViolation",
    "CircuitBreakerOpen",
    "InsufficientBalance",
    "JsonRpcSpec",
    "NetworkError",
    "NonceCollision",
    "OperationReverted",
    "ProviderHttpClient",
    "ProviderMisconfigured",
    "ProviderOffline",
    "QuoteExpired",
    "QuoteRejected",
    "RejectedError",
    "RelayRejected",
    "RequestSpec",
    "RetryOutcome",
    "RetryPolicy",
    "RunAborted",
    "TtlCache",
    "UpstreamBadResponse",
    "UpstreamError",
    "UpstreamRateLimited",
    "UpstreamTimeout",
    "classify_error",
    "with_retry",
]
