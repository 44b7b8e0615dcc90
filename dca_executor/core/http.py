from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Dict, Optional

import httpx

from dca_executor.core.exceptions import (
    CircuitBreakerOpen,
    InsufficientBalance,
    NetworkError,
    OperationReverted,
    RelayRejected,
    UpstreamBadResponse,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from dca_executor.core.request_spec import JsonRpcSpec, RequestSpec
from dca_executor.logging_utils import get_logger

logger = get_logger(__name__)

# ERC-4337 entry point validation failures ("AA25 invalid account nonce") are terminal
_ENTRY_POINT_CODE = re.compile(r"^aa\d\d\b")


class TokenBucket:
    def __init__(self, rate_per_sec: float, capacity: Optional[float] = None) -> None:
        self.rate_per_sec = max(rate_per_sec, 0.1)
        self.capacity = capacity or self.rate_per_sec
        self.tokens = self.capacity
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, amount: float = 1.0) -> None:
        while True:
            async with self._lock:
                now = time.monotonic()
                self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.rate_per_sec)
                self.last_refill = now
                if self.tokens >= amount:
                    self.tokens -= amount
                    return
                wait_time = (amount - self.tokens) / self.rate_per_sec
            await asyncio.sleep(wait_time)


class CircuitBreaker:
    def __init__(self, failure_threshold: int = 5, cooldown_sec: float = 30.0) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_sec = max(1.0, cooldown_sec)
        self.failures = 0
        self.open_until = 0.0

    def allow(self) -> bool:
        return not (self.open_until and time.monotonic() < self.open_until)

    def record_success(self) -> None:
        self.failures = 0
        self.open_until = 0.0

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.failure_threshold:
            self.open_until = time.monotonic() + self.cooldown_sec
            self.failures = 0


def _rpc_error(provider: str, method: str, error: Dict[str, Any]) -> RuntimeError:
    message = str(error.get("message") or f"{provider} {method} failed")
    code = error.get("code")
    lowered = message.lower()
    if code == 3 or "revert" in lowered:
        data = error.get("data")
        return OperationReverted(message, revert_data=data if isinstance(data, str) else None)
    if "insufficient" in lowered:
        return InsufficientBalance(message)
    if _ENTRY_POINT_CODE.match(lowered):
        return RelayRejected(message)
    if code in (-32005, 429) or "rate limit" in lowered:
        return UpstreamRateLimited(f"{provider} {method} rate limited: {message}")
    return UpstreamError(f"{provider} {method}: {message}")


class ProviderHttpClient:
    """Rate limited, circuit-broken httpx wrapper shared by every live adapter.

    Transport failures are translated into the typed error variants from
    ``core.exceptions`` so that callers never need to inspect httpx internals.
    Only transient statuses (429, 5xx, transport errors) are retried here; the
    run-level retry policy sits above this in ``core.retry``.
    """

    def __init__(
        self,
        provider: str,
        timeout: float = 10.0,
        rps: float = 5.0,
        max_retries: int = 2,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        async_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.backoff_base = max(0.1, backoff_base)
        self.backoff_max = max(backoff_max, self.backoff_base)
        self._client = async_client
        self._owns_client = async_client is None
        self._rate_limiter = TokenBucket(rate_per_sec=rps)
        self._circuit_breaker = CircuitBreaker()

    async def __aenter__(self) -> "ProviderHttpClient":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(self, spec: RequestSpec) -> Any:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        if not self._circuit_breaker.allow():
            raise CircuitBreakerOpen(f"{self.provider} circuit breaker is open")

        last_error: Optional[BaseException] = None
        for attempt in range(self.max_retries + 1):
            await self._rate_limiter.acquire()
            try:
                resp = await self._client.request(
                    spec.method,
                    spec.url,
                    params=spec.query or None,
                    headers=spec.headers,
                    json=spec.json,
                )
            except httpx.TimeoutException as exc:
                self._circuit_breaker.record_failure()
                last_error = UpstreamTimeout(f"{self.provider} request timed out: {spec.describe()}")
                last_error.__cause__ = exc
            except httpx.TransportError as exc:
                self._circuit_breaker.record_failure()
                last_error = NetworkError(f"{self.provider} network connection error: {exc}")
                last_error.__cause__ = exc
            except httpx.HTTPError as exc:
                self._circuit_breaker.record_failure()
                last_error = NetworkError(f"{self.provider} HTTP error: {exc}")
                last_error.__cause__ = exc
            else:
                if resp.status_code == 429:
                    self._circuit_breaker.record_failure()
                    last_error = UpstreamRateLimited(f"{self.provider} rate limited", status_code=resp.status_code)
                    if attempt < self.max_retries:
                        await self._sleep_backoff(attempt, resp.headers.get("Retry-After"))
                    continue
                if resp.status_code >= 500:
                    self._circuit_breaker.record_failure()
                    last_error = UpstreamBadResponse(f"{self.provider} upstream error", status_code=resp.status_code)
                    if attempt < self.max_retries:
                        await self._sleep_backoff(attempt, resp.headers.get("Retry-After"))
                    continue
                if resp.status_code >= 400:
                    raise UpstreamBadResponse(
                        f"{self.provider} request rejected: {_error_text(resp)}", status_code=resp.status_code
                    )
                if resp.status_code == 204 or not resp.content:
                    self._circuit_breaker.record_success()
                    return None
                try:
                    payload = resp.json()
                except ValueError as exc:
                    raise UpstreamBadResponse(f"{self.provider} returned invalid JSON") from exc
                self._circuit_breaker.record_success()
                return payload

            if attempt >= self.max_retries:
                break
            await self._sleep_backoff(attempt)

        logger.warning("%s request failed after %d attempt(s): %s", self.provider, attempt + 1, last_error)
        if last_error:
            raise last_error
        raise NetworkError(f"{self.provider} request failed without a response")

    async def rpc(self, spec: JsonRpcSpec) -> Any:
        payload = await self.request(spec.to_request_spec())
        if not isinstance(payload, dict):
            raise UpstreamBadResponse(f"{self.provider} {spec.method} returned a non-object response")
        error = payload.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise _rpc_error(self.provider, spec.method, error)
        if "result" not in payload:
            raise UpstreamBadResponse(f"{self.provider} {spec.method} response missing result")
        return payload["result"]

    async def _sleep_backoff(self, attempt: int, retry_after: Optional[str] = None) -> None:
        if retry_after:
            try:
                await asyncio.sleep(float(retry_after))
                return
            except ValueError:
                pass
        await asyncio.sleep(min(self.backoff_max, self.backoff_base * (2**attempt)))


def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        for key in ("detail", "errorCode", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {resp.status_code}"


__all__ = ["CircuitBreaker", "ProviderHttpClient", "TokenBucket"]
