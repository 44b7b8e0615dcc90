import asyncio
import random

import pytest

from dca_executor.core.exceptions import (
    NetworkError,
    OperationReverted,
    QuoteExpired,
    RelayRejected,
    UpstreamBadResponse,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from dca_executor.core.retry import RetryPolicy, classify_error, is_retryable, with_retry


@pytest.mark.parametrize(
    "error, category",
    [
        (NetworkError("connection reset"), "network"),
        (UpstreamTimeout("receipt wait"), "timeout"),
        (UpstreamRateLimited("slow down"), "rate_limit"),
        (QuoteExpired("old"), "quote_expired"),
        (OperationReverted("execution reverted"), "revert"),
        (RelayRejected("AA25 invalid account nonce"), "revert"),
        (UpstreamBadResponse("gateway", status_code=502), "network"),
        (UpstreamBadResponse("bad request", status_code=400), "unknown"),
        (asyncio.TimeoutError(), "timeout"),
        (ConnectionRefusedError("refused"), "network"),
    ],
)
def test_typed_errors_carry_category(error, category):
    assert classify_error(error).category == category


@pytest.mark.parametrize(
    "message, category",
    [
        ("fetch failed: ECONNREFUSED", "network"),
        ("request timed out after 30s", "timeout"),
        ("HTTP 429 Too Many Requests", "rate_limit"),
        ("quote expired before submission", "quote_expired"),
        ("AA23 reverted (or OOG)", "revert"),
        ("Delegation missing signature", "revert"),
        ("ERC20: transfer amount exceeds balance", "revert"),
        ("something odd happened", "unknown"),
    ],
)
def test_untyped_messages_classified_by_marker(message, category):
    assert classify_error(RuntimeError(message)).category == category
    assert classify_error(message).category == category


def test_classification_is_deterministic():
    error = RuntimeError("socket hang up")
    assert {classify_error(error).category for _ in range(20)} == {"network"}


def test_only_revert_is_terminal():
    assert not is_retryable("revert")
    for category in ("network", "timeout", "rate_limit", "quote_expired", "unknown"):
        assert is_retryable(category)


@pytest.mark.asyncio
async def test_with_retry_backs_off_then_succeeds():
    calls = []
    sleeps = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise NetworkError("connection reset")
        return "ok"

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    outcome = await with_retry(flaky, RetryPolicy(jitter=0.0), sleep=fake_sleep, rng=random.Random(0))
    assert outcome.ok
    assert outcome.result == "ok"
    assert outcome.attempts == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retry_stops_on_revert():
    calls = []

    async def reverting():
        calls.append(1)
        raise OperationReverted("execution reverted")

    async def fake_sleep(seconds):
        raise AssertionError("terminal failures must not back off")

    outcome = await with_retry(reverting, RetryPolicy(), sleep=fake_sleep)
    assert not outcome.ok
    assert outcome.error.category == "revert"
    assert len(calls) == 1


def test_delay_is_capped_and_jittered_within_bounds():
    policy = RetryPolicy(base_delay=1.0, max_delay=4.0, jitter=0.2)
    rng = random.Random(5)
    for attempt in range(1, 8):
        delay = policy.delay_for(attempt, rng)
        nominal = min(2 ** (attempt - 1), 4.0)
        assert nominal * 0.8 <= delay <= nominal * 1.2


def test_policies_from_settings(settings):
    db = RetryPolicy.from_settings(settings.retry, kind="db")
    submit = RetryPolicy.from_settings(settings.retry, kind="submit")
    assert (db.base_delay, db.max_delay) == (0.5, 5.0)
    assert submit.base_delay == 2.0
    assert RetryPolicy.from_settings(settings.retry).max_attempts == 3
