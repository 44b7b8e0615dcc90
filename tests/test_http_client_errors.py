import asyncio

import httpx
import pytest

from dca_executor.core.exceptions import (
    InsufficientBalance,
    NetworkError,
    OperationReverted,
    RelayRejected,
    UpstreamBadResponse,
    UpstreamRateLimited,
)
from dca_executor.core.http import ProviderHttpClient
from dca_executor.core.request_spec import JsonRpcSpec, RequestSpec
from dca_executor.core.retry import classify_error


def _make_spec() -> RequestSpec:
    return RequestSpec(
        method="GET",
        base_url="https://example.com",
        path="/test",
        query={},
        headers={},
    )


async def _run_error_case(handler, exc_type, rpc: bool = False):
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as async_client:
        client = ProviderHttpClient("test", rps=1000, async_client=async_client, max_retries=0)
        with pytest.raises(exc_type) as excinfo:
            if rpc:
                await client.rpc(JsonRpcSpec.call("https://example.com/rpc", "relay_sendOperation", [{}]))
            else:
                await client.request(_make_spec())
        return excinfo.value


def _status(code):
    return lambda request: httpx.Response(code, json={"detail": "nope"})


def _rpc_error(code, message):
    return lambda request: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}})


def test_http_client_rate_limited():
    error = asyncio.run(_run_error_case(_status(429), UpstreamRateLimited))
    assert classify_error(error).category == "rate_limit"


def test_http_client_server_error_is_network():
    error = asyncio.run(_run_error_case(_status(500), UpstreamBadResponse))
    assert error.status_code == 500
    assert classify_error(error).category == "network"


def test_http_client_client_error_is_unknown():
    error = asyncio.run(_run_error_case(_status(400), UpstreamBadResponse))
    assert "nope" in str(error)
    assert classify_error(error).category == "unknown"


def test_rpc_nonce_rejection_is_terminal():
    error = asyncio.run(_run_error_case(_rpc_error(-32500, "AA25 invalid account nonce"), RelayRejected, rpc=True))
    assert not classify_error(error).retryable


def test_rpc_revert_carries_data():
    def handler(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": 3, "message": "execution reverted", "data": "0xd81b2f2e"}})

    error = asyncio.run(_run_error_case(handler, OperationReverted, rpc=True))
    assert error.revert_data == "0xd81b2f2e"


def test_rpc_insufficient_funds():
    asyncio.run(_run_error_case(_rpc_error(-32000, "insufficient funds for gas"), InsufficientBalance, rpc=True))


def test_rpc_rate_limit():
    asyncio.run(_run_error_case(_rpc_error(-32005, "request limit reached"), UpstreamRateLimited, rpc=True))


def test_server_error_retried_then_succeeds():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"ok": True})

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as async_client:
            client = ProviderHttpClient("test", rps=1000, async_client=async_client, max_retries=1, backoff_base=0.1)
            return await client.request(_make_spec())

    assert asyncio.run(_run()) == {"ok": True}
    assert len(calls) == 2


def test_undecodable_body_is_network():
    def handler(request):
        raise httpx.DecodingError("malformed gzip body", request=request)

    error = asyncio.run(_run_error_case(handler, NetworkError))
    assert classify_error(error).category == "network"
