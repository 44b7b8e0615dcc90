from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from eth_abi.exceptions import DecodingError

from dca_executor.core import abi
from dca_executor.core.exceptions import NetworkError, ProviderMisconfigured, UpstreamBadResponse
from dca_executor.core.http import ProviderHttpClient
from dca_executor.data.chain.request_factory import ChainRequestFactory
from dca_executor.data.chain.schemas import Permit2Allowance, parse_quantity


class ChainReader(Protocol):
    async def native_balance(self, address: str) -> int:
        ...

    async def erc20_balance(self, token: str, owner: str) -> int:
        ...

    async def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        ...

    async def permit2_allowance(self, permit2: str, owner: str, token: str, spender: str) -> Permit2Allowance:
        ...

    async def get_code(self, address: str) -> str:
        ...


@dataclass(frozen=True)
class ChainSettings:
    rpc_url: str
    live: bool

    @classmethod
    def from_env(cls) -> "ChainSettings":
        rpc_url = os.getenv("CHAIN_RPC_URL", "").strip()
        live_flag = os.getenv("CHAIN_LIVE", "0").strip().lower() in {"1", "true", "yes"}
        if live_flag and not rpc_url:
            raise ProviderMisconfigured("CHAIN_RPC_URL is required when CHAIN_LIVE=1")
        return cls(rpc_url=rpc_url, live=live_flag and bool(rpc_url))


def _decode_uint(data: str, context: str) -> int:
    try:
        (value,) = abi.decode_result(["uint256"], data)
    except (DecodingError, ValueError) as exc:
        raise UpstreamBadResponse(f"Chain {context} returned undecodable data") from exc
    return int(value)


class JsonRpcChainReader:
    def __init__(self, settings: ChainSettings, http_client: Optional[ProviderHttpClient] = None) -> None:
        self.settings = settings
        self.request_factory = ChainRequestFactory(rpc_url=settings.rpc_url)
        self._client = http_client or ProviderHttpClient("chain-rpc", rps=25.0)
        self._owns_client = http_client is None

    async def __aenter__(self) -> "JsonRpcChainReader":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client:
            await self._client.__aexit__(exc_type, exc, tb)

    async def native_balance(self, address: str) -> int:
        result = await self._client.rpc(self.request_factory.build_get_balance(address))
        return parse_quantity(result)

    async def erc20_balance(self, token: str, owner: str) -> int:
        result = await self._client.rpc(self.request_factory.build_balance_of(token, owner))
        return _decode_uint(result, "balanceOf")

    async def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        result = await self._client.rpc(self.request_factory.build_allowance(token, owner, spender))
        return _decode_uint(result, "allowance")

    async def permit2_allowance(self, permit2: str, owner: str, token: str, spender: str) -> Permit2Allowance:
        spec = self.request_factory.build_permit2_allowance(permit2, owner, token, spender)
        result = await self._client.rpc(spec)
        try:
            amount, expiration, nonce = abi.decode_result(["uint160", "uint48", "uint48"], result)
        except (DecodingError, ValueError) as exc:
            raise UpstreamBadResponse("Chain permit2 allowance returned undecodable data") from exc
        return Permit2Allowance(amount=int(amount), expiration=int(expiration), nonce=int(nonce))

    async def get_code(self, address: str) -> str:
        result = await self._client.rpc(self.request_factory.build_get_code(address))
        return str(result or "0x")


def _key(*parts: str) -> Tuple[str, ...]:
    return tuple(part.lower() for part in parts)


class MockChainReader:
    """In-memory chain state. Addresses are compared case-insensitively."""

    def __init__(self) -> None:
        self.native: Dict[Tuple[str, ...], int] = {}
        self.balances: Dict[Tuple[str, ...], int] = {}
        self.allowances: Dict[Tuple[str, ...], int] = {}
        self.permit2: Dict[Tuple[str, ...], Permit2Allowance] = {}
        self.code: Dict[Tuple[str, ...], str] = {}
        self.failing: set[str] = set()

    def _check(self, address: str) -> None:
        if address.lower() in self.failing:
            raise NetworkError(f"RPC connection reset while reading {address}")

    def set_native(self, address: str, amount: int) -> None:
        self.native[_key(address)] = amount

    def set_balance(self, token: str, owner: str, amount: int) -> None:
        self.balances[_key(token, owner)] = amount

    def set_allowance(self, token: str, owner: str, spender: str, amount: int) -> None:
        self.allowances[_key(token, owner, spender)] = amount

    def set_permit2(self, owner: str, token: str, spender: str, amount: int, expiration: int) -> None:
        self.permit2[_key(owner, token, spender)] = Permit2Allowance(amount=amount, expiration=expiration)

    def set_code(self, address: str, code: str) -> None:
        self.code[_key(address)] = code

    async def native_balance(self, address: str) -> int:
        self._check(address)
        return self.native.get(_key(address), 0)

    async def erc20_balance(self, token: str, owner: str) -> int:
        self._check(owner)
        return self.balances.get(_key(token, owner), 0)

    async def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        self._check(owner)
        return self.allowances.get(_key(token, owner, spender), 0)

    async def permit2_allowance(self, permit2: str, owner: str, token: str, spender: str) -> Permit2Allowance:
        self._check(owner)
        return self.permit2.get(_key(owner, token, spender), Permit2Allowance(amount=0, expiration=0))

    async def get_code(self, address: str) -> str:
        self._check(address)
        return self.code.get(_key(address), "0x6080")


def get_chain_reader(settings: Optional[ChainSettings] = None, http_client: Optional[ProviderHttpClient] = None):
    cfg = settings or ChainSettings.from_env()
    if cfg.live:
        return JsonRpcChainReader(cfg, http_client=http_client)
    return MockChainReader()


__all__ = ["ChainReader", "ChainSettings", "JsonRpcChainReader", "MockChainReader", "get_chain_reader"]
