from __future__ import annotations

from dataclasses import dataclass

from dca_executor.core import abi
from dca_executor.core.request_spec import JsonRpcSpec


@dataclass(frozen=True)
class ChainRequestFactory:
    rpc_url: str

    def build_get_balance(self, address: str, block: str = "latest") -> JsonRpcSpec:
        return JsonRpcSpec.call(self.rpc_url, "eth_getBalance", [address, block])

    def build_get_code(self, address: str, block: str = "latest") -> JsonRpcSpec:
        return JsonRpcSpec.call(self.rpc_url, "eth_getCode", [address, block])

    def build_call(self, to: str, data: str, block: str = "latest") -> JsonRpcSpec:
        return JsonRpcSpec.call(self.rpc_url, "eth_call", [{"to": to, "data": data}, block])

    def build_balance_of(self, token: str, owner: str) -> JsonRpcSpec:
        return self.build_call(token, abi.erc20_balance_of(owner))

    def build_allowance(self, token: str, owner: str, spender: str) -> JsonRpcSpec:
        return self.build_call(token, abi.erc20_allowance(owner, spender))

    def build_permit2_allowance(self, permit2: str, owner: str, token: str, spender: str) -> JsonRpcSpec:
        return self.build_call(permit2, abi.permit2_allowance(owner, token, spender))


__all__ = ["ChainRequestFactory"]
