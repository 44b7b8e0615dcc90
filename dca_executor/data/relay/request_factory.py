from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from dca_executor.core.request_spec import JsonRpcSpec
from dca_executor.data.relay.schemas import RelayCall

ZERO_SALT = "0x" + "00" * 32


@dataclass(frozen=True)
class RelayRequestFactory:
    url: str
    api_key: str = ""
    chain_id: int = 8453
    sponsorship_policy: str = ""

    def _headers(self) -> Dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    def build_prepare(self, sender: str, calls: List[RelayCall], nonce: int) -> JsonRpcSpec:
        if not calls:
            raise ValueError("at least one call is required")
        request: Dict[str, Any] = {
            "sender": sender,
            "nonce": hex(nonce),
            "chainId": self.chain_id,
            "calls": [call.as_rpc() for call in calls],
        }
        if self.sponsorship_policy:
            request["sponsorshipPolicyId"] = self.sponsorship_policy
        return JsonRpcSpec.call(self.url, "relay_prepareOperation", [request], headers=self._headers())

    def build_send(self, operation: Dict[str, Any]) -> JsonRpcSpec:
        return JsonRpcSpec.call(self.url, "relay_sendOperation", [operation], headers=self._headers())

    def build_receipt(self, operation_hash: str) -> JsonRpcSpec:
        return JsonRpcSpec.call(self.url, "relay_getOperationReceipt", [operation_hash], headers=self._headers())

    def build_counterfactual(self, owner: str, factory: str, salt: str = ZERO_SALT) -> JsonRpcSpec:
        params = [{"owner": owner, "factory": factory, "salt": salt, "implementation": "hybrid"}]
        return JsonRpcSpec.call(self.url, "relay_getCounterfactualAccount", params, headers=self._headers())


__all__ = ["RelayRequestFactory", "ZERO_SALT"]
