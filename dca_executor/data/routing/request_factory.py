from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from dca_executor.core.request_spec import RequestSpec

PERMIT_FIELDS = ("permitData", "permitTransaction")


class RoutingRequestError(ValueError):
    pass


@dataclass(frozen=True)
class RoutingRequestFactory:
    api_key: str = ""
    base_url: str = "https://trade-api.gateway.uniswap.org/v1"
    quote_path: str = "/quote"
    swap_path: str = "/swap"
    chain_id: int = 8453

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def build_quote_request(
        self,
        swapper: str,
        token_in: str,
        token_out: str,
        amount: int,
        slippage_bps: int,
    ) -> RequestSpec:
        if not swapper:
            raise RoutingRequestError("swapper is required")
        if not token_in or not token_out:
            raise RoutingRequestError("token_in and token_out are required")
        if token_in.lower() == token_out.lower():
            raise RoutingRequestError("token_in and token_out must differ")
        if amount <= 0:
            raise RoutingRequestError("amount must be positive")
        if slippage_bps < 0 or slippage_bps > 10_000:
            raise RoutingRequestError("slippage_bps must be between 0 and 10000")

        payload: Dict[str, Any] = {
            "swapper": swapper,
            "tokenIn": token_in,
            "tokenOut": token_out,
            "tokenInChainId": self.chain_id,
            "tokenOutChainId": self.chain_id,
            "amount": str(int(amount)),
            "type": "EXACT_INPUT",
            "slippageTolerance": slippage_bps / 100,
        }
        return RequestSpec(
            method="POST",
            base_url=self.base_url,
            path=self.quote_path,
            query={},
            headers=self._headers(),
            json=payload,
        )

    def build_swap_request(self, quote_payload: Dict[str, Any]) -> RequestSpec:
        if not isinstance(quote_payload, dict) or "quote" not in quote_payload:
            raise RoutingRequestError("quote_payload must be a quote response object")
        payload = {key: value for key, value in quote_payload.items() if key not in PERMIT_FIELDS}
        return RequestSpec(
            method="POST",
            base_url=self.base_url,
            path=self.swap_path,
            query={},
            headers=self._headers(),
            json=payload,
        )


__all__ = ["PERMIT_FIELDS", "RoutingRequestError", "RoutingRequestFactory"]
