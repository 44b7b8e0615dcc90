from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from dca_executor.core.exceptions import ProviderMisconfigured, UpstreamBadResponse
from dca_executor.core.http import ProviderHttpClient
from dca_executor.data.routing.request_factory import RoutingRequestFactory
from dca_executor.data.routing.schemas import QuoteResponse, SwapResponse

DEFAULT_ROUTER = "0x6fF5693b99212Da76ad316178A184AB56D299b43"

DEFAULT_MOCK_TOKENS: Dict[str, Tuple[int, float]] = {
    "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913": (6, 1.0),
    "0x4200000000000000000000000000000000000006": (18, 2500.0),
    "0xcbb7c0000ab88b473b1f5afd9ef808440eed33bf": (8, 60000.0),
}


class RoutingProvider(Protocol):
    async def get_quote(
        self, swapper: str, token_in: str, token_out: str, amount: int, slippage_bps: int
    ) -> QuoteResponse:
        ...

    async def build_swap(self, quote: QuoteResponse) -> SwapResponse:
        ...


@dataclass(frozen=True)
class RoutingSettings:
    api_key: str
    base_url: str
    chain_id: int
    live: bool

    @classmethod
    def from_env(cls) -> "RoutingSettings":
        api_key = os.getenv("UNISWAP_API_KEY", "").strip()
        base_url = os.getenv("ROUTING_BASE_URL", "https://trade-api.gateway.uniswap.org/v1").strip().rstrip("/")
        chain_id = int(os.getenv("CHAIN_ID", "8453"))
        live_flag = os.getenv("ROUTING_LIVE", "0").strip().lower() in {"1", "true", "yes"}
        if live_flag and not api_key:
            raise ProviderMisconfigured("UNISWAP_API_KEY is required when ROUTING_LIVE=1")
        return cls(api_key=api_key, base_url=base_url, chain_id=chain_id, live=live_flag and bool(api_key))


def _parse_routing_response(payload: Any, model, context: str):
    if isinstance(payload, dict) and (payload.get("errorCode") or payload.get("error")):
        message = payload.get("detail") or payload.get("errorCode") or payload.get("error")
        raise UpstreamBadResponse(f"Routing {context} error: {message}")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamBadResponse(f"Routing {context} response invalid") from exc


def quote_payload(quote: QuoteResponse) -> Dict[str, Any]:
    return quote.model_dump(by_alias=True, exclude_none=True)


class TradingApiProvider:
    def __init__(self, settings: RoutingSettings, http_client: Optional[ProviderHttpClient] = None) -> None:
        self.settings = settings
        self.request_factory = RoutingRequestFactory(
            api_key=settings.api_key,
            base_url=settings.base_url,
            chain_id=settings.chain_id,
        )
        self._client = http_client or ProviderHttpClient("routing", rps=5.0)
        self._owns_client = http_client is None

    async def __aenter__(self) -> "TradingApiProvider":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client:
            await self._client.__aexit__(exc_type, exc, tb)

    async def get_quote(
        self, swapper: str, token_in: str, token_out: str, amount: int, slippage_bps: int
    ) -> QuoteResponse:
        spec = self.request_factory.build_quote_request(swapper, token_in, token_out, amount, slippage_bps)
        payload = await self._client.request(spec)
        return _parse_routing_response(payload, QuoteResponse, "quote")

    async def build_swap(self, quote: QuoteResponse) -> SwapResponse:
        spec = self.request_factory.build_swap_request(quote_payload(quote))
        payload = await self._client.request(spec)
        return _parse_routing_response(payload, SwapResponse, "swap")


class MockRoutingProvider:
    """Prices swaps from a static USD table; failures can be queued per swapper."""

    def __init__(
        self,
        tokens: Optional[Dict[str, Tuple[int, float]]] = None,
        router: str = DEFAULT_ROUTER,
        zero_output: bool = False,
    ) -> None:
        self.tokens = {key.lower(): value for key, value in (tokens or DEFAULT_MOCK_TOKENS).items()}
        self.router = router
        self.zero_output = zero_output
        self.failures: Dict[str, List[BaseException]] = {}
        self.quote_calls: List[Dict[str, Any]] = []
        self.swap_calls = 0

    def fail_next(self, swapper: str, *errors: BaseException) -> None:
        self.failures.setdefault(swapper.lower(), []).extend(errors)

    def expected_output(self, token_in: str, token_out: str, amount: int) -> int:
        dec_in, price_in = self.tokens[token_in.lower()]
        dec_out, price_out = self.tokens[token_out.lower()]
        return int(amount * price_in * (10**dec_out) // (price_out * (10**dec_in)))

    async def get_quote(
        self, swapper: str, token_in: str, token_out: str, amount: int, slippage_bps: int
    ) -> QuoteResponse:
        self.quote_calls.append({"swapper": swapper, "token_in": token_in, "token_out": token_out, "amount": amount})
        queued = self.failures.get(swapper.lower())
        if queued:
            raise queued.pop(0)
        output = 0 if self.zero_output else self.expected_output(token_in, token_out, amount)
        payload = {
            "requestId": f"mock-{len(self.quote_calls)}",
            "routing": "CLASSIC",
            "quote": {
                "input": {"amount": str(amount), "token": token_in},
                "output": {"amount": str(output), "token": token_out},
                "swapper": swapper,
                "slippage": slippage_bps / 100,
            },
            "permitData": None,
        }
        return _parse_routing_response(payload, QuoteResponse, "quote")

    async def build_swap(self, quote: QuoteResponse) -> SwapResponse:
        self.swap_calls += 1
        payload = {
            "requestId": quote.request_id,
            "swap": {
                "to": self.router,
                "from": quote.quote.swapper,
                "data": "0x3593564c" + "00" * 32,
                "value": "0x0",
            },
        }
        return _parse_routing_response(payload, SwapResponse, "swap")


def get_routing_provider(settings: Optional[RoutingSettings] = None, http_client: Optional[ProviderHttpClient] = None):
    cfg = settings or RoutingSettings.from_env()
    if cfg.live:
        return TradingApiProvider(cfg, http_client=http_client)
    return MockRoutingProvider()


__all__ = [
    "DEFAULT_ROUTER",
    "MockRoutingProvider",
    "RoutingProvider",
    "RoutingSettings",
    "TradingApiProvider",
    "get_routing_provider",
    "quote_payload",
]
