from dca_executor.data.routing.provider import (
    MockRoutingProvider,
    RoutingProvider,
    RoutingSettings,
    TradingApiProvider,
    get_routing_provider,
)
from dca_executor.data.routing.request_factory import RoutingRequestError, RoutingRequestFactory
from dca_executor.data.routing.schemas import QuoteResponse, SwapCall, SwapResponse

__all__ = [
    "MockRoutingProvider",
    "QuoteResponse",
    "RoutingProvider",
    "RoutingRequestError",
    "RoutingRequestFactory",
    "RoutingSettings",
    "SwapCall",
    "SwapResponse",
    "TradingApiProvider",
    "get_routing_provider",
]
