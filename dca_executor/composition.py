from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

from dca_executor.core.http import ProviderHttpClient
from dca_executor.data.chain.provider import ChainReader, ChainSettings, MockChainReader, get_chain_reader
from dca_executor.data.relay.provider import MockRelay, Relay, RelaySettings, get_relay
from dca_executor.data.routing.provider import RoutingProvider, RoutingSettings, get_routing_provider
from dca_executor.data.sentiment.provider import SentimentProvider, SentimentSettings, get_sentiment_provider
from dca_executor.data.store.provider import Store, StoreSettings, get_store


@dataclass
class Collaborators:
    sentiment: SentimentProvider
    chain: ChainReader
    routing: RoutingProvider
    relay: Relay
    store: Store

    def closeables(self) -> List[Any]:
        """Adapters that own an HTTP client and must be entered as async context managers."""
        items = [self.sentiment, self.chain, self.routing, self.relay, self.store]
        return [item for item in items if hasattr(item, "__aenter__")]


def build_collaborators(
    sentiment_settings: Optional[SentimentSettings] = None,
    chain_settings: Optional[ChainSettings] = None,
    routing_settings: Optional[RoutingSettings] = None,
    relay_settings: Optional[RelaySettings] = None,
    store_settings: Optional[StoreSettings] = None,
    http_client: Optional[ProviderHttpClient] = None,
) -> Collaborators:
    """Pick live or mock adapters per collaborator from the ``*_LIVE`` env flags."""
    chain = get_chain_reader(chain_settings, http_client=http_client)
    relay = get_relay(relay_settings, http_client=http_client)
    # offline runs share one in-memory chain so deployments become visible to reads
    if isinstance(relay, MockRelay) and isinstance(chain, MockChainReader):
        relay.chain = chain
    return Collaborators(
        sentiment=get_sentiment_provider(sentiment_settings, http_client=http_client),
        chain=chain,
        routing=get_routing_provider(routing_settings, http_client=http_client),
        relay=relay,
        store=get_store(store_settings, http_client=http_client),
    )


__all__ = ["Collaborators", "build_collaborators"]
