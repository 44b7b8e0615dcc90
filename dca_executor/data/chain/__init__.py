from dca_executor.data.chain.provider import (
    ChainReader,
    ChainSettings,
    JsonRpcChainReader,
    MockChainReader,
    get_chain_reader,
)
from dca_executor.data.chain.request_factory import ChainRequestFactory
from dca_executor.data.chain.schemas import Permit2Allowance

__all__ = [
    "ChainReader",
    "ChainRequestFactory",
    "ChainSettings",
    "JsonRpcChainReader",
    "MockChainReader",
    "Permit2Allowance",
    "get_chain_reader",
]
