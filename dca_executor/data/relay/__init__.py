from dca_executor.data.relay.provider import (
    JsonRpcRelay,
    MockRelay,
    Relay,
    RelaySettings,
    get_relay,
    wait_for_receipt,
)
from dca_executor.data.relay.request_factory import RelayRequestFactory
from dca_executor.data.relay.schemas import CounterfactualAccount, OperationReceipt, PreparedOperation, RelayCall

__all__ = [
    "CounterfactualAccount",
    "JsonRpcRelay",
    "MockRelay",
    "OperationReceipt",
    "PreparedOperation",
    "Relay",
    "RelayCall",
    "RelayRequestFactory",
    "RelaySettings",
    "get_relay",
    "wait_for_receipt",
]
