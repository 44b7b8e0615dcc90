import pytest

from dca_executor.core.abi import selector
from dca_executor.data.chain.request_factory import ChainRequestFactory
from dca_executor.data.relay.request_factory import RelayRequestFactory
from dca_executor.data.relay.schemas import RelayCall
from dca_executor.data.routing.request_factory import RoutingRequestError, RoutingRequestFactory
from dca_executor.data.sentiment.request_factory import SentimentRequestFactory
from dca_executor.data.store.request_factory import RestStoreRequestFactory

USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH = "0x4200000000000000000000000000000000000006"
SWAPPER = "0x" + "5a" * 20


def test_sentiment_request_contract():
    spec = SentimentRequestFactory(base_url="https://api.alternative.me").build_index_request()
    assert spec.method == "GET"
    assert spec.build_url() == "https://api.alternative.me/fng/?format=json&limit=1"


def test_quote_request_contract():
    factory = RoutingRequestFactory(api_key="test-key", base_url="https://trade-api.example/v1")
    spec = factory.build_quote_request(SWAPPER, USDC, WETH, amount=49_900_000, slippage_bps=50)
    assert spec.method == "POST"
    assert spec.url == "https://trade-api.example/v1/quote"
    assert spec.json["amount"] == "49900000"
    assert spec.json["type"] == "EXACT_INPUT"
    assert spec.json["slippageTolerance"] == 0.5
    assert spec.json["tokenInChainId"] == spec.json["tokenOutChainId"] == 8453
    assert spec.headers["x-api-key"] == "test-key"
    assert "test-key" not in spec.describe()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"swapper": "", "token_in": USDC, "token_out": WETH, "amount": 1, "slippage_bps": 50},
        {"swapper": SWAPPER, "token_in": USDC, "token_out": USDC.lower(), "amount": 1, "slippage_bps": 50},
        {"swapper": SWAPPER, "token_in": USDC, "token_out": WETH, "amount": 0, "slippage_bps": 50},
        {"swapper": SWAPPER, "token_in": USDC, "token_out": WETH, "amount": 1, "slippage_bps": 10_001},
    ],
)
def test_quote_request_rejects_bad_input(kwargs):
    with pytest.raises(RoutingRequestError):
        RoutingRequestFactory().build_quote_request(**kwargs)


def test_swap_request_drops_permit_fields():
    spec = RoutingRequestFactory().build_swap_request({"quote": {"swapper": SWAPPER}, "permitData": None, "routing": "CLASSIC"})
    assert spec.path == "/swap"
    assert spec.json == {"quote": {"swapper": SWAPPER}, "routing": "CLASSIC"}


def test_chain_balance_of_call():
    spec = ChainRequestFactory(rpc_url="https://rpc.example").build_balance_of(USDC, SWAPPER)
    assert spec.method == "eth_call"
    call, block = spec.body["params"]
    assert call["to"] == USDC
    assert call["data"].startswith("0x" + selector("balanceOf(address)").hex())
    assert call["data"].endswith("5a" * 20)
    assert block == "latest"
    assert spec.to_request_spec().url == "https://rpc.example/"


def test_relay_prepare_contract():
    factory = RelayRequestFactory(url="https://relay.example", api_key="secret", sponsorship_policy="sp_1")
    spec = factory.build_prepare("0x" + "aa" * 20, [RelayCall(to=WETH, data="0x1234")], nonce=(7 << 64))
    (request,) = spec.body["params"]
    assert spec.method == "relay_prepareOperation"
    assert request["nonce"] == hex(7 << 64)
    assert request["calls"] == [{"to": WETH, "value": "0x0", "data": "0x1234"}]
    assert request["sponsorshipPolicyId"] == "sp_1"
    assert spec.headers == {"Authorization": "Bearer secret"}
    with pytest.raises(ValueError):
        factory.build_prepare("0x" + "aa" * 20, [], nonce=1)


def test_rpc_ids_are_unique():
    factory = ChainRequestFactory(rpc_url="https://rpc.example")
    first = factory.build_get_code(SWAPPER)
    second = factory.build_get_code(SWAPPER)
    assert first.body["id"] != second.body["id"]


def test_store_history_query():
    spec = RestStoreRequestFactory(base_url="https://db.example", service_key="k").build_history("0xAbC", 5)
    assert spec.path == "/rest/v1/dca_executions"
    assert spec.query["user_address"] == "ilike.0xAbC"
    assert spec.query["order"] == "created_at.desc"
    assert spec.query["limit"] == 5
    assert spec.headers["apikey"] == "k"
