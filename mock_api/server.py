from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import keccak
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from dca_executor.core.abi import DELEGATION_TUPLE, hex_to_bytes, selector
from mock_api.data_seed import DEPLOYED_CODE, generate_seed

app = FastAPI()

SEL_BALANCE_OF = selector("balanceOf(address)")
SEL_ALLOWANCE = selector("allowance(address,address)")
SEL_PERMIT2_ALLOWANCE = selector("allowance(address,address,address)")
SEL_APPROVE = selector("approve(address,uint256)")
SEL_PERMIT2_APPROVE = selector("approve(address,address,uint160,uint48)")
SEL_REDEEM = selector("redeemDelegations(bytes[],bytes32[],bytes[])")
FACTORY_SELECTOR = "0xfbfa77cf"

_METRIC_NAMES = ("fng", "quote", "swap", "eth_call", "prepare", "send", "receipt", "deploy", "swaps_executed")


def _load_chain(seed: Dict[str, Any]) -> Dict[str, Any]:
    contracts = seed["contracts"]
    chain: Dict[str, Any] = {
        "native": {seed["operator"]["address"]: seed["operator"]["native"]},
        "balances": {},
        "allowances": {},
        "permit2": {},
        "code": {},
        "operations": {},
        "used_nonces": set(),
    }
    usdc, weth = list(seed["tokens"])[:2]
    for account in seed["accounts"]:
        owner = account["smart_account"]
        chain["balances"][(usdc, owner)] = account["usdc"]
        chain["balances"][(weth, owner)] = account["weth"]
        if account["deployed"]:
            chain["code"][owner] = DEPLOYED_CODE
        if account["approved"]:
            for token in (usdc, weth):
                chain["allowances"][(token, owner, contracts["permit2"])] = 2**256 - 1
                chain["permit2"][(owner, token, contracts["router"])] = (2**160 - 1, 4_102_444_800)
    return chain


def reset_state(sentiment: Optional[int] = None) -> None:
    """Reseed chain state; ``sentiment`` overrides the published index value."""
    seed = generate_seed() if sentiment is None else generate_seed(sentiment=sentiment)
    app.state.seed = seed
    app.state.chain = _load_chain(seed)
    reset_metrics()


def reset_metrics() -> None:
    app.state.metrics = {name: 0 for name in _METRIC_NAMES}


reset_state()


class QuoteRequest(BaseModel):
    swapper: str
    token_in: str = Field(alias="tokenIn")
    token_out: str = Field(alias="tokenOut")
    amount: str
    slippage_tolerance: float = Field(default=0.5, alias="slippageTolerance")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class SwapRequest(BaseModel):
    quote: Dict[str, Any]

    model_config = ConfigDict(extra="allow")


class RpcRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: Any = None
    method: str
    params: List[Any] = Field(default_factory=list)


class RpcFailure(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _token(address: str) -> Dict[str, Any]:
    token = app.state.seed["tokens"].get(address.lower())
    if token is None:
        raise HTTPException(status_code=404, detail=f"Unknown token {address}")
    return token


def _account_for_owner(owner: str) -> Optional[Dict[str, Any]]:
    for account in app.state.seed["accounts"]:
        if account["user_address"].lower() == owner.lower():
            return account
    return None


@app.get("/fng/")
async def fear_and_greed(limit: int = 1, format: str = "json") -> Dict[str, Any]:
    app.state.metrics["fng"] += 1
    sentiment = app.state.seed["sentiment"]
    entry = {"value": str(sentiment["value"]), "value_classification": sentiment["classification"]}
    return {"name": "Fear and Greed Index", "data": [entry] * max(1, limit)}


@app.post("/quote")
async def quote(request: QuoteRequest) -> Dict[str, Any]:
    app.state.metrics["quote"] += 1
    amount = int(request.amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be positive")
    token_in = _token(request.token_in)
    token_out = _token(request.token_out)
    value_usd = amount * token_in["price_usd"] / 10 ** token_in["decimals"]
    output = int(value_usd / token_out["price_usd"] * 10 ** token_out["decimals"])
    return {
        "requestId": f"mock-quote-{app.state.metrics['quote']}",
        "routing": "CLASSIC",
        "quote": {
            "input": {"amount": str(amount), "token": request.token_in},
            "output": {"amount": str(output), "token": request.token_out},
            "swapper": request.swapper,
            "slippage": request.slippage_tolerance,
            "gasFeeUSD": "0.01",
        },
        "permitData": None,
    }


@app.post("/swap")
async def swap(request: SwapRequest) -> Dict[str, Any]:
    app.state.metrics["swap"] += 1
    swapper = request.quote.get("swapper")
    return {
        "requestId": request.model_extra.get("requestId") if request.model_extra else None,
        "swap": {
            "to": app.state.seed["contracts"]["router"],
            "from": swapper,
            "data": "0x3593564c" + "00" * 64,
            "value": "0x0",
        },
    }


def _uint(value: int) -> str:
    return "0x" + abi_encode(["uint256"], [value]).hex()


def _eth_call(call: Dict[str, Any]) -> str:
    app.state.metrics["eth_call"] += 1
    chain = app.state.chain
    to = str(call["to"]).lower()
    data = hex_to_bytes(call["data"])
    sel, args = data[:4], data[4:]
    if sel == SEL_BALANCE_OF:
        (owner,) = abi_decode(["address"], args)
        return _uint(chain["balances"].get((to, owner.lower()), 0))
    if sel == SEL_ALLOWANCE:
        owner, spender = abi_decode(["address", "address"], args)
        return _uint(chain["allowances"].get((to, owner.lower(), spender.lower()), 0))
    if sel == SEL_PERMIT2_ALLOWANCE:
        owner, token, spender = abi_decode(["address", "address", "address"], args)
        amount, expiration = chain["permit2"].get((owner.lower(), token.lower(), spender.lower()), (0, 0))
        return "0x" + abi_encode(["uint160", "uint48", "uint48"], [amount, expiration, 0]).hex()
    raise RpcFailure(-32601, f"eth_call selector 0x{sel.hex()} not supported")


def _redeemed_execution(data: bytes) -> Tuple[str, str, bytes]:
    contexts, _, executions = abi_decode(["bytes[]", "bytes32[]", "bytes[]"], data[4:])
    (delegations,) = abi_decode([f"{DELEGATION_TUPLE}[]"], contexts[0])
    delegator = delegations[0][1].lower()
    execution = executions[0]
    target = "0x" + execution[:20].hex()
    return delegator, target, execution[52:]


def _apply_call(call: Dict[str, Any]) -> None:
    chain = app.state.chain
    seed = app.state.seed
    to = str(call["to"]).lower()
    data = hex_to_bytes(call["data"])
    if to == seed["contracts"]["account_factory"] and call["data"].startswith(FACTORY_SELECTOR):
        app.state.metrics["deploy"] += 1
        account = _account_for_owner("0x" + call["data"][len(FACTORY_SELECTOR):][:40])
        if account is not None:
            chain["code"][account["smart_account"]] = DEPLOYED_CODE
        return
    if data[:4] != SEL_REDEEM:
        return
    delegator, target, inner = _redeemed_execution(data)
    if inner[:4] == SEL_APPROVE:
        spender, amount = abi_decode(["address", "uint256"], inner[4:])
        chain["allowances"][(target, delegator, spender.lower())] = amount
    elif inner[:4] == SEL_PERMIT2_APPROVE:
        token, spender, amount, expiration = abi_decode(["address", "address", "uint160", "uint48"], inner[4:])
        chain["permit2"][(delegator, token.lower(), spender.lower())] = (amount, expiration)
    elif target == seed["contracts"]["router"]:
        app.state.metrics["swaps_executed"] += 1


def _operation_hash(operation: Dict[str, Any]) -> str:
    return "0x" + keccak(text=json.dumps(operation, sort_keys=True)).hex()


def _relay(method: str, params: List[Any]) -> Any:
    chain = app.state.chain
    if method == "relay_prepareOperation":
        app.state.metrics["prepare"] += 1
        request = params[0]
        operation = {"sender": request["sender"], "nonce": request["nonce"], "calls": request["calls"]}
        return {"hash": _operation_hash(operation), "operation": operation}
    if method == "relay_sendOperation":
        app.state.metrics["send"] += 1
        operation = params[0]
        nonce = int(operation["nonce"], 16)
        if nonce in chain["used_nonces"]:
            raise RpcFailure(-32500, f"AA25 invalid account nonce {operation['nonce']}")
        chain["used_nonces"].add(nonce)
        op_hash = _operation_hash(operation)
        chain["operations"][op_hash] = operation
        for call in operation["calls"]:
            _apply_call(call)
        return op_hash
    if method == "relay_getOperationReceipt":
        app.state.metrics["receipt"] += 1
        op_hash = params[0]
        if op_hash not in chain["operations"]:
            return None
        return {"success": True, "transactionHash": "0x" + keccak(text=op_hash).hex()}
    if method == "relay_getCounterfactualAccount":
        request = params[0]
        account = _account_for_owner(request["owner"])
        if account is None:
            raise RpcFailure(-32602, f"unknown owner {request['owner']}")
        return {
            "address": account["smart_account"],
            "factory": request["factory"],
            "factoryData": FACTORY_SELECTOR + request["owner"][2:].lower(),
        }
    raise RpcFailure(-32601, f"method {method} not found")


def _dispatch(method: str, params: List[Any]) -> Any:
    chain = app.state.chain
    if method == "eth_getBalance":
        return hex(chain["native"].get(str(params[0]).lower(), 0))
    if method == "eth_getCode":
        return chain["code"].get(str(params[0]).lower(), "0x")
    if method == "eth_call":
        return _eth_call(params[0])
    return _relay(method, params)


@app.post("/rpc")
@app.post("/rpc/")
async def rpc(request: RpcRequest) -> Dict[str, Any]:
    try:
        result = _dispatch(request.method, request.params)
    except RpcFailure as failure:
        return {"jsonrpc": "2.0", "id": request.id, "error": {"code": failure.code, "message": failure.message}}
    return {"jsonrpc": "2.0", "id": request.id, "result": result}
