from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from eth_utils import keccak
from pydantic import ValidationError

from dca_executor.core.abi import decode_revert
from dca_executor.core.exceptions import (
    OperationReverted,
    ProviderMisconfigured,
    RelayRejected,
    UpstreamBadResponse,
    UpstreamTimeout,
)
from dca_executor.core.http import ProviderHttpClient
from dca_executor.data.chain.provider import MockChainReader
from dca_executor.data.relay.request_factory import RelayRequestFactory
from dca_executor.data.relay.schemas import CounterfactualAccount, OperationReceipt, PreparedOperation, RelayCall


class Relay(Protocol):
    operator_address: str

    async def prepare_operation(self, calls: List[RelayCall], nonce: int, account: str) -> PreparedOperation:
        ...

    async def send_operation(self, prepared: PreparedOperation) -> str:
        ...

    async def get_receipt(self, operation_hash: str) -> Optional[OperationReceipt]:
        ...

    async def counterfactual_account(self, owner: str, factory: str) -> CounterfactualAccount:
        ...


@dataclass(frozen=True)
class RelaySettings:
    url: str
    api_key: str
    operator_address: str
    sponsorship_policy: str
    chain_id: int
    live: bool

    @classmethod
    def from_env(cls) -> "RelaySettings":
        url = os.getenv("RELAY_URL", "").strip()
        api_key = os.getenv("RELAY_API_KEY", "").strip()
        operator = os.getenv("OPERATOR_ADDRESS", "").strip()
        policy = os.getenv("RELAY_SPONSORSHIP_POLICY", "").strip()
        chain_id = int(os.getenv("CHAIN_ID", "8453"))
        live_flag = os.getenv("RELAY_LIVE", "0").strip().lower() in {"1", "true", "yes"}
        if live_flag and not (url and api_key):
            raise ProviderMisconfigured("RELAY_URL and RELAY_API_KEY are required when RELAY_LIVE=1")
        if live_flag and not operator:
            raise ProviderMisconfigured("OPERATOR_ADDRESS is required when RELAY_LIVE=1")
        return cls(
            url=url,
            api_key=api_key,
            operator_address=operator or "0x00000000000000000000000000000000000000aa",
            sponsorship_policy=policy,
            chain_id=chain_id,
            live=live_flag and bool(url and api_key),
        )


def _parse_relay_response(payload: Any, model, context: str):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise UpstreamBadResponse(f"Relay {context} response invalid") from exc


async def wait_for_receipt(
    relay: Relay,
    operation_hash: str,
    timeout_sec: float,
    poll_sec: float = 2.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> OperationReceipt:
    """Poll until the relay reports a receipt; raise on revert or timeout."""
    deadline = clock() + timeout_sec
    while True:
        receipt = await relay.get_receipt(operation_hash)
        if receipt is not None:
            if not receipt.success:
                detail = receipt.reason or decode_revert(receipt.revert_data)
                raise OperationReverted(f"Operation reverted on-chain: {detail}", revert_data=receipt.revert_data)
            return receipt
        if clock() >= deadline:
            raise UpstreamTimeout(f"Timed out waiting for operation {operation_hash} after {timeout_sec:.0f}s")
        await sleep(poll_sec)


class JsonRpcRelay:
    def __init__(self, settings: RelaySettings, http_client: Optional[ProviderHttpClient] = None) -> None:
        self.settings = settings
        self.operator_address = settings.operator_address
        self.request_factory = RelayRequestFactory(
            url=settings.url,
            api_key=settings.api_key,
            chain_id=settings.chain_id,
            sponsorship_policy=settings.sponsorship_policy,
        )
        self._client = http_client or ProviderHttpClient("relay", rps=10.0, timeout=30.0)
        self._owns_client = http_client is None

    async def __aenter__(self) -> "JsonRpcRelay":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client:
            await self._client.__aexit__(exc_type, exc, tb)

    async def prepare_operation(self, calls: List[RelayCall], nonce: int, account: str) -> PreparedOperation:
        spec = self.request_factory.build_prepare(self.operator_address, calls, nonce)
        result = await self._client.rpc(spec)
        if not isinstance(result, dict):
            raise UpstreamBadResponse("Relay prepare returned a non-object result")
        return _parse_relay_response({**result, "account": account, "nonce": nonce}, PreparedOperation, "prepare")

    async def send_operation(self, prepared: PreparedOperation) -> str:
        result = await self._client.rpc(self.request_factory.build_send(prepared.operation))
        if not isinstance(result, str) or not result.startswith("0x"):
            raise UpstreamBadResponse("Relay send returned no operation hash")
        return result

    async def get_receipt(self, operation_hash: str) -> Optional[OperationReceipt]:
        result = await self._client.rpc(self.request_factory.build_receipt(operation_hash))
        if result is None:
            return None
        return _parse_relay_response(result, OperationReceipt, "receipt")

    async def counterfactual_account(self, owner: str, factory: str) -> CounterfactualAccount:
        result = await self._client.rpc(self.request_factory.build_counterfactual(owner, factory))
        return _parse_relay_response(result, CounterfactualAccount, "counterfactual")


class MockRelay:
    """In-process relay.

    Failures are queued per (account, stage) with ``fail_next``; stages are
    ``prepare``, ``send`` and ``receipt``. A reused nonce is rejected the way a
    real entry point rejects it.
    """

    def __init__(self, operator_address: str = "0x00000000000000000000000000000000000000aa", chain: Optional[MockChainReader] = None) -> None:
        self.operator_address = operator_address
        self.chain = chain
        self.sent: List[PreparedOperation] = []
        self.counterfactual: Dict[str, str] = {}
        self.pending_polls = 0
        self._failures: Dict[tuple, List[BaseException]] = {}
        self._revert: Dict[str, str] = {}
        self._by_hash: Dict[str, PreparedOperation] = {}
        self._used_nonces: set[int] = set()
        self._polls: Dict[str, int] = {}
        self._factory_data: set[str] = set()

    def fail_next(self, account: str, stage: str, *errors: BaseException) -> None:
        self._failures.setdefault((account.lower(), stage), []).extend(errors)

    def revert_next(self, account: str, revert_data: str) -> None:
        self._revert[account.lower()] = revert_data

    def _raise_queued(self, account: str, stage: str) -> None:
        queued = self._failures.get((account.lower(), stage))
        if queued:
            raise queued.pop(0)

    def land_pending(self) -> None:
        """Let every operation still awaiting inclusion land on its next poll."""
        self._polls.clear()

    def sent_for(self, account: str) -> List[PreparedOperation]:
        return [op for op in self.sent if op.account.lower() == account.lower()]

    async def prepare_operation(self, calls: List[RelayCall], nonce: int, account: str) -> PreparedOperation:
        self._raise_queued(account, "prepare")
        operation = {
            "sender": self.operator_address,
            "nonce": hex(nonce),
            "calls": [call.as_rpc() for call in calls],
        }
        op_hash = "0x" + keccak(text=f"{account}:{nonce}:{len(self._by_hash)}").hex()
        return PreparedOperation(hash=op_hash, operation=operation, account=account, nonce=nonce)

    async def send_operation(self, prepared: PreparedOperation) -> str:
        self._raise_queued(prepared.account, "send")
        if prepared.nonce in self._used_nonces:
            raise RelayRejected(f"AA25 invalid account nonce {hex(prepared.nonce)}")
        self._used_nonces.add(prepared.nonce)
        self.sent.append(prepared)
        self._by_hash[prepared.hash] = prepared
        self._polls[prepared.hash] = self.pending_polls
        return prepared.hash

    async def get_receipt(self, operation_hash: str) -> Optional[OperationReceipt]:
        prepared = self._by_hash[operation_hash]
        self._raise_queued(prepared.account, "receipt")
        if self._polls.get(operation_hash, 0) > 0:
            self._polls[operation_hash] -= 1
            return None
        revert_data = self._revert.pop(prepared.account.lower(), None)
        if revert_data:
            return OperationReceipt(success=False, revertData=revert_data)
        calls = prepared.operation.get("calls", [])
        if self.chain is not None and any(call["data"] in self._factory_data for call in calls):
            self.chain.set_code(prepared.account, "0x6080")
        return OperationReceipt(success=True, transactionHash="0x" + keccak(text=operation_hash).hex())

    async def counterfactual_account(self, owner: str, factory: str) -> CounterfactualAccount:
        address = self.counterfactual.get(owner.lower())
        if address is None:
            raise RelayRejected(f"No counterfactual account known for owner {owner}")
        factory_data = "0xfbfa77cf" + owner[2:].lower()
        self._factory_data.add(factory_data)
        return CounterfactualAccount(address=address, factory=factory, factoryData=factory_data)


def get_relay(settings: Optional[RelaySettings] = None, http_client: Optional[ProviderHttpClient] = None):
    cfg = settings or RelaySettings.from_env()
    if cfg.live:
        return JsonRpcRelay(cfg, http_client=http_client)
    return MockRelay(operator_address=cfg.operator_address)


__all__ = ["JsonRpcRelay", "MockRelay", "Relay", "RelaySettings", "get_relay", "wait_for_receipt"]
