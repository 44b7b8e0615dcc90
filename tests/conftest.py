import json
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from dca_executor.config import EngineSettings, load_config
from dca_executor.core.abi import MAX_UINT160, MAX_UINT256
from dca_executor.data.chain.provider import MockChainReader
from dca_executor.data.relay.provider import MockRelay
from dca_executor.data.routing.provider import MockRoutingProvider
from dca_executor.data.sentiment.provider import MockSentimentProvider
from dca_executor.data.store.provider import MemoryStore
from dca_executor.data.store.schemas import DelegationRecord
from dca_executor.orchestrator.context import RunContext
from dca_executor.orchestrator.eligibility import ReferencePriceOracle, compute_eligibility
from dca_executor.orchestrator.nonce import NonceAllocator
from dca_executor.orchestrator.quotes import QuoteBudget
from dca_executor.orchestrator.runner import Orchestrator
from dca_executor.policies.decision import decide

OPERATOR = "0x00000000000000000000000000000000000000aa"
STRANGER = "0x00000000000000000000000000000000000000bb"
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
USDC = 10**6


def account(n: int) -> str:
    return "0x" + f"{0x5a0000 + n:040x}"


def owner(n: int) -> str:
    return "0x" + f"{0xee0000 + n:040x}"


def delegation_blob(delegator: str, delegate: str = OPERATOR, caveats=None, signature: str = "0x" + "11" * 65) -> str:
    return json.dumps(
        {
            "delegate": delegate,
            "delegator": delegator,
            "authority": "0x" + "ff" * 32,
            "caveats": caveats or [],
            "salt": "0x1",
            "signature": signature,
        }
    )


def make_record(
    n: int,
    cap: int = 100 * USDC,
    delegate: str = OPERATOR,
    expires_in: timedelta = timedelta(days=30),
    target: str = "weth",
    **blob_kwargs,
) -> DelegationRecord:
    return DelegationRecord(
        id=f"del-{n}",
        user_address=owner(n),
        smart_account_address=account(n),
        delegation_data=delegation_blob(account(n), delegate=delegate, **blob_kwargs),
        max_amount_per_swap=cap,
        expires_at=START + expires_in,
        target_asset=target,
    )


class SlowPrepareRelay(MockRelay):
    """Relay whose next preparations each take the given number of seconds."""

    def __init__(self, clock: "FakeClock", delays: List[float], **kwargs) -> None:
        super().__init__(**kwargs)
        self.clock = clock
        self.delays = list(delays)

    async def prepare_operation(self, calls, nonce, account):
        if self.delays:
            self.clock.advance(self.delays.pop(0))
        return await super().prepare_operation(calls, nonce, account)


class FakeClock:
    """Monotonic and wall clocks that only move when something sleeps."""

    def __init__(self, start: datetime = START) -> None:
        self.start = start
        self.elapsed = 0.0
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def monotonic(self) -> float:
        return 1_000.0 + self.elapsed

    def wall_clock(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.elapsed += seconds
        if self.on_sleep is not None:
            self.on_sleep(seconds)


@dataclass
class World:
    settings: EngineSettings
    chain: MockChainReader
    relay: MockRelay
    routing: MockRoutingProvider
    store: MemoryStore
    sentiment: MockSentimentProvider
    clock: FakeClock
    records: List[DelegationRecord] = field(default_factory=list)

    @property
    def usdc(self):
        return self.settings.usdc

    @property
    def weth(self):
        return self.settings.tokens["weth"]

    def fund(self, n: int, usdc: int = 0, weth: int = 0, approved: bool = True) -> None:
        self.chain.set_balance(self.usdc.address, account(n), usdc)
        self.chain.set_balance(self.weth.address, account(n), weth)
        if approved:
            for token in (self.usdc.address, self.weth.address):
                self.chain.set_allowance(token, account(n), self.settings.permit2, MAX_UINT256)
                self.chain.set_permit2(account(n), token, self.settings.routers[0], MAX_UINT160, 4_102_444_800)

    def enroll(self, n: int, usdc: int = 0, weth: int = 0, approved: bool = True, **record_kwargs) -> DelegationRecord:
        record = make_record(n, **record_kwargs)
        self.store.add_delegation(record)
        self.records.append(record)
        self.fund(n, usdc=usdc, weth=weth, approved=approved)
        return record

    def orchestrator(self, **kwargs) -> Orchestrator:
        return Orchestrator(
            self.settings,
            sentiment=self.sentiment,
            chain=self.chain,
            routing=self.routing,
            relay=self.relay,
            store=self.store,
            wall_clock=self.clock.wall_clock,
            monotonic=self.clock.monotonic,
            sleep=self.clock.sleep,
            rng=random.Random(1),
            write_artifacts=False,
            **kwargs,
        )

    async def size_wallets(self, score: int = 10):
        oracle = ReferencePriceOracle(self.routing, self.settings, self.relay.operator_address)
        outcome = await compute_eligibility(
            list(enumerate(self.records)), decide(score), self.chain, self.settings, oracle
        )
        # drop the oracle probe quotes
        self.routing.quote_calls.clear()
        return outcome.eligible

    def context(self, score: int = 10, run_id: str = "test-run") -> RunContext:
        return RunContext(
            settings=self.settings,
            chain=self.chain,
            routing=self.routing,
            relay=self.relay,
            store=self.store,
            run_id=run_id,
            allocator=NonceAllocator(int(self.clock.wall_clock().timestamp() * 1000)),
            decision=decide(score),
            score=score,
            wall_clock=self.clock.wall_clock,
            monotonic=self.clock.monotonic,
            sleep=self.clock.sleep,
            rng=random.Random(1),
            quote_budget=QuoteBudget(self.settings.max_quotes_per_run),
        )


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings.from_config(load_config())


@pytest.fixture
def world(settings: EngineSettings) -> World:
    chain = MockChainReader()
    chain.set_native(OPERATOR, 10**18)
    return World(
        settings=settings,
        chain=chain,
        relay=MockRelay(operator_address=OPERATOR, chain=chain),
        routing=MockRoutingProvider(),
        store=MemoryStore(),
        sentiment=MockSentimentProvider(score=10, classification="Extreme Fear"),
        clock=FakeClock(),
    )
