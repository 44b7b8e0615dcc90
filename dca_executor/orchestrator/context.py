from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from dca_executor.config import EngineSettings
from dca_executor.data.chain.provider import ChainReader
from dca_executor.data.relay.provider import Relay
from dca_executor.data.routing.provider import RoutingProvider
from dca_executor.data.store.provider import Store
from dca_executor.data.store.schemas import utc_now
from dca_executor.orchestrator.nonce import NonceAllocator
from dca_executor.orchestrator.quotes import QuoteBudget
from dca_executor.policies.decision import Decision


@dataclass
class RunContext:
    """Collaborators and per-run state shared by every phase."""

    settings: EngineSettings
    chain: ChainReader
    routing: RoutingProvider
    relay: Relay
    store: Store
    run_id: str
    allocator: NonceAllocator
    decision: Optional[Decision] = None
    score: Optional[int] = None
    wall_clock: Callable[[], datetime] = utc_now
    monotonic: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    rng: Optional[random.Random] = None
    quote_budget: Optional[QuoteBudget] = None

    @property
    def operator(self) -> str:
        return self.relay.operator_address

    def now(self) -> datetime:
        return self.wall_clock()

    def now_ts(self) -> int:
        return int(self.wall_clock().timestamp())


__all__ = ["RunContext"]
