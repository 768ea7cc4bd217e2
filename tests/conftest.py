import asyncio
from decimal import Decimal
from typing import Optional

import pytest

from swapengine import commitment as cm
from swapengine.collaborators import FixedRateConversion
from swapengine.engine import SwapEngine
from swapengine.ledgers.memory import InMemoryChain, InMemoryLedger
from swapengine.locks import LockStateMachine
from swapengine.models import SwapRecord, SwapStatus
from swapengine.orchestrator import OrchestratorConfig, swap_id_for
from swapengine.store import InMemorySwapStore
from swapengine.watcher import WatcherConfig

HOUR = 3600

FAST = OrchestratorConfig(retry_attempts=3, retry_base_delay=0.001, retry_max_delay=0.01)
FAST_WATCH = WatcherConfig(backoff_base=0.001, backoff_max=0.01)


class Harness:
    """Two in-memory ledgers, a resolver account on each and a depositor "alice".

    alice locks on "src" for the resolver; the resolver locks on "dst" for
    "alice-dst" (passed as the deposit memo).
    """

    def __init__(self, store=None, config: Optional[OrchestratorConfig] = None, conversion=None, **engine_kwargs):
        self.src_chain = InMemoryChain("src")
        self.dst_chain = InMemoryChain("dst")
        self.src_chain.fund("alice", Decimal(10))
        self.dst_chain.fund("resolver", Decimal(10))
        self.resolver_src = InMemoryLedger(self.src_chain, "resolver")
        self.resolver_dst = InMemoryLedger(self.dst_chain, "resolver")
        self.alice_src = LockStateMachine(self.resolver_src.as_account("alice"))
        self.alice_dst = LockStateMachine(self.resolver_dst.as_account("alice-dst"))
        self.store = store if store is not None else InMemorySwapStore()
        self.config = config or FAST
        self.conversion = conversion or FixedRateConversion("dUSD")
        self.engine_kwargs = engine_kwargs
        secret, commitment = cm.generate_pair()
        self.secret = cm.to_hex(secret)
        self.commitment = cm.to_hex(commitment)

    def engine(self) -> SwapEngine:
        return SwapEngine(
            self.resolver_src,
            self.resolver_dst,
            self.store,
            self.conversion,
            config=self.config,
            source_watcher=FAST_WATCH,
            dest_watcher=FAST_WATCH,
            **self.engine_kwargs,
        )

    async def deposit(self, seconds: int = 48 * HOUR, amount: Decimal = Decimal("1.0"), memo: str = "alice-dst") -> str:
        timelock = self.src_chain.now() + seconds
        ref = await self.alice_src.create(self.commitment, amount, "resolver", timelock, asset="sUSD", memo=memo)
        return swap_id_for(ref)

    async def wait_for(self, swap_id: str, status: SwapStatus, timeout: float = 5.0) -> SwapRecord:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            record = await self.store.load(swap_id)
            if record is not None and record.status is status:
                return record
            if loop.time() > deadline:
                seen = record.status.value if record is not None else None
                raise AssertionError(f"{swap_id} never reached {status.value} (last seen: {seen})")
            await asyncio.sleep(0.01)


@pytest.fixture
def harness():
    return Harness
