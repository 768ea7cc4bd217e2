"""
Wiring: one watcher per ledger feeding a shared queue consumed by the orchestrator.
"""

import asyncio
import contextlib
import logging
from typing import Dict, List, Optional

from .collaborators import (
    BridgeService,
    ConversionService,
    DirectBridge,
    FixedRateConversion,
    HttpBridgeClient,
    HttpConversionClient,
)
from .config import LedgerSettings, Settings
from .errors import ConfigError, SwapEngineError
from .locks import LedgerAdapter
from .orchestrator import DepositCriteria, OrchestratorConfig, SwapOrchestrator
from .store import InMemorySwapStore, JsonSwapStore, SwapStore
from .watcher import LedgerWatcher, WatcherConfig


async def produce(watcher: LedgerWatcher, queue: asyncio.Queue) -> None:
    # The watcher only persists its checkpoint when asked for the next event,
    # so waiting for the orchestrator here keeps the checkpoint behind dispatch.
    async for ev in watcher.watch_events():
        await queue.put(ev)
        await queue.join()


class SwapEngine:
    def __init__(
        self,
        source: LedgerAdapter,
        destination: LedgerAdapter,
        store: SwapStore,
        conversion: ConversionService,
        bridge: Optional[BridgeService] = None,
        config: Optional[OrchestratorConfig] = None,
        criteria: Optional[DepositCriteria] = None,
        source_watcher: Optional[WatcherConfig] = None,
        dest_watcher: Optional[WatcherConfig] = None,
    ):
        self.source = source
        self.destination = destination
        self.store = store
        self.watchers: List[LedgerWatcher] = [
            LedgerWatcher(source, source_watcher, checkpoints=store),
            LedgerWatcher(destination, dest_watcher, checkpoints=store),
        ]
        self.orchestrator = SwapOrchestrator(
            source,
            destination,
            store,
            conversion,
            bridge=bridge,
            config=config,
            criteria=criteria,
            watchers=self.watchers,
        )
        self.queue: asyncio.Queue = asyncio.Queue()
        self.log = logging.getLogger("SwapEngine")
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        resumed = await self.orchestrator.recover()
        self.log.info(f"Starting engine: {self.source.ledger_id} -> {self.destination.ledger_id}, {resumed} swap(s) resumed")
        for watcher in self.watchers:
            self._tasks.append(asyncio.create_task(produce(watcher, self.queue), name=f"watch:{watcher.ledger_id}"))
        self._tasks.append(asyncio.create_task(self.orchestrator.run(self.queue), name="orchestrator"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        await self.orchestrator.shutdown()
        self.log.info("Engine stopped")

    async def health(self) -> Dict[str, Dict]:
        """Reachability of each ledger, keyed by ledger id."""
        report = {}
        for adapter in (self.source, self.destination):
            try:
                now = await adapter.current_time()
                report[adapter.ledger_id] = {"status": "healthy", "time": now}
            except SwapEngineError as e:
                report[adapter.ledger_id] = {"status": "unhealthy", "error": str(e)}
        return report


# --- construction from settings ---------------------------------------------------------

def build_ledger(settings: LedgerSettings) -> LedgerAdapter:
    if settings.kind == "memory":
        from .ledgers.memory import InMemoryChain, InMemoryLedger

        return InMemoryLedger(InMemoryChain(settings.ledger_id), settings.account or "resolver")
    if settings.kind == "evm":
        from .ledgers.evm import EvmLedger

        return EvmLedger(
            settings.ledger_id,
            settings.rpc,
            settings.contract,
            settings.secret,
            chain_id=settings.chain_id,
            token=settings.token,
            decimals=settings.decimals,
        )
    if settings.kind == "soroban":
        from .ledgers.soroban import SorobanLedger

        if not settings.token:
            raise ConfigError(f"a token contract is required for soroban ledger {settings.ledger_id}")
        return SorobanLedger(
            settings.ledger_id,
            settings.rpc,
            settings.contract,
            settings.secret,
            network_passphrase=settings.network_passphrase,
            token=settings.token,
            decimals=settings.decimals,
        )
    raise ConfigError(f"unknown ledger kind {settings.kind!r}")


def build_engine(settings: Settings) -> SwapEngine:
    source = build_ledger(settings.source)
    destination = build_ledger(settings.destination)
    store = JsonSwapStore(settings.store_path) if settings.store_path else InMemorySwapStore()
    if settings.conversion_url:
        conversion = HttpConversionClient(settings.conversion_url)
    else:
        conversion = FixedRateConversion(settings.dest_asset)
    bridge = HttpBridgeClient(settings.bridge_url) if settings.bridge_url else DirectBridge()
    return SwapEngine(
        source,
        destination,
        store,
        conversion,
        bridge=bridge,
        config=settings.orchestrator,
        criteria=settings.criteria,
        source_watcher=settings.source.watcher_config(),
        dest_watcher=settings.destination.watcher_config(),
    )
