"""
Ledger watcher.

Follows one ledger through its adapter's block subscription and turns raw
contract logs into LedgerEvents:

- an event is only emitted once its block is `confirmations` deep;
- if a block we already emitted from is replaced, every event from it is
  withdrawn with an EVENT_RETRACTED notification;
- LOCK_EXPIRED is emitted when a confirmed block's ledger time reaches the
  timelock of a tracked, still-unresolved lock;
- on LedgerUnavailable the subscription is reopened from the last confirmed
  checkpoint after an exponential, capped backoff.

Delivery is at-least-once; every event carries a dedup key.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, List, Optional, Protocol, Tuple

from .errors import LedgerUnavailable, ProtocolIntegrityError
from .locks import LedgerAdapter
from .models import (
    EventKind,
    LedgerEvent,
    LockView,
    RawBlock,
    RawEventKind,
    RawLedgerEvent,
    WatchFilter,
)


@dataclass
class WatcherConfig:
    confirmations: int = 1
    # how many emitted blocks are remembered for reorg detection
    retain_blocks: int = 64
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    start_height: int = 0
    filter: Optional[WatchFilter] = None


class CheckpointStore(Protocol):
    async def save_checkpoint(self, ledger_id: str, height: int) -> None: ...

    async def load_checkpoint(self, ledger_id: str) -> Optional[int]: ...


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    return min(cap, base * (2 ** attempt))


_RAW_KINDS = {
    RawEventKind.CREATED: EventKind.LOCK_CREATED,
    RawEventKind.CLAIMED: EventKind.LOCK_CLAIMED,
    RawEventKind.REFUNDED: EventKind.LOCK_REFUNDED,
}


class LedgerWatcher:
    def __init__(
        self,
        adapter: LedgerAdapter,
        config: Optional[WatcherConfig] = None,
        checkpoints: Optional[CheckpointStore] = None,
    ):
        self.adapter = adapter
        self.ledger_id = adapter.ledger_id
        self.config = config or WatcherConfig()
        if self.config.confirmations < 1:
            raise ValueError("confirmations must be at least 1")
        self.checkpoints = checkpoints
        self.checkpoint: Optional[int] = None
        self.filter = self.config.filter or WatchFilter()
        self.log = logging.getLogger(f"LedgerWatcher[{self.ledger_id}]")

        self._unconfirmed: Deque[RawBlock] = deque()
        # height -> (hash, events emitted from that block)
        self._emitted: Dict[int, Tuple[str, List[LedgerEvent]]] = {}
        # lock_id -> timelock, for expiry detection
        self._tracked: Dict[str, int] = {}
        self._expired: set = set()

    def track(self, lock_id: str, timelock: int) -> None:
        """Watch a lock for expiry even if its creation was before our checkpoint."""
        if lock_id not in self._expired:
            self._tracked[lock_id] = timelock

    def untrack(self, lock_id: str) -> None:
        self._tracked.pop(lock_id, None)

    async def _start_height(self) -> int:
        if self.checkpoint is None and self.checkpoints is not None:
            self.checkpoint = await self.checkpoints.load_checkpoint(self.ledger_id)
        if self.checkpoint is None:
            return self.config.start_height
        return self.checkpoint + 1

    async def watch_events(self) -> AsyncIterator[LedgerEvent]:
        attempt = 0
        while True:
            start = await self._start_height()
            self._unconfirmed.clear()
            self.log.info(f"Subscribing to {self.ledger_id} from height {start}")
            try:
                async for block in self.adapter.subscribe(self.filter, start):
                    attempt = 0
                    for event in self.ingest(block):
                        yield event
                    await self._persist_checkpoint()
            except LedgerUnavailable as e:
                delay = backoff_delay(attempt, self.config.backoff_base, self.config.backoff_max)
                attempt += 1
                self.log.warning(f"Ledger unavailable ({e}), retrying in {delay:.2f}s from checkpoint {self.checkpoint}")
                await asyncio.sleep(delay)

    async def _persist_checkpoint(self) -> None:
        if self.checkpoints is not None and self.checkpoint is not None:
            await self.checkpoints.save_checkpoint(self.ledger_id, self.checkpoint)

    # --- block processing ---------------------------------------------------------

    def ingest(self, block: RawBlock) -> List[LedgerEvent]:
        """Feed one block; returns the events that became emittable."""
        out: List[LedgerEvent] = []
        out.extend(self._handle_reorg(block))
        self._unconfirmed.append(block)

        tip = block.height
        while self._unconfirmed and tip - self._unconfirmed[0].height + 1 >= self.config.confirmations:
            confirmed = self._unconfirmed.popleft()
            out.extend(self._confirm(confirmed))
        return out

    def _handle_reorg(self, block: RawBlock) -> List[LedgerEvent]:
        replaced = False
        if self._unconfirmed and block.height <= self._unconfirmed[-1].height:
            replaced = True
        known = self._emitted.get(block.height)
        if known is not None and known[0] != block.block_hash:
            replaced = True
        if not replaced:
            return []

        # drop unconfirmed blocks at or above the fork point silently
        while self._unconfirmed and self._unconfirmed[-1].height >= block.height:
            self._unconfirmed.pop()

        retracted: List[LedgerEvent] = []
        for height in sorted(h for h in self._emitted if h >= block.height):
            _, events = self._emitted.pop(height)
            for ev in events:
                if ev.kind is EventKind.EVENT_RETRACTED:
                    continue
                self.log.warning(f"Retracting {ev.kind.value} {ev.lock_id} from orphaned block {height}")
                retracted.append(
                    LedgerEvent(
                        kind=EventKind.EVENT_RETRACTED,
                        ledger_id=self.ledger_id,
                        lock_id=ev.lock_id,
                        dedup_key=f"{self.ledger_id}:retract:{ev.dedup_key}:{block.block_hash}",
                        height=height,
                        block_hash=ev.block_hash,
                        retracted_key=ev.dedup_key,
                        retracted_kind=ev.kind,
                    )
                )
                if ev.kind is EventKind.LOCK_EXPIRED:
                    self._expired.discard(ev.lock_id)
                elif ev.kind is EventKind.LOCK_CREATED:
                    self._tracked.pop(ev.lock_id, None)
        if self.checkpoint is not None and self.checkpoint >= block.height:
            self.checkpoint = block.height - 1
        return retracted

    def _confirm(self, block: RawBlock) -> List[LedgerEvent]:
        events: List[LedgerEvent] = []
        for raw in block.events:
            try:
                event = self._normalize(block, raw)
            except ProtocolIntegrityError as e:
                self.log.error(f"Skipping malformed {raw.kind.value} log in {raw.tx_id}: {e}")
                continue
            events.append(event)
            if event.kind is EventKind.LOCK_CREATED and event.lock is not None:
                self.track(event.lock_id, event.lock.timelock)
            elif event.kind in (EventKind.LOCK_CLAIMED, EventKind.LOCK_REFUNDED):
                self.untrack(event.lock_id)
                self._expired.add(event.lock_id)

        policy = self.adapter.timelock_policy
        for lock_id, timelock in list(self._tracked.items()):
            if policy.is_expired(block.time, timelock):
                del self._tracked[lock_id]
                self._expired.add(lock_id)
                events.append(
                    LedgerEvent(
                        kind=EventKind.LOCK_EXPIRED,
                        ledger_id=self.ledger_id,
                        lock_id=lock_id,
                        dedup_key=f"{self.ledger_id}:{lock_id}:expired",
                        height=block.height,
                        block_hash=block.block_hash,
                    )
                )

        self._emitted[block.height] = (block.block_hash, events)
        for height in [h for h in self._emitted if h <= block.height - self.config.retain_blocks]:
            del self._emitted[height]
        self.checkpoint = block.height
        for ev in events:
            self.log.info(f"{ev.kind.value} {ev.lock_id[:12]}… at {ev.height}")
        return events

    def _normalize(self, block: RawBlock, raw: RawLedgerEvent) -> LedgerEvent:
        kind = _RAW_KINDS[raw.kind]
        lock: Optional[LockView] = None
        secret: Optional[str] = None
        if kind is EventKind.LOCK_CREATED:
            try:
                lock = LockView(**{**raw.data, "ledger_id": self.ledger_id, "lock_id": raw.lock_id})
            except ValueError as e:
                raise ProtocolIntegrityError(f"undecodable lock data: {e}") from e
        elif kind is EventKind.LOCK_CLAIMED:
            secret = raw.data.get("secret")
            if not secret:
                raise ProtocolIntegrityError("claim transaction carries no secret")
        return LedgerEvent(
            kind=kind,
            ledger_id=self.ledger_id,
            lock_id=raw.lock_id,
            dedup_key=f"{self.ledger_id}:{raw.tx_id}:{raw.index}",
            height=block.height,
            block_hash=block.block_hash,
            lock=lock,
            secret=secret,
        )
