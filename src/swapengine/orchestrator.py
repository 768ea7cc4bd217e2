"""
Swap orchestrator.

Watcher events arrive on one queue and are routed by lock reference to the
swap that owns the lock. Each active swap runs as its own asyncio task with a
private inbox, so a swap's record is only ever mutated by that task; the
store is the only thing swaps share.

Lifecycle:

    INITIATED -> SOURCE_LOCKED -> CONVERTED -> DEST_LOCKED -> DEST_CLAIMED
        -> SOURCE_CLAIMED -> COMPLETED

    DEST_LOCKED -> REFUNDING -> COMPLETED (refunded)

Anything before DEST_LOCKED may fail without funds at risk: the source lock
simply refunds to the depositor at its own timelock. Once a destination lock
exists the swap either completes or refunds, apart from the stranded leg
(destination claimed, source claim impossible) which fails loudly.
"""

import asyncio
import hashlib
import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Set, Union

from . import commitment as cm
from .collaborators import BridgeService, ConversionService, DirectBridge, is_transient, retry_async
from .errors import (
    AlreadyResolved,
    BridgeError,
    CommitmentMismatch,
    ConversionError,
    Expired,
    InvalidParameters,
    LedgerRejected,
    LockNotFound,
    NotExpired,
    RetryBudgetExhausted,
    StaleWriteError,
    SwapEngineError,
    TransitionError,
)
from .locks import LedgerAdapter, LockStateMachine
from .models import (
    EventKind,
    FailureReason,
    LedgerEvent,
    LockRef,
    LockState,
    LockView,
    SwapRecord,
    SwapStatus,
    SwapStatusChanged,
    SwapStatusView,
)
from .store import SwapStore
from .watcher import LedgerWatcher

S = SwapStatus

# Legal transitions: (from_status, to_status)
_TRANSITIONS = {
    (S.INITIATED, S.SOURCE_LOCKED),
    (S.SOURCE_LOCKED, S.CONVERTED),
    (S.CONVERTED, S.DEST_LOCKED),
    (S.DEST_LOCKED, S.DEST_CLAIMED),
    (S.DEST_CLAIMED, S.SOURCE_CLAIMED),
    (S.SOURCE_CLAIMED, S.COMPLETED),
    # timeout path
    (S.DEST_LOCKED, S.REFUNDING),
    (S.REFUNDING, S.COMPLETED),
    # the counterparty claimed while we were refunding
    (S.REFUNDING, S.DEST_CLAIMED),
    # pre-lock aborts
    (S.INITIATED, S.FAILED),
    (S.SOURCE_LOCKED, S.FAILED),
    (S.CONVERTED, S.FAILED),
    # stranded leg
    (S.DEST_CLAIMED, S.FAILED),
}


def check_transition(current: SwapStatus, target: SwapStatus) -> None:
    if (current, target) not in _TRANSITIONS:
        raise TransitionError(f"Illegal transition: {current.value} -> {target.value}")


def swap_id_for(source_lock: LockRef) -> str:
    """Deterministic id, so a replayed deposit can never open a second swap."""
    digest = hashlib.sha256(f"{source_lock.ledger_id}:{source_lock.lock_id}".encode()).hexdigest()
    return f"swap_{digest[:16]}"


@dataclass(frozen=True)
class OrchestratorConfig:
    # Minimum gap between the destination and source timelocks, in seconds.
    safety_margin_seconds: int = 3600
    dest_lock_seconds: int = 86400
    # Shorter destination locks than this are not worth creating.
    min_dest_lock_seconds: int = 600
    retry_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0


@dataclass(frozen=True)
class DepositCriteria:
    assets: Optional[FrozenSet[str]] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    def reject_reason(self, lock: LockView) -> Optional[str]:
        if self.assets is not None and lock.asset not in self.assets:
            return f"asset {lock.asset!r} not accepted"
        if self.min_amount is not None and lock.amount < self.min_amount:
            return f"amount {lock.amount} below minimum {self.min_amount}"
        if self.max_amount is not None and lock.amount > self.max_amount:
            return f"amount {lock.amount} above maximum {self.max_amount}"
        return None


class StatusBroadcaster:
    """Fan-out of SwapStatusChanged notifications, one queue per subscriber."""

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []
        self.log = logging.getLogger("StatusBroadcaster")

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, change: SwapStatusChanged) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(change)
            except asyncio.QueueFull:
                self.log.warning(f"Subscriber queue full, dropping {change.swap_id} -> {change.status.value}")


class _Start:
    pass


class _Resume:
    pass


InboxItem = Union[LedgerEvent, _Start, _Resume]


class SwapTask:
    """Owns one SwapRecord and drives it through its lifecycle."""

    def __init__(self, orchestrator: "SwapOrchestrator", record: SwapRecord):
        self.orch = orchestrator
        self.record = record
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None
        self.log = logging.getLogger(f"Swap[{record.swap_id}]")
        self._pending_keys: List[str] = []

    @property
    def swap_id(self) -> str:
        return self.record.swap_id

    def start(self) -> None:
        self.task = asyncio.create_task(self.run(), name=self.swap_id)

    async def run(self) -> None:
        while not self.record.status.terminal:
            item = await self.inbox.get()
            try:
                await self.handle(item)
            except StaleWriteError as e:
                self.log.error(f"Concurrent write detected ({e}), reloading record")
                await self._reload()
            except Exception:
                self.log.exception(f"Failed to handle {type(item).__name__}, swap stays {self.record.status.value}")
        self.orch._finished(self)

    async def _reload(self) -> None:
        record = await self.orch.store.load(self.swap_id)
        if record is not None:
            self.record = record
        self._pending_keys = []

    async def handle(self, item: InboxItem) -> None:
        if isinstance(item, _Start):
            await self._start()
        elif isinstance(item, _Resume):
            await self._resume()
        else:
            await self._on_event(item)

    # --- persistence ----------------------------------------------------------------

    async def _persist(self, **changes) -> None:
        previous = self.record.status
        target = changes.get("status", previous)
        if target is not previous:
            check_transition(previous, target)
        if self._pending_keys:
            changes["processed_events"] = changes.get("processed_events", self.record.processed_events) + self._pending_keys
        if target.terminal:
            changes["secret"] = None
        record = self.record.model_copy(update=changes)
        self.record = await self.orch.store.save(record)
        self._pending_keys = []

        if target is not previous:
            self.log.info(f"{previous.value} -> {target.value}")
            self.orch.broadcaster.publish(
                SwapStatusChanged(
                    swap_id=self.swap_id,
                    previous=previous,
                    status=target,
                    version=self.record.version,
                    failure_reason=self.record.failure_reason,
                )
            )
        if target.terminal:
            await self.orch.store.archive(self.swap_id)

    async def _fail(self, reason: FailureReason, detail: str, **changes) -> None:
        if reason.funds_at_risk:
            self.log.error(f"FAILED ({reason.value}): {detail}")
        else:
            self.log.warning(f"Aborted before any destination lock ({reason.value}): {detail}")
        await self._persist(status=S.FAILED, failure_reason=reason, failure_detail=detail, **changes)

    async def _retry(self, fn, what: str):
        cfg = self.orch.config
        return await retry_async(
            fn,
            attempts=cfg.retry_attempts,
            base_delay=cfg.retry_base_delay,
            max_delay=cfg.retry_max_delay,
            what=f"{self.swap_id} {what}",
        )

    def _backoff(self, attempt: int) -> float:
        cfg = self.orch.config
        return min(cfg.retry_max_delay, cfg.retry_base_delay * (2 ** attempt))

    # --- source side ----------------------------------------------------------------

    async def _start(self) -> None:
        """Re-verify the deposit against the ledger before acting on the event."""
        try:
            view = await self._retry(lambda: self.orch.source.adapter.read(self.record.source_lock.lock_id), "read source lock")
            now = await self._retry(self.orch.source.adapter.current_time, "read source time")
        except RetryBudgetExhausted as e:
            await self._fail(FailureReason.INVALID_DEPOSIT, f"source lock could not be verified: {e}")
            return
        if view is None or view.state is not LockState.LOCKED:
            await self._fail(FailureReason.INVALID_DEPOSIT, "source lock is not locked on the ledger")
            return
        if view.commitment != self.record.commitment or view.timelock != self.record.source_timelock:
            await self._fail(FailureReason.INVALID_DEPOSIT, "source lock does not match the observed event")
            return
        if self.orch.source.adapter.timelock_policy.is_expired(now, view.timelock):
            await self._fail(FailureReason.INVALID_DEPOSIT, "source lock already expired")
            return
        await self._persist(status=S.SOURCE_LOCKED)
        await self._convert()

    async def _convert(self) -> None:
        rec = self.record
        try:
            conversion = await self._retry(
                lambda: self.orch.conversion.convert(rec.source_asset, rec.source_amount), "conversion"
            )
        except (ConversionError, RetryBudgetExhausted) as e:
            await self._fail(FailureReason.CONVERSION_FAILED, str(e))
            return
        try:
            receipt = await self._retry(
                lambda: self.orch.bridge.bridge(
                    conversion.converted_asset,
                    conversion.converted_amount,
                    self.orch.destination.ledger_id,
                    self.orch.destination.adapter.account,
                ),
                "bridge",
            )
        except (BridgeError, RetryBudgetExhausted) as e:
            await self._fail(FailureReason.BRIDGE_FAILED, str(e))
            return
        await self._persist(
            status=S.CONVERTED,
            converted_asset=conversion.converted_asset,
            converted_amount=conversion.converted_amount,
            bridge_receipt=receipt.receipt_id,
        )
        await self._lock_destination()

    # --- destination lock ------------------------------------------------------------

    async def _dest_timelock(self) -> Optional[int]:
        """Destination timelock honouring dest_duration + safety_margin <= source remaining."""
        cfg = self.orch.config
        src_policy = self.orch.source.adapter.timelock_policy
        dest_policy = self.orch.destination.adapter.timelock_policy
        src_now = await self._retry(self.orch.source.adapter.current_time, "read source time")
        dest_now = await self._retry(self.orch.destination.adapter.current_time, "read destination time")

        remaining = src_policy.seconds_until(src_now, self.record.source_timelock)
        # height-based ledgers round durations up by up to one block
        granularity = math.ceil(getattr(dest_policy, "block_seconds", 0))
        duration = min(cfg.dest_lock_seconds, remaining - cfg.safety_margin_seconds - granularity)
        if duration < cfg.min_dest_lock_seconds:
            await self._fail(
                FailureReason.TIMELOCK_TOO_CLOSE,
                f"source lock expires in {remaining}s, need {cfg.min_dest_lock_seconds}s + {cfg.safety_margin_seconds}s margin",
            )
            return None
        timelock = cm.compute_timelock(dest_policy, dest_now, duration)
        if dest_policy.seconds_until(dest_now, timelock) + cfg.safety_margin_seconds > remaining:
            await self._fail(FailureReason.TIMELOCK_TOO_CLOSE, "destination timelock would violate the safety margin")
            return None
        return timelock

    async def _lock_destination(self) -> None:
        rec = self.record
        try:
            source = await self._retry(lambda: self.orch.source.adapter.read(rec.source_lock.lock_id), "re-read source lock")
            if source is None or source.state is not LockState.LOCKED:
                await self._fail(FailureReason.SOURCE_RETRACTED, "source lock is gone, not creating a destination lock")
                return
            timelock = await self._dest_timelock()
        except RetryBudgetExhausted as e:
            await self._fail(FailureReason.DEST_LOCK_FAILED, f"ledger unavailable: {e}")
            return
        if timelock is None:
            return

        # Recorded before submitting so recovery looks for the lock instead of
        # blindly creating a second one.
        await self._persist(dest_submitted=True, dest_timelock=timelock)
        submitted = False

        async def attempt() -> LockView:
            nonlocal submitted
            if submitted:
                existing = await self.orch.destination.adapter.find(rec.commitment)
                if existing is not None:
                    return existing
            submitted = True
            ref = await self.orch.destination.create(
                rec.commitment,
                rec.converted_amount,
                rec.dest_beneficiary,
                timelock,
                asset=rec.converted_asset or "",
            )
            return LockView(
                lock_id=ref.lock_id,
                ledger_id=ref.ledger_id,
                commitment=rec.commitment,
                amount=rec.converted_amount,
                depositor=self.orch.destination.adapter.account,
                beneficiary=rec.dest_beneficiary,
                timelock=timelock,
            )

        try:
            lock = await self._retry(attempt, "create destination lock")
        except (InvalidParameters, LedgerRejected) as e:
            await self._fail(FailureReason.DEST_LOCK_FAILED, str(e))
            return
        except RetryBudgetExhausted as e:
            existing = None
            try:
                existing = await self.orch.destination.adapter.find(rec.commitment)
            except SwapEngineError:
                self.log.exception("Could not check for an existing destination lock")
            if existing is None:
                await self._fail(FailureReason.DEST_LOCK_FAILED, str(e))
                return
            lock = existing
        await self._adopt_destination(lock)

    async def _adopt_destination(self, lock: LockView) -> None:
        self.orch._index(self.swap_id, lock.ref)
        self.orch._track(lock.ref, lock.timelock)
        await self._persist(status=S.DEST_LOCKED, dest_lock=lock.ref, dest_timelock=lock.timelock)
        # an adopted lock may have been resolved while nobody was watching
        await self._sync_destination(lock)

    async def _sync_destination(self, view: Optional[LockView]) -> None:
        if view is None:
            self.log.error(f"Destination lock {self.record.dest_lock} not found, waiting for events")
        elif view.state is LockState.CLAIMED and view.revealed_secret:
            await self._on_dest_claimed(view.revealed_secret)
        elif view.state is LockState.REFUNDED:
            await self._on_dest_refunded()

    # --- events ---------------------------------------------------------------------

    async def _on_event(self, event: LedgerEvent) -> None:
        if event.dedup_key in self.record.processed_events:
            self.log.debug(f"Duplicate {event.kind.value} {event.dedup_key} ignored")
            return
        self._pending_keys.append(event.dedup_key)

        rec = self.record
        if event.kind is EventKind.EVENT_RETRACTED:
            await self._on_retracted(event)
        elif rec.dest_lock is not None and event.ref == rec.dest_lock:
            if event.kind is EventKind.LOCK_CLAIMED:
                await self._on_dest_claimed(event.secret)
            elif event.kind is EventKind.LOCK_EXPIRED:
                await self._on_dest_expired()
            elif event.kind is EventKind.LOCK_REFUNDED:
                await self._on_dest_refunded()
        elif event.ref == rec.source_lock:
            if event.kind is EventKind.LOCK_REFUNDED and rec.status is S.DEST_CLAIMED:
                await self._fail(
                    FailureReason.STRANDED_LEG, "source lock refunded before it could be claimed", stranded=True
                )

        if self._pending_keys and not self.record.status.terminal:
            await self._persist()

    async def _on_retracted(self, event: LedgerEvent) -> None:
        rec = self.record
        if event.retracted_key in rec.processed_events:
            # a re-mined copy of the same transaction must be processed again
            await self._persist(processed_events=[k for k in rec.processed_events if k != event.retracted_key])
            rec = self.record
        self.log.warning(
            f"{event.retracted_kind.value if event.retracted_kind else 'event'} on {event.ref} retracted by reorg, re-verifying"
        )
        adapter = self.orch.source.adapter if event.ref == rec.source_lock else self.orch.destination.adapter
        view = await self._retry(lambda: adapter.read(event.lock_id), "re-read lock")

        if event.ref == rec.source_lock and rec.status in (S.INITIATED, S.SOURCE_LOCKED, S.CONVERTED):
            if view is None or view.state is not LockState.LOCKED or view.commitment != rec.commitment:
                await self._fail(FailureReason.SOURCE_RETRACTED, "source lock disappeared in a reorg")
            return
        if view is None:
            self.log.error(f"Lock {event.ref} no longer exists after reorg while swap is {rec.status.value}")
        else:
            self.log.info(f"Lock {event.ref} is {view.state.value} after reorg")

    async def _on_dest_claimed(self, secret: Optional[str]) -> None:
        rec = self.record
        if rec.status not in (S.DEST_LOCKED, S.REFUNDING):
            return
        if not secret or not cm.verify(secret, rec.commitment):
            self.log.error("Claim event carries a secret that does not open the commitment, re-reading ledger")
            view = await self._retry(lambda: self.orch.destination.adapter.read(rec.dest_lock.lock_id), "re-read destination lock")
            secret = view.revealed_secret if view is not None else None
            if not secret or not cm.verify(secret, rec.commitment):
                return
        await self._persist(status=S.DEST_CLAIMED, secret=cm.to_hex(cm.parse_secret(secret)))
        await self._claim_source()

    async def _claim_source(self) -> None:
        """Race the source timelock: retry until the claim lands or the lock expires."""
        rec = self.record
        source = self.orch.source
        attempt = 0
        while True:
            try:
                now = await source.adapter.current_time()
                if source.adapter.timelock_policy.is_expired(now, rec.source_timelock):
                    raise Expired(f"source lock expired at {rec.source_timelock} (now={now})", rec.source_lock.lock_id)
                await source.claim(rec.source_lock, rec.secret)
                break
            except Expired as e:
                await self._fail(FailureReason.STRANDED_LEG, f"destination claimed but {e}", stranded=True)
                return
            except (LockNotFound, CommitmentMismatch) as e:
                await self._fail(FailureReason.STRANDED_LEG, f"source lock cannot be claimed: {e}", stranded=True)
                return
            except Exception as e:
                if not is_transient(e):
                    # rejected or already resolved: the ledger decides what happens next
                    state = await self._source_state()
                    if state is LockState.CLAIMED:
                        break
                    if state is LockState.REFUNDED:
                        await self._fail(
                            FailureReason.STRANDED_LEG, "source lock was refunded before it could be claimed", stranded=True
                        )
                        return
                    self.log.error(f"Source claim rejected ({e}), lock is still {state.value if state else 'unknown'}")
                delay = self._backoff(attempt)
                attempt += 1
                self.log.warning(f"Source claim failed ({e}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
        await self._persist(status=S.SOURCE_CLAIMED)
        await self._persist(status=S.COMPLETED)

    async def _source_state(self) -> Optional[LockState]:
        try:
            view = await self.orch.source.adapter.read(self.record.source_lock.lock_id)
        except SwapEngineError as e:
            self.log.warning(f"Could not re-read source lock: {e}")
            return None
        return view.state if view is not None else None

    async def _on_dest_expired(self) -> None:
        if self.record.status is not S.DEST_LOCKED:
            return
        await self._persist(status=S.REFUNDING)
        await self._refund_destination()

    async def _on_dest_refunded(self) -> None:
        if self.record.status is S.DEST_LOCKED:
            await self._persist(status=S.REFUNDING)
        if self.record.status is S.REFUNDING:
            await self._persist(status=S.COMPLETED, refunded=True)

    async def _refund_destination(self) -> None:
        rec = self.record
        dest = self.orch.destination
        attempt = 0
        while True:
            try:
                await dest.refund(rec.dest_lock)
                break
            except AlreadyResolved:
                view = await self._retry(lambda: dest.adapter.read(rec.dest_lock.lock_id), "re-read destination lock")
                if view is not None and view.state is LockState.CLAIMED:
                    if view.revealed_secret:
                        await self._on_dest_claimed(view.revealed_secret)
                    else:
                        self.log.warning("Destination claimed, waiting for the claim event to learn the secret")
                    return
                break
            except Exception as e:
                if not (is_transient(e) or isinstance(e, NotExpired)):
                    raise
                delay = self._backoff(attempt)
                attempt += 1
                self.log.warning(f"Destination refund failed ({e}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
        await self._persist(status=S.COMPLETED, refunded=True)

    # --- recovery -------------------------------------------------------------------

    async def _resume(self) -> None:
        """Pick up where a previous process left off. Never re-runs a side effect
        whose outcome the record already holds."""
        rec = self.record
        self.log.info(f"Resuming from {rec.status.value}")
        if rec.status is S.INITIATED:
            await self._start()
        elif rec.status is S.SOURCE_LOCKED:
            await self._convert()
        elif rec.status is S.CONVERTED:
            existing = None
            if rec.dest_submitted:
                existing = await self._retry(lambda: self.orch.destination.adapter.find(rec.commitment), "find destination lock")
            if existing is not None:
                self.log.info(f"Adopting destination lock {existing.lock_id} created before restart")
                await self._adopt_destination(existing)
            else:
                await self._lock_destination()
        elif rec.status is S.DEST_LOCKED:
            view = await self._retry(lambda: self.orch.destination.adapter.read(rec.dest_lock.lock_id), "read destination lock")
            await self._sync_destination(view)
        elif rec.status is S.DEST_CLAIMED:
            await self._claim_source()
        elif rec.status is S.SOURCE_CLAIMED:
            await self._persist(status=S.COMPLETED)
        elif rec.status is S.REFUNDING:
            await self._refund_destination()


class SwapOrchestrator:
    def __init__(
        self,
        source: LedgerAdapter,
        destination: LedgerAdapter,
        store: SwapStore,
        conversion: ConversionService,
        bridge: Optional[BridgeService] = None,
        config: Optional[OrchestratorConfig] = None,
        criteria: Optional[DepositCriteria] = None,
        watchers: Optional[List[LedgerWatcher]] = None,
        broadcaster: Optional[StatusBroadcaster] = None,
    ):
        if source.ledger_id == destination.ledger_id:
            raise InvalidParameters("source and destination must be different ledgers")
        self.source = LockStateMachine(source)
        self.destination = LockStateMachine(destination)
        self.store = store
        self.conversion = conversion
        self.bridge = bridge or DirectBridge()
        self.config = config or OrchestratorConfig()
        self.criteria = criteria or DepositCriteria()
        self.watchers = {w.ledger_id: w for w in (watchers or [])}
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.log = logging.getLogger("SwapOrchestrator")

        self._tasks: Dict[str, SwapTask] = {}
        self._by_lock: Dict[LockRef, str] = {}
        self._commitments: Set[str] = set()

    # --- bookkeeping ----------------------------------------------------------------

    def _index(self, swap_id: str, ref: LockRef) -> None:
        self._by_lock[ref] = swap_id

    def _track(self, ref: LockRef, timelock: Optional[int]) -> None:
        watcher = self.watchers.get(ref.ledger_id)
        if watcher is not None and timelock is not None:
            watcher.track(ref.lock_id, timelock)

    def _spawn(self, record: SwapRecord, first: InboxItem) -> SwapTask:
        task = SwapTask(self, record)
        self._tasks[record.swap_id] = task
        self._commitments.add(record.commitment)
        self._index(record.swap_id, record.source_lock)
        if record.dest_lock is not None:
            self._index(record.swap_id, record.dest_lock)
        task.inbox.put_nowait(first)
        task.start()
        return task

    def _finished(self, task: SwapTask) -> None:
        record = task.record
        self._tasks.pop(record.swap_id, None)
        self._commitments.discard(record.commitment)
        for ref in (record.source_lock, record.dest_lock):
            if ref is not None and self._by_lock.get(ref) == record.swap_id:
                del self._by_lock[ref]
        self.log.info(f"Swap {record.swap_id} finished: {record.status.value}")

    @property
    def active(self) -> List[str]:
        return list(self._tasks)

    # --- entrypoints ----------------------------------------------------------------

    async def recover(self) -> int:
        """Reload every non-terminal swap and resume it. Returns how many were resumed."""
        records = await self.store.load_active()
        for record in records:
            if record.swap_id in self._tasks:
                continue
            self._track(record.source_lock, record.source_timelock)
            if record.dest_lock is not None:
                self._track(record.dest_lock, record.dest_timelock)
            self._spawn(record, _Resume())
        if records:
            self.log.info(f"Recovered {len(records)} active swap(s)")
        return len(records)

    async def dispatch(self, event: LedgerEvent) -> None:
        swap_id = self._by_lock.get(event.ref)
        if swap_id is not None:
            task = self._tasks.get(swap_id)
            if task is not None:
                task.inbox.put_nowait(event)
            return
        if event.kind is EventKind.LOCK_CREATED and event.ledger_id == self.source.ledger_id:
            await self._intake(event)

    async def _intake(self, event: LedgerEvent) -> None:
        lock = event.lock
        if lock is None or lock.beneficiary != self.source.adapter.account:
            return
        swap_id = swap_id_for(lock.ref)
        if await self.store.load(swap_id) is not None:
            self.log.debug(f"Deposit {lock.lock_id} already belongs to {swap_id}")
            return

        record = SwapRecord(
            swap_id=swap_id,
            source_lock=lock.ref,
            commitment=lock.commitment,
            source_timelock=lock.timelock,
            source_asset=lock.asset,
            source_amount=lock.amount,
            depositor=lock.depositor,
            dest_beneficiary=lock.memo or lock.depositor,
            processed_events=[event.dedup_key],
        )
        reason = self.criteria.reject_reason(lock)
        if reason is None and lock.commitment in self._commitments:
            reason = "commitment already used by an active swap"
        if reason is not None:
            self.log.warning(f"Rejecting deposit {lock.lock_id}: {reason}")
            record = record.model_copy(
                update={"status": S.FAILED, "failure_reason": FailureReason.INVALID_DEPOSIT, "failure_detail": reason}
            )
            record = await self.store.save(record)
            await self.store.archive(swap_id)
            self.broadcaster.publish(
                SwapStatusChanged(
                    swap_id=swap_id,
                    previous=None,
                    status=record.status,
                    version=record.version,
                    failure_reason=record.failure_reason,
                )
            )
            return

        record = await self.store.save(record)
        self.log.info(f"New swap {swap_id}: {lock.amount} {lock.asset} from {lock.depositor}, H={lock.commitment[:10]}…")
        self.broadcaster.publish(
            SwapStatusChanged(swap_id=swap_id, previous=None, status=record.status, version=record.version)
        )
        self._spawn(record, _Start())

    async def run(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                await self.dispatch(event)
            except SwapEngineError:
                self.log.exception(f"Failed to dispatch {event.kind.value} {event.lock_id}")
            finally:
                queue.task_done()

    async def shutdown(self) -> None:
        tasks = [t.task for t in self._tasks.values() if t.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # --- read-only surface ------------------------------------------------------------

    async def get_swap_status(self, swap_id: str) -> Optional[SwapStatusView]:
        record = await self.store.load(swap_id)
        return record.projection() if record is not None else None

    async def list_swaps(self) -> List[SwapStatusView]:
        return [r.projection() for r in await self.store.list_all()]

    def subscribe(self) -> asyncio.Queue:
        return self.broadcaster.subscribe()
