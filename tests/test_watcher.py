"""
Tests for the ledger watcher.

Tests cover:
- confirmation depth before emission
- reorg retraction, both fed block by block and against a reorganizing chain
- LOCK_EXPIRED from block time, once per lock
- reconnect with backoff and checkpoint resume
"""

import asyncio
import contextlib
from decimal import Decimal

import pytest

from swapengine import commitment as cm
from swapengine.ledgers.memory import InMemoryChain, InMemoryLedger
from swapengine.locks import LockStateMachine
from swapengine.models import EventKind, LockState, RawBlock, RawEventKind, RawLedgerEvent
from swapengine.store import InMemorySwapStore
from swapengine.watcher import LedgerWatcher, WatcherConfig, backoff_delay

FAST = dict(backoff_base=0.001, backoff_max=0.01)


def created(lock_id="0xlock", tx_id="0xtx", timelock=2_000):
    return RawLedgerEvent(
        kind=RawEventKind.CREATED,
        lock_id=lock_id,
        tx_id=tx_id,
        data={
            "commitment": cm.to_hex(cm.commit(bytes(range(32)))),
            "amount": "1",
            "depositor": "alice",
            "beneficiary": "bob",
            "timelock": timelock,
        },
    )


def block(height, events=(), time=None, tag="a"):
    return RawBlock(
        height=height,
        block_hash=f"0x{tag}{height}",
        parent_hash=f"0x{tag}{height - 1}",
        time=time if time is not None else 1_000 + height,
        events=list(events),
    )


def offline_watcher(confirmations=1):
    chain = InMemoryChain("test")
    return LedgerWatcher(InMemoryLedger(chain, "resolver"), WatcherConfig(confirmations=confirmations, **FAST))


async def collect(watcher, count, timeout=3.0):
    events = []

    async def consume():
        async for ev in watcher.watch_events():
            events.append(ev)
            if len(events) >= count:
                return

    await asyncio.wait_for(consume(), timeout)
    return events


# =============================================================================
# confirmation depth
# =============================================================================

class TestConfirmations:
    def test_event_waits_for_depth(self):
        watcher = offline_watcher(confirmations=3)
        assert watcher.ingest(block(1, [created()])) == []
        assert watcher.ingest(block(2)) == []
        events = watcher.ingest(block(3))
        assert [e.kind for e in events] == [EventKind.LOCK_CREATED]
        assert events[0].height == 1
        assert watcher.checkpoint == 1

    def test_dedup_key_names_ledger_transaction_and_index(self):
        watcher = offline_watcher()
        (event,) = watcher.ingest(block(1, [created(tx_id="0xabc")]))
        assert event.dedup_key == "test:0xabc:0"
        assert event.lock.beneficiary == "bob"

    def test_confirmations_must_be_positive(self):
        with pytest.raises(ValueError):
            LedgerWatcher(InMemoryLedger(InMemoryChain("x"), "r"), WatcherConfig(confirmations=0))

    def test_claim_without_secret_is_skipped(self):
        watcher = offline_watcher()
        claim = RawLedgerEvent(kind=RawEventKind.CLAIMED, lock_id="0xlock", tx_id="0xtx")
        assert watcher.ingest(block(1, [claim])) == []

    def test_claim_carries_secret(self):
        watcher = offline_watcher()
        secret = cm.to_hex(bytes(range(32)))
        claim = RawLedgerEvent(kind=RawEventKind.CLAIMED, lock_id="0xlock", tx_id="0xtx", data={"secret": secret})
        (event,) = watcher.ingest(block(1, [claim]))
        assert event.kind is EventKind.LOCK_CLAIMED
        assert event.secret == secret


# =============================================================================
# reorgs
# =============================================================================

class TestReorg:
    def test_replaced_block_retracts_its_events(self):
        watcher = offline_watcher()
        (original,) = watcher.ingest(block(1, [created()]))
        events = watcher.ingest(block(1, tag="b"))
        assert [e.kind for e in events] == [EventKind.EVENT_RETRACTED]
        assert events[0].retracted_key == original.dedup_key
        assert events[0].retracted_kind is EventKind.LOCK_CREATED
        assert events[0].lock_id == original.lock_id

    def test_unconfirmed_events_are_dropped_silently(self):
        watcher = offline_watcher(confirmations=2)
        assert watcher.ingest(block(1, [created()])) == []
        # block 1 is replaced before it was confirmed
        assert watcher.ingest(block(1, tag="b")) == []
        assert watcher.ingest(block(2, tag="b")) == []

    def test_reorganizing_chain_produces_retraction(self):
        async def scenario():
            chain = InMemoryChain("test")
            chain.fund("alice", Decimal(5))
            alice = LockStateMachine(InMemoryLedger(chain, "alice"))
            watcher = LedgerWatcher(InMemoryLedger(chain, "resolver"), WatcherConfig(**FAST))
            _, commitment = cm.generate_pair()
            ref = await alice.create(cm.to_hex(commitment), Decimal(1), "bob", chain.now() + 3600)

            events = []

            async def consume():
                async for ev in watcher.watch_events():
                    events.append(ev)
                    if ev.kind is EventKind.LOCK_CREATED:
                        chain.reorg(1)
                        chain.mine()
                    if ev.kind is EventKind.EVENT_RETRACTED:
                        return

            await asyncio.wait_for(consume(), 3.0)
            assert [e.kind for e in events] == [EventKind.LOCK_CREATED, EventKind.EVENT_RETRACTED]
            assert events[1].lock_id == ref.lock_id
            # state was rebuilt without the orphaned block
            assert ref.lock_id not in chain.locks
            assert chain.balances["alice"] == Decimal(5)

        asyncio.run(scenario())


# =============================================================================
# expiry
# =============================================================================

class TestExpiry:
    def test_expiry_emitted_once_from_block_time(self):
        watcher = offline_watcher()
        watcher.ingest(block(1, [created(timelock=1_010)]))
        assert watcher.ingest(block(2, time=1_009)) == []
        events = watcher.ingest(block(3, time=1_010))
        assert [e.kind for e in events] == [EventKind.LOCK_EXPIRED]
        assert events[0].dedup_key == "test:0xlock:expired"
        assert watcher.ingest(block(4, time=1_020)) == []

    def test_resolved_lock_never_expires(self):
        watcher = offline_watcher()
        watcher.ingest(block(1, [created(timelock=1_010)]))
        refund = RawLedgerEvent(kind=RawEventKind.REFUNDED, lock_id="0xlock", tx_id="0xtx2")
        watcher.ingest(block(2, [refund]))
        assert watcher.ingest(block(3, time=2_000)) == []

    def test_tracked_lock_from_before_checkpoint(self):
        watcher = offline_watcher()
        watcher.track("0xold", 1_005)
        events = watcher.ingest(block(5, time=1_005))
        assert [(e.kind, e.lock_id) for e in events] == [(EventKind.LOCK_EXPIRED, "0xold")]


# =============================================================================
# outages and checkpoints
# =============================================================================

class TestResume:
    def test_backoff_is_exponential_and_capped(self):
        assert backoff_delay(0, 1.0, 60.0) == 1.0
        assert backoff_delay(3, 1.0, 60.0) == 8.0
        assert backoff_delay(10, 1.0, 60.0) == 60.0

    def test_watcher_survives_outage(self):
        async def scenario():
            chain = InMemoryChain("test")
            chain.fund("alice", Decimal(5))
            alice = LockStateMachine(InMemoryLedger(chain, "alice"))
            _, commitment = cm.generate_pair()
            await alice.create(cm.to_hex(commitment), Decimal(1), "bob", chain.now() + 3600)
            chain.fail_next("subscribe", 3)

            watcher = LedgerWatcher(InMemoryLedger(chain, "resolver"), WatcherConfig(**FAST))
            (event,) = await collect(watcher, 1)
            assert event.kind is EventKind.LOCK_CREATED

        asyncio.run(scenario())

    def test_restart_resumes_from_checkpoint(self):
        async def scenario():
            chain = InMemoryChain("test")
            chain.fund("alice", Decimal(5))
            alice = LockStateMachine(InMemoryLedger(chain, "alice"))
            store = InMemorySwapStore()
            _, c1 = cm.generate_pair()
            first = await alice.create(cm.to_hex(c1), Decimal(1), "bob", chain.now() + 3600)

            watcher = LedgerWatcher(InMemoryLedger(chain, "resolver"), WatcherConfig(**FAST), checkpoints=store)
            seen = []

            async def follow():
                async for ev in watcher.watch_events():
                    seen.append(ev)

            task = asyncio.create_task(follow())
            for _ in range(300):
                if await store.load_checkpoint("test") == chain.height:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            assert [ev.lock_id for ev in seen] == [first.lock_id]
            assert await store.load_checkpoint("test") == chain.height

            _, c2 = cm.generate_pair()
            second = await alice.create(cm.to_hex(c2), Decimal(1), "bob", chain.now() + 3600)
            restarted = LedgerWatcher(InMemoryLedger(chain, "resolver"), WatcherConfig(**FAST), checkpoints=store)
            (event,) = await collect(restarted, 1)
            assert event.lock_id == second.lock_id

        asyncio.run(scenario())


def test_chain_reorg_replays_claims():
    async def scenario():
        chain = InMemoryChain("test")
        chain.fund("alice", Decimal(5))
        alice = LockStateMachine(InMemoryLedger(chain, "alice"))
        bob = LockStateMachine(InMemoryLedger(chain, "bob"))
        secret, commitment = cm.generate_pair()
        ref = await alice.create(cm.to_hex(commitment), Decimal(2), "bob", chain.now() + 3600)
        await bob.claim(ref, cm.to_hex(secret))
        chain.reorg(1)
        view = await bob.status(ref)
        assert view.state is LockState.LOCKED
        assert chain.balances["bob"] == 0
        assert chain.balances["alice"] == Decimal(3)

    asyncio.run(scenario())
