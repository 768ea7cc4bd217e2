"""
In-memory HTLC ledger.

InMemoryChain plays the part of the contract and the chain under it: a lock
table, balances and a block list with hashes. It enforces the escrow rules
itself, in checks-effects-interactions order, so a transfer hook that
re-enters claim/refund sees the already-updated state.

InMemoryLedger is the LedgerAdapter view of a chain for one account.
Tests and LEDGER_KIND=memory use it.
"""

import asyncio
import hashlib
import itertools
import logging
import math
from collections import defaultdict
from decimal import Decimal
from typing import AsyncIterator, Callable, Dict, List, Optional

import attr

from .. import commitment as cm
from ..errors import (
    AlreadyResolved,
    CommitmentMismatch,
    Expired,
    InvalidParameters,
    LedgerRejected,
    LedgerUnavailable,
    LockNotFound,
    NotExpired,
)
from ..models import (
    ClaimLockTx,
    CreateLockTx,
    LockState,
    LockTx,
    LockView,
    RawBlock,
    RawEventKind,
    RawLedgerEvent,
    RefundLockTx,
    TxRef,
    WatchFilter,
)

TransferHook = Callable[[str, Decimal, str], None]


@attr.s(auto_attribs=True)
class Block:
    height: int
    block_hash: str
    parent_hash: str
    timestamp: int
    events: List[RawLedgerEvent] = attr.Factory(list)


class InMemoryChain:
    def __init__(
        self,
        ledger_id: str,
        policy: Optional[cm.TimelockPolicy] = None,
        start_time: int = 1_700_000_000,
        block_seconds: int = 12,
        auto_mine: bool = True,
        poll_interval: float = 0.005,
    ):
        self.ledger_id = ledger_id
        self.policy = policy or cm.TimestampTimelock()
        self.block_seconds = block_seconds
        self.auto_mine = auto_mine
        self.poll_interval = poll_interval
        self.clock = start_time
        self.locks: Dict[str, LockView] = {}
        self.balances: Dict[str, Decimal] = defaultdict(Decimal)
        self.on_transfer: Optional[TransferHook] = None
        self._genesis_balances: Dict[str, Decimal] = defaultdict(Decimal)
        self._pending: List[RawLedgerEvent] = []
        self._outages: Dict[str, int] = defaultdict(int)
        self._nonce = itertools.count()
        self._seq = itertools.count(1)
        self.blocks: List[Block] = [Block(0, self._block_hash(0, ""), "", start_time)]
        self.log = logging.getLogger(f"InMemoryChain[{ledger_id}]")

    # --- chain ----------------------------------------------------------------

    @property
    def height(self) -> int:
        return len(self.blocks) - 1

    def now(self) -> int:
        return self.policy.now(self.height, self.clock)

    def _block_hash(self, height: int, parent: str) -> str:
        seed = f"{self.ledger_id}:{height}:{parent}:{next(self._nonce)}"
        return "0x" + hashlib.sha256(seed.encode()).hexdigest()

    def mine(self) -> Block:
        parent = self.blocks[-1]
        height = parent.height + 1
        block = Block(height, self._block_hash(height, parent.block_hash), parent.block_hash, self.clock, self._pending)
        self._pending = []
        self.blocks.append(block)
        return block

    def advance(self, seconds: int) -> None:
        """Let time pass. Mines at least one block so watchers see the new time."""
        if self.policy.unit == "height":
            for _ in range(max(1, math.ceil(seconds / self.block_seconds))):
                self.clock += self.block_seconds
                self.mine()
        else:
            self.clock += seconds
            self.mine()

    def reorg(self, depth: int) -> None:
        """Drop the last depth blocks and rebuild state from the survivors."""
        if depth <= 0 or depth >= len(self.blocks):
            raise InvalidParameters(f"cannot reorg {depth} blocks at height {self.height}")
        del self.blocks[-depth:]
        self._pending = []
        self._replay()
        self.log.warning(f"Reorganized {depth} block(s), tip now {self.height}")

    def _replay(self) -> None:
        self.locks = {}
        self.balances = defaultdict(Decimal, self._genesis_balances)
        for block in self.blocks:
            for ev in block.events:
                if ev.kind is RawEventKind.CREATED:
                    lock = LockView(**ev.data)
                    self.locks[lock.lock_id] = lock
                    self.balances[lock.depositor] -= lock.amount
                elif ev.kind is RawEventKind.CLAIMED:
                    lock = self.locks[ev.lock_id]
                    lock.state = LockState.CLAIMED
                    lock.revealed_secret = ev.data.get("secret")
                    self.balances[lock.beneficiary] += lock.amount
                elif ev.kind is RawEventKind.REFUNDED:
                    lock = self.locks[ev.lock_id]
                    lock.state = LockState.REFUNDED
                    self.balances[lock.depositor] += lock.amount

    def fund(self, account: str, amount: Decimal) -> None:
        self._genesis_balances[account] += Decimal(amount)
        self.balances[account] += Decimal(amount)

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next `times` calls of operation (subscribe/submit/read) fail."""
        self._outages[operation] += times

    def check_available(self, operation: str) -> None:
        if self._outages[operation] > 0:
            self._outages[operation] -= 1
            raise LedgerUnavailable(f"{self.ledger_id}: {operation} unavailable")

    def _emit(self, kind: RawEventKind, lock_id: str, data: dict) -> str:
        seed = f"{self.ledger_id}:{kind.value}:{lock_id}:{next(self._seq)}"
        tx_id = "0x" + hashlib.sha256(seed.encode()).hexdigest()
        self._pending.append(RawLedgerEvent(kind=kind, lock_id=lock_id, tx_id=tx_id, index=len(self._pending), data=data))
        if self.auto_mine:
            self.mine()
        return tx_id

    def _transfer(self, recipient: str, amount: Decimal, lock_id: str) -> None:
        self.balances[recipient] += amount
        if self.on_transfer is not None:
            self.on_transfer(recipient, amount, lock_id)

    # --- contract ---------------------------------------------------------------

    def apply_create(self, depositor: str, tx: CreateLockTx) -> TxRef:
        commitment = cm.to_hex(cm.parse_commitment(tx.commitment))
        if tx.amount <= 0:
            raise InvalidParameters("amount must be positive")
        if tx.timelock <= self.now():
            raise InvalidParameters("timelock must be in the future")
        if self.balances[depositor] < tx.amount:
            raise LedgerRejected(f"{depositor} has insufficient balance")

        lock_id = "0x" + hashlib.sha256(f"{self.ledger_id}:{depositor}:{commitment}:{next(self._seq)}".encode()).hexdigest()
        self.balances[depositor] -= tx.amount
        lock = LockView(
            lock_id=lock_id,
            ledger_id=self.ledger_id,
            commitment=commitment,
            amount=tx.amount,
            depositor=depositor,
            beneficiary=tx.beneficiary,
            timelock=tx.timelock,
            asset=tx.asset,
            memo=tx.memo,
        )
        self.locks[lock_id] = lock
        tx_id = self._emit(RawEventKind.CREATED, lock_id, lock.model_dump(mode="json"))
        return TxRef(ledger_id=self.ledger_id, tx_id=tx_id, lock_id=lock_id)

    def apply_claim(self, tx: ClaimLockTx) -> TxRef:
        lock = self.locks.get(tx.lock_id)
        if lock is None:
            raise LockNotFound(f"no lock {tx.lock_id}", tx.lock_id)
        if lock.state is not LockState.LOCKED:
            raise AlreadyResolved(f"lock {tx.lock_id} is {lock.state.value}", tx.lock_id)
        if not cm.verify(tx.secret, lock.commitment):
            raise CommitmentMismatch(f"wrong secret for {tx.lock_id}", tx.lock_id)
        if self.policy.is_expired(self.now(), lock.timelock):
            raise Expired(f"lock {tx.lock_id} expired", tx.lock_id)

        # effects before the interaction
        lock.state = LockState.CLAIMED
        lock.revealed_secret = tx.secret
        tx_id = self._emit(RawEventKind.CLAIMED, tx.lock_id, {"secret": tx.secret})
        self._transfer(lock.beneficiary, lock.amount, tx.lock_id)
        return TxRef(ledger_id=self.ledger_id, tx_id=tx_id, lock_id=tx.lock_id)

    def apply_refund(self, tx: RefundLockTx) -> TxRef:
        lock = self.locks.get(tx.lock_id)
        if lock is None:
            raise LockNotFound(f"no lock {tx.lock_id}", tx.lock_id)
        if lock.state is not LockState.LOCKED:
            raise AlreadyResolved(f"lock {tx.lock_id} is {lock.state.value}", tx.lock_id)
        if not self.policy.is_expired(self.now(), lock.timelock):
            raise NotExpired(f"lock {tx.lock_id} not yet refundable", tx.lock_id)

        lock.state = LockState.REFUNDED
        tx_id = self._emit(RawEventKind.REFUNDED, tx.lock_id, {})
        self._transfer(lock.depositor, lock.amount, tx.lock_id)
        return TxRef(ledger_id=self.ledger_id, tx_id=tx_id, lock_id=tx.lock_id)

    # --- subscription -------------------------------------------------------------

    async def blocks_from(self, filter: WatchFilter, from_height: int) -> AsyncIterator[RawBlock]:
        next_height = max(from_height, 0)
        seen: Dict[int, str] = {}
        while True:
            self.check_available("subscribe")
            # rewind past any block whose hash changed under us
            while next_height - 1 in seen and (
                next_height - 1 > self.height or self.blocks[next_height - 1].block_hash != seen[next_height - 1]
            ):
                del seen[next_height - 1]
                next_height -= 1
            if next_height > self.height:
                await asyncio.sleep(self.poll_interval)
                continue

            block = self.blocks[next_height]
            seen[next_height] = block.block_hash
            seen.pop(next_height - 256, None)
            next_height += 1
            yield RawBlock(
                height=block.height,
                block_hash=block.block_hash,
                parent_hash=block.parent_hash,
                time=self.policy.now(block.height, block.timestamp),
                events=[ev for ev in block.events if filter.lock_ids is None or ev.lock_id in filter.lock_ids],
            )


class InMemoryLedger:
    """LedgerAdapter bound to one account on an InMemoryChain."""

    def __init__(self, chain: InMemoryChain, account: str):
        self.chain = chain
        self.account = account
        self.ledger_id = chain.ledger_id
        self.timelock_policy = chain.policy

    def as_account(self, account: str) -> "InMemoryLedger":
        return InMemoryLedger(self.chain, account)

    async def submit(self, tx: LockTx) -> TxRef:
        await asyncio.sleep(0)
        self.chain.check_available("submit")
        if isinstance(tx, CreateLockTx):
            return self.chain.apply_create(self.account, tx)
        if isinstance(tx, ClaimLockTx):
            return self.chain.apply_claim(tx)
        if isinstance(tx, RefundLockTx):
            return self.chain.apply_refund(tx)
        raise InvalidParameters(f"unsupported transaction {type(tx).__name__}")

    async def read(self, lock_id: str) -> Optional[LockView]:
        await asyncio.sleep(0)
        self.chain.check_available("read")
        lock = self.chain.locks.get(lock_id)
        return lock.model_copy() if lock is not None else None

    async def current_time(self) -> int:
        self.chain.check_available("read")
        return self.chain.now()

    async def find(self, commitment: str) -> Optional[LockView]:
        self.chain.check_available("read")
        wanted = cm.to_hex(cm.parse_commitment(commitment))
        for lock in self.chain.locks.values():
            if lock.commitment == wanted and lock.depositor == self.account:
                return lock.model_copy()
        return None

    def subscribe(self, filter: WatchFilter, from_height: int) -> AsyncIterator[RawBlock]:
        return self.chain.blocks_from(filter, from_height)

    async def head(self) -> int:
        return self.chain.height
