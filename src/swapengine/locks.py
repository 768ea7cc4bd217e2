"""
Ledger-agnostic escrow lock state machine.

One LockStateMachine wraps one LedgerAdapter. It validates and constructs
transactions; the ledger itself serializes conflicting transactions against
the same lock and is the authority on state. Pre-checks here mirror the
ledger's rules so obviously-doomed transactions are never submitted.
"""

import logging
from decimal import Decimal
from typing import AsyncIterator, Optional, Protocol

from . import commitment as cm
from .errors import (
    AlreadyResolved,
    CommitmentMismatch,
    Expired,
    InvalidParameters,
    LockNotFound,
    NotExpired,
)
from .models import (
    ClaimLockTx,
    ClaimResult,
    CreateLockTx,
    LockRef,
    LockState,
    LockTx,
    LockView,
    RawBlock,
    RefundLockTx,
    RefundResult,
    TxRef,
    WatchFilter,
)


class LedgerAdapter(Protocol):
    """Capability a ledger exposes to the engine.

    Implementations encapsulate all ledger-specific transaction construction;
    they are the only place ledger identity leaks into the design.
    """

    ledger_id: str
    account: str
    timelock_policy: cm.TimelockPolicy

    async def submit(self, tx: LockTx) -> TxRef: ...

    async def read(self, lock_id: str) -> Optional[LockView]: ...

    async def current_time(self) -> int: ...

    async def find(self, commitment: str) -> Optional[LockView]: ...

    def subscribe(self, filter: WatchFilter, from_height: int) -> AsyncIterator[RawBlock]: ...


class LockStateMachine:
    def __init__(self, adapter: LedgerAdapter):
        self.adapter = adapter
        self.log = logging.getLogger(f"Locks[{adapter.ledger_id}]")

    @property
    def ledger_id(self) -> str:
        return self.adapter.ledger_id

    async def compute_timelock(self, duration_seconds: int) -> int:
        now = await self.adapter.current_time()
        return cm.compute_timelock(self.adapter.timelock_policy, now, duration_seconds)

    async def create(
        self,
        commitment: str,
        amount: Decimal,
        beneficiary: str,
        timelock: int,
        asset: str = "",
        memo: Optional[str] = None,
    ) -> LockRef:
        """Escrow amount from the adapter's account, bound to commitment and timelock."""
        commitment_hex = cm.to_hex(cm.parse_commitment(commitment))
        if amount is None or Decimal(amount) <= 0:
            raise InvalidParameters(f"amount must be positive, got {amount}")
        if not beneficiary:
            raise InvalidParameters("beneficiary is required")
        now = await self.adapter.current_time()
        if timelock <= now:
            raise InvalidParameters(f"timelock {timelock} is not in the future (now={now})")

        tx = CreateLockTx(
            commitment=commitment_hex,
            amount=Decimal(amount),
            beneficiary=beneficiary,
            timelock=timelock,
            depositor=self.adapter.account,
            asset=asset,
            memo=memo,
        )
        ref = await self.adapter.submit(tx)
        self.log.info(f"Lock {ref.lock_id} created: {amount} for {beneficiary}, H={commitment_hex[:10]}…, T={timelock}")
        return LockRef(ledger_id=self.ledger_id, lock_id=ref.lock_id)

    async def status(self, ref: LockRef) -> LockView:
        view = await self.adapter.read(ref.lock_id)
        if view is None:
            raise LockNotFound(f"lock {ref} not found", ref.lock_id)
        return view

    async def claim(self, ref: LockRef, secret: str) -> ClaimResult:
        view = await self.status(ref)
        if view.state is not LockState.LOCKED:
            raise AlreadyResolved(f"lock {ref} is already {view.state.value}", ref.lock_id)
        if not cm.verify(secret, view.commitment):
            raise CommitmentMismatch(f"secret does not open lock {ref}", ref.lock_id)
        now = await self.adapter.current_time()
        if self.adapter.timelock_policy.is_expired(now, view.timelock):
            raise Expired(f"lock {ref} expired at {view.timelock} (now={now})", ref.lock_id)

        tx = await self.adapter.submit(ClaimLockTx(lock_id=ref.lock_id, secret=cm.to_hex(cm.parse_secret(secret))))
        self.log.info(f"Lock {ref.lock_id} claimed in {tx.tx_id}")
        return ClaimResult(lock=ref, tx=tx, amount=view.amount, recipient=view.beneficiary)

    async def refund(self, ref: LockRef) -> RefundResult:
        view = await self.status(ref)
        if view.state is not LockState.LOCKED:
            raise AlreadyResolved(f"lock {ref} is already {view.state.value}", ref.lock_id)
        now = await self.adapter.current_time()
        if not self.adapter.timelock_policy.is_expired(now, view.timelock):
            raise NotExpired(f"lock {ref} refundable at {view.timelock} (now={now})", ref.lock_id)

        tx = await self.adapter.submit(RefundLockTx(lock_id=ref.lock_id))
        self.log.info(f"Lock {ref.lock_id} refunded in {tx.tx_id}")
        return RefundResult(lock=ref, tx=tx, amount=view.amount, recipient=view.depositor)
