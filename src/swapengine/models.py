"""Domain models shared by the lock state machine, watchers and orchestrator."""

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- locks ------------------------------------------------------------------

class LockState(str, enum.Enum):
    LOCKED = "locked"
    CLAIMED = "claimed"
    REFUNDED = "refunded"


class LockRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    ledger_id: str
    lock_id: str

    def __str__(self) -> str:
        return f"{self.ledger_id}/{self.lock_id}"


class LockView(BaseModel):
    """A ledger's answer to read(lock_id). The ledger is authoritative."""

    lock_id: str
    ledger_id: str
    commitment: str
    amount: Decimal
    depositor: str
    beneficiary: str
    timelock: int
    state: LockState = LockState.LOCKED
    asset: str = ""
    memo: Optional[str] = None
    # Set by contracts that store the preimage on claim.
    revealed_secret: Optional[str] = None

    @property
    def ref(self) -> LockRef:
        return LockRef(ledger_id=self.ledger_id, lock_id=self.lock_id)


class CreateLockTx(BaseModel):
    commitment: str
    amount: Decimal
    beneficiary: str
    timelock: int
    depositor: str = ""
    asset: str = ""
    memo: Optional[str] = None


class ClaimLockTx(BaseModel):
    lock_id: str
    secret: str


class RefundLockTx(BaseModel):
    lock_id: str


LockTx = Union[CreateLockTx, ClaimLockTx, RefundLockTx]


class TxRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    ledger_id: str
    tx_id: str
    lock_id: str


class ClaimResult(BaseModel):
    lock: LockRef
    tx: TxRef
    amount: Decimal
    recipient: str


class RefundResult(BaseModel):
    lock: LockRef
    tx: TxRef
    amount: Decimal
    recipient: str


# --- raw chain data -----------------------------------------------------------

class RawEventKind(str, enum.Enum):
    CREATED = "created"
    CLAIMED = "claimed"
    REFUNDED = "refunded"


class RawLedgerEvent(BaseModel):
    """A contract log as an adapter decodes it, before confirmation."""

    kind: RawEventKind
    lock_id: str
    tx_id: str
    index: int = 0
    # CREATED carries the lock fields, CLAIMED carries {"secret": "0x.."}.
    data: Dict[str, Any] = Field(default_factory=dict)


class RawBlock(BaseModel):
    height: int
    block_hash: str
    parent_hash: str = ""
    # Ledger-native time at this block (height or timestamp, per timelock policy).
    time: int
    events: List[RawLedgerEvent] = Field(default_factory=list)


class WatchFilter(BaseModel):
    """Narrows a subscription to one contract and optionally to some locks."""

    contract: Optional[str] = None
    lock_ids: Optional[List[str]] = None


# --- normalized events ----------------------------------------------------------

class EventKind(str, enum.Enum):
    LOCK_CREATED = "lock_created"
    LOCK_CLAIMED = "lock_claimed"
    LOCK_REFUNDED = "lock_refunded"
    LOCK_EXPIRED = "lock_expired"
    EVENT_RETRACTED = "event_retracted"


class LedgerEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: EventKind
    ledger_id: str
    lock_id: str
    dedup_key: str
    height: int
    block_hash: str = ""
    lock: Optional[LockView] = None
    secret: Optional[str] = None
    # For EVENT_RETRACTED: the dedup key of the event being withdrawn.
    retracted_key: Optional[str] = None
    retracted_kind: Optional[EventKind] = None

    @property
    def ref(self) -> LockRef:
        return LockRef(ledger_id=self.ledger_id, lock_id=self.lock_id)


# --- swaps ---------------------------------------------------------------------

class SwapStatus(str, enum.Enum):
    INITIATED = "initiated"
    SOURCE_LOCKED = "source_locked"
    CONVERTED = "converted"
    DEST_LOCKED = "dest_locked"
    DEST_CLAIMED = "dest_claimed"
    SOURCE_CLAIMED = "source_claimed"
    REFUNDING = "refunding"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SwapStatus.COMPLETED, SwapStatus.FAILED)


class FailureReason(str, enum.Enum):
    INVALID_DEPOSIT = "invalid_deposit"
    SOURCE_RETRACTED = "source_retracted"
    CONVERSION_FAILED = "conversion_failed"
    BRIDGE_FAILED = "bridge_failed"
    TIMELOCK_TOO_CLOSE = "timelock_too_close"
    DEST_LOCK_FAILED = "dest_lock_failed"
    STRANDED_LEG = "stranded_leg"

    @property
    def funds_at_risk(self) -> bool:
        """False for pre-lock aborts: no destination lock exists, the source
        lock simply refunds at its own timelock."""
        return self is FailureReason.STRANDED_LEG


class SwapRecord(BaseModel):
    swap_id: str
    source_lock: LockRef
    dest_lock: Optional[LockRef] = None
    commitment: str
    secret: Optional[str] = None
    source_timelock: int
    dest_timelock: Optional[int] = None
    status: SwapStatus = SwapStatus.INITIATED

    source_asset: str = ""
    source_amount: Decimal = Decimal(0)
    depositor: str = ""
    dest_beneficiary: str = ""
    converted_asset: Optional[str] = None
    converted_amount: Optional[Decimal] = None
    bridge_receipt: Optional[str] = None
    # Set just before the destination create is submitted, so recovery knows a
    # lock may exist even though dest_lock was never recorded.
    dest_submitted: bool = False

    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    stranded: bool = False
    refunded: bool = False

    processed_events: List[str] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def projection(self) -> "SwapStatusView":
        return SwapStatusView(
            swap_id=self.swap_id,
            status=self.status,
            source_lock=self.source_lock,
            dest_lock=self.dest_lock,
            commitment=self.commitment,
            source_timelock=self.source_timelock,
            dest_timelock=self.dest_timelock,
            source_asset=self.source_asset,
            source_amount=self.source_amount,
            converted_asset=self.converted_asset,
            converted_amount=self.converted_amount,
            failure_reason=self.failure_reason,
            funds_at_risk=self.failure_reason.funds_at_risk if self.failure_reason else False,
            stranded=self.stranded,
            refunded=self.refunded,
            version=self.version,
            updated_at=self.updated_at,
        )


class SwapStatusView(BaseModel):
    """Read-only projection handed to status consumers. Never carries the secret."""

    swap_id: str
    status: SwapStatus
    source_lock: LockRef
    dest_lock: Optional[LockRef]
    commitment: str
    source_timelock: int
    dest_timelock: Optional[int]
    source_asset: str
    source_amount: Decimal
    converted_asset: Optional[str]
    converted_amount: Optional[Decimal]
    failure_reason: Optional[FailureReason]
    funds_at_risk: bool
    stranded: bool
    refunded: bool
    version: int
    updated_at: datetime


class SwapStatusChanged(BaseModel):
    swap_id: str
    previous: Optional[SwapStatus]
    status: SwapStatus
    version: int
    failure_reason: Optional[FailureReason] = None
    at: datetime = Field(default_factory=utcnow)
