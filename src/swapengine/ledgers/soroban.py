"""
Soroban ledger adapter.

The HTLC contract exposes

    create(depositor, beneficiary, token, amount: i128, commitment: BytesN<32>,
           timelock: u32, memo: Option<String>) -> BytesN<32>
    claim(lock_id, secret: BytesN<32>)
    refund(lock_id)
    get_lock(lock_id) -> Option<Map>

and publishes events with topics (lock_created|lock_claimed|lock_refunded, lock_id).
The claim event carries the preimage as its value.

Timelocks are ledger sequence numbers (one ledger closes about every 5 seconds).
Events are read with the getEvents JSON-RPC method, paginated by cursor.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Tuple

import requests
from stellar_sdk import Address, Keypair, SorobanServer, StrKey, TransactionBuilder, scval
from stellar_sdk.exceptions import ConnectionError as StellarConnectionError
from stellar_sdk.exceptions import PrepareTransactionException, SorobanRpcErrorResponse
from stellar_sdk.soroban_rpc import GetTransactionStatus, SendTransactionStatus
from stellar_sdk.xdr import (
    Int64,
    Int128Parts,
    SCAddress,
    SCBytes,
    SCString,
    SCSymbol,
    SCVal,
    SCValType,
    Uint32,
    Uint64,
)

from .. import commitment as cm
from ..errors import InvalidParameters, LedgerRejected, LedgerUnavailable
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

LEDGER_SECONDS = 5

EVENT_TOPICS = {
    "lock_created": RawEventKind.CREATED,
    "lock_claimed": RawEventKind.CLAIMED,
    "lock_refunded": RawEventKind.REFUNDED,
}


# --- SCVal encoding ------------------------------------------------------------------

def sc_address_from_str(address: str) -> SCAddress:
    if StrKey.is_valid_ed25519_public_key(address) or StrKey.is_valid_contract(address):
        return Address(address).to_xdr_sc_address()
    raise InvalidParameters(f"invalid Stellar address {address!r}")


def address_to_scval(address: str) -> SCVal:
    return SCVal(type=SCValType.SCV_ADDRESS, address=sc_address_from_str(address))


def i128_to_scval(n: int) -> SCVal:
    if n < 0:
        raise InvalidParameters("amounts are never negative")
    return SCVal(
        type=SCValType.SCV_I128,
        i128=Int128Parts(hi=Int64(n >> 64), lo=Uint64(n & 0xFFFFFFFFFFFFFFFF)),
    )


def u32_to_scval(n: int) -> SCVal:
    return SCVal(type=SCValType.SCV_U32, u32=Uint32(n))


def bytes_to_sc_bytes(data: bytes) -> SCVal:
    return SCVal(type=SCValType.SCV_BYTES, bytes=SCBytes(data))


def symbol_to_scval(sym: str) -> SCVal:
    return SCVal(type=SCValType.SCV_SYMBOL, sym=SCSymbol(sym.encode("utf-8")))


def string_to_scval(value: str) -> SCVal:
    return SCVal(type=SCValType.SCV_STRING, str=SCString(value.encode("utf-8")))


def option_to_scval(value: Optional[SCVal]) -> SCVal:
    """Option<T>: None is encoded as void, Some(v) as v itself."""
    if value is None:
        return SCVal(type=SCValType.SCV_VOID)
    return value


# --- SCVal decoding ------------------------------------------------------------------

def scval_map_to_dict(value: SCVal) -> Dict[str, SCVal]:
    if value.type != SCValType.SCV_MAP or value.map is None:
        raise ValueError(f"expected a map, got {value.type}")
    return {scval.from_symbol(entry.key): entry.val for entry in value.map.sc_map}


def lock_from_scval(value: SCVal, lock_id: str, ledger_id: str, decimals: int) -> Optional[LockView]:
    if value.type == SCValType.SCV_VOID:
        return None
    fields = scval_map_to_dict(value)
    state = LockState(scval.from_symbol(fields["state"]))
    secret = fields.get("secret")
    memo = fields.get("memo")
    return LockView(
        lock_id=lock_id,
        ledger_id=ledger_id,
        commitment=cm.to_hex(scval.from_bytes(fields["commitment"])),
        amount=Decimal(scval.from_int128(fields["amount"])).scaleb(-decimals),
        depositor=scval.from_address(fields["depositor"]).address,
        beneficiary=scval.from_address(fields["beneficiary"]).address,
        timelock=scval.from_uint32(fields["timelock"]),
        state=state,
        asset=scval.from_address(fields["token"]).address,
        memo=scval.from_string(memo).decode() if memo is not None and memo.type == SCValType.SCV_STRING else None,
        revealed_secret=cm.to_hex(scval.from_bytes(secret)) if secret is not None and secret.type == SCValType.SCV_BYTES else None,
    )


@dataclass
class SorobanEvent:
    id: str = ""
    ledger: int = 0
    tx_hash: str = ""
    contract_id: str = ""
    topics: List[SCVal] = field(default_factory=list)
    value: Optional[SCVal] = None

    @staticmethod
    def from_rpc_response(data: Dict) -> "SorobanEvent":
        """
        Create a SorobanEvent instance from raw getEvents response data.
        """
        event = SorobanEvent()
        event.id = data.get("id", "")
        event.ledger = data.get("ledger", 0)
        event.tx_hash = data.get("txHash", "")
        event.contract_id = data.get("contractId", "")
        event.topics = [SCVal.from_xdr(t) for t in data.get("topic", []) if t is not None]
        if (value := data.get("value")) is not None:
            event.value = SCVal.from_xdr(value)
        return event

    @property
    def name(self) -> Optional[str]:
        if not self.topics or self.topics[0].sym is None:
            return None
        return scval.from_symbol(self.topics[0])

    @property
    def lock_id(self) -> str:
        return cm.to_hex(scval.from_bytes(self.topics[1]))


class SorobanLedger:
    def __init__(
        self,
        ledger_id: str,
        rpc_url: str,
        contract_id: str,
        secret: str,
        network_passphrase: str,
        token: str,
        decimals: int = 7,
        poll_interval: float = 3.0,
        page_size: int = 100,
        backfill_ledgers: int = 2000,
        base_fee: int = 100,
    ):
        self.ledger_id = ledger_id
        self.rpc_url = rpc_url
        self.server = SorobanServer(rpc_url)
        self.contract_id = contract_id
        self.keypair = Keypair.from_secret(secret)
        self.account = self.keypair.public_key
        self.network_passphrase = network_passphrase
        self.token = token
        self.decimals = decimals
        self.poll_interval = poll_interval
        self.page_size = page_size
        self.backfill_ledgers = backfill_ledgers
        self.base_fee = base_fee
        self.timelock_policy = cm.BlockHeightTimelock(LEDGER_SECONDS)
        self.log = logging.getLogger(f"SorobanLedger[{ledger_id}]")

    def to_units(self, amount: Decimal) -> int:
        units = Decimal(amount).scaleb(self.decimals)
        if units != units.to_integral_value():
            raise InvalidParameters(f"{amount} has more than {self.decimals} decimals")
        return int(units)

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (requests.exceptions.RequestException, SorobanRpcErrorResponse, StellarConnectionError) as e:
            raise LedgerUnavailable(f"{self.ledger_id}: {e}") from e

    # --- transactions ---------------------------------------------------------------

    def _build(self, function: str, args: List[SCVal]):
        source = self.server.load_account(self.account)
        return (
            TransactionBuilder(
                source_account=source,
                network_passphrase=self.network_passphrase,
                base_fee=self.base_fee,
            )
            .append_invoke_contract_function_op(
                contract_id=self.contract_id,
                function_name=function,
                parameters=args,
            )
            .set_timeout(30)
            .build()
        )

    def _simulate(self, function: str, args: List[SCVal]) -> SCVal:
        sim = self.server.simulate_transaction(self._build(function, args))
        if sim.error:
            raise LedgerRejected(f"{self.ledger_id}: {function} failed in simulation: {sim.error}")
        return SCVal.from_xdr(sim.results[0].xdr)

    def _invoke(self, function: str, args: List[SCVal]) -> Tuple[str, SCVal]:
        """Simulate for the return value, then prepare, sign and send. Returns (tx hash, return value)."""
        result = self._simulate(function, args)
        try:
            prepared = self.server.prepare_transaction(self._build(function, args))
        except PrepareTransactionException as e:
            raise LedgerRejected(f"{self.ledger_id}: {function} could not be prepared: {e}") from e
        prepared.sign(self.keypair)
        sent = self.server.send_transaction(prepared)
        if sent.status == SendTransactionStatus.ERROR:
            raise LedgerRejected(f"{self.ledger_id}: {function} rejected: {sent.error_result_xdr}")
        if sent.status == SendTransactionStatus.TRY_AGAIN_LATER:
            raise LedgerUnavailable(f"{self.ledger_id}: {function} not accepted, try again later")

        for _ in range(30):
            response = self.server.get_transaction(sent.hash)
            if response.status != GetTransactionStatus.NOT_FOUND:
                break
            time.sleep(1)
        else:
            raise LedgerUnavailable(f"{self.ledger_id}: {sent.hash} not confirmed in time")
        if response.status != GetTransactionStatus.SUCCESS:
            raise LedgerRejected(f"{self.ledger_id}: {function} failed in {sent.hash}")
        self.log.info(f"✓ {function} {sent.hash} confirmed in ledger {response.ledger}")
        return sent.hash, result

    def _submit_sync(self, tx: LockTx) -> TxRef:
        if isinstance(tx, CreateLockTx):
            args = [
                address_to_scval(self.account),
                address_to_scval(tx.beneficiary),
                address_to_scval(self.token),
                i128_to_scval(self.to_units(tx.amount)),
                bytes_to_sc_bytes(cm.parse_commitment(tx.commitment)),
                u32_to_scval(tx.timelock),
                option_to_scval(string_to_scval(tx.memo) if tx.memo else None),
            ]
            tx_hash, result = self._invoke("create", args)
            lock_id = cm.to_hex(scval.from_bytes(result))
        elif isinstance(tx, ClaimLockTx):
            lock_id = tx.lock_id
            tx_hash, _ = self._invoke(
                "claim",
                [bytes_to_sc_bytes(cm.parse_commitment(lock_id)), bytes_to_sc_bytes(cm.parse_secret(tx.secret))],
            )
        elif isinstance(tx, RefundLockTx):
            lock_id = tx.lock_id
            tx_hash, _ = self._invoke("refund", [bytes_to_sc_bytes(cm.parse_commitment(lock_id))])
        else:
            raise InvalidParameters(f"unsupported transaction {type(tx).__name__}")
        return TxRef(ledger_id=self.ledger_id, tx_id=tx_hash, lock_id=lock_id)

    async def submit(self, tx: LockTx) -> TxRef:
        return await self._call(self._submit_sync, tx)

    def _read_sync(self, lock_id: str) -> Optional[LockView]:
        value = self._simulate("get_lock", [bytes_to_sc_bytes(cm.parse_commitment(lock_id))])
        return lock_from_scval(value, lock_id, self.ledger_id, self.decimals)

    async def read(self, lock_id: str) -> Optional[LockView]:
        return await self._call(self._read_sync, lock_id)

    async def current_time(self) -> int:
        latest = await self._call(self.server.get_latest_ledger)
        return latest.sequence

    # --- events ---------------------------------------------------------------------

    def make_request(self, start_ledger: Optional[int] = None, cursor: Optional[str] = None) -> Dict:
        base = {
            "jsonrpc": "2.0",
            "id": 8675309,
            "method": "getEvents",
            "params": {
                "filters": [
                    {
                        "type": "contract",
                        "contractIds": [self.contract_id],
                        "topics": [[symbol_to_scval(name).to_xdr(), "*"] for name in EVENT_TOPICS],
                    }
                ],
                "pagination": {
                    "limit": self.page_size,
                },
            },
        }
        if cursor is not None:
            base["params"]["pagination"]["cursor"] = cursor
        elif start_ledger is not None:
            base["params"]["startLedger"] = start_ledger
        return base

    def _fetch_sync(self, start_ledger: int) -> Tuple[List[SorobanEvent], int]:
        """All events from start_ledger to the tip, plus the tip's sequence."""
        events: List[SorobanEvent] = []
        cursor = None
        while True:
            resp = requests.post(self.rpc_url, json=self.make_request(start_ledger, cursor), timeout=30)
            resp.raise_for_status()
            body = resp.json()
            if "error" in body:
                raise LedgerUnavailable(f"{self.ledger_id}: getEvents failed: {body['error']}")
            result = body["result"]
            self.log.debug(f"getEvents (cursor={cursor}): {len(result['events'])} event(s)")
            events.extend(SorobanEvent.from_rpc_response(ev) for ev in result["events"])
            if len(result["events"]) < self.page_size:
                return events, result["latestLedger"]
            cursor = result["cursor"]

    def _to_raw(self, event: SorobanEvent, index: int) -> Optional[RawLedgerEvent]:
        kind = EVENT_TOPICS.get(event.name or "")
        if kind is None or len(event.topics) < 2:
            return None
        data: Dict = {}
        if kind is RawEventKind.CREATED and event.value is not None:
            lock = lock_from_scval(event.value, event.lock_id, self.ledger_id, self.decimals)
            if lock is not None:
                data = lock.model_dump(mode="json", exclude={"lock_id", "ledger_id", "state", "revealed_secret"})
        elif kind is RawEventKind.CLAIMED and event.value is not None and event.value.type == SCValType.SCV_BYTES:
            data = {"secret": cm.to_hex(scval.from_bytes(event.value))}
        return RawLedgerEvent(kind=kind, lock_id=event.lock_id, tx_id=event.tx_hash, index=index, data=data)

    def _group(self, events: List[SorobanEvent], filter: WatchFilter) -> Dict[int, List[RawLedgerEvent]]:
        by_ledger: Dict[int, List[RawLedgerEvent]] = {}
        per_tx: Dict[str, int] = {}
        for event in events:
            index = per_tx.get(event.tx_hash, 0)
            per_tx[event.tx_hash] = index + 1
            try:
                raw = self._to_raw(event, index)
            except (ValueError, KeyError) as e:
                self.log.error(f"Error decoding event {event.id}: {e}")
                continue
            if raw is None or (filter.lock_ids is not None and raw.lock_id not in filter.lock_ids):
                continue
            by_ledger.setdefault(event.ledger, []).append(raw)
        return by_ledger

    def _block(self, sequence: int, events: List[RawLedgerEvent]) -> RawBlock:
        # consensus is final, so a ledger's identity is its sequence
        return RawBlock(
            height=sequence,
            block_hash=f"{self.ledger_id}:{sequence}",
            parent_hash=f"{self.ledger_id}:{sequence - 1}",
            time=self.timelock_policy.now(sequence, 0),
            events=events,
        )

    async def _blocks(self, filter: WatchFilter, from_height: int) -> AsyncIterator[RawBlock]:
        latest = await self.current_time()
        start = max(from_height, latest - self.backfill_ledgers, 1)
        self.log.info(f"Starting event watch on contract {self.contract_id} from ledger {start}")
        while True:
            events, latest = await self._call(self._fetch_sync, start)
            by_ledger = self._group(events, filter)
            for sequence in sorted(by_ledger):
                yield self._block(sequence, by_ledger[sequence])
            if latest >= start and latest not in by_ledger:
                # empty heartbeat so expiries are noticed between events
                yield self._block(latest, [])
            start = max(start, latest + 1)
            await asyncio.sleep(self.poll_interval)

    def subscribe(self, filter: WatchFilter, from_height: int) -> AsyncIterator[RawBlock]:
        return self._blocks(filter, from_height)

    def _find_sync(self, commitment: str) -> Optional[LockView]:
        wanted = cm.to_hex(cm.parse_commitment(commitment))
        latest = self.server.get_latest_ledger().sequence
        events, _ = self._fetch_sync(max(1, latest - self.backfill_ledgers))
        for event in reversed(events):
            if event.name != "lock_created":
                continue
            lock = self._read_sync(event.lock_id)
            if lock is not None and lock.commitment == wanted and lock.depositor == self.account:
                return lock
        return None

    async def find(self, commitment: str) -> Optional[LockView]:
        return await self._call(self._find_sync, commitment)
