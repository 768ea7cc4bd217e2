"""
EVM ledger adapter for a HashedTimelockERC20-style contract.

    create(receiver, token, amount, hashlock, timelock) -> htlcId
    withdraw(htlcId, preimage)
    refund(htlcId)
    getHTLC(htlcId) -> (sender, receiver, token, amount, hashlock, timelock, withdrawn, refunded, preimage)

Timelocks are unix timestamps compared against block.timestamp. web3 is
synchronous, so every RPC runs in a worker thread.
"""

import asyncio
import logging
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3
from web3.contract.contract import ContractFunction
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError
from web3.logs import DISCARD
from web3.middleware import ExtraDataToPOAMiddleware
from web3.types import TxParams, TxReceipt

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

HTLC_ABI = [
    {
        "name": "create",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"},
        ],
        "outputs": [{"name": "htlcId", "type": "bytes32"}],
    },
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "htlcId", "type": "bytes32"},
            {"name": "preimage", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "name": "refund",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "htlcId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "name": "getHTLC",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "htlcId", "type": "bytes32"}],
        "outputs": [
            {"name": "sender", "type": "address"},
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"},
            {"name": "withdrawn", "type": "bool"},
            {"name": "refunded", "type": "bool"},
            {"name": "preimage", "type": "bytes32"},
        ],
    },
    {
        "name": "HTLCCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "htlcId", "type": "bytes32", "indexed": True},
            {"name": "sender", "type": "address", "indexed": True},
            {"name": "receiver", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "timelock", "type": "uint256", "indexed": False},
        ],
    },
    {
        "name": "HTLCWithdrawn",
        "type": "event",
        "anonymous": False,
        "inputs": [{"name": "htlcId", "type": "bytes32", "indexed": True}],
    },
    {
        "name": "HTLCRefunded",
        "type": "event",
        "anonymous": False,
        "inputs": [{"name": "htlcId", "type": "bytes32", "indexed": True}],
    },
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

_EVENT_SIGNATURES = {
    "HTLCCreated(bytes32,address,address,address,uint256,bytes32,uint256)": RawEventKind.CREATED,
    "HTLCWithdrawn(bytes32)": RawEventKind.CLAIMED,
    "HTLCRefunded(bytes32)": RawEventKind.REFUNDED,
}

_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class EvmLedger:
    def __init__(
        self,
        ledger_id: str,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        chain_id: int,
        token: Optional[str] = None,
        decimals: int = 18,
        poll_interval: float = 2.0,
        lookback_blocks: int = 50_000,
    ):
        self.ledger_id = ledger_id
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 60}))
        self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.htlc = self.w3.eth.contract(abi=HTLC_ABI, address=self.w3.to_checksum_address(contract_address))
        self.acc: LocalAccount = Account.from_key(private_key)
        self.account = self.acc.address
        self.chain_id = chain_id
        self.token = self.w3.to_checksum_address(token) if token else _ZERO_ADDRESS
        self.decimals = decimals
        self.poll_interval = poll_interval
        self.lookback_blocks = lookback_blocks
        self.timelock_policy = cm.TimestampTimelock()
        self.log = logging.getLogger(f"EvmLedger[{ledger_id}]")
        self._topics = {HexBytes(Web3.keccak(text=sig)): kind for sig, kind in _EVENT_SIGNATURES.items()}

    # --- units ----------------------------------------------------------------------

    def to_units(self, amount: Decimal) -> int:
        units = Decimal(amount).scaleb(self.decimals)
        if units != units.to_integral_value():
            raise InvalidParameters(f"{amount} has more than {self.decimals} decimals")
        return int(units)

    def from_units(self, units: int) -> Decimal:
        return Decimal(units).scaleb(-self.decimals)

    # --- rpc plumbing ---------------------------------------------------------------

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except ContractLogicError as e:
            raise LedgerRejected(f"{self.ledger_id}: reverted: {e}") from e
        except (requests.exceptions.RequestException, TimeExhausted, Web3RPCError, ConnectionError) as e:
            raise LedgerUnavailable(f"{self.ledger_id}: {e}") from e

    def _send_tx(self, fn: ContractFunction, value: int = 0) -> TxReceipt:
        base: TxParams = {}
        base["from"] = self.acc.address
        base["chainId"] = self.chain_id
        base["gas"] = 500_000
        base["gasPrice"] = self.w3.eth.gas_price
        base["nonce"] = self.w3.eth.get_transaction_count(self.acc.address, "pending")
        tx = fn.build_transaction(base | {"value": value})  # type: ignore
        signed = self.acc.sign_transaction(tx)  # type: ignore
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt["status"] != 1:
            raise LedgerRejected(f"{self.ledger_id}: transaction {tx_hash.hex()} reverted")
        self.log.info(f"✓ {tx_hash.hex()} confirmed in block {receipt['blockNumber']}")
        return receipt

    def _simulate_and_send(self, fn: ContractFunction) -> TxReceipt:
        # a revert surfaces here as ContractLogicError, before any gas is spent
        fn.call({"from": self.acc.address})
        return self._send_tx(fn)

    def _ensure_allowance(self, amount: int) -> None:
        if self.token == _ZERO_ADDRESS:
            return
        erc20 = self.w3.eth.contract(abi=ERC20_ABI, address=self.token)
        if erc20.functions.allowance(self.acc.address, self.htlc.address).call() >= amount:
            return
        self._send_tx(erc20.functions.approve(self.htlc.address, amount))

    # --- LedgerAdapter --------------------------------------------------------------

    def _submit_sync(self, tx: LockTx) -> TxRef:
        if isinstance(tx, CreateLockTx):
            amount = self.to_units(tx.amount)
            self._ensure_allowance(amount)
            fn = self.htlc.functions.create(
                self.w3.to_checksum_address(tx.beneficiary),
                self.token,
                amount,
                HexBytes(cm.parse_commitment(tx.commitment)),
                tx.timelock,
            )
            receipt = self._simulate_and_send(fn)
            logs = self.htlc.events.HTLCCreated().process_receipt(receipt, errors=DISCARD)
            if not logs:
                raise LedgerRejected(f"{self.ledger_id}: create emitted no HTLCCreated event")
            lock_id = cm.to_hex(logs[0]["args"]["htlcId"])
        elif isinstance(tx, ClaimLockTx):
            lock_id = tx.lock_id
            receipt = self._simulate_and_send(
                self.htlc.functions.withdraw(HexBytes(lock_id), HexBytes(cm.parse_secret(tx.secret)))
            )
        elif isinstance(tx, RefundLockTx):
            lock_id = tx.lock_id
            receipt = self._simulate_and_send(self.htlc.functions.refund(HexBytes(lock_id)))
        else:
            raise InvalidParameters(f"unsupported transaction {type(tx).__name__}")
        return TxRef(ledger_id=self.ledger_id, tx_id=cm.to_hex(receipt["transactionHash"]), lock_id=lock_id)

    async def submit(self, tx: LockTx) -> TxRef:
        return await self._call(self._submit_sync, tx)

    def _read_sync(self, lock_id: str) -> Optional[LockView]:
        sender, receiver, token, amount, hashlock, timelock, withdrawn, refunded, preimage = (
            self.htlc.functions.getHTLC(HexBytes(lock_id)).call()
        )
        if sender == _ZERO_ADDRESS:
            return None
        state = LockState.CLAIMED if withdrawn else LockState.REFUNDED if refunded else LockState.LOCKED
        return LockView(
            lock_id=lock_id,
            ledger_id=self.ledger_id,
            commitment=cm.to_hex(hashlock),
            amount=self.from_units(amount),
            depositor=sender,
            beneficiary=receiver,
            timelock=timelock,
            state=state,
            asset=token,
            revealed_secret=cm.to_hex(preimage) if withdrawn else None,
        )

    async def read(self, lock_id: str) -> Optional[LockView]:
        return await self._call(self._read_sync, lock_id)

    async def current_time(self) -> int:
        block = await self._call(self.w3.eth.get_block, "latest")
        return block["timestamp"]

    def _find_sync(self, commitment: str) -> Optional[LockView]:
        wanted = cm.parse_commitment(commitment)
        head = self.w3.eth.block_number
        logs = self.htlc.events.HTLCCreated().get_logs(
            argument_filters={"sender": self.acc.address},
            from_block=max(0, head - self.lookback_blocks),
            to_block=head,
        )
        for entry in reversed(logs):
            if bytes(entry["args"]["hashlock"]) == wanted:
                return self._read_sync(cm.to_hex(entry["args"]["htlcId"]))
        return None

    async def find(self, commitment: str) -> Optional[LockView]:
        return await self._call(self._find_sync, commitment)

    # --- subscription ---------------------------------------------------------------

    def _claim_secret(self, tx_hash: HexBytes, lock_id: str) -> Optional[str]:
        """The preimage comes from the withdraw call data; contracts called through
        a proxy fall back to the value stored by getHTLC."""
        tx = self.w3.eth.get_transaction(tx_hash)
        try:
            fn, args = self.htlc.decode_function_input(tx["input"])
            if fn.abi["name"] == "withdraw" and cm.to_hex(args["htlcId"]) == lock_id:
                return cm.to_hex(args["preimage"])
        except ValueError:
            pass
        view = self._read_sync(lock_id)
        return view.revealed_secret if view is not None else None

    def _decode_log(self, entry, kind: RawEventKind, index: int) -> RawLedgerEvent:
        lock_id = cm.to_hex(entry["topics"][1])
        tx_id = cm.to_hex(entry["transactionHash"])
        data: Dict = {}
        if kind is RawEventKind.CREATED:
            args = self.htlc.events.HTLCCreated().process_log(entry)["args"]
            data = {
                "commitment": cm.to_hex(args["hashlock"]),
                "amount": str(self.from_units(args["amount"])),
                "depositor": args["sender"],
                "beneficiary": args["receiver"],
                "timelock": args["timelock"],
                "asset": args["token"],
            }
        elif kind is RawEventKind.CLAIMED:
            secret = self._claim_secret(entry["transactionHash"], lock_id)
            if secret is not None:
                data = {"secret": secret}
        return RawLedgerEvent(kind=kind, lock_id=lock_id, tx_id=tx_id, index=index, data=data)

    def _block_sync(self, height: int, filter: WatchFilter) -> RawBlock:
        block = self.w3.eth.get_block(height)
        logs = self.w3.eth.get_logs({"address": self.htlc.address, "blockHash": block["hash"]})
        events: List[RawLedgerEvent] = []
        for entry in logs:
            kind = self._topics.get(HexBytes(entry["topics"][0])) if entry["topics"] else None
            if kind is None:
                continue
            event = self._decode_log(entry, kind, entry["logIndex"])
            if filter.lock_ids is None or event.lock_id in filter.lock_ids:
                events.append(event)
        return RawBlock(
            height=height,
            block_hash=cm.to_hex(block["hash"]),
            parent_hash=cm.to_hex(block["parentHash"]),
            time=block["timestamp"],
            events=events,
        )

    async def _blocks(self, filter: WatchFilter, from_height: int) -> AsyncIterator[RawBlock]:
        height = from_height
        if height <= 0:
            height = await self._call(lambda: self.w3.eth.block_number)
        seen: Dict[int, str] = {}
        while True:
            head = await self._call(lambda: self.w3.eth.block_number)
            if height > head:
                await asyncio.sleep(self.poll_interval)
                continue
            block = await self._call(self._block_sync, height, filter)
            parent = seen.get(height - 1)
            if parent is not None and block.parent_hash != parent:
                # our previous block was orphaned, step back and re-read it
                self.log.warning(f"Reorg detected at {height}, stepping back")
                del seen[height - 1]
                height -= 1
                continue
            seen[height] = block.block_hash
            seen.pop(height - 256, None)
            height += 1
            yield block

    def subscribe(self, filter: WatchFilter, from_height: int) -> AsyncIterator[RawBlock]:
        return self._blocks(filter, from_height)
