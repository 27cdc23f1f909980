"""In-memory simulated chain for local runs and deterministic tests.

MockChainClient implements the ChainClient protocol against a tiny
single-node chain that runs the MessageStorage contract natively:

- accepts real signed transactions (legacy and EIP-1559), recovers the
  sender from the signature and derives the hash from the raw bytes
- one pending transaction per (sender, nonce); a replacement must raise
  every fee by at least 10%
- mines pending transactions strictly in nonce order, so a gap stalls
  every higher nonce of that sender
- derives CREATE addresses, stores messages, emits MessageWritten logs

Fault injection knobs (``fail_next_sends``, ``min_accept_price``,
``min_mining_price``, ``pause_mining`` ...) reproduce the node behaviours
the submission pipeline has to survive.
"""

from __future__ import annotations

import asyncio
import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

import rlp
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from eth_utils import big_endian_to_int, keccak, to_bytes, to_checksum_address

from message_storage.constants import MIN_REPLACEMENT_BUMP
from message_storage.contract.interface import ContractInterface
from message_storage.errors import (
    AlreadyKnownError,
    EstimationFailed,
    FeeTooLowError,
    NonceTooLowError,
    RpcRejectedError,
    TransientRpcError,
)
from message_storage.types import FeeParams, LogEntry, Receipt

INTRINSIC_GAS = 21_000
CREATE_GAS = 32_000
STORAGE_GAS = 45_000


@dataclass(frozen=True)
class _Tx:
    sender: str
    nonce: int
    to: Optional[str]
    data: bytes
    value: int
    gas: int
    fees: FeeParams
    tx_hash: str
    raw: bytes


def _int(value: bytes) -> int:
    return big_endian_to_int(value) if value else 0


def _decode_raw(raw: bytes, chain_id: int) -> _Tx:
    try:
        sender = Account.recover_transaction(raw)
    except Exception as e:  # eth_account raises a variety of types for garbage input
        raise RpcRejectedError(f"invalid transaction: {e}") from e

    if raw[0] == 0x02:
        fields = rlp.decode(raw[1:])
        tx_chain_id = _int(fields[0])
        if tx_chain_id != chain_id:
            raise RpcRejectedError(f"invalid chain id {tx_chain_id}")
        nonce, priority, max_fee, gas = (_int(f) for f in fields[1:5])
        to, value, data = fields[5], _int(fields[6]), bytes(fields[7])
        fees = FeeParams(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority)
    elif raw[0] >= 0xC0:
        fields = rlp.decode(raw)
        nonce, gas_price, gas = (_int(f) for f in fields[0:3])
        to, value, data = fields[3], _int(fields[4]), bytes(fields[5])
        fees = FeeParams(gas_price=gas_price)
    else:
        raise RpcRejectedError(f"transaction type {raw[0]} not supported")

    return _Tx(
        sender=sender,
        nonce=nonce,
        to=to_checksum_address(to) if to else None,
        data=data,
        value=value,
        gas=gas,
        fees=fees,
        tx_hash="0x" + keccak(raw).hex(),
        raw=raw,
    )


def _create_address(sender: str, nonce: int) -> str:
    return to_checksum_address(keccak(rlp.encode([to_bytes(hexstr=sender), nonce]))[12:])


class MockChainClient:
    """Simulated chain implementing the ChainClient protocol.

    Example:
        >>> chain = MockChainClient(ContractInterface.from_artifact(path))
        >>> chain.fail_next_sends(2)          # two transient send failures
        >>> chain.min_mining_price = 10**9    # cheaper transactions stay pending
    """

    def __init__(
        self,
        interface: ContractInterface,
        *,
        chain_id: int = 31337,
        base_fee: Optional[int] = 1_000_000_000,
        gas_price: int = 1_000_000_000,
        priority_fee: int = 1_000_000,
        automine: bool = True,
        latency: float = 0.0,
    ) -> None:
        self.interface = interface
        self._chain_id = chain_id
        self.base_fee = base_fee
        self.gas_price = gas_price
        self.priority_fee = priority_fee
        self.automine = automine
        self.latency = latency

        self.min_accept_price = 0
        self.min_mining_price = 0
        self.mining_paused = False
        self.estimate_revert_reason: Optional[str] = None
        self.revert_writes = False

        self._block = 0
        self._nonces: Dict[str, int] = {}
        self._pending: Dict[Tuple[str, int], _Tx] = {}
        self._receipts: Dict[str, Receipt] = {}
        self._contracts: Dict[str, List[Tuple[str, str]]] = {}
        self._logs: List[LogEntry] = []
        self._send_failures: Deque[Exception] = deque()
        self._receipt_failures: Deque[Exception] = deque()
        self._call_failures: Deque[Exception] = deque()
        self.sent: List[str] = []
        self.replaced: List[str] = []

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------
    def fail_next_sends(self, count: int, error: Optional[Exception] = None) -> None:
        for _ in range(count):
            self._send_failures.append(error or TransientRpcError("connection reset by peer"))

    def fail_next_receipts(self, count: int, error: Optional[Exception] = None) -> None:
        for _ in range(count):
            self._receipt_failures.append(error or TransientRpcError("read timeout"))

    def fail_next_calls(self, count: int, error: Optional[Exception] = None) -> None:
        for _ in range(count):
            self._call_failures.append(error or TransientRpcError("connection refused"))

    def pause_mining(self) -> None:
        self.mining_paused = True

    def resume_mining(self) -> int:
        self.mining_paused = False
        return self.mine()

    def advance_nonce(self, address: str, count: int = 1) -> None:
        """Consume nonces as if another process had sent transactions."""
        key = to_checksum_address(address)
        self._nonces[key] = self._nonces.get(key, 0) + count
        for nonce in [n for (s, n) in self._pending if s == key and n < self._nonces[key]]:
            self._pending.pop((key, nonce))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def messages(self, address: str) -> List[Tuple[str, str]]:
        return list(self._contracts.get(address.lower(), []))

    def pending_count(self, address: Optional[str] = None) -> int:
        if address is None:
            return len(self._pending)
        key = to_checksum_address(address)
        return sum(1 for (s, _) in self._pending if s == key)

    def mined_nonce(self, address: str) -> int:
        return self._nonces.get(to_checksum_address(address), 0)

    # ------------------------------------------------------------------
    # Mining
    # ------------------------------------------------------------------
    def mine(self) -> int:
        """Mine every executable pending transaction into one block."""
        ready: List[_Tx] = []
        progressed = True
        nonces = dict(self._nonces)
        while progressed:
            progressed = False
            for (sender, nonce), tx in sorted(self._pending.items()):
                if nonce != nonces.get(sender, 0):
                    continue
                if tx.fees.effective_price < self.min_mining_price:
                    continue
                ready.append(tx)
                nonces[sender] = nonce + 1
                progressed = True
        if not ready:
            return 0

        self._block += 1
        log_index = 0
        for tx in ready:
            self._pending.pop((tx.sender, tx.nonce))
            self._nonces[tx.sender] = tx.nonce + 1
            receipt, log_index = self._execute(tx, log_index)
            self._receipts[tx.tx_hash] = receipt
        return len(ready)

    def _execute(self, tx: _Tx, log_index: int) -> Tuple[Receipt, int]:
        gas_used = INTRINSIC_GAS + 16 * len(tx.data)
        status = 1
        contract_address = None
        logs: List[LogEntry] = []

        if tx.to is None:
            gas_used += CREATE_GAS
            if self.interface.has_bytecode and not tx.data.startswith(self.interface.bytecode):
                status = 0
            elif gas_used <= tx.gas:
                contract_address = _create_address(tx.sender, tx.nonce)
                self._contracts[contract_address.lower()] = []
        elif tx.to.lower() in self._contracts:
            write = self.interface.function("writeMessage")
            if tx.data[:4] != write.selector or self.revert_writes:
                status = 0
            else:
                try:
                    (text,) = decode(["string"], tx.data[4:])
                except (DecodingError, UnicodeDecodeError, ValueError):
                    text = None
                gas_used += STORAGE_GAS
                if text is None:
                    status = 0
                elif gas_used <= tx.gas:
                    self._contracts[tx.to.lower()].append((text, tx.sender))
                    log = LogEntry(
                        address=tx.to,
                        topics=(
                            self.interface.message_event.topic,
                            b"\x00" * 12 + to_bytes(hexstr=tx.sender),
                        ),
                        data=encode(["string"], [text]),
                        block_number=self._block,
                        log_index=log_index,
                        tx_hash=tx.tx_hash,
                    )
                    log_index += 1
                    logs.append(log)
                    self._logs.append(log)

        if gas_used > tx.gas:
            status, logs, contract_address = 0, [], None
        return (
            Receipt(
                tx_hash=tx.tx_hash,
                status=status,
                block_number=self._block,
                logs=tuple(logs),
                contract_address=contract_address,
                gas_used=min(gas_used, tx.gas),
            ),
            log_index,
        )

    async def _tick(self) -> None:
        # always yield so concurrent tasks interleave as they would on real I/O
        await asyncio.sleep(self.latency)

    # ------------------------------------------------------------------
    # ChainClient protocol
    # ------------------------------------------------------------------
    async def chain_id(self) -> int:
        await self._tick()
        return self._chain_id

    async def block_number(self) -> int:
        await self._tick()
        return self._block

    async def get_transaction_count(self, address: str, block_identifier: str = "pending") -> int:
        await self._tick()
        key = to_checksum_address(address)
        nonce = self._nonces.get(key, 0)
        if block_identifier == "pending":
            while (key, nonce) in self._pending:
                nonce += 1
        return nonce

    async def get_gas_price(self) -> int:
        await self._tick()
        return self.gas_price

    async def get_base_fee(self) -> Optional[int]:
        await self._tick()
        return self.base_fee

    async def get_max_priority_fee(self) -> int:
        await self._tick()
        return self.priority_fee

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        await self._tick()
        if self.estimate_revert_reason is not None:
            raise EstimationFailed(self.estimate_revert_reason)
        data = bytes(tx.get("data") or b"")
        to = tx.get("to")
        if to is None:
            if self.interface.has_bytecode and not data.startswith(self.interface.bytecode):
                raise EstimationFailed("invalid creation code")
            return INTRINSIC_GAS + CREATE_GAS + 16 * len(data)
        if to.lower() in self._contracts:
            write = self.interface.function("writeMessage")
            if data[:4] != write.selector or self.revert_writes:
                raise EstimationFailed("execution reverted")
            return INTRINSIC_GAS + STORAGE_GAS + 16 * len(data)
        return INTRINSIC_GAS + 16 * len(data)

    async def send_raw_transaction(self, raw: bytes) -> str:
        await self._tick()
        if self._send_failures:
            raise self._send_failures.popleft()

        tx = _decode_raw(bytes(raw), self._chain_id)
        key = (tx.sender, tx.nonce)
        existing = self._pending.get(key)
        if tx.tx_hash in self._receipts or (existing is not None and existing.tx_hash == tx.tx_hash):
            raise AlreadyKnownError("already known", tx_hash=tx.tx_hash)
        if tx.nonce < self._nonces.get(tx.sender, 0):
            raise NonceTooLowError("nonce too low", tx_hash=tx.tx_hash)

        price = tx.fees.effective_price
        if price < self.min_accept_price:
            raise FeeTooLowError("transaction underpriced", tx_hash=tx.tx_hash)
        if not tx.fees.is_legacy and self.base_fee is not None and price < self.base_fee:
            raise FeeTooLowError("max fee per gas less than block base fee", tx_hash=tx.tx_hash)
        if existing is not None:
            required = math.ceil(existing.fees.effective_price * MIN_REPLACEMENT_BUMP)
            if price < required:
                raise FeeTooLowError("replacement transaction underpriced", tx_hash=tx.tx_hash)
            self.replaced.append(existing.tx_hash)

        self._pending[key] = tx
        self.sent.append(tx.tx_hash)
        if self.automine and not self.mining_paused:
            self.mine()
        return tx.tx_hash

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        await self._tick()
        if self._receipt_failures:
            raise self._receipt_failures.popleft()
        return self._receipts.get(tx_hash)

    async def call(self, tx: Dict[str, Any], block_identifier: str = "latest") -> bytes:
        await self._tick()
        if self._call_failures:
            raise self._call_failures.popleft()
        to = tx.get("to")
        data = bytes(tx.get("data") or b"")
        if not to or to.lower() not in self._contracts:
            # calling an account without code returns empty data
            return b""
        stored = self._contracts[to.lower()]
        read_all = self.interface.function("getMessages")
        read_one = self.interface.function("messages")
        if data[:4] == read_all.selector:
            return encode(["string[]"], [[text for text, _ in stored]])
        if data[:4] == read_one.selector:
            try:
                (index,) = decode(["uint256"], data[4:])
            except (DecodingError, ValueError):
                raise RpcRejectedError("call reverted: bad calldata", code="CALL_REVERTED") from None
            if index >= len(stored):
                raise RpcRejectedError(
                    "call reverted: index out of bounds",
                    code="CALL_REVERTED",
                    details={"reason": "index out of bounds"},
                )
            return encode(["string"], [stored[index][0]])
        raise RpcRejectedError("call reverted", code="CALL_REVERTED")

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Optional[bytes]],
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> List[LogEntry]:
        await self._tick()
        last = self._block if to_block is None else to_block
        matched = []
        for log in self._logs:
            if log.address.lower() != address.lower():
                continue
            if not from_block <= log.block_number <= last:
                continue
            mismatched = any(
                t is not None and (i >= len(log.topics) or log.topics[i] != t)
                for i, t in enumerate(topics)
            )
            if mismatched:
                continue
            matched.append(log)
        return matched
