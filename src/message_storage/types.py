"""Data types shared by the message storage pipeline.

Everything here is an immutable value: transactions, receipts and decoded
messages are produced once by one stage and only read by the next.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

if TYPE_CHECKING:
    from message_storage.contract.interface import ContractInterface


class NonceOutcome(str, Enum):
    """How a holder hands an acquired nonce back to the sequencer."""

    CONFIRMED = "confirmed"
    """A transaction with this nonce was mined (successfully or reverted)."""

    PERMANENTLY_FAILED = "permanently_failed"
    """Nothing with this nonce will land; the value may be reused."""

    NEEDS_RESUBMIT = "needs_resubmit"
    """An attempt may still sit in a mempool; reuse must replace it."""


class TxStatus(str, Enum):
    """Submission states of a single logical transaction."""

    BUILT = "built"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    DROPPED = "dropped"


@dataclass(frozen=True)
class NonceState:
    """Per-account nonce bookkeeping snapshot.

    Attributes:
        confirmed_nonce: Every nonce below this value is known to be mined.
        next_assignable: Next never-assigned nonce.
        in_flight: Nonces currently held by a submitter.
        reusable: Released nonces below ``next_assignable`` waiting for reuse.
    """

    confirmed_nonce: int
    next_assignable: int
    in_flight: Tuple[int, ...] = ()
    reusable: Tuple[int, ...] = ()


@dataclass(frozen=True)
class FeeParams:
    """Fee parameters for one transaction attempt.

    Legacy transactions carry ``gas_price``; EIP-1559 transactions carry
    ``max_fee_per_gas`` and ``max_priority_fee_per_gas``.
    """

    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def is_legacy(self) -> bool:
        return self.gas_price is not None

    @property
    def effective_price(self) -> int:
        """Highest price per gas this attempt is willing to pay."""
        if self.is_legacy:
            return int(self.gas_price or 0)
        return int(self.max_fee_per_gas or 0)

    def bumped(self, factor: float) -> "FeeParams":
        """Return fees multiplied by ``factor``, always strictly larger."""

        def _bump(value: Optional[int]) -> Optional[int]:
            if value is None:
                return None
            return max(math.ceil(value * factor), value + 1)

        return FeeParams(
            gas_price=_bump(self.gas_price),
            max_fee_per_gas=_bump(self.max_fee_per_gas),
            max_priority_fee_per_gas=_bump(self.max_priority_fee_per_gas),
        )

    def at_least(self, floor: Optional["FeeParams"]) -> "FeeParams":
        """Raise each component to at least the matching one in ``floor``."""
        if floor is None:
            return self

        def _max(a: Optional[int], b: Optional[int]) -> Optional[int]:
            if a is None:
                return None
            if b is None:
                return a
            return max(a, b)

        if self.is_legacy:
            return replace(self, gas_price=_max(self.gas_price, floor.effective_price))
        return replace(
            self,
            max_fee_per_gas=_max(self.max_fee_per_gas, floor.effective_price),
            max_priority_fee_per_gas=_max(
                self.max_priority_fee_per_gas, floor.max_priority_fee_per_gas
            ),
        )

    def to_tx_params(self) -> Dict[str, int]:
        if self.is_legacy:
            return {"gasPrice": int(self.gas_price or 0)}
        return {
            "maxFeePerGas": int(self.max_fee_per_gas or 0),
            "maxPriorityFeePerGas": int(self.max_priority_fee_per_gas or 0),
        }


@dataclass(frozen=True)
class UnsignedTransaction:
    """A fully built transaction waiting for a signature.

    ``to`` is ``None`` for contract creation.
    """

    nonce: int
    to: Optional[str]
    data: bytes
    value: int
    gas_limit: int
    fees: FeeParams
    chain_id: int

    @property
    def is_deployment(self) -> bool:
        return self.to is None

    def to_tx_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "nonce": self.nonce,
            "value": self.value,
            "data": self.data,
            "gas": self.gas_limit,
            "chainId": self.chain_id,
        }
        if self.to is not None:
            params["to"] = self.to
        params.update(self.fees.to_tx_params())
        return params


@dataclass(frozen=True)
class SignedTransaction:
    """Signed, serialized transaction; consumed once by submission."""

    nonce: int
    tx_hash: str
    raw: bytes
    fees: FeeParams
    unsigned: UnsignedTransaction = field(repr=False)


@dataclass(frozen=True)
class LogEntry:
    """A raw log entry as reported in a receipt or by ``eth_getLogs``."""

    address: str
    topics: Tuple[bytes, ...]
    data: bytes
    block_number: int = 0
    log_index: int = 0
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class Receipt:
    """Chain-provided record of a mined transaction."""

    tx_hash: str
    status: int
    block_number: int
    logs: Tuple[LogEntry, ...] = ()
    contract_address: Optional[str] = None
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class Message:
    """A stored message. ``sender`` is ``None`` when it cannot be attributed."""

    index: int
    text: str
    sender: Optional[str] = None


@dataclass(frozen=True)
class MessageWritten:
    """Decoded ``MessageWritten(string message, address indexed sender)`` log."""

    text: str
    sender: str
    contract_address: str
    block_number: int
    log_index: int
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class DeployedContract:
    """Terminal artifact of a successful deployment."""

    address: str
    interface: "ContractInterface" = field(repr=False, compare=False)
    tx_hash: str = ""
    block_number: int = 0


@dataclass(frozen=True)
class TransactionOutcome:
    """Terminal result of a successful write."""

    tx_hash: str
    block_number: int
    nonce: int
    events: Tuple[MessageWritten, ...] = ()


@dataclass(frozen=True)
class SubmissionResult:
    """What the submission pipeline reports for a confirmed transaction."""

    receipt: Receipt
    nonce: int
    attempts: int
    status: TxStatus = TxStatus.CONFIRMED
