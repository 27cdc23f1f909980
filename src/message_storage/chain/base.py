"""Chain client abstraction.

The pipeline talks to the node only through this protocol: a thin set of
JSON-RPC operations with the node's failures already mapped onto the
error taxonomy. Implementations hold a connection handle and nothing else.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from message_storage.errors import (
    AlreadyKnownError,
    FeeTooLowError,
    NonceTooLowError,
    RpcRejectedError,
    SubmissionError,
    TransientRpcError,
)
from message_storage.types import LogEntry, Receipt

# Lower-cased fragments of node error messages (geth, erigon, anvil, hardhat, nethermind)
_ALREADY_KNOWN = ("already known", "known transaction", "already imported", "alreadyknown")
_NONCE_TOO_LOW = ("nonce too low", "nonce has already been used", "oldnonce", "nonce is too low")
_FEE_TOO_LOW = (
    "underpriced",
    "fee too low",
    "gas price too low",
    "less than block base fee",
    "max fee per gas less than",
    "feecap",
    "fee cap",
    "insufficient fee",
)
_TRANSIENT = (
    "rate limit",
    "too many requests",
    "header not found",
    "timeout",
    "temporarily unavailable",
    "service unavailable",
)


def classify_rpc_error(message: str, *, tx_hash: Optional[str] = None) -> SubmissionError:
    """Map a node error message onto the submission error taxonomy."""
    lowered = message.lower()
    if any(fragment in lowered for fragment in _ALREADY_KNOWN):
        return AlreadyKnownError(message, tx_hash=tx_hash)
    if any(fragment in lowered for fragment in _NONCE_TOO_LOW):
        return NonceTooLowError(message, tx_hash=tx_hash)
    if any(fragment in lowered for fragment in _FEE_TOO_LOW):
        return FeeTooLowError(message, tx_hash=tx_hash)
    if any(fragment in lowered for fragment in _TRANSIENT):
        return TransientRpcError(message)
    return RpcRejectedError(message, tx_hash=tx_hash)


@runtime_checkable
class ChainClient(Protocol):
    """JSON-RPC operations used by the pipeline.

    Every method raises ``TransientRpcError`` for network-level failures and
    a ``RpcRejectedError`` subclass when the node refuses the request.
    """

    async def chain_id(self) -> int: ...

    async def block_number(self) -> int: ...

    async def get_transaction_count(self, address: str, block_identifier: str = "pending") -> int: ...

    async def get_gas_price(self) -> int: ...

    async def get_base_fee(self) -> Optional[int]:
        """Base fee of the latest block, ``None`` on chains without EIP-1559."""
        ...

    async def get_max_priority_fee(self) -> int: ...

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        """Simulate ``tx``; raises ``EstimationFailed`` if it would revert."""
        ...

    async def send_raw_transaction(self, raw: bytes) -> str: ...

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Receipt for ``tx_hash``, or ``None`` while it is not mined."""
        ...

    async def call(self, tx: Dict[str, Any], block_identifier: str = "latest") -> bytes: ...

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Optional[bytes]],
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> List[LogEntry]: ...
