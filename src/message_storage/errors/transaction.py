"""
Transaction-path exceptions.

Covers the whole write path: building (encoding and gas estimation),
signing, submission to the node, confirmation and nonce bookkeeping.
Only ``TransientRpcError`` is retried by the pipeline; everything else is
final for the attempt that raised it.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from message_storage.errors.base import MessageStorageError


class BuildError(MessageStorageError):
    """Raised when a transaction cannot be built. No chain state was touched."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "BUILD_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)


class EstimationFailed(BuildError):
    """
    Raised when gas estimation fails, typically because the call would revert.

    Example:
        >>> raise EstimationFailed("execution reverted: empty message")
    """

    def __init__(self, reason: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        details = details or {}
        details["reason"] = reason
        super().__init__(
            f"Gas estimation failed: {reason}",
            code="ESTIMATION_FAILED",
            details=details,
        )
        self.reason = reason


class SigningError(MessageStorageError):
    """Raised when a built transaction cannot be signed."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="SIGNING_ERROR", details=details)


class SubmissionError(MessageStorageError):
    """Base class for failures talking to the node."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "SUBMISSION_ERROR",
        tx_hash: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, tx_hash=tx_hash, details=details)


class TransientRpcError(SubmissionError):
    """
    Network-level failure that may succeed on retry.

    Examples: connection refused, read timeouts, HTTP 5xx, rate limits.
    """

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="RPC_TRANSIENT", details=details)


class RpcRejectedError(SubmissionError):
    """The node answered and refused the request. Not retried as-is."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "RPC_REJECTED",
        tx_hash: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, tx_hash=tx_hash, details=details)


class FeeTooLowError(RpcRejectedError):
    """The node rejected the transaction as underpriced."""

    def __init__(self, message: str, *, tx_hash: Optional[str] = None) -> None:
        super().__init__(message, code="FEE_TOO_LOW", tx_hash=tx_hash)


class NonceTooLowError(RpcRejectedError):
    """The nonce is already used by a mined transaction."""

    def __init__(self, message: str, *, tx_hash: Optional[str] = None) -> None:
        super().__init__(message, code="NONCE_TOO_LOW", tx_hash=tx_hash)


class AlreadyKnownError(RpcRejectedError):
    """The node already holds this exact transaction."""

    def __init__(self, message: str, *, tx_hash: Optional[str] = None) -> None:
        super().__init__(message, code="ALREADY_KNOWN", tx_hash=tx_hash)


class SubmissionTimeout(SubmissionError):
    """
    Raised when retries or fee bumps are exhausted without a confirmation.

    Example:
        >>> raise SubmissionTimeout("fee bumps exhausted", attempts=4, nonce=12)
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        nonce: Optional[int] = None,
        tx_hash: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="SUBMISSION_TIMEOUT",
            tx_hash=tx_hash,
            details={"attempts": attempts, "nonce": nonce},
        )
        self.attempts = attempts
        self.nonce = nonce


class ConfirmationError(MessageStorageError):
    """Base class for transactions that reached a terminal non-success state."""


class TransactionReverted(ConfirmationError):
    """The transaction was mined but execution failed."""

    def __init__(self, tx_hash: str, *, block_number: int, nonce: int) -> None:
        super().__init__(
            f"Transaction reverted in block {block_number}",
            code="TX_REVERTED",
            tx_hash=tx_hash,
            details={"block_number": block_number, "nonce": nonce},
        )
        self.block_number = block_number
        self.nonce = nonce


class TransactionDropped(ConfirmationError):
    """No receipt was observed within the polling window."""

    def __init__(self, tx_hash: str, *, nonce: int, waited_ms: int) -> None:
        super().__init__(
            f"No receipt after {waited_ms}ms",
            code="TX_DROPPED",
            tx_hash=tx_hash,
            details={"nonce": nonce, "waited_ms": waited_ms},
        )
        self.nonce = nonce
        self.waited_ms = waited_ms


class NonceError(MessageStorageError):
    """Raised when the nonce sequencer is used out of protocol."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="NONCE_ERROR", details=details)
