"""
Exceptions surfaced by the public service operations.

Each wraps the underlying pipeline failure in ``cause`` so callers can
branch on one type per operation and still inspect the precise kind.
"""

from __future__ import annotations

from typing import Optional

from message_storage.errors.base import MessageStorageError


class _OperationError(MessageStorageError):
    operation = "operation"

    def __init__(self, cause: MessageStorageError, *, contract_address: Optional[str] = None) -> None:
        details = {"cause": cause.code}
        if contract_address:
            details["contract_address"] = contract_address
        super().__init__(
            f"{self.operation} failed: {cause.message}",
            code=f"{self.operation.upper()}_FAILED",
            tx_hash=cause.tx_hash,
            details=details,
        )
        self.cause = cause


class DeployError(_OperationError):
    """Raised when contract deployment does not reach a successful receipt."""

    operation = "deploy"


class WriteError(_OperationError):
    """Raised when ``write_message`` does not reach a successful receipt."""

    operation = "write"


class ReadError(_OperationError):
    """Raised when reading messages fails. Never touches nonce state."""

    operation = "read"
