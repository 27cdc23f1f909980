"""
Root of the message storage exception tree.

Every failure the pipeline reports is a MessageStorageError. Besides the
text, each one carries a stable ``code`` callers can branch on, the hash
of the transaction involved (once one was signed) and a ``details`` dict
with the nonce, address or node reason behind it.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class MessageStorageError(Exception):
    """
    Base exception for deploy, write and read failures.

    Attributes:
        message: What went wrong.
        code: Stable identifier such as ``"TX_DROPPED"`` or ``"FEE_TOO_LOW"``.
        tx_hash: Hash of the last signed attempt, if the failure happened after signing.
        details: Context such as ``nonce``, ``contract_address`` or the node's ``reason``.

    Example:
        >>> error = MessageStorageError("No receipt", code="TX_DROPPED", details={"nonce": 3})
        >>> error.details["nonce"]
        3
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "MESSAGE_STORAGE_ERROR",
        tx_hash: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.tx_hash = tx_hash
        self.details = details or {}

    @property
    def short_hash(self) -> Optional[str]:
        """First four bytes of ``tx_hash`` for log lines."""
        return f"{self.tx_hash[:10]}..." if self.tx_hash else None

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        if self.short_hash:
            text += f" (tx: {self.short_hash})"
        return text

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{name}={getattr(self, name)!r}" for name in ("message", "code", "tx_hash", "details")
        )
        return f"{type(self).__name__}({fields})"

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form: the class name plus every structured field."""
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "tx_hash": self.tx_hash,
            "details": self.details,
        }


class ValidationError(MessageStorageError):
    """Raised when caller input or configuration is invalid."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details=details)
