"""
Contract interface and decoding exceptions.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from message_storage.errors.base import MessageStorageError


class ContractInterfaceError(MessageStorageError):
    """Raised when an artifact is missing, unreadable or lacks a required entry."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="CONTRACT_INTERFACE_ERROR", details=details)


class DecodeError(MessageStorageError):
    """
    Raised when chain data does not match the expected ABI shape.

    Example:
        >>> raise DecodeError("return data shorter than one word", details={"length": 3})
    """

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="DECODE_ERROR", details=details)
