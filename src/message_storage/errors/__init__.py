"""
Exception hierarchy for the message storage pipeline.

MessageStorageError
├── ValidationError
├── ContractInterfaceError
├── DecodeError
├── BuildError
│   └── EstimationFailed
├── SigningError
├── SubmissionError
│   ├── TransientRpcError
│   ├── RpcRejectedError
│   │   ├── FeeTooLowError
│   │   ├── NonceTooLowError
│   │   └── AlreadyKnownError
│   └── SubmissionTimeout
├── ConfirmationError
│   ├── TransactionReverted
│   └── TransactionDropped
├── NonceError
├── DeployError
├── WriteError
└── ReadError
"""

from message_storage.errors.base import MessageStorageError, ValidationError
from message_storage.errors.contract import ContractInterfaceError, DecodeError
from message_storage.errors.service import DeployError, ReadError, WriteError
from message_storage.errors.transaction import (
    AlreadyKnownError,
    BuildError,
    ConfirmationError,
    EstimationFailed,
    FeeTooLowError,
    NonceError,
    NonceTooLowError,
    RpcRejectedError,
    SigningError,
    SubmissionError,
    SubmissionTimeout,
    TransactionDropped,
    TransactionReverted,
    TransientRpcError,
)

__all__ = [
    "MessageStorageError",
    "ValidationError",
    "ContractInterfaceError",
    "DecodeError",
    "BuildError",
    "EstimationFailed",
    "SigningError",
    "SubmissionError",
    "TransientRpcError",
    "RpcRejectedError",
    "FeeTooLowError",
    "NonceTooLowError",
    "AlreadyKnownError",
    "SubmissionTimeout",
    "ConfirmationError",
    "TransactionReverted",
    "TransactionDropped",
    "NonceError",
    "DeployError",
    "WriteError",
    "ReadError",
]
