"""
Message storage - deploy and drive a MessageStorage contract.

Quick Start:
    >>> from message_storage import MessageStorageService, PipelineConfig
    >>> import asyncio
    >>>
    >>> async def main():
    ...     config = PipelineConfig.from_env()
    ...     async with await MessageStorageService.create(config) as service:
    ...         contract = await service.deploy()
    ...         await service.write_message(contract.address, "hello")
    ...         print(await service.read_messages(contract.address))
    ...
    >>> asyncio.run(main())

Modules:
- `service`: MessageStorageService, the deploy/write/read facade
- `config`: PipelineConfig
- `tx`: NonceSequencer, TransactionBuilder, Signer, SubmissionPipeline
- `contract`: ContractInterface and the event/result decoder
- `chain`: ChainClient protocol, Web3ChainClient and MockChainClient
- `errors`: Exception hierarchy
- `utils`: Logging and retry helpers
"""

from message_storage.version import __version__, __version_info__

# Facade
from message_storage.config import PipelineConfig
from message_storage.service import MessageStorageService

# Components
from message_storage.chain import ChainClient, MockChainClient, Web3ChainClient
from message_storage.contract import ContractInterface, load_interface
from message_storage.tx import (
    CallIntent,
    DeployIntent,
    NonceSequencer,
    Signer,
    SubmissionPipeline,
    SubmissionPolicy,
    TransactionBuilder,
)

# Types
from message_storage.types import (
    DeployedContract,
    FeeParams,
    Message,
    MessageWritten,
    NonceOutcome,
    NonceState,
    Receipt,
    TransactionOutcome,
    TxStatus,
)

# Errors
from message_storage.errors import (
    BuildError,
    ConfirmationError,
    DecodeError,
    DeployError,
    EstimationFailed,
    MessageStorageError,
    ReadError,
    SigningError,
    SubmissionError,
    SubmissionTimeout,
    TransactionDropped,
    TransactionReverted,
    ValidationError,
    WriteError,
)

# Logging
from message_storage.utils.logging import configure_logging, get_logger

__all__ = [
    "__version__",
    "__version_info__",
    # Facade
    "MessageStorageService",
    "PipelineConfig",
    # Components
    "ChainClient",
    "Web3ChainClient",
    "MockChainClient",
    "ContractInterface",
    "load_interface",
    "NonceSequencer",
    "TransactionBuilder",
    "Signer",
    "SubmissionPipeline",
    "SubmissionPolicy",
    "DeployIntent",
    "CallIntent",
    # Types
    "DeployedContract",
    "TransactionOutcome",
    "Message",
    "MessageWritten",
    "Receipt",
    "FeeParams",
    "NonceOutcome",
    "NonceState",
    "TxStatus",
    # Errors
    "MessageStorageError",
    "ValidationError",
    "BuildError",
    "EstimationFailed",
    "SigningError",
    "SubmissionError",
    "SubmissionTimeout",
    "ConfirmationError",
    "TransactionReverted",
    "TransactionDropped",
    "DecodeError",
    "DeployError",
    "WriteError",
    "ReadError",
    # Logging
    "configure_logging",
    "get_logger",
]
