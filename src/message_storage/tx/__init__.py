"""Write path: nonce sequencing, building, signing and submission."""

from message_storage.tx.builder import TransactionBuilder
from message_storage.tx.nonce import NonceSequencer
from message_storage.tx.pipeline import (
    CallIntent,
    DeployIntent,
    Intent,
    SubmissionPipeline,
    SubmissionPolicy,
)
from message_storage.tx.signer import Signer

__all__ = [
    "NonceSequencer",
    "TransactionBuilder",
    "Signer",
    "SubmissionPipeline",
    "SubmissionPolicy",
    "DeployIntent",
    "CallIntent",
    "Intent",
]
