"""
Shared fixtures for message storage tests.
"""

from typing import Any, Dict

import pytest

from message_storage.chain.mock import MockChainClient
from message_storage.contract.interface import ContractInterface
from message_storage.service import MessageStorageService
from message_storage.tx.builder import TransactionBuilder
from message_storage.tx.nonce import NonceSequencer
from message_storage.tx.pipeline import SubmissionPipeline, SubmissionPolicy
from message_storage.tx.signer import Signer
from message_storage.utils.retry import RetryConfig


# =============================================================================
# Test Constants
# =============================================================================

# Deterministic deployer key (never funded anywhere real)
DEPLOYER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32

CHAIN_ID = 31337

# Stand-in creation code; the simulated chain only checks the prefix
CREATION_CODE = "0x6080604052348015600f57600080fd5b50603e80601d6000396000f3fe"

UNKNOWN_ADDRESS = "0x1234567890123456789012345678901234567890"

GWEI = 10**9


# =============================================================================
# Fixtures - Contract and Accounts
# =============================================================================


@pytest.fixture
def artifact() -> Dict[str, Any]:
    """Foundry-shaped artifact with the bundled ABI and stand-in bytecode."""
    return {
        "abi": ContractInterface.bundled().abi,
        "bytecode": {"object": CREATION_CODE},
    }


@pytest.fixture
def interface(artifact: Dict[str, Any]) -> ContractInterface:
    return ContractInterface.from_dict(artifact)


@pytest.fixture
def signer() -> Signer:
    return Signer.from_key(DEPLOYER_KEY)


@pytest.fixture
def other_signer() -> Signer:
    return Signer.from_key(OTHER_KEY)


# =============================================================================
# Fixtures - Chain and Pipeline
# =============================================================================


@pytest.fixture
def chain(interface: ContractInterface) -> MockChainClient:
    return MockChainClient(interface, chain_id=CHAIN_ID)


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay_ms=1, max_delay_ms=5, jitter=False)


@pytest.fixture
def policy() -> SubmissionPolicy:
    """Short timings so drop and retry paths finish in milliseconds."""
    return SubmissionPolicy(
        poll_interval_ms=5,
        receipt_timeout_ms=60,
        max_retry_attempts=3,
        retry_base_delay_ms=1,
        retry_max_delay_ms=5,
        max_fee_bumps=3,
        bump_factor=1.125,
        max_nonce_resyncs=2,
    )


@pytest.fixture
def sequencer(chain: MockChainClient, fast_retry: RetryConfig) -> NonceSequencer:
    return NonceSequencer(chain, fast_retry)


@pytest.fixture
def builder(
    chain: MockChainClient, interface: ContractInterface, signer: Signer
) -> TransactionBuilder:
    return TransactionBuilder(chain, interface, sender=signer.address, chain_id=CHAIN_ID)


@pytest.fixture
def pipeline(
    chain: MockChainClient,
    builder: TransactionBuilder,
    signer: Signer,
    sequencer: NonceSequencer,
    policy: SubmissionPolicy,
) -> SubmissionPipeline:
    return SubmissionPipeline(chain, builder, signer, sequencer, policy)


@pytest.fixture
def service(
    chain: MockChainClient,
    interface: ContractInterface,
    signer: Signer,
    policy: SubmissionPolicy,
) -> MessageStorageService:
    return MessageStorageService(chain, interface, signer, chain_id=CHAIN_ID, policy=policy)
