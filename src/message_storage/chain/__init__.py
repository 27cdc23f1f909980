"""Chain clients: the protocol, the web3.py implementation and a simulated chain."""

from message_storage.chain.base import ChainClient, classify_rpc_error
from message_storage.chain.mock import MockChainClient
from message_storage.chain.web3_client import Web3ChainClient

__all__ = [
    "ChainClient",
    "classify_rpc_error",
    "Web3ChainClient",
    "MockChainClient",
]
