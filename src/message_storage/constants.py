"""Constants for the message storage pipeline.

This module defines the constant values used across the package,
including ABI encoding constants, gas parameters, polling and retry
defaults, and contract entry names.
"""

# ABI Encoding Constants
ABI_SELECTOR_LENGTH = 4
ABI_WORD_LENGTH = 32
REVERT_SELECTOR = "0x08c379a0"

# Gas Constants
TRANSFER_GAS = 21_000
GAS_ESTIMATION_BUFFER = 1.15
MAX_FEE_MULTIPLIER = 2
MIN_MAX_FEE_GWEI = "0.01"
PRIORITY_FEE_GWEI = "0.001"
MAX_GAS_LIMIT = 5_000_000  # deployments need more headroom than calls

# Nodes reject a same-nonce replacement unless every fee grows by 10%
MIN_REPLACEMENT_BUMP = 1.1
DEFAULT_BUMP_FACTOR = 1.125
DEFAULT_MAX_FEE_BUMPS = 3

# Polling / retry defaults
DEFAULT_POLL_INTERVAL_MS = 100
DEFAULT_RECEIPT_TIMEOUT_MS = 60_000
DEFAULT_MAX_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_BASE_DELAY_MS = 250
DEFAULT_RETRY_MAX_DELAY_MS = 10_000
DEFAULT_MAX_NONCE_RESYNCS = 3

# Network Constants
PROVIDER_TIMEOUT_SECONDS = 30

# Contract entries every loaded interface must expose
WRITE_METHOD = "writeMessage"
READ_ALL_METHOD = "getMessages"
READ_ONE_METHOD = "messages"
MESSAGE_EVENT = "MessageWritten"

__all__ = [
    "ABI_SELECTOR_LENGTH",
    "ABI_WORD_LENGTH",
    "REVERT_SELECTOR",
    "TRANSFER_GAS",
    "GAS_ESTIMATION_BUFFER",
    "MAX_FEE_MULTIPLIER",
    "MIN_MAX_FEE_GWEI",
    "PRIORITY_FEE_GWEI",
    "MAX_GAS_LIMIT",
    "MIN_REPLACEMENT_BUMP",
    "DEFAULT_BUMP_FACTOR",
    "DEFAULT_MAX_FEE_BUMPS",
    "DEFAULT_POLL_INTERVAL_MS",
    "DEFAULT_RECEIPT_TIMEOUT_MS",
    "DEFAULT_MAX_RETRY_ATTEMPTS",
    "DEFAULT_RETRY_BASE_DELAY_MS",
    "DEFAULT_RETRY_MAX_DELAY_MS",
    "DEFAULT_MAX_NONCE_RESYNCS",
    "PROVIDER_TIMEOUT_SECONDS",
    "WRITE_METHOD",
    "READ_ALL_METHOD",
    "READ_ONE_METHOD",
    "MESSAGE_EVENT",
]
