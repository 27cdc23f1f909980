"""Contract interface loading and ABI decoding."""

from message_storage.contract.decoder import (
    attribute_senders,
    decode_log,
    decode_read_result,
    decode_receipt_logs,
    decode_revert_reason,
)
from message_storage.contract.interface import (
    AbiEvent,
    AbiFunction,
    ContractInterface,
    load_interface,
)

__all__ = [
    "ContractInterface",
    "AbiFunction",
    "AbiEvent",
    "load_interface",
    "decode_log",
    "decode_receipt_logs",
    "decode_read_result",
    "attribute_senders",
    "decode_revert_reason",
]
