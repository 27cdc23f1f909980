"""Event and read-result decoding.

Decoding is keyed by the method/event entries of a validated
ContractInterface. Malformed chain data always surfaces as DecodeError.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from message_storage.constants import ABI_SELECTOR_LENGTH, ABI_WORD_LENGTH, REVERT_SELECTOR
from message_storage.contract.interface import ContractInterface
from message_storage.errors import DecodeError
from message_storage.types import LogEntry, Message, MessageWritten, Receipt

_DECODE_FAILURES = (DecodingError, UnicodeDecodeError, ValueError, OverflowError, TypeError)


def decode_log(log: LogEntry, interface: ContractInterface) -> MessageWritten:
    """Decode one MessageWritten log entry.

    Raises:
        DecodeError: If the topic layout or data does not match the event ABI
    """
    event = interface.message_event
    if not log.topics or bytes(log.topics[0]) != event.topic:
        raise DecodeError(f"log is not {event.signature}", details={"address": log.address})
    if len(log.topics) != 2:
        raise DecodeError(
            f"{event.name} expects 2 topics, got {len(log.topics)}",
            details={"tx_hash": log.tx_hash},
        )
    sender_word = bytes(log.topics[1])
    if len(sender_word) != ABI_WORD_LENGTH or any(sender_word[:12]):
        raise DecodeError("sender topic is not an ABI-encoded address")
    try:
        (text,) = decode(["string"], bytes(log.data))
    except _DECODE_FAILURES as e:
        raise DecodeError(
            f"cannot decode {event.name} data: {e}", details={"tx_hash": log.tx_hash}
        ) from e
    return MessageWritten(
        text=text,
        sender=to_checksum_address(sender_word[12:]),
        contract_address=to_checksum_address(log.address),
        block_number=log.block_number,
        log_index=log.log_index,
        tx_hash=log.tx_hash,
    )


def decode_receipt_logs(
    receipt: Union[Receipt, Sequence[LogEntry]],
    interface: ContractInterface,
    contract_address: Optional[str] = None,
) -> List[MessageWritten]:
    """Return every MessageWritten event in ``receipt``.

    Logs from other contracts or with other topics are skipped. When
    ``contract_address`` is given only that contract's logs are considered.
    """
    logs: Iterable[LogEntry] = receipt.logs if isinstance(receipt, Receipt) else receipt
    topic = interface.message_event.topic
    wanted = contract_address.lower() if contract_address else None
    events = []
    for log in logs:
        if wanted is not None and log.address.lower() != wanted:
            continue
        if not log.topics or bytes(log.topics[0]) != topic:
            continue
        events.append(decode_log(log, interface))
    return events


def decode_read_result(
    raw: bytes,
    interface: ContractInterface,
    method: str,
    *,
    start_index: int = 0,
) -> List[Message]:
    """Decode the return data of a read method into messages.

    ``string[]`` results become one Message per element; a single ``string``
    result becomes one Message at ``start_index``. Senders are left unset.

    Raises:
        DecodeError: If the data is empty, short or otherwise malformed
    """
    fn = interface.function(method)
    data = bytes(raw)
    if not data:
        raise DecodeError(
            f"{fn.signature} returned no data (is the address a deployed contract?)",
            details={"method": fn.signature},
        )
    try:
        values = decode(list(fn.output_types), data)
    except _DECODE_FAILURES as e:
        raise DecodeError(
            f"cannot decode {fn.signature} result: {e}",
            details={"method": fn.signature, "length": len(data)},
        ) from e

    (value,) = values
    if fn.output_types == ("string[]",):
        return [Message(index=start_index + i, text=text) for i, text in enumerate(value)]
    if fn.output_types == ("string",):
        return [Message(index=start_index, text=value)]
    raise DecodeError(f"{fn.signature} does not return messages")


def attribute_senders(
    messages: Sequence[Message], events: Sequence[MessageWritten]
) -> List[Message]:
    """Pair messages with the senders of the events that appended them.

    Events must be in chain order; the n-th event wrote message n.
    """
    ordered = sorted(events, key=lambda e: (e.block_number, e.log_index))
    attributed = []
    for message in messages:
        sender = message.sender
        if sender is None and message.index < len(ordered):
            event = ordered[message.index]
            if event.text == message.text:
                sender = event.sender
        attributed.append(Message(index=message.index, text=message.text, sender=sender))
    return attributed


def decode_revert_reason(raw: Union[str, bytes, None]) -> Optional[str]:
    """Decode Solidity revert reason from error data.

    Args:
        raw: Hex-encoded (or raw) error data

    Returns:
        Decoded revert reason string, or None if decoding fails
    """
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = "0x" + bytes(raw).hex()
    # Standard Solidity Error(string) selector 0x08c379a0 + encoded string
    if raw.startswith(REVERT_SELECTOR) and len(raw) >= 10:
        try:
            data = bytes.fromhex(raw[2:])
            # offset: 4 bytes selector + 32 bytes offset + 32 bytes length
            if len(data) >= ABI_SELECTOR_LENGTH + ABI_WORD_LENGTH + ABI_WORD_LENGTH:
                offset = ABI_SELECTOR_LENGTH + ABI_WORD_LENGTH
                strlen = int.from_bytes(data[offset : offset + ABI_WORD_LENGTH], "big")
                reason_start = offset + ABI_WORD_LENGTH
                reason_bytes = data[reason_start : reason_start + strlen]
                return reason_bytes.decode(errors="ignore")
        except (ValueError, UnicodeDecodeError):
            return None
    return None
