"""Web3.py implementation of the chain client.

Wraps ``AsyncWeb3`` over HTTP. Each call goes through ``_rpc`` so that
connection failures, JSON-RPC errors and contract reverts reach the
pipeline as typed errors instead of web3/aiohttp exceptions.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import aiohttp
from web3 import AsyncWeb3, Web3
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    TransactionNotFound,
    Web3RPCError,
)

from message_storage.chain.base import classify_rpc_error
from message_storage.constants import PROVIDER_TIMEOUT_SECONDS
from message_storage.contract.decoder import decode_revert_reason
from message_storage.errors import (
    EstimationFailed,
    MessageStorageError,
    RpcRejectedError,
    TransientRpcError,
)
from message_storage.types import LogEntry, Receipt
from message_storage.utils.logging import get_logger

T = TypeVar("T")

_logger = get_logger(__name__)

_NETWORK_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
    TimeoutError,
    ProviderConnectionError,
)


def _rpc_message(error: Exception) -> str:
    """Extract the node's message from a JSON-RPC error."""
    response = getattr(error, "rpc_response", None)
    if isinstance(response, dict):
        err = response.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    if error.args and isinstance(error.args[0], dict):
        return str(error.args[0].get("message") or error.args[0])
    return str(error)


def _revert_reason(error: ContractLogicError) -> str:
    decoded = decode_revert_reason(getattr(error, "data", None))
    if decoded:
        return decoded
    return getattr(error, "message", None) or str(error) or "execution reverted"


def _to_receipt(raw: Any) -> Receipt:
    logs = tuple(
        LogEntry(
            address=Web3.to_checksum_address(log["address"]),
            topics=tuple(bytes(t) for t in log["topics"]),
            data=bytes(log["data"]),
            block_number=int(log.get("blockNumber") or 0),
            log_index=int(log.get("logIndex") or 0),
            tx_hash=Web3.to_hex(log["transactionHash"]) if log.get("transactionHash") else None,
        )
        for log in raw.get("logs", [])
    )
    contract_address = raw.get("contractAddress")
    return Receipt(
        tx_hash=Web3.to_hex(raw["transactionHash"]),
        status=int(raw["status"]),
        block_number=int(raw["blockNumber"]),
        logs=logs,
        contract_address=Web3.to_checksum_address(contract_address) if contract_address else None,
        gas_used=int(raw.get("gasUsed") or 0),
    )


class Web3ChainClient:
    """Chain client backed by web3.py's async HTTP provider.

    Example:
        >>> client = Web3ChainClient("http://127.0.0.1:8545")
        >>> await client.get_transaction_count("0x...", "pending")
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        web3: Optional[AsyncWeb3] = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        if web3 is None and not rpc_url:
            raise ValueError("rpc_url or web3 is required")
        # Bounded request timeout so a stalled node surfaces as a transient error
        self.w3 = web3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)},
            )
        )
        self._chain_id: Optional[int] = None

    async def _rpc(self, method: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except (MessageStorageError, ContractLogicError, TransactionNotFound):
            # reverts and unknown receipts are handled per call site
            raise
        except _NETWORK_ERRORS as e:
            _logger.debug("RPC network failure", extra={"method": method, "error": repr(e)})
            raise TransientRpcError(f"{method}: {e}", details={"method": method}) from e
        except Web3RPCError as e:
            raise classify_rpc_error(_rpc_message(e)) from e
        except ValueError as e:
            # older providers raise ValueError carrying the JSON-RPC error dict
            raise classify_rpc_error(_rpc_message(e)) from e

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._rpc("eth_chainId", lambda: self.w3.eth.chain_id))
        return self._chain_id

    async def block_number(self) -> int:
        return int(await self._rpc("eth_blockNumber", lambda: self.w3.eth.block_number))

    async def get_transaction_count(self, address: str, block_identifier: str = "pending") -> int:
        checksum = Web3.to_checksum_address(address)
        return int(
            await self._rpc(
                "eth_getTransactionCount",
                lambda: self.w3.eth.get_transaction_count(checksum, block_identifier),
            )
        )

    async def get_gas_price(self) -> int:
        return int(await self._rpc("eth_gasPrice", lambda: self.w3.eth.gas_price))

    async def get_base_fee(self) -> Optional[int]:
        block = await self._rpc("eth_getBlockByNumber", lambda: self.w3.eth.get_block("latest"))
        base_fee = block.get("baseFeePerGas")
        return int(base_fee) if base_fee is not None else None

    async def get_max_priority_fee(self) -> int:
        return int(
            await self._rpc("eth_maxPriorityFeePerGas", lambda: self.w3.eth.max_priority_fee)
        )

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        try:
            return int(await self._rpc("eth_estimateGas", lambda: self.w3.eth.estimate_gas(tx)))
        except ContractLogicError as e:
            raise EstimationFailed(_revert_reason(e)) from e
        except RpcRejectedError as e:
            raise EstimationFailed(e.message) from e

    async def send_raw_transaction(self, raw: bytes) -> str:
        tx_hash = await self._rpc(
            "eth_sendRawTransaction", lambda: self.w3.eth.send_raw_transaction(raw)
        )
        return Web3.to_hex(tx_hash)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            raw = await self._rpc(
                "eth_getTransactionReceipt",
                lambda: self.w3.eth.get_transaction_receipt(tx_hash),
            )
        except TransactionNotFound:
            return None
        if raw is None:
            return None
        return _to_receipt(raw)

    async def call(self, tx: Dict[str, Any], block_identifier: str = "latest") -> bytes:
        try:
            result = await self._rpc("eth_call", lambda: self.w3.eth.call(tx, block_identifier))
        except ContractLogicError as e:
            reason = _revert_reason(e)
            raise RpcRejectedError(
                f"call reverted: {reason}", code="CALL_REVERTED", details={"reason": reason}
            ) from e
        return bytes(result)

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Optional[bytes]],
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> List[LogEntry]:
        params: Dict[str, Any] = {
            "address": Web3.to_checksum_address(address),
            "topics": [Web3.to_hex(t) if t is not None else None for t in topics],
            "fromBlock": from_block,
            "toBlock": to_block if to_block is not None else "latest",
        }
        raw_logs = await self._rpc("eth_getLogs", lambda: self.w3.eth.get_logs(params))
        return [
            LogEntry(
                address=Web3.to_checksum_address(log["address"]),
                topics=tuple(bytes(t) for t in log["topics"]),
                data=bytes(log["data"]),
                block_number=int(log["blockNumber"]),
                log_index=int(log["logIndex"]),
                tx_hash=Web3.to_hex(log["transactionHash"]),
            )
            for log in raw_logs
        ]

    async def close(self) -> None:
        """Close the provider's cached HTTP sessions."""
        await self.w3.provider.disconnect()
