"""
MessageStorageService - deploy, write and read MessageStorage contracts.

The service wires the chain client, contract interface, signer, nonce
sequencer, builder and submission pipeline for one deployer account.
Writes share the sequencer, so concurrent ``write_message`` calls from
many tasks are ordered by nonce without racing. Reads go straight to the
chain and never touch nonce state.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, List, Optional, Sequence

from web3 import Web3

from message_storage.chain.base import ChainClient
from message_storage.chain.web3_client import Web3ChainClient
from message_storage.config import PipelineConfig
from message_storage.constants import (
    GAS_ESTIMATION_BUFFER,
    MAX_GAS_LIMIT,
    READ_ALL_METHOD,
    READ_ONE_METHOD,
    WRITE_METHOD,
)
from message_storage.contract.decoder import (
    attribute_senders,
    decode_log,
    decode_read_result,
    decode_receipt_logs,
)
from message_storage.contract.interface import ContractInterface, load_interface
from message_storage.errors import (
    DecodeError,
    DeployError,
    MessageStorageError,
    ReadError,
    RpcRejectedError,
    ValidationError,
    WriteError,
)
from message_storage.tx.builder import TransactionBuilder
from message_storage.tx.nonce import NonceSequencer
from message_storage.tx.pipeline import CallIntent, DeployIntent, SubmissionPipeline, SubmissionPolicy
from message_storage.tx.signer import Signer
from message_storage.types import DeployedContract, Message, MessageWritten, TransactionOutcome
from message_storage.utils.logging import get_logger
from message_storage.utils.retry import retry_async

_logger = get_logger(__name__)


def _validate_address(address: Any, field: str = "contract_address") -> str:
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValidationError(
            f"{field} must be a valid 20-byte hex address",
            details={field: repr(address)},
        )
    return Web3.to_checksum_address(address)


class MessageStorageService:
    """
    Deploys MessageStorage contracts and appends/reads their messages.

    Example:
        ```python
        service = await MessageStorageService.create(PipelineConfig.from_env())
        contract = await service.deploy()
        outcome = await service.write_message(contract.address, "hello")
        messages = await service.read_messages(contract.address)
        await service.aclose()
        ```

    Note: Use `MessageStorageService.create()` to build one from a config.
    """

    def __init__(
        self,
        chain: ChainClient,
        interface: ContractInterface,
        signer: Signer,
        *,
        chain_id: int,
        policy: Optional[SubmissionPolicy] = None,
        legacy: bool = False,
        gas_estimation_buffer: float = GAS_ESTIMATION_BUFFER,
        max_gas_limit: int = MAX_GAS_LIMIT,
        sequencer: Optional[NonceSequencer] = None,
    ) -> None:
        self._chain = chain
        self._interface = interface
        self._signer = signer
        self._policy = policy or SubmissionPolicy()
        self._retry = self._policy.retry_config()
        self._sequencer = sequencer or NonceSequencer(chain, self._retry)
        self._builder = TransactionBuilder(
            chain,
            interface,
            sender=signer.address,
            chain_id=chain_id,
            legacy=legacy,
            gas_estimation_buffer=gas_estimation_buffer,
            max_gas_limit=max_gas_limit,
        )
        self._pipeline = SubmissionPipeline(
            chain, self._builder, signer, self._sequencer, self._policy
        )
        self._owned_client: Optional[Web3ChainClient] = None

    @classmethod
    async def create(
        cls,
        config: PipelineConfig,
        *,
        chain: Optional[ChainClient] = None,
    ) -> MessageStorageService:
        """
        Build a service from ``config``.

        The interface is loaded and validated, the signer derived and the
        chain ID confirmed against the node before anything is sent.

        Args:
            config: Pipeline configuration
            chain: Chain client to use instead of a Web3ChainClient on ``config.rpc_url``

        Raises:
            ContractInterfaceError: If the artifact is missing or invalid
            ValidationError: If the key material is invalid or the chain ID does not match
            SubmissionTimeout: If the node cannot be reached
        """
        interface = load_interface(config.artifact_path)
        if config.private_key is not None:
            signer = Signer.from_key(config.private_key.get_secret_value())
        else:
            signer = Signer.from_mnemonic(
                config.mnemonic.get_secret_value(), config.account_index
            )

        owned = None
        if chain is None:
            owned = chain = Web3ChainClient(config.rpc_url, timeout=config.request_timeout_s)
        policy = config.submission_policy()

        try:
            node_chain_id = await retry_async(chain.chain_id, policy.retry_config())
        except MessageStorageError:
            if owned is not None:
                await owned.close()
            raise
        if config.chain_id is not None and config.chain_id != node_chain_id:
            if owned is not None:
                await owned.close()
            raise ValidationError(
                f"Configured chain ID {config.chain_id} does not match node ({node_chain_id})",
                details={"configured": config.chain_id, "node": node_chain_id},
            )

        service = cls(
            chain,
            interface,
            signer,
            chain_id=node_chain_id,
            policy=policy,
            legacy=config.legacy_transactions,
            gas_estimation_buffer=config.gas_estimation_buffer,
            max_gas_limit=config.max_gas_limit,
        )
        service._owned_client = owned
        _logger.info(
            "Message storage service ready",
            extra={"account": signer.address, "chain_id": node_chain_id, "contract": interface.name},
        )
        return service

    @property
    def address(self) -> str:
        """Deployer address."""
        return self._signer.address

    @property
    def interface(self) -> ContractInterface:
        return self._interface

    @property
    def sequencer(self) -> NonceSequencer:
        return self._sequencer

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def deploy(self, constructor_args: Sequence[Any] = ()) -> DeployedContract:
        """
        Deploy a new MessageStorage contract.

        Args:
            constructor_args: Constructor arguments (MessageStorage takes none)

        Returns:
            DeployedContract with the created address

        Raises:
            DeployError: Wrapping the underlying failure in ``cause``
        """
        try:
            result = await self._pipeline.submit(DeployIntent(tuple(constructor_args)))
            address = result.receipt.contract_address
            if not address or not Web3.is_address(address):
                raise DecodeError(
                    "deployment receipt has no contract address",
                    details={"tx_hash": result.receipt.tx_hash},
                )
        except MessageStorageError as e:
            raise DeployError(e) from e

        deployed = DeployedContract(
            address=Web3.to_checksum_address(address),
            interface=self._interface,
            tx_hash=result.receipt.tx_hash,
            block_number=result.receipt.block_number,
        )
        _logger.info(
            "Contract deployed",
            extra={"contract": deployed.address, "tx_hash": deployed.tx_hash, "nonce": result.nonce},
        )
        return deployed

    async def write_message(self, contract_address: str, text: str) -> TransactionOutcome:
        """
        Append ``text`` to the contract's messages.

        Returns:
            TransactionOutcome with the hash, block and decoded events

        Raises:
            WriteError: Wrapping the underlying failure in ``cause``
        """
        try:
            address = _validate_address(contract_address)
            if not isinstance(text, str):
                raise ValidationError(
                    "text must be a string", details={"type": type(text).__name__}
                )
            result = await self._pipeline.submit(CallIntent(address, WRITE_METHOD, (text,)))
            events = decode_receipt_logs(result.receipt, self._interface, address)
        except MessageStorageError as e:
            raise WriteError(e, contract_address=str(contract_address)) from e

        _logger.info(
            "Message written",
            extra={"contract": address, "tx_hash": result.receipt.tx_hash, "nonce": result.nonce},
        )
        return TransactionOutcome(
            tx_hash=result.receipt.tx_hash,
            block_number=result.receipt.block_number,
            nonce=result.nonce,
            events=tuple(events),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def read_messages(self, contract_address: str) -> List[Message]:
        """
        Return every stored message in index order, with senders where known.

        Raises:
            ReadError: Wrapping the underlying failure in ``cause``
        """
        try:
            address = _validate_address(contract_address)
            raw = await self._call(address, READ_ALL_METHOD, ())
            messages = decode_read_result(raw, self._interface, READ_ALL_METHOD)
            if messages:
                messages = attribute_senders(messages, await self._message_logs(address))
        except MessageStorageError as e:
            raise ReadError(e, contract_address=str(contract_address)) from e
        return messages

    async def read_message(self, contract_address: str, index: int) -> Message:
        """
        Return the message stored at ``index``.

        Raises:
            ReadError: Wrapping the underlying failure in ``cause``; an
                out-of-range index surfaces as a rejected call
        """
        try:
            address = _validate_address(contract_address)
            if isinstance(index, bool) or not isinstance(index, int) or index < 0:
                raise ValidationError(
                    "index must be a non-negative integer", details={"index": repr(index)}
                )
            raw = await self._call(address, READ_ONE_METHOD, (index,))
            messages = decode_read_result(raw, self._interface, READ_ONE_METHOD, start_index=index)
            messages = attribute_senders(messages, await self._message_logs(address))
        except MessageStorageError as e:
            raise ReadError(e, contract_address=str(contract_address)) from e
        return messages[0]

    async def message_events(
        self,
        contract_address: str,
        from_block: int = 0,
    ) -> AsyncIterator[MessageWritten]:
        """
        Stream MessageWritten events in chain order, each exactly once.

        Polls for new logs every ``poll_interval_ms`` until the consumer stops
        iterating.

        Example:
            ```python
            async for event in service.message_events(contract.address):
                print(event.sender, event.text)
            ```

        Raises:
            ReadError: Wrapping the underlying failure in ``cause``
        """
        try:
            address = _validate_address(contract_address)
        except MessageStorageError as e:
            raise ReadError(e, contract_address=str(contract_address)) from e

        topic = self._interface.message_event.topic
        interval = self._policy.poll_interval_ms / 1000
        next_block = max(from_block, 0)
        while True:
            try:
                head = await retry_async(self._chain.block_number, self._retry)
                if head >= next_block:
                    logs = await retry_async(
                        lambda: self._chain.get_logs(
                            address, [topic], from_block=next_block, to_block=head
                        ),
                        self._retry,
                    )
                    events = [decode_log(log, self._interface) for log in logs]
                else:
                    events = []
            except MessageStorageError as e:
                raise ReadError(e, contract_address=address) from e

            for event in sorted(events, key=lambda ev: (ev.block_number, ev.log_index)):
                yield event
            if head >= next_block:
                next_block = head + 1
            await asyncio.sleep(interval)

    async def _call(self, address: str, method: str, args: Sequence[Any]) -> bytes:
        request = {"to": address, "data": self._interface.encode_call(method, args)}
        return await retry_async(lambda: self._chain.call(request, "latest"), self._retry)

    async def _message_logs(self, address: str) -> List[MessageWritten]:
        """MessageWritten events of ``address``; empty when the node will not serve them."""
        try:
            logs = await retry_async(
                lambda: self._chain.get_logs(address, [self._interface.message_event.topic]),
                self._retry,
            )
            return [decode_log(log, self._interface) for log in logs]
        except (RpcRejectedError, DecodeError) as e:
            _logger.warning(
                "Message logs unavailable, senders left unattributed",
                extra={"contract": address, "error": str(e)},
            )
            return []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def aclose(self) -> None:
        """Wait for background settlements and close the owned RPC client."""
        await self._pipeline.drain()
        if self._owned_client is not None:
            await self._owned_client.close()
            self._owned_client = None

    async def __aenter__(self) -> MessageStorageService:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
