"""Transaction building.

Turns a deploy or method-call intent into an UnsignedTransaction: encodes
the calldata, prices the transaction from current network fees and
estimates a gas limit by simulating it. The builder holds only immutable
settings; the nonce is always supplied by the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from web3 import Web3

from message_storage.chain.base import ChainClient
from message_storage.constants import (
    DEFAULT_BUMP_FACTOR,
    GAS_ESTIMATION_BUFFER,
    MAX_FEE_MULTIPLIER,
    MAX_GAS_LIMIT,
    MIN_MAX_FEE_GWEI,
    PRIORITY_FEE_GWEI,
    TRANSFER_GAS,
)
from message_storage.contract.interface import ContractInterface
from message_storage.errors import BuildError, RpcRejectedError
from message_storage.types import FeeParams, UnsignedTransaction


class TransactionBuilder:
    """Builds unsigned transactions for one sender on one chain.

    Args:
        chain: Chain client used for fee queries and gas estimation
        interface: Loaded contract interface
        sender: Address the transactions will be signed by
        chain_id: Chain the transactions are bound to
        legacy: Build pre-EIP-1559 ``gasPrice`` transactions
        gas_estimation_buffer: Multiplier applied to the node's estimate
        max_gas_limit: Upper bound for any gas limit
    """

    def __init__(
        self,
        chain: ChainClient,
        interface: ContractInterface,
        *,
        sender: str,
        chain_id: int,
        legacy: bool = False,
        gas_estimation_buffer: float = GAS_ESTIMATION_BUFFER,
        max_gas_limit: int = MAX_GAS_LIMIT,
    ) -> None:
        self._chain = chain
        self._interface = interface
        self._sender = Web3.to_checksum_address(sender)
        self._chain_id = chain_id
        self._legacy = legacy
        self._buffer = gas_estimation_buffer
        self._max_gas_limit = max_gas_limit

    @property
    def interface(self) -> ContractInterface:
        return self._interface

    async def fee_params(
        self,
        floor: Optional[FeeParams] = None,
        bump_factor: float = DEFAULT_BUMP_FACTOR,
    ) -> FeeParams:
        """Current network fees, raised above ``floor`` by ``bump_factor`` if given.

        EIP-1559 pricing follows the base-fee-times-two rule with a small
        priority tip; chains without a base fee fall back to ``gasPrice``.
        """
        base_fee = None if self._legacy else await self._chain.get_base_fee()
        if base_fee is None:
            fees = FeeParams(gas_price=await self._chain.get_gas_price())
        else:
            try:
                priority = await self._chain.get_max_priority_fee()
            except RpcRejectedError:
                # not every node implements eth_maxPriorityFeePerGas
                priority = Web3.to_wei(PRIORITY_FEE_GWEI, "gwei")
            max_fee = max(
                base_fee * MAX_FEE_MULTIPLIER + priority,
                Web3.to_wei(MIN_MAX_FEE_GWEI, "gwei"),
            )
            fees = FeeParams(max_fee_per_gas=max_fee, max_priority_fee_per_gas=min(priority, max_fee))
        if floor is not None:
            fees = fees.at_least(floor.bumped(bump_factor))
        return fees

    async def build_deploy(
        self,
        constructor_args: Sequence[Any],
        *,
        nonce: int,
        fees: Optional[FeeParams] = None,
    ) -> UnsignedTransaction:
        """Build a contract-creation transaction (``to`` is empty).

        Raises:
            BuildError: If the interface has no bytecode or the arguments do not encode
            EstimationFailed: If the deployment would revert
        """
        data = self._interface.encode_deployment(constructor_args)
        return await self._build(None, data, nonce=nonce, fees=fees)

    async def build_call(
        self,
        contract_address: str,
        method: str,
        args: Sequence[Any],
        *,
        nonce: int,
        fees: Optional[FeeParams] = None,
    ) -> UnsignedTransaction:
        """Build a state-changing call of ``method`` on ``contract_address``.

        Raises:
            BuildError: If the address is invalid or the arguments do not encode
            EstimationFailed: If the call would revert
        """
        if not Web3.is_address(contract_address):
            raise BuildError(
                "contract_address must be a valid address",
                details={"contract_address": contract_address},
            )
        data = self._interface.encode_call(method, args)
        return await self._build(
            Web3.to_checksum_address(contract_address), data, nonce=nonce, fees=fees
        )

    def build_gap_fill(self, *, nonce: int, fees: FeeParams) -> UnsignedTransaction:
        """Build a zero-value transfer to the sender that only consumes ``nonce``."""
        if nonce < 0:
            raise BuildError("nonce must be non-negative", details={"nonce": nonce})
        return UnsignedTransaction(
            nonce=nonce,
            to=self._sender,
            data=b"",
            value=0,
            gas_limit=TRANSFER_GAS,
            fees=fees,
            chain_id=self._chain_id,
        )

    async def estimate_gas(self, to: Optional[str], data: bytes) -> int:
        """Simulate the transaction and return a buffered gas limit."""
        request: Dict[str, Any] = {"from": self._sender, "data": data, "value": 0}
        if to is not None:
            request["to"] = to
        base = await self._chain.estimate_gas(request)
        if base > self._max_gas_limit:
            raise BuildError(
                f"Estimated gas ({base}) exceeds maximum ({self._max_gas_limit})",
                details={"estimate": base},
            )
        # Cap to prevent excessive gas from a misbehaving RPC
        return min(int(base * self._buffer), self._max_gas_limit)

    async def _build(
        self,
        to: Optional[str],
        data: bytes,
        *,
        nonce: int,
        fees: Optional[FeeParams],
    ) -> UnsignedTransaction:
        if nonce < 0:
            raise BuildError("nonce must be non-negative", details={"nonce": nonce})
        gas_limit = await self.estimate_gas(to, data)
        if fees is None:
            fees = await self.fee_params()
        return UnsignedTransaction(
            nonce=nonce,
            to=to,
            data=data,
            value=0,
            gas_limit=gas_limit,
            fees=fees,
            chain_id=self._chain_id,
        )
