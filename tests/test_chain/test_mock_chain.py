"""
Tests for the simulated chain used by the pipeline tests.
"""

from dataclasses import replace

import pytest
from eth_abi import decode

from message_storage.errors import (
    AlreadyKnownError,
    FeeTooLowError,
    NonceTooLowError,
    RpcRejectedError,
    TransientRpcError,
)
from message_storage.tx.builder import TransactionBuilder
from message_storage.types import FeeParams

from tests.conftest import CHAIN_ID, GWEI, UNKNOWN_ADDRESS


def _fees(gwei: int) -> FeeParams:
    return FeeParams(max_fee_per_gas=gwei * GWEI, max_priority_fee_per_gas=GWEI)


async def _deploy(chain, builder, signer, nonce: int = 0) -> str:
    tx = await builder.build_deploy((), nonce=nonce)
    tx_hash = await chain.send_raw_transaction(signer.sign(tx).raw)
    receipt = await chain.get_transaction_receipt(tx_hash)
    return receipt.contract_address


class TestSend:
    """Mempool acceptance rules."""

    @pytest.mark.asyncio
    async def test_deploy_and_write(self, chain, builder, signer, interface) -> None:
        address = await _deploy(chain, builder, signer)
        tx = await builder.build_call(address, "writeMessage", ("hi",), nonce=1)

        tx_hash = await chain.send_raw_transaction(signer.sign(tx).raw)
        receipt = await chain.get_transaction_receipt(tx_hash)

        assert receipt.succeeded
        assert chain.messages(address) == [("hi", signer.address)]
        assert len(receipt.logs) == 1
        assert receipt.logs[0].topics[0] == interface.message_event.topic
        assert chain.mined_nonce(signer.address) == 2

    @pytest.mark.asyncio
    async def test_resend_is_already_known(self, chain, builder, signer) -> None:
        signed = signer.sign(await builder.build_deploy((), nonce=0))
        await chain.send_raw_transaction(signed.raw)

        with pytest.raises(AlreadyKnownError) as exc_info:
            await chain.send_raw_transaction(signed.raw)

        assert exc_info.value.tx_hash == signed.tx_hash

    @pytest.mark.asyncio
    async def test_used_nonce_is_too_low(self, chain, builder, signer) -> None:
        await _deploy(chain, builder, signer)
        other = signer.sign(await builder.build_deploy((), nonce=0, fees=_fees(5)))

        with pytest.raises(NonceTooLowError):
            await chain.send_raw_transaction(other.raw)

    @pytest.mark.asyncio
    async def test_replacement_needs_ten_percent(self, chain, builder, signer) -> None:
        chain.pause_mining()
        await chain.send_raw_transaction(
            signer.sign(await builder.build_deploy((), nonce=0, fees=_fees(10))).raw
        )

        with pytest.raises(FeeTooLowError):
            await chain.send_raw_transaction(
                signer.sign(await builder.build_deploy((), nonce=0, fees=_fees(10).bumped(1.05))).raw
            )

        replacement = signer.sign(await builder.build_deploy((), nonce=0, fees=_fees(12)))
        await chain.send_raw_transaction(replacement.raw)

        assert len(chain.replaced) == 1
        assert chain.pending_count(signer.address) == 1
        assert chain.resume_mining() == 1
        assert (await chain.get_transaction_receipt(replacement.tx_hash)).succeeded

    @pytest.mark.asyncio
    async def test_underpriced_below_base_fee(self, chain, builder, signer) -> None:
        chain.base_fee = 5 * GWEI

        with pytest.raises(FeeTooLowError):
            await chain.send_raw_transaction(
                signer.sign(await builder.build_deploy((), nonce=0, fees=_fees(2))).raw
            )

    @pytest.mark.asyncio
    async def test_wrong_chain_id(self, chain, interface, signer) -> None:
        builder = TransactionBuilder(chain, interface, sender=signer.address, chain_id=CHAIN_ID + 1)
        tx = await builder.build_deploy((), nonce=0)

        with pytest.raises(RpcRejectedError):
            await chain.send_raw_transaction(signer.sign(tx).raw)

    @pytest.mark.asyncio
    async def test_injected_failures(self, chain, builder, signer) -> None:
        chain.fail_next_sends(1)
        signed = signer.sign(await builder.build_deploy((), nonce=0))

        with pytest.raises(TransientRpcError):
            await chain.send_raw_transaction(signed.raw)

        assert await chain.send_raw_transaction(signed.raw) == signed.tx_hash


class TestMining:
    """Block production."""

    @pytest.mark.asyncio
    async def test_nonce_gap_stalls_later_nonces(self, chain, builder, signer) -> None:
        later = signer.sign(await builder.build_deploy((), nonce=1))
        await chain.send_raw_transaction(later.raw)

        assert await chain.get_transaction_receipt(later.tx_hash) is None
        assert await chain.get_transaction_count(signer.address, "latest") == 0
        assert await chain.get_transaction_count(signer.address, "pending") == 0

        await chain.send_raw_transaction(signer.sign(await builder.build_deploy((), nonce=0)).raw)

        assert (await chain.get_transaction_receipt(later.tx_hash)).succeeded
        assert await chain.block_number() == 1

    @pytest.mark.asyncio
    async def test_cheap_transactions_stay_pending(self, chain, builder, signer) -> None:
        chain.min_mining_price = 3 * GWEI
        signed = signer.sign(await builder.build_deploy((), nonce=0, fees=_fees(2)))
        await chain.send_raw_transaction(signed.raw)

        assert chain.pending_count() == 1
        assert await chain.get_transaction_count(signer.address, "pending") == 1
        assert chain.mine() == 0

    @pytest.mark.asyncio
    async def test_out_of_gas_reverts(self, chain, builder, signer) -> None:
        address = await _deploy(chain, builder, signer)
        tx = await builder.build_call(address, "writeMessage", ("hi",), nonce=1)
        cheap = signer.sign(replace(tx, gas_limit=21_000))

        await chain.send_raw_transaction(cheap.raw)
        receipt = await chain.get_transaction_receipt(cheap.tx_hash)

        assert receipt.status == 0
        assert receipt.logs == ()
        assert chain.messages(address) == []

    def test_advance_nonce(self, chain, signer) -> None:
        chain.advance_nonce(signer.address, 3)

        assert chain.mined_nonce(signer.address) == 3


class TestReads:
    """eth_call and eth_getLogs."""

    @pytest.mark.asyncio
    async def test_call_without_code_returns_empty(self, chain, interface) -> None:
        data = interface.encode_call("getMessages", ())

        assert await chain.call({"to": UNKNOWN_ADDRESS, "data": data}) == b""

    @pytest.mark.asyncio
    async def test_call_reads_storage(self, chain, builder, signer, interface) -> None:
        address = await _deploy(chain, builder, signer)
        tx = await builder.build_call(address, "writeMessage", ("stored",), nonce=1)
        await chain.send_raw_transaction(signer.sign(tx).raw)

        raw = await chain.call({"to": address, "data": interface.encode_call("getMessages", ())})
        one = await chain.call({"to": address, "data": interface.encode_call("messages", (0,))})

        assert decode(["string[]"], raw) == (("stored",),)
        assert decode(["string"], one) == ("stored",)
        with pytest.raises(RpcRejectedError) as exc_info:
            await chain.call({"to": address, "data": interface.encode_call("messages", (1,))})
        assert exc_info.value.code == "CALL_REVERTED"

    @pytest.mark.asyncio
    async def test_get_logs_filters(self, chain, builder, signer, interface) -> None:
        address = await _deploy(chain, builder, signer)
        for nonce, text in enumerate(["a", "b"], start=1):
            tx = await builder.build_call(address, "writeMessage", (text,), nonce=nonce)
            await chain.send_raw_transaction(signer.sign(tx).raw)

        topic = interface.message_event.topic
        everything = await chain.get_logs(address, [topic])
        latest = await chain.get_logs(address, [topic], from_block=3)

        assert [log.block_number for log in everything] == [2, 3]
        assert len(latest) == 1
        assert await chain.get_logs(address, [b"\x00" * 32]) == []
        assert await chain.get_logs(UNKNOWN_ADDRESS, [topic]) == []
