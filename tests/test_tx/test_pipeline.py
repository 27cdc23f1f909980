"""
Tests for SubmissionPipeline against the simulated chain.

Tests cover:
- Happy path deploy and write
- Transient send/receipt failures and retry exhaustion
- Underpriced rejections, fee bumps and SubmissionTimeout
- Dropped transactions, in-call replacement and later reuse of the nonce
- Reverts, estimation failures, nonces consumed by another sender
- Gap filling when an unsent nonce would stall later ones
- Cancellation before and after broadcast
"""

import asyncio
import dataclasses
import logging

import pytest

from message_storage.chain.mock import MockChainClient
from message_storage.errors import (
    BuildError,
    EstimationFailed,
    NonceTooLowError,
    SubmissionTimeout,
    TransactionDropped,
    TransactionReverted,
    TransientRpcError,
)
from message_storage.tx.pipeline import CallIntent, DeployIntent, SubmissionPipeline
from message_storage.types import FeeParams, TxStatus

# Fees the builder derives from the simulated chain's defaults
# (base fee 1 gwei, priority fee 0.001 gwei): 2 * base + priority
INITIAL_MAX_FEE = 2_001_000_000
BUMPED_ONCE = 2_251_125_000
BUMPED_TWICE = 2_532_515_625


async def _deploy(pipeline: SubmissionPipeline) -> str:
    result = await pipeline.submit(DeployIntent())
    return result.receipt.contract_address


def _write(address: str, text: str) -> CallIntent:
    return CallIntent(address, "writeMessage", (text,))


# =============================================================================
# Happy path
# =============================================================================


class TestHappyPath:
    """Tests for uneventful submissions."""

    @pytest.mark.asyncio
    async def test_deploy(self, pipeline, chain, signer, sequencer) -> None:
        result = await pipeline.submit(DeployIntent())

        assert result.status is TxStatus.CONFIRMED
        assert result.nonce == 0
        assert result.attempts == 1
        assert result.receipt.succeeded
        assert result.receipt.contract_address is not None
        assert chain.mined_nonce(signer.address) == 1
        state = sequencer.snapshot(signer.address)
        assert state.confirmed_nonce == 1
        assert state.in_flight == ()

    @pytest.mark.asyncio
    async def test_write_emits_event(self, pipeline, chain, signer, interface) -> None:
        address = await _deploy(pipeline)

        result = await pipeline.submit(_write(address, "hello"))

        assert result.nonce == 1
        assert len(result.receipt.logs) == 1
        assert result.receipt.logs[0].topics[0] == interface.message_event.topic
        assert chain.messages(address) == [("hello", signer.address)]

    @pytest.mark.asyncio
    async def test_concurrent_writes_use_consecutive_nonces(self, pipeline, chain) -> None:
        address = await _deploy(pipeline)

        results = await asyncio.gather(
            *(pipeline.submit(_write(address, f"message {i}")) for i in range(5))
        )

        assert sorted(r.nonce for r in results) == [1, 2, 3, 4, 5]
        by_nonce = {r.nonce: f"message {i}" for i, r in enumerate(results)}
        # the chain stores them in nonce order
        assert [text for text, _ in chain.messages(address)] == [
            by_nonce[n] for n in sorted(by_nonce)
        ]

    @pytest.mark.asyncio
    async def test_legacy_chain(self, pipeline, chain) -> None:
        chain.base_fee = None

        result = await pipeline.submit(DeployIntent())

        assert result.receipt.succeeded


# =============================================================================
# Transient failures
# =============================================================================


class TestTransientFailures:
    """Tests for retry with backoff."""

    @pytest.mark.asyncio
    async def test_send_failures_are_retried(self, pipeline, chain, caplog) -> None:
        chain.fail_next_sends(2)

        with caplog.at_level(logging.WARNING, logger="message_storage"):
            result = await pipeline.submit(DeployIntent())

        assert result.receipt.succeeded
        assert result.attempts == 3
        assert len(chain.sent) == 1
        assert sum("retrying" in r.getMessage() for r in caplog.records) == 2

    @pytest.mark.asyncio
    async def test_receipt_failures_are_retried(self, pipeline, chain) -> None:
        chain.fail_next_receipts(2)

        result = await pipeline.submit(DeployIntent())

        assert result.receipt.succeeded

    @pytest.mark.asyncio
    async def test_exhausted_send_retries(self, pipeline, chain, signer, sequencer) -> None:
        chain.fail_next_sends(3)

        with pytest.raises(SubmissionTimeout) as exc_info:
            await pipeline.submit(DeployIntent())

        assert exc_info.value.nonce == 0
        assert isinstance(exc_info.value.__cause__, TransientRpcError)
        state = sequencer.snapshot(signer.address)
        assert state.in_flight == ()
        assert state.reusable == (0,)
        # the send may have reached a node, so a reuse must outbid it
        assert sequencer.replacement_floor(signer.address, 0).max_fee_per_gas == INITIAL_MAX_FEE

        retry = await pipeline.submit(DeployIntent())
        assert retry.nonce == 0
        assert chain.mined_nonce(signer.address) == 1

    @pytest.mark.asyncio
    async def test_send_reaching_node_before_failure(self, pipeline, chain, monkeypatch) -> None:
        original = chain.send_raw_transaction
        calls = 0

        async def lossy(raw):
            nonlocal calls
            calls += 1
            tx_hash = await original(raw)
            if calls == 1:
                raise TransientRpcError("connection reset after write")
            return tx_hash

        monkeypatch.setattr(chain, "send_raw_transaction", lossy)

        # the retry is answered with "already known" and treated as submitted
        result = await pipeline.submit(DeployIntent())

        assert result.receipt.succeeded
        assert calls == 2
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_mined_tx_with_lost_receipts_recovers(self, pipeline, chain, signer, sequencer) -> None:
        chain.fail_next_receipts(3)

        with pytest.raises(SubmissionTimeout):
            await pipeline.submit(DeployIntent())

        # nonce 0 actually landed; the next submission learns that and moves on
        result = await pipeline.submit(DeployIntent())

        assert result.nonce == 1
        assert sequencer.snapshot(signer.address).confirmed_nonce == 2


# =============================================================================
# Fee bumps
# =============================================================================


class TestFeeBumps:
    """Tests for underpriced rejections."""

    @pytest.mark.asyncio
    async def test_bumps_until_accepted(self, pipeline, chain) -> None:
        chain.min_accept_price = 2_400_000_000

        result = await pipeline.submit(DeployIntent())

        assert result.receipt.succeeded
        assert result.attempts == 3
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_bump_ceiling_reports_timeout(self, pipeline, chain, signer, sequencer) -> None:
        chain.min_accept_price = 10**18

        with pytest.raises(SubmissionTimeout) as exc_info:
            await pipeline.submit(DeployIntent())

        # one initial attempt plus max_fee_bumps rebuilds
        assert exc_info.value.attempts == 4
        assert "fee bumps exhausted" in exc_info.value.message
        assert chain.sent == []
        state = sequencer.snapshot(signer.address)
        assert state.in_flight == ()
        assert state.reusable == (0,)
        assert sequencer.replacement_floor(signer.address, 0) is None


# =============================================================================
# Dropped transactions
# =============================================================================


class TestDropped:
    """Tests for transactions that never get a receipt."""

    @pytest.mark.asyncio
    async def test_replaced_in_call(self, pipeline, chain, signer) -> None:
        chain.min_mining_price = 2_200_000_000

        result = await pipeline.submit(DeployIntent())

        assert result.receipt.succeeded
        assert len(chain.sent) == 2
        assert chain.replaced == [chain.sent[0]]
        assert result.receipt.tx_hash == chain.sent[1]
        assert await chain.get_transaction_receipt(chain.sent[0]) is None
        assert chain.mined_nonce(signer.address) == 1

    @pytest.mark.asyncio
    async def test_dropped_then_reused(self, chain, builder, signer, sequencer, policy) -> None:
        pipeline = SubmissionPipeline(
            chain, builder, signer, sequencer, dataclasses.replace(policy, max_fee_bumps=0)
        )
        chain.min_mining_price = 10**18

        with pytest.raises(TransactionDropped) as exc_info:
            await pipeline.submit(DeployIntent())

        assert exc_info.value.nonce == 0
        assert exc_info.value.tx_hash == chain.sent[0]
        assert sequencer.snapshot(signer.address).reusable == (0,)
        assert sequencer.replacement_floor(signer.address, 0) == FeeParams(
            max_fee_per_gas=INITIAL_MAX_FEE, max_priority_fee_per_gas=1_000_000
        )

        chain.min_mining_price = 0
        result = await pipeline.submit(DeployIntent())

        # same nonce, outbids the stale copy, and only one of them is mined
        assert result.nonce == 0
        assert chain.replaced == [chain.sent[0]]
        assert await chain.get_transaction_receipt(chain.sent[0]) is None
        assert chain.mined_nonce(signer.address) == 1
        assert chain.pending_count() == 0


# =============================================================================
# Terminal failures
# =============================================================================


class TestTerminalFailures:
    """Tests for reverts and build failures."""

    @pytest.mark.asyncio
    async def test_reverted_consumes_nonce(self, pipeline, chain, signer, sequencer, monkeypatch) -> None:
        async def too_little_gas(tx):
            return 21_000

        monkeypatch.setattr(chain, "estimate_gas", too_little_gas)

        with pytest.raises(TransactionReverted) as exc_info:
            await pipeline.submit(DeployIntent())

        assert exc_info.value.nonce == 0
        assert exc_info.value.block_number == 1
        state = sequencer.snapshot(signer.address)
        assert state.confirmed_nonce == 1
        assert state.reusable == ()

    @pytest.mark.asyncio
    async def test_estimation_failure_releases_nonce(self, pipeline, chain, signer, sequencer) -> None:
        address = await _deploy(pipeline)
        chain.revert_writes = True

        with pytest.raises(EstimationFailed):
            await pipeline.submit(_write(address, "nope"))

        assert len(chain.sent) == 1
        state = sequencer.snapshot(signer.address)
        assert state.reusable == (1,)
        assert state.in_flight == ()

        chain.revert_writes = False
        result = await pipeline.submit(_write(address, "yes"))
        assert result.nonce == 1

    @pytest.mark.asyncio
    async def test_encoding_failure(self, pipeline, signer, sequencer) -> None:
        with pytest.raises(BuildError):
            await pipeline.submit(CallIntent("0x" + "ab" * 20, "writeMessage", (42,)))

        assert sequencer.snapshot(signer.address).reusable == (0,)


# =============================================================================
# Nonces consumed elsewhere
# =============================================================================


class TestNonceTooLow:
    """Tests for nonces taken by another process."""

    @pytest.mark.asyncio
    async def test_resyncs_and_uses_fresh_nonce(self, pipeline, chain, signer, sequencer) -> None:
        address = await _deploy(pipeline)
        chain.advance_nonce(signer.address, 2)

        result = await pipeline.submit(_write(address, "after external txs"))

        assert result.nonce == 3
        assert sequencer.snapshot(signer.address).confirmed_nonce == 4

    @pytest.mark.asyncio
    async def test_gives_up_after_max_resyncs(self, pipeline, chain, signer, sequencer, monkeypatch) -> None:
        async def always_too_low(raw):
            raise NonceTooLowError("nonce too low")

        monkeypatch.setattr(chain, "send_raw_transaction", always_too_low)

        with pytest.raises(SubmissionTimeout):
            await pipeline.submit(DeployIntent())

        assert sequencer.snapshot(signer.address).in_flight == ()

    @pytest.mark.asyncio
    async def test_lagging_receipt_after_replacement_hits_nonce_too_low(
        self, pipeline, chain, signer, sequencer, monkeypatch
    ) -> None:
        address = await _deploy(pipeline)
        chain.pause_mining()
        send = chain.send_raw_transaction
        get_receipt = chain.get_transaction_receipt
        sends = []
        lagging = {"calls": 0}

        async def mine_before_replacement(raw):
            sends.append(raw)
            if len(sends) == 2:
                # the first attempt lands while its replacement is in transit
                chain.resume_mining()
                lagging["calls"] = 2
            return await send(raw)

        async def lagging_receipts(tx_hash):
            if lagging["calls"]:
                lagging["calls"] -= 1
                return None
            return await get_receipt(tx_hash)

        monkeypatch.setattr(chain, "send_raw_transaction", mine_before_replacement)
        monkeypatch.setattr(chain, "get_transaction_receipt", lagging_receipts)

        result = await pipeline.submit(_write(address, "hello"))

        assert result.nonce == 1
        assert result.receipt.tx_hash == chain.sent[1]
        assert chain.messages(address) == [("hello", signer.address)]
        state = sequencer.snapshot(signer.address)
        assert state.confirmed_nonce == 2
        assert state.reusable == ()

    @pytest.mark.asyncio
    async def test_consumed_after_broadcast_is_not_resubmitted(
        self, pipeline, chain, signer, sequencer, monkeypatch
    ) -> None:
        chain.pause_mining()
        send = chain.send_raw_transaction
        sends = []

        async def consumed_elsewhere(raw):
            sends.append(raw)
            if len(sends) == 2:
                chain.advance_nonce(signer.address)
            return await send(raw)

        monkeypatch.setattr(chain, "send_raw_transaction", consumed_elsewhere)

        with pytest.raises(TransactionDropped) as exc_info:
            await pipeline.submit(DeployIntent())

        assert exc_info.value.nonce == 0
        assert exc_info.value.tx_hash == chain.sent[0]
        assert len(sends) == 2
        state = sequencer.snapshot(signer.address)
        assert state.confirmed_nonce == 1
        assert state.reusable == ()
        assert state.in_flight == ()


# =============================================================================
# Gap filling
# =============================================================================


class TestGapFill:
    """Tests for nonces that fail unsent while later ones are out."""

    @pytest.mark.asyncio
    async def test_failed_estimate_ahead_of_broadcast_write(
        self, pipeline, chain, signer, sequencer, monkeypatch
    ) -> None:
        address = await _deploy(pipeline)
        estimate = chain.estimate_gas

        async def slow_revert_for_first(tx):
            if b"first" in bytes(tx.get("data") or b""):
                await asyncio.sleep(0.01)
                raise EstimationFailed("execution reverted")
            return await estimate(tx)

        monkeypatch.setattr(chain, "estimate_gas", slow_revert_for_first)

        first, second = await asyncio.gather(
            pipeline.submit(_write(address, "first")),
            pipeline.submit(_write(address, "second")),
            return_exceptions=True,
        )

        assert isinstance(first, EstimationFailed)
        assert second.nonce == 2
        assert second.receipt.succeeded
        assert chain.messages(address) == [("second", signer.address)]
        # nonce 1 went to a zero-value transfer back to the sender
        fill = await chain.get_transaction_receipt(chain.sent[-1])
        assert fill.succeeded and fill.logs == ()
        assert chain.mined_nonce(signer.address) == 3
        state = sequencer.snapshot(signer.address)
        assert state.confirmed_nonce == 3
        assert state.reusable == ()
        assert state.in_flight == ()

    @pytest.mark.asyncio
    async def test_cancel_before_broadcast_ahead_of_pending_write(
        self, pipeline, chain, signer, sequencer, monkeypatch
    ) -> None:
        address = await _deploy(pipeline)
        estimate = chain.estimate_gas
        started = asyncio.Event()

        async def stall_first(tx):
            if b"first" in bytes(tx.get("data") or b""):
                started.set()
                await asyncio.Event().wait()
            return await estimate(tx)

        monkeypatch.setattr(chain, "estimate_gas", stall_first)
        first = asyncio.create_task(pipeline.submit(_write(address, "first")))
        await started.wait()
        second = asyncio.create_task(pipeline.submit(_write(address, "second")))
        while len(chain.sent) < 2:
            await asyncio.sleep(0.001)
        first.cancel()

        with pytest.raises(asyncio.CancelledError):
            await first
        result = await second
        await pipeline.drain()

        assert result.nonce == 2
        assert chain.messages(address) == [("second", signer.address)]
        assert sequencer.snapshot(signer.address).confirmed_nonce == 3


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    """Tests for callers cancelling a submission."""

    @pytest.mark.asyncio
    async def test_cancel_before_broadcast(self, pipeline, chain, signer, sequencer, monkeypatch) -> None:
        started = asyncio.Event()

        async def stalled(tx):
            started.set()
            await asyncio.Event().wait()

        monkeypatch.setattr(chain, "estimate_gas", stalled)
        task = asyncio.create_task(pipeline.submit(DeployIntent()))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        state = sequencer.snapshot(signer.address)
        assert state.in_flight == ()
        assert state.reusable == (0,)

    @pytest.mark.asyncio
    async def test_cancel_after_broadcast_settles_in_background(
        self, pipeline, chain, signer, sequencer
    ) -> None:
        chain.pause_mining()
        task = asyncio.create_task(pipeline.submit(DeployIntent()))
        while not chain.sent:
            await asyncio.sleep(0.001)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        # still held until the chain decides
        assert sequencer.snapshot(signer.address).in_flight == (0,)

        chain.resume_mining()
        await pipeline.drain()

        state = sequencer.snapshot(signer.address)
        assert state.in_flight == ()
        assert state.confirmed_nonce == 1
