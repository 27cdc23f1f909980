"""Submission pipeline.

Drives one logical transaction through

    Built -> Signed -> Submitted -> Pending -> Confirmed | Reverted | Dropped

with a nonce held from the NonceSequencer for the whole run. Transient
RPC failures are retried with exponential backoff; underpriced rejections
and dropped transactions are rebuilt with bumped fees under the same
nonce, up to ``max_fee_bumps``. Whatever happens, the nonce is released
exactly once, with the outcome the chain will eventually agree with. A
nonce that fails before anything was broadcast while later nonces are
already out is consumed with a zero-value self-transfer, so those later
transactions never wait behind a gap.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
    Union,
)

from message_storage.chain.base import ChainClient
from message_storage.constants import (
    DEFAULT_BUMP_FACTOR,
    DEFAULT_MAX_FEE_BUMPS,
    DEFAULT_MAX_NONCE_RESYNCS,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_RECEIPT_TIMEOUT_MS,
    DEFAULT_RETRY_BASE_DELAY_MS,
    DEFAULT_RETRY_MAX_DELAY_MS,
    WRITE_METHOD,
)
from message_storage.errors import (
    AlreadyKnownError,
    FeeTooLowError,
    MessageStorageError,
    NonceTooLowError,
    RpcRejectedError,
    SubmissionTimeout,
    TransactionDropped,
    TransactionReverted,
    TransientRpcError,
)
from message_storage.tx.builder import TransactionBuilder
from message_storage.tx.nonce import NonceSequencer
from message_storage.tx.signer import Signer
from message_storage.types import (
    FeeParams,
    NonceOutcome,
    Receipt,
    SignedTransaction,
    SubmissionResult,
    TxStatus,
    UnsignedTransaction,
)
from message_storage.utils.logging import get_logger
from message_storage.utils.retry import RetryConfig, retry_async

T = TypeVar("T")

_logger = get_logger(__name__)


@dataclass(frozen=True)
class DeployIntent:
    constructor_args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class CallIntent:
    contract_address: str
    method: str = WRITE_METHOD
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class _GapFill:
    """Consumes a nonce whose own transaction was never broadcast."""


Intent = Union[DeployIntent, CallIntent, _GapFill]


@dataclass(frozen=True)
class SubmissionPolicy:
    """Timing and retry limits for the pipeline.

    Attributes:
        poll_interval_ms: Delay between receipt checks
        receipt_timeout_ms: Wall-clock window after which a pending transaction counts as dropped
        max_retry_attempts: Attempts per RPC call on transient failures
        retry_base_delay_ms: First backoff delay
        retry_max_delay_ms: Backoff cap
        max_fee_bumps: Rebuilds with higher fees allowed per nonce
        bump_factor: Fee multiplier per rebuild
        max_nonce_resyncs: Fresh nonces tried when another sender consumed ours
    """

    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    receipt_timeout_ms: int = DEFAULT_RECEIPT_TIMEOUT_MS
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    retry_base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS
    retry_max_delay_ms: int = DEFAULT_RETRY_MAX_DELAY_MS
    max_fee_bumps: int = DEFAULT_MAX_FEE_BUMPS
    bump_factor: float = DEFAULT_BUMP_FACTOR
    max_nonce_resyncs: int = DEFAULT_MAX_NONCE_RESYNCS

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_retry_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            retryable_errors=(TransientRpcError,),
        )


@dataclass
class _Attempt:
    """Mutable progress of one nonce through the state machine."""

    nonce: int
    status: TxStatus = TxStatus.BUILT
    hashes: List[str] = field(default_factory=list)
    fees: Optional[FeeParams] = None
    sends: int = 0
    uncertain: bool = False
    consumed: bool = False

    @property
    def broadcast(self) -> bool:
        return bool(self.hashes)

    @property
    def last_hash(self) -> Optional[str]:
        return self.hashes[-1] if self.hashes else None


class _NonceConsumed(Exception):
    """Another sender mined a transaction with our nonce before us."""


class SubmissionPipeline:
    """
    Orchestrates build, sign, submit and confirm for one account.

    Example:
        ```python
        pipeline = SubmissionPipeline(chain, builder, signer, sequencer)
        result = await pipeline.submit(CallIntent(address, "writeMessage", ("hello",)))
        print(result.receipt.block_number)
        ```
    """

    def __init__(
        self,
        chain: ChainClient,
        builder: TransactionBuilder,
        signer: Signer,
        sequencer: NonceSequencer,
        policy: Optional[SubmissionPolicy] = None,
    ) -> None:
        self._chain = chain
        self._builder = builder
        self._signer = signer
        self._sequencer = sequencer
        self._policy = policy or SubmissionPolicy()
        self._retry = self._policy.retry_config()
        self._background: Set[asyncio.Task] = set()

    @property
    def policy(self) -> SubmissionPolicy:
        return self._policy

    async def submit(self, intent: Intent) -> SubmissionResult:
        """
        Run ``intent`` to a terminal outcome.

        Returns:
            SubmissionResult with the successful receipt

        Raises:
            BuildError: Encoding or gas estimation failed (nothing was sent)
            SigningError: The built transaction could not be signed
            SubmissionTimeout: Retries or fee bumps were exhausted
            TransactionReverted: Mined with a failed status
            TransactionDropped: No receipt within the polling window
            RpcRejectedError: The node permanently refused the transaction
        """
        account = self._signer.address
        resyncs = 0
        while True:
            nonce = await self._sequencer.acquire(account)
            attempt = _Attempt(nonce=nonce)
            try:
                result = await self._run(intent, attempt)
            except asyncio.CancelledError:
                await self._on_cancel(attempt)
                raise
            except _NonceConsumed:
                await self._sequencer.release(account, nonce, NonceOutcome.CONFIRMED)
                resyncs += 1
                if resyncs > self._policy.max_nonce_resyncs:
                    raise SubmissionTimeout(
                        "nonce repeatedly consumed by another sender",
                        attempts=attempt.sends,
                        nonce=nonce,
                    ) from None
                _logger.warning(
                    "Nonce consumed externally, resyncing",
                    extra={"account": account, "nonce": nonce, "resync": resyncs},
                )
                await self._sequencer.resync(account)
                continue
            except TransactionReverted:
                # a reverted transaction still consumed its nonce
                await self._sequencer.release(account, nonce, NonceOutcome.CONFIRMED)
                raise
            except TransactionDropped:
                outcome = (
                    NonceOutcome.CONFIRMED if attempt.consumed else NonceOutcome.PERMANENTLY_FAILED
                )
                await self._sequencer.release(account, nonce, outcome, fee_floor=attempt.fees)
                raise
            except Exception:
                if attempt.broadcast or attempt.uncertain:
                    await self._sequencer.release(
                        account, nonce, NonceOutcome.NEEDS_RESUBMIT, fee_floor=attempt.fees
                    )
                else:
                    await self._release_unsent(nonce)
                raise
            await self._sequencer.release(account, nonce, NonceOutcome.CONFIRMED)
            return result

    async def drain(self) -> None:
        """Wait for transactions left to settle after their caller was cancelled."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def _run(self, intent: Intent, attempt: _Attempt) -> SubmissionResult:
        policy = self._policy
        floor = self._sequencer.replacement_floor(self._signer.address, attempt.nonce)
        fees = await self._with_retry(
            "fee_params", attempt, lambda: self._builder.fee_params(floor, policy.bump_factor)
        )
        unsigned = await self._with_retry(
            "build", attempt, lambda: self._build(intent, attempt.nonce, fees)
        )
        self._transition(attempt, TxStatus.BUILT)
        bumps = 0

        while True:
            signed = self._signer.sign(unsigned)
            self._transition(attempt, TxStatus.SIGNED, tx_hash=signed.tx_hash)
            try:
                await self._send(signed, attempt)
            except FeeTooLowError as e:
                if bumps >= policy.max_fee_bumps:
                    raise SubmissionTimeout(
                        f"fee bumps exhausted: {e.message}",
                        attempts=attempt.sends,
                        nonce=attempt.nonce,
                        tx_hash=attempt.last_hash,
                    ) from e
                bumps += 1
                unsigned = self._rebump(unsigned, attempt, bumps, reason="underpriced")
                continue
            except NonceTooLowError:
                if not attempt.broadcast:
                    raise _NonceConsumed() from None
                # one of our attempts most likely took the nonce; its receipt may lag
                receipt = await self._wait_for_receipt(attempt)
                if receipt is None:
                    attempt.consumed = True
                    self._transition(attempt, TxStatus.DROPPED, tx_hash=attempt.last_hash)
                    raise TransactionDropped(
                        attempt.last_hash or signed.tx_hash,
                        nonce=attempt.nonce,
                        waited_ms=policy.receipt_timeout_ms,
                    )
                return self._finish(receipt, attempt)

            self._transition(attempt, TxStatus.PENDING, tx_hash=signed.tx_hash)
            receipt = await self._wait_for_receipt(attempt)
            if receipt is not None:
                return self._finish(receipt, attempt)

            if bumps >= policy.max_fee_bumps:
                self._transition(attempt, TxStatus.DROPPED, tx_hash=attempt.last_hash)
                raise TransactionDropped(
                    attempt.last_hash or signed.tx_hash,
                    nonce=attempt.nonce,
                    waited_ms=policy.receipt_timeout_ms,
                )
            bumps += 1
            unsigned = self._rebump(unsigned, attempt, bumps, reason="dropped")

    def _finish(self, receipt: Receipt, attempt: _Attempt) -> SubmissionResult:
        if not receipt.succeeded:
            self._transition(attempt, TxStatus.REVERTED, tx_hash=receipt.tx_hash)
            raise TransactionReverted(
                receipt.tx_hash, block_number=receipt.block_number, nonce=attempt.nonce
            )
        self._transition(attempt, TxStatus.CONFIRMED, tx_hash=receipt.tx_hash)
        return SubmissionResult(receipt=receipt, nonce=attempt.nonce, attempts=attempt.sends)

    def _rebump(
        self, unsigned: UnsignedTransaction, attempt: _Attempt, bumps: int, *, reason: str
    ) -> UnsignedTransaction:
        fees = unsigned.fees.bumped(self._policy.bump_factor)
        _logger.info(
            "Rebuilding with bumped fees",
            extra={
                "nonce": attempt.nonce,
                "bump": bumps,
                "reason": reason,
                "price": fees.effective_price,
            },
        )
        return replace(unsigned, fees=fees)

    async def _build(self, intent: Intent, nonce: int, fees: FeeParams) -> UnsignedTransaction:
        if isinstance(intent, _GapFill):
            return self._builder.build_gap_fill(nonce=nonce, fees=fees)
        if isinstance(intent, DeployIntent):
            return await self._builder.build_deploy(intent.constructor_args, nonce=nonce, fees=fees)
        return await self._builder.build_call(
            intent.contract_address, intent.method, intent.args, nonce=nonce, fees=fees
        )

    async def _send(self, signed: SignedTransaction, attempt: _Attempt) -> str:
        async def _once() -> str:
            attempt.sends += 1
            try:
                return await self._chain.send_raw_transaction(signed.raw)
            except AlreadyKnownError:
                # a retried send that already reached the node
                return signed.tx_hash
            except RpcRejectedError:
                attempt.uncertain = False
                raise

        attempt.uncertain = True
        attempt.fees = signed.fees
        tx_hash = await self._with_retry("send_raw_transaction", attempt, _once)
        attempt.uncertain = False
        if tx_hash not in attempt.hashes:
            attempt.hashes.append(tx_hash)
        self._transition(attempt, TxStatus.SUBMITTED, tx_hash=tx_hash)
        return tx_hash

    async def _find_receipt(self, attempt: _Attempt) -> Optional[Receipt]:
        # newest first: a replacement is the likelier one to land
        for tx_hash in reversed(attempt.hashes):
            receipt = await self._with_retry(
                "get_transaction_receipt",
                attempt,
                lambda h=tx_hash: self._chain.get_transaction_receipt(h),
            )
            if receipt is not None:
                return receipt
        return None

    async def _wait_for_receipt(self, attempt: _Attempt) -> Optional[Receipt]:
        """Poll every hash sent for this nonce until one has a receipt or the window ends."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._policy.receipt_timeout_ms / 1000
        interval = self._policy.poll_interval_ms / 1000
        while True:
            receipt = await self._find_receipt(attempt)
            if receipt is not None:
                return receipt
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(interval, remaining))

    async def _with_retry(
        self, what: str, attempt: _Attempt, fn: Callable[[], Awaitable[T]]
    ) -> T:
        def _log_retry(n: int, error: Exception, delay: float) -> None:
            _logger.warning(
                "Transient RPC failure, retrying",
                extra={
                    "op": what,
                    "nonce": attempt.nonce,
                    "retry": n,
                    "delay_s": round(delay, 3),
                    "error": str(error),
                },
            )

        try:
            return await retry_async(fn, self._retry, on_retry=_log_retry)
        except TransientRpcError as e:
            raise SubmissionTimeout(
                f"{what}: retries exhausted ({e.message})",
                attempts=self._retry.max_attempts,
                nonce=attempt.nonce,
                tx_hash=attempt.last_hash,
            ) from e

    def _transition(
        self, attempt: _Attempt, status: TxStatus, *, tx_hash: Optional[str] = None
    ) -> None:
        attempt.status = status
        _logger.debug(
            "Transaction state",
            extra={"nonce": attempt.nonce, "status": status.value, "tx_hash": tx_hash},
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    async def _on_cancel(self, attempt: _Attempt) -> None:
        account = self._signer.address
        if not attempt.broadcast and not attempt.uncertain:
            if not self._sequencer.blocks_later(account, attempt.nonce):
                await self._sequencer.release(
                    account, attempt.nonce, NonceOutcome.PERMANENTLY_FAILED
                )
                return
            self._spawn(self._release_unsent(attempt.nonce))
            return
        _logger.info(
            "Caller cancelled after broadcast; settling in background",
            extra={"nonce": attempt.nonce, "tx_hash": attempt.last_hash},
        )
        self._spawn(self._settle(attempt))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _release_unsent(self, nonce: int) -> None:
        """Release a nonce nothing was broadcast with.

        When higher nonces are already held, the chain would stall them
        behind this one, so it is consumed with a gap-filling transfer first.
        """
        account = self._signer.address
        if not self._sequencer.blocks_later(account, nonce):
            await self._sequencer.release(account, nonce, NonceOutcome.PERMANENTLY_FAILED)
            return
        _logger.warning(
            "Filling unused nonce ahead of later transactions",
            extra={"account": account, "nonce": nonce},
        )
        fill = _Attempt(nonce=nonce)
        try:
            await self._run(_GapFill(), fill)
        except asyncio.CancelledError:
            if fill.broadcast or fill.uncertain:
                self._spawn(self._settle(fill))
            else:
                await self._sequencer.release(account, nonce, NonceOutcome.PERMANENTLY_FAILED)
            raise
        except (_NonceConsumed, TransactionReverted):
            outcome = NonceOutcome.CONFIRMED
        except MessageStorageError as e:
            if fill.consumed:
                outcome = NonceOutcome.CONFIRMED
            elif fill.broadcast or fill.uncertain:
                outcome = NonceOutcome.NEEDS_RESUBMIT
            else:
                outcome = NonceOutcome.PERMANENTLY_FAILED
            _logger.error(
                "Gap fill failed",
                extra={"nonce": nonce, "outcome": outcome.value, "error": str(e)},
            )
        else:
            outcome = NonceOutcome.CONFIRMED
        await self._sequencer.release(
            account,
            nonce,
            outcome,
            fee_floor=None if outcome is NonceOutcome.CONFIRMED else fill.fees,
        )

    async def _settle(self, attempt: _Attempt) -> None:
        account = self._signer.address
        outcome = (
            NonceOutcome.PERMANENTLY_FAILED if attempt.broadcast else NonceOutcome.NEEDS_RESUBMIT
        )
        try:
            if attempt.broadcast and await self._wait_for_receipt(attempt) is not None:
                outcome = NonceOutcome.CONFIRMED
        except SubmissionTimeout:
            outcome = NonceOutcome.NEEDS_RESUBMIT
        finally:
            await self._sequencer.release(
                account,
                attempt.nonce,
                outcome,
                fee_floor=None if outcome is NonceOutcome.CONFIRMED else attempt.fees,
            )
            _logger.info(
                "Background settlement finished",
                extra={"nonce": attempt.nonce, "outcome": outcome.value},
            )
