"""Nonce sequencing for concurrent submitters sharing one account.

The sequencer is the only component that orders transactions. Each
account's bookkeeping lives behind one asyncio.Lock; the critical section
only touches in-memory state. Chain queries (initial load, resync) run
before the lock is taken and their results are merged inside it.

Invariants per account:
- ``next_assignable >= confirmed_nonce`` and ``next_assignable`` never decreases
- a nonce is held by at most one submitter at a time
- every acquired nonce is released exactly once
"""

from __future__ import annotations

import asyncio
import heapq
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from eth_utils import to_checksum_address

from message_storage.chain.base import ChainClient
from message_storage.errors import NonceError
from message_storage.types import FeeParams, NonceOutcome, NonceState
from message_storage.utils.logging import get_logger
from message_storage.utils.retry import RetryConfig, retry_async

_logger = get_logger(__name__)


@dataclass
class _AccountNonces:
    confirmed_nonce: int
    next_assignable: int
    in_flight: Set[int] = field(default_factory=set)
    reusable: List[int] = field(default_factory=list)  # min-heap
    completed: Set[int] = field(default_factory=set)
    fee_floors: Dict[int, FeeParams] = field(default_factory=dict)


class NonceSequencer:
    """
    Hands out per-account nonces to concurrent submitters.

    Example:
        ```python
        sequencer = NonceSequencer(chain)
        nonce = await sequencer.acquire(signer.address)
        try:
            ...  # build, sign, submit, wait
        finally:
            await sequencer.release(signer.address, nonce, NonceOutcome.CONFIRMED)
        ```
    """

    def __init__(self, chain: ChainClient, retry: Optional[RetryConfig] = None) -> None:
        self._chain = chain
        self._retry = retry or RetryConfig(max_attempts=3, base_delay_ms=200)
        self._accounts: Dict[str, _AccountNonces] = {}
        self._lock = asyncio.Lock()
        self._load_locks: Dict[str, asyncio.Lock] = {}

    async def acquire(self, account: str) -> int:
        """
        Reserve the next nonce for ``account``.

        Released-but-unused nonces are handed out again (lowest first) before
        any new value, so a failed transaction never leaves a permanent gap.
        """
        key = to_checksum_address(account)
        await self._ensure_loaded(key)
        async with self._lock:
            state = self._accounts[key]
            if state.reusable:
                nonce = heapq.heappop(state.reusable)
                reused = True
            else:
                nonce = state.next_assignable
                state.next_assignable += 1
                reused = False
            state.in_flight.add(nonce)
        _logger.debug(
            "Nonce acquired",
            extra={"account": key, "nonce": nonce, "reused": reused},
        )
        return nonce

    async def release(
        self,
        account: str,
        nonce: int,
        outcome: NonceOutcome,
        *,
        fee_floor: Optional[FeeParams] = None,
    ) -> None:
        """
        Hand ``nonce`` back with the outcome of its transaction.

        Args:
            account: Account the nonce was acquired for
            nonce: The acquired nonce
            outcome: CONFIRMED when mined (even if reverted); otherwise the
                nonce becomes reusable
            fee_floor: Fees of the last broadcast attempt; a later holder must
                outbid them to replace a copy still sitting in a mempool

        Raises:
            NonceError: If ``nonce`` is not currently held
        """
        key = to_checksum_address(account)
        outcome = NonceOutcome(outcome)
        async with self._lock:
            state = self._accounts.get(key)
            if state is None or nonce not in state.in_flight:
                raise NonceError(
                    f"nonce {nonce} is not held for {key}",
                    details={"account": key, "nonce": nonce, "outcome": outcome.value},
                )
            state.in_flight.discard(nonce)
            if outcome is NonceOutcome.CONFIRMED:
                state.fee_floors.pop(nonce, None)
                if nonce >= state.confirmed_nonce:
                    state.completed.add(nonce)
                while state.confirmed_nonce in state.completed:
                    state.completed.discard(state.confirmed_nonce)
                    state.confirmed_nonce += 1
            else:
                if fee_floor is not None:
                    previous = state.fee_floors.get(nonce)
                    if previous is None or fee_floor.effective_price > previous.effective_price:
                        state.fee_floors[nonce] = fee_floor
                heapq.heappush(state.reusable, nonce)
        _logger.debug(
            "Nonce released",
            extra={"account": key, "nonce": nonce, "outcome": outcome.value},
        )

    def replacement_floor(self, account: str, nonce: int) -> Optional[FeeParams]:
        """Fees a new transaction with ``nonce`` must exceed, if any."""
        state = self._accounts.get(to_checksum_address(account))
        if state is None:
            return None
        return state.fee_floors.get(nonce)

    def blocks_later(self, account: str, nonce: int) -> bool:
        """True when a higher nonce is currently held, so leaving ``nonce`` unused stalls it."""
        state = self._accounts.get(to_checksum_address(account))
        if state is None:
            return False
        return any(n > nonce for n in state.in_flight)

    async def resync(self, account: str) -> NonceState:
        """
        Merge the chain's view into local state.

        Counters are only ever raised; reusable nonces the chain has already
        consumed are discarded.
        """
        key = to_checksum_address(account)
        latest, pending = await self._fetch_counts(key)
        async with self._lock:
            state = self._accounts.get(key)
            if state is None:
                state = self._accounts[key] = _AccountNonces(latest, max(latest, pending))
            state.confirmed_nonce = max(state.confirmed_nonce, latest)
            state.next_assignable = max(state.next_assignable, pending, state.confirmed_nonce)
            state.reusable = [n for n in state.reusable if n >= latest]
            heapq.heapify(state.reusable)
            state.completed = {n for n in state.completed if n >= state.confirmed_nonce}
            state.fee_floors = {n: f for n, f in state.fee_floors.items() if n >= latest}
            snapshot = self._snapshot(state)
        _logger.info(
            "Nonce state resynced from chain",
            extra={"account": key, "latest": latest, "pending": pending},
        )
        return snapshot

    async def reset(self, account: str) -> None:
        """Forget local state so the next acquisition reloads from chain."""
        key = to_checksum_address(account)
        async with self._lock:
            state = self._accounts.get(key)
            if state is not None and state.in_flight:
                raise NonceError(
                    f"cannot reset {key} with nonces in flight",
                    details={"in_flight": sorted(state.in_flight)},
                )
            self._accounts.pop(key, None)

    def snapshot(self, account: str) -> Optional[NonceState]:
        state = self._accounts.get(to_checksum_address(account))
        return self._snapshot(state) if state is not None else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _snapshot(state: _AccountNonces) -> NonceState:
        return NonceState(
            confirmed_nonce=state.confirmed_nonce,
            next_assignable=state.next_assignable,
            in_flight=tuple(sorted(state.in_flight)),
            reusable=tuple(sorted(state.reusable)),
        )

    async def _ensure_loaded(self, key: str) -> None:
        if key in self._accounts:
            return
        lock = self._load_locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._accounts:
                return
            latest, pending = await self._fetch_counts(key)
            async with self._lock:
                self._accounts.setdefault(key, _AccountNonces(latest, max(latest, pending)))
            _logger.info(
                "Nonce state loaded from chain",
                extra={"account": key, "confirmed_nonce": latest, "next_assignable": pending},
            )

    async def _fetch_counts(self, key: str) -> tuple:
        latest = await retry_async(
            lambda: self._chain.get_transaction_count(key, "latest"), self._retry
        )
        pending = await retry_async(
            lambda: self._chain.get_transaction_count(key, "pending"), self._retry
        )
        return latest, pending
