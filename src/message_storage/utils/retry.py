"""
Retry utilities.

Provides exponential backoff with jitter for transient RPC failures.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import (
    Awaitable,
    Callable,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

from message_storage.errors import TransientRpcError

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Example:
        ```python
        config = RetryConfig(
            max_attempts=5,
            base_delay_ms=250,
            jitter=True,
        )
        ```
    """

    max_attempts: int = 3
    """Maximum number of attempts, the first one included."""

    base_delay_ms: int = 1000
    """Base delay in milliseconds for exponential backoff."""

    max_delay_ms: int = 30000
    """Maximum delay in milliseconds (cap for exponential growth)."""

    jitter: bool = True
    """Whether to add random jitter to delays."""

    exponential_base: float = 2.0
    """Base for exponential backoff calculation."""

    retryable_errors: Tuple[Type[Exception], ...] = field(
        default_factory=lambda: (TransientRpcError,)
    )
    """Tuple of exception types that should trigger a retry."""


RetryCallback = Callable[[int, Exception, float], None]


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay with exponential backoff and optional jitter.

    Args:
        attempt: Zero-based attempt number (0 = first retry)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay_ms = config.base_delay_ms * (config.exponential_base ** attempt)
    delay_ms = min(delay_ms, config.max_delay_ms)

    if config.jitter:
        # Full jitter keeps concurrent submitters from retrying in lockstep
        delay_ms = random.uniform(0, delay_ms)

    return delay_ms / 1000


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    on_retry: Optional[RetryCallback] = None,
) -> T:
    """
    Execute async function with retry logic.

    Args:
        fn: Async function to execute (no arguments)
        config: Retry configuration (uses defaults if None)
        on_retry: Called as ``on_retry(attempt, error, delay)`` before each sleep

    Returns:
        Result of the function

    Raises:
        The last retryable exception once all attempts fail; any
        non-retryable exception immediately.

    Example:
        ```python
        count = await retry_async(
            lambda: chain.get_transaction_count(address, "pending"),
            RetryConfig(max_attempts=5),
        )
        ```
    """
    config = config or RetryConfig()
    last_error: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            return await fn()
        except config.retryable_errors as e:
            last_error = e

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                if on_retry is not None:
                    on_retry(attempt + 1, e, delay)
                await asyncio.sleep(delay)

    if last_error is not None:
        raise last_error

    raise RuntimeError("Retry exhausted without error")
