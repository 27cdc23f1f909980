"""
Tests for retry utility with exponential backoff.

Tests cover:
- RetryConfig defaults
- Delay calculation with exponential backoff
- Jitter randomization and max delay capping
- Retryable error filtering (transient RPC errors by default)
- on_retry callback
"""

from typing import List, Tuple
from unittest.mock import AsyncMock, patch

import pytest

from message_storage.errors import FeeTooLowError, TransientRpcError
from message_storage.utils.retry import RetryConfig, calculate_delay, retry_async


# =============================================================================
# RetryConfig Tests
# =============================================================================


class TestRetryConfig:
    """Tests for RetryConfig dataclass."""

    def test_default_values(self) -> None:
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.base_delay_ms == 1000
        assert config.max_delay_ms == 30000
        assert config.jitter is True
        assert config.exponential_base == 2.0
        assert config.retryable_errors == (TransientRpcError,)

    def test_custom_values(self) -> None:
        config = RetryConfig(
            max_attempts=5,
            base_delay_ms=500,
            max_delay_ms=10000,
            jitter=False,
            exponential_base=3.0,
            retryable_errors=(ValueError, TypeError),
        )

        assert config.max_attempts == 5
        assert config.base_delay_ms == 500
        assert config.retryable_errors == (ValueError, TypeError)


# =============================================================================
# Delay Calculation Tests
# =============================================================================


class TestDelayCalculation:
    """Tests for calculate_delay function."""

    def test_exponential_growth(self) -> None:
        config = RetryConfig(base_delay_ms=1000, jitter=False, exponential_base=2.0)

        delays = [calculate_delay(i, config) for i in range(5)]

        # Expected: 1s, 2s, 4s, 8s, 16s
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_max_delay_cap(self) -> None:
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=5000, jitter=False)

        assert calculate_delay(10, config) == 5.0

    def test_jitter_stays_within_bounds(self) -> None:
        config = RetryConfig(base_delay_ms=1000, jitter=True)

        delays = [calculate_delay(0, config) for _ in range(100)]

        assert min(delays) != max(delays)
        assert all(0 <= d <= 1.0 for d in delays)

    def test_jitter_disabled(self) -> None:
        config = RetryConfig(base_delay_ms=250, jitter=False)

        assert {calculate_delay(0, config) for _ in range(10)} == {0.25}


# =============================================================================
# Async Retry Tests
# =============================================================================


class TestRetryAsync:
    """Tests for retry_async function."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self) -> None:
        call_count = 0

        async def success_fn():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await retry_async(success_fn) == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_rpc_errors_by_default(self) -> None:
        call_count = 0

        async def flaky():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise TransientRpcError("connection reset")
            return 7

        with patch("message_storage.utils.retry.asyncio.sleep", new_callable=AsyncMock):
            result = await retry_async(flaky, RetryConfig(max_attempts=5))

        assert result == 7
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_max_attempts_exceeded(self) -> None:
        call_count = 0

        async def always_fail():
            nonlocal call_count
            call_count += 1
            raise TransientRpcError("read timeout")

        config = RetryConfig(max_attempts=3, base_delay_ms=1, jitter=False)

        with pytest.raises(TransientRpcError) as exc_info:
            await retry_async(always_fail, config)

        assert exc_info.value.message == "read timeout"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_permanent_rejection_not_retried(self) -> None:
        call_count = 0

        async def underpriced():
            nonlocal call_count
            call_count += 1
            raise FeeTooLowError("transaction underpriced")

        with pytest.raises(FeeTooLowError):
            await retry_async(underpriced, RetryConfig(max_attempts=5, base_delay_ms=1))

        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retryable_error_filter(self) -> None:
        call_count = 0
        errors: List[type] = [ValueError, ValueError, RuntimeError]

        async def raise_different_errors():
            nonlocal call_count
            error_type = errors[call_count]
            call_count += 1
            raise error_type("Error")

        config = RetryConfig(max_attempts=5, retryable_errors=(ValueError,), base_delay_ms=1)

        with pytest.raises(RuntimeError):
            await retry_async(raise_different_errors, config)

        assert call_count == 3

    @pytest.mark.asyncio
    async def test_on_retry_called_before_each_sleep(self) -> None:
        seen: List[Tuple[int, str, float]] = []

        async def always_fail():
            raise TransientRpcError("refused")

        config = RetryConfig(max_attempts=3, base_delay_ms=1, jitter=False)

        with pytest.raises(TransientRpcError):
            await retry_async(
                always_fail,
                config,
                on_retry=lambda attempt, error, delay: seen.append((attempt, error.message, delay)),
            )

        # no callback after the final attempt
        assert seen == [(1, "refused", 0.001), (2, "refused", 0.002)]
