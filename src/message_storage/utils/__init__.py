"""
Utilities for the message storage pipeline.
"""

from message_storage.utils.logging import (
    configure_logging,
    disable_logging,
    enable_debug,
    get_logger,
    set_level,
)
from message_storage.utils.retry import RetryConfig, calculate_delay, retry_async

__all__ = [
    # Structured logging
    "get_logger",
    "configure_logging",
    "set_level",
    "disable_logging",
    "enable_debug",
    # Retry
    "RetryConfig",
    "calculate_delay",
    "retry_async",
]
