"""
Structured logging helpers.

Modules obtain loggers with ``get_logger(__name__)`` and attach context
through ``extra={...}``; the default handler renders those fields after
the message. Nothing here ever formats key material.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

ROOT_LOGGER_NAME = "message_storage"

_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class _ContextFormatter(logging.Formatter):
    """Append ``extra`` fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if not context:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{base} | {rendered}"


def get_logger(name: str) -> logging.Logger:
    """Return a logger inside the package hierarchy."""
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def configure_logging(
    level: Union[int, str] = logging.INFO,
    *,
    handler: Optional[logging.Handler] = None,
    fmt: str = "%(asctime)s %(levelname)s %(name)s: %(message)s",
) -> logging.Logger:
    """
    Install a single handler on the package root logger.

    Calling it again replaces the previous handler instead of stacking.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    handler = handler or logging.StreamHandler()
    handler.setFormatter(_ContextFormatter(fmt))
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    return root


def set_level(level: Union[int, str]) -> None:
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(level)


def disable_logging() -> None:
    logging.getLogger(ROOT_LOGGER_NAME).disabled = True


def enable_debug() -> None:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.disabled = False
    root.setLevel(logging.DEBUG)
