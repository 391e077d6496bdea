"""Context management for structured logging.

Provides automatic context injection into log records using contextvars,
so fields such as ``connection_id`` or ``subscription_id`` are included in
every log message emitted from the task that set them.

Each asyncio task gets its own copy of the context, which matters here:
every WebSocket connection and the feed subscriber run in separate tasks.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Any

_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def set_log_context(**kwargs: Any) -> None:
    """Set logging context for the current async task.

    Args:
        **kwargs: Key-value pairs to add to logging context.

    Example:
        ```python
        set_log_context(connection_id="c-1")
        logger.info("Client registered")  # Includes connection_id
        ```
    """
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def get_log_context() -> dict[str, Any]:
    """Get a copy of the current logging context."""
    return _log_context.get().copy()


def clear_log_context() -> None:
    """Clear all logging context for the current async task."""
    _log_context.set({})


def remove_from_log_context(*keys: str) -> None:
    """Remove specific keys from logging context.

    Args:
        *keys: Keys to remove from context.
    """
    current = _log_context.get().copy()
    for key in keys:
        current.pop(key, None)
    _log_context.set(current)


class ContextInjectingFilter(logging.Filter):
    """Logging filter that injects the contextvars log context into each LogRecord.

    Applied to the root logger so that all loggers benefit from it.
    Existing record attributes (including explicit ``extra=``) win.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()

        for key, value in context.items():
            if not hasattr(record, key):
                setattr(record, key, value)

        return True
