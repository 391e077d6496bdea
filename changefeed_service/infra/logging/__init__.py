"""Logging infrastructure.

Provides structured logging with:
- JSONL format for Loki/Elasticsearch ingestion
- Automatic context injection (connection_id, subscription_id, ...)
- QueueHandler + QueueListener for non-blocking I/O
- Per-handler log levels (console vs file)

Basic usage:
    from changefeed_service.infra.logging import set_log_context
    import logging

    logger = logging.getLogger(__name__)

    set_log_context(connection_id="c-1")
    logger.info("Client registered")  # Automatically includes connection_id
"""

from changefeed_service.infra.logging.config import (
    complete,
    configure_logging,
    setup_logging,
    shutdown,
)
from changefeed_service.infra.logging.context import (
    ContextInjectingFilter,
    clear_log_context,
    get_log_context,
    remove_from_log_context,
    set_log_context,
)
from changefeed_service.infra.logging.formatters import JSONFormatter

__all__ = [
    "ContextInjectingFilter",
    "JSONFormatter",
    "clear_log_context",
    "complete",
    "configure_logging",
    "get_log_context",
    "remove_from_log_context",
    "set_log_context",
    "setup_logging",
    "shutdown",
]
