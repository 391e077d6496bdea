"""Utility modules for common operations.

This package provides reusable utilities for:
- Retry with exponential backoff
"""

from changefeed_service.utils.retry import RetryError, RetryStrategy, retry

__all__ = [
    "RetryError",
    "RetryStrategy",
    "retry",
]
