from __future__ import annotations

from changefeed_service.utils.retry.decorator import retry
from changefeed_service.utils.retry.exceptions import RetryError, RetryStatistics
from changefeed_service.utils.retry.strategies import RetryStrategy

__all__ = ["retry", "RetryError", "RetryStatistics", "RetryStrategy"]
