"""Change feed to WebSocket pipeline.

Architecture:
    MongoDB change stream → FeedSubscriber → buffer → dispatcher → BroadcastHub → clients

The subscriber hands records to a bounded ``asyncio.Queue``; awaiting
``put`` on a full buffer pauses the stream instead of dropping records. A
single dispatcher task drains the buffer into ``BroadcastHub.broadcast``, so
records reach the hub in exactly the order the subscriber produced them.

A subscription that fails is not retried by the subscriber itself. The
pipeline's supervisor decides: it resubscribes from the last delivered token
with exponential backoff (``FEED_AUTO_RESUBSCRIBE``), starts from "now" when
the token can no longer be resumed, and never resubscribes after an
invalidate.

Configuration:
    FEED_ENABLED: Start the pipeline on application startup
    FEED_AUTO_RESUBSCRIBE: Resubscribe after transient errors
    FEED_MAX_RESUBSCRIBE_ATTEMPTS: Consecutive failures before giving up (0 = unlimited)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

from changefeed_service.core.settings import get_changefeed_settings
from changefeed_service.infra.metrics.prometheus import (
    changefeed_buffered_records,
    changefeed_resubscribes_total,
)
from changefeed_service.infra.realtime.exceptions import (
    ChangeFeedError,
    ChangeFeedInvalidatedError,
    SubscriptionStateError,
)
from changefeed_service.infra.realtime.hub import BroadcastHub, get_broadcast_hub
from changefeed_service.infra.realtime.subscriber import CloseReason, FeedSubscriber
from changefeed_service.utils.retry import RetryStrategy

if TYPE_CHECKING:
    from pymongo.asynchronous.collection import AsyncCollection

    from changefeed_service.core.settings.changefeed import ChangeFeedSettings
    from changefeed_service.infra.realtime.records import ChangeRecord

logger = logging.getLogger(__name__)


class ChangeFeedPipeline:
    """Connects one collection's change feed to a broadcast hub.

    Example:
        hub = BroadcastHub()
        await hub.start()

        pipeline = ChangeFeedPipeline(collection, hub)
        await pipeline.start()
        ...
        await pipeline.stop()  # also stops the hub
    """

    def __init__(
        self,
        collection: AsyncCollection,
        hub: BroadcastHub,
        *,
        settings: ChangeFeedSettings | None = None,
        retry_strategy: RetryStrategy | None = None,
    ) -> None:
        self._collection = collection
        self.hub = hub
        self._settings = settings or get_changefeed_settings()
        self._strategy = retry_strategy or RetryStrategy(
            max_attempts=self._settings.max_resubscribe_attempts,
            initial_delay=self._settings.resubscribe_initial_delay,
            max_delay=self._settings.resubscribe_max_delay,
        )

        self._buffer: asyncio.Queue[ChangeRecord] = asyncio.Queue(
            maxsize=self._settings.buffer_size
        )
        self._subscriber: FeedSubscriber | None = None
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._supervisor_task: asyncio.Task[None] | None = None
        self._running = False

        self._last_error: ChangeFeedError | None = None
        self._consecutive_failures = 0
        self._gave_up = False
        self.records_forwarded = 0
        self.resubscribe_attempts = 0

    @property
    def subscriber(self) -> FeedSubscriber | None:
        """The current (possibly closed) subscription."""
        return self._subscriber

    @property
    def last_error(self) -> ChangeFeedError | None:
        return self._last_error

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, resume_token: Any = None) -> None:
        """Start the dispatcher and the first subscription.

        Args:
            resume_token: Resume from this token instead of "now".
        """
        if self._running:
            return

        self._running = True
        self._dispatcher_task = asyncio.create_task(self._dispatch(), name="changefeed-dispatcher")
        self._open_subscription(resume_token)

        if self._settings.auto_resubscribe:
            self._supervisor_task = asyncio.create_task(
                self._supervise(), name="changefeed-supervisor"
            )

        logger.info(
            "Change feed pipeline started",
            extra={
                "collection": self._collection.name,
                "buffer_size": self._settings.buffer_size,
                "auto_resubscribe": self._settings.auto_resubscribe,
            },
        )

    async def stop(self) -> None:
        """Close the subscription, stop the dispatcher, then stop the hub.

        Records still buffered are abandoned.
        """
        self._running = False

        if self._supervisor_task:
            self._supervisor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor_task
            self._supervisor_task = None

        if self._subscriber is not None:
            await self._subscriber.stop()

        if self._dispatcher_task:
            self._dispatcher_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher_task
            self._dispatcher_task = None

        await self.hub.stop()

        logger.info(
            "Change feed pipeline stopped",
            extra={
                "records_forwarded": self.records_forwarded,
                "records_abandoned": self._buffer.qsize(),
            },
        )

    async def resubscribe(self) -> FeedSubscriber:
        """Replace the current subscription with a new one.

        The new subscription resumes from the last token the previous one
        handed off, or from "now" when that token is known to be unusable.

        Raises:
            SubscriptionStateError: If the pipeline is not running.
            ChangeFeedInvalidatedError: If the previous subscription ended with
                an invalidate; the collection is gone and cannot be resumed.
        """
        if not self._running:
            raise SubscriptionStateError("Change feed pipeline is not running")

        previous = self._subscriber
        if previous is not None:
            if previous.invalidated:
                raise ChangeFeedInvalidatedError(
                    "Change feed was invalidated; resubscribing is not possible",
                    collection_id=previous.collection_id,
                )
            await previous.stop()

        token = self._resume_token_after(previous)
        self.resubscribe_attempts += 1
        changefeed_resubscribes_total.inc()

        logger.info(
            "Resubscribing to change feed",
            extra={"resumed": token is not None, "attempt": self.resubscribe_attempts},
        )
        return self._open_subscription(token)

    def status(self) -> dict[str, Any]:
        """Pipeline state for the stats endpoint."""
        subscriber = self._subscriber
        return {
            "running": self._running,
            "subscription_state": subscriber.state.value if subscriber else None,
            "close_reason": (
                subscriber.close_reason.value if subscriber and subscriber.close_reason else None
            ),
            "invalidated": bool(subscriber and subscriber.invalidated),
            "records_forwarded": self.records_forwarded,
            "buffered_records": self._buffer.qsize(),
            "resubscribe_attempts": self.resubscribe_attempts,
            "gave_up": self._gave_up,
            "last_error": str(self._last_error) if self._last_error else None,
            "connections": self.hub.connection_count,
        }

    # ──────────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────────

    def _open_subscription(self, resume_token: Any) -> FeedSubscriber:
        subscriber = FeedSubscriber(
            self._collection,
            resume_token=resume_token,
            full_document=self._settings.full_document,
            backfill_on_update=self._settings.backfill_on_update,
            max_await_time_ms=self._settings.max_await_time_ms,
        )
        subscriber.start(self._on_record, self._on_error)
        self._subscriber = subscriber
        return subscriber

    def _resume_token_after(self, previous: FeedSubscriber | None) -> Any:
        if previous is None:
            return None
        error = previous.error
        if error is not None and not error.resumable:
            logger.warning(
                "Resume token is no longer usable; resubscribing from now. "
                "Changes made in between are not delivered.",
                extra={"error": str(error)},
            )
            return None
        return previous.last_token

    async def _on_record(self, record: ChangeRecord) -> None:
        await self._buffer.put(record)
        changefeed_buffered_records.set(self._buffer.qsize())

    def _on_error(self, error: ChangeFeedError) -> None:
        self._last_error = error

    async def _dispatch(self) -> None:
        """Forward buffered records to the hub in order."""
        while True:
            record = await self._buffer.get()
            changefeed_buffered_records.set(self._buffer.qsize())
            try:
                recipients = self.hub.broadcast(record)
            except Exception as e:
                logger.exception(
                    "Failed to broadcast change record",
                    extra={"operation": record.operation.value, "error": str(e)},
                )
                continue

            self.records_forwarded += 1
            logger.debug(
                "Change record broadcast",
                extra={
                    "operation": record.operation.value,
                    "document_key": record.document_key,
                    "recipients": recipients,
                },
            )

    async def _supervise(self) -> None:
        """Resubscribe after transient failures until stopped or exhausted."""
        while self._running:
            subscriber = self._subscriber
            if subscriber is None:
                return
            await subscriber.wait_closed()

            if not self._running:
                return
            if self._subscriber is not subscriber:
                # Replaced by an explicit resubscribe(); watch the new one.
                continue

            if subscriber.close_reason is not CloseReason.ERROR:
                logger.info(
                    "Change feed ended; not resubscribing",
                    extra={"invalidated": subscriber.invalidated},
                )
                return

            if subscriber.records_delivered > 0:
                self._consecutive_failures = 0
            self._consecutive_failures += 1

            if self._strategy.is_exhausted(self._consecutive_failures):
                self._gave_up = True
                logger.error(
                    "Giving up on change feed after repeated failures",
                    extra={
                        "attempts": self._consecutive_failures,
                        "last_error": str(self._last_error),
                    },
                )
                return

            delay = self._strategy.calculate_delay(self._consecutive_failures - 1)
            logger.warning(
                f"Change feed failed; resubscribing in {delay:.2f}s",
                extra={"attempt": self._consecutive_failures, "delay": delay},
            )
            await asyncio.sleep(delay)

            if not self._running:
                return
            if self._subscriber is not subscriber:
                continue
            await self.resubscribe()


# Global pipeline instance
_pipeline: ChangeFeedPipeline | None = None


async def start_changefeed_pipeline(
    collection: AsyncCollection,
    hub: BroadcastHub | None = None,
    resume_token: Any = None,
) -> ChangeFeedPipeline:
    """Start the global pipeline for ``collection``.

    Uses the global broadcast hub unless ``hub`` is given.
    """
    global _pipeline
    _pipeline = ChangeFeedPipeline(collection, hub or get_broadcast_hub())
    await _pipeline.start(resume_token)
    return _pipeline


async def stop_changefeed_pipeline() -> None:
    """Stop the global pipeline."""
    global _pipeline
    if _pipeline:
        await _pipeline.stop()
        _pipeline = None


def get_changefeed_pipeline() -> ChangeFeedPipeline | None:
    """Get the global pipeline instance."""
    return _pipeline


__all__ = [
    "ChangeFeedPipeline",
    "get_broadcast_hub",
    "get_changefeed_pipeline",
    "start_changefeed_pipeline",
    "stop_changefeed_pipeline",
]
