"""Change feed subscriber over a MongoDB change stream.

The subscriber owns exactly one change stream for one collection. It turns
every native event into a ``ChangeRecord`` and hands records to a callback
strictly in arrival order: the next event is not read from the stream until
the callback for the previous one has returned.

Lifecycle:

    idle -> subscribing -> active -> closed(normal | error)

A closed subscriber is never reopened. Recovery after a transient error is
the caller's decision: build a new ``FeedSubscriber`` with
``resume_token=old.last_token`` (see ``ChangeFeedPipeline.resubscribe``).

Example:
    subscriber = FeedSubscriber(collection, resume_token=saved_token)
    task = subscriber.start(on_record=queue.put, on_error=report)
    ...
    await subscriber.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pymongo.errors import OperationFailure, PyMongoError

from changefeed_service.infra.logging.context import set_log_context
from changefeed_service.infra.metrics.prometheus import (
    changefeed_backfill_total,
    changefeed_errors_total,
    changefeed_records_total,
    changefeed_skipped_events_total,
    changefeed_subscription_active,
)
from changefeed_service.infra.realtime.exceptions import (
    ChangeFeedError,
    SubscriptionStateError,
)
from changefeed_service.infra.realtime.records import (
    ChangeRecord,
    OperationType,
    normalize_change,
)

if TYPE_CHECKING:
    from pymongo.asynchronous.change_stream import AsyncChangeStream
    from pymongo.asynchronous.collection import AsyncCollection

logger = logging.getLogger(__name__)

RecordHandler = Callable[[ChangeRecord], Awaitable[None] | None]
ErrorHandler = Callable[[ChangeFeedError], Awaitable[None] | None]

# Server error codes after which resuming from the same token cannot succeed.
# 280: ChangeStreamFatalError, 286: ChangeStreamHistoryLost
NON_RESUMABLE_ERROR_CODES = frozenset({280, 286})


class SubscriptionState(str, Enum):
    """Lifecycle states of a feed subscription."""

    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    CLOSED = "closed"


class CloseReason(str, Enum):
    """Why a subscription reached the closed state."""

    NORMAL = "normal"
    ERROR = "error"


async def _invoke(handler: Callable[[Any], Awaitable[None] | None], arg: Any) -> None:
    result = handler(arg)
    if inspect.isawaitable(result):
        await result


class FeedSubscriber:
    """Consumes one collection's change stream and emits ``ChangeRecord``s.

    Args:
        collection: Async collection to watch.
        collection_id: Logical collection name used in records; defaults to
            the collection's name.
        resume_token: Resume from this position instead of "now".
        full_document: ``fullDocument`` option for ``watch()``. The default
            ``updateLookup`` asks the server for the post-image on update.
        backfill_on_update: When an update arrives without a full document,
            look the document up by ``_id`` before handing the record off.
        max_await_time_ms: Optional ``maxAwaitTimeMS`` for the stream.
    """

    def __init__(
        self,
        collection: AsyncCollection,
        *,
        collection_id: str | None = None,
        resume_token: Any = None,
        full_document: str | None = "updateLookup",
        backfill_on_update: bool = True,
        max_await_time_ms: int | None = None,
    ) -> None:
        self._collection = collection
        self.collection_id = collection_id or collection.name
        self.subscription_id = uuid4().hex[:12]
        self._resume_token = resume_token
        self._last_token = resume_token
        self._full_document = None if full_document == "default" else full_document
        self._backfill_on_update = backfill_on_update
        self._max_await_time_ms = max_await_time_ms

        self._state = SubscriptionState.IDLE
        self._close_reason: CloseReason | None = None
        self._error: ChangeFeedError | None = None
        self._invalidated = False
        self._stream: AsyncChangeStream | None = None
        self._task: asyncio.Task[None] | None = None
        self.records_delivered = 0

    # ──────────────────────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────────────────────

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def close_reason(self) -> CloseReason | None:
        return self._close_reason

    @property
    def error(self) -> ChangeFeedError | None:
        """The error that closed the subscription, if it closed with one."""
        return self._error

    @property
    def invalidated(self) -> bool:
        """True once an invalidate event has been delivered."""
        return self._invalidated

    @property
    def last_token(self) -> Any:
        """Resume token of the last record handed off (or the starting token)."""
        return self._last_token

    @property
    def is_closed(self) -> bool:
        return self._state is SubscriptionState.CLOSED

    # ──────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────

    def start(
        self,
        on_record: RecordHandler,
        on_error: ErrorHandler | None = None,
    ) -> asyncio.Task[None]:
        """Open the subscription and consume it in a background task.

        Args:
            on_record: Called once per record, in arrival order. May be a
                coroutine function; it is awaited before the next event is read.
            on_error: Called once with a ``ChangeFeedError`` if the
                subscription fails.

        Returns:
            The consumer task. It finishes when the subscription closes.

        Raises:
            SubscriptionStateError: If this subscriber was already started.
        """
        self._ensure_idle()
        self._state = SubscriptionState.SUBSCRIBING
        self._task = asyncio.create_task(
            self._consume(on_record, on_error),
            name=f"changefeed:{self.collection_id}:{self.subscription_id}",
        )
        return self._task

    async def run(
        self,
        on_record: RecordHandler,
        on_error: ErrorHandler | None = None,
    ) -> None:
        """Like ``start`` but consumes in the calling task until closed."""
        self._ensure_idle()
        self._state = SubscriptionState.SUBSCRIBING
        await self._consume(on_record, on_error)

    async def wait_closed(self) -> None:
        """Wait for a started subscription's consumer task to finish."""
        if self._task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    async def stop(self) -> None:
        """Close the change stream and end the subscription normally.

        Safe to call in any state and more than once.
        """
        if self._state is SubscriptionState.IDLE:
            self._mark_closed(CloseReason.NORMAL)
            return

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._close_stream()
        if not self.is_closed:
            self._mark_closed(CloseReason.NORMAL)

    # ──────────────────────────────────────────────────────────────
    # Consumer loop
    # ──────────────────────────────────────────────────────────────

    async def _consume(self, on_record: RecordHandler, on_error: ErrorHandler | None) -> None:
        set_log_context(subscription_id=self.subscription_id, collection=self.collection_id)

        try:
            self._stream = await self._open_stream()
            self._state = SubscriptionState.ACTIVE
            changefeed_subscription_active.set(1)
            logger.info(
                "Change feed subscription active",
                extra={"resumed": self._resume_token is not None},
            )

            async for raw in self._stream:
                record = normalize_change(raw, self.collection_id)
                if record is None:
                    native_op = str(raw.get("operationType"))
                    changefeed_skipped_events_total.labels(operation=native_op).inc()
                    logger.debug("Skipping change event", extra={"operation_type": native_op})
                    continue

                if (
                    record.operation is OperationType.UPDATE
                    and record.full_document is None
                    and self._backfill_on_update
                ):
                    record = await self._backfill(record)

                await _invoke(on_record, record)

                if record.sequence_token is not None:
                    self._last_token = record.sequence_token
                self.records_delivered += 1
                changefeed_records_total.labels(operation=record.operation.value).inc()

                if record.is_terminal:
                    self._invalidated = True
                    logger.warning(
                        "Change feed invalidated; collection dropped or renamed",
                        extra={"namespace": record.namespace},
                    )
                    break

        except asyncio.CancelledError:
            self._mark_closed(CloseReason.NORMAL)
            raise

        except Exception as exc:
            error = self._wrap_error(exc)
            self._mark_closed(CloseReason.ERROR, error)
            changefeed_errors_total.inc()
            logger.warning(
                "Change feed subscription failed",
                extra={
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "resumable": error.resumable,
                    "records_delivered": self.records_delivered,
                },
            )
            await self._close_stream()
            if on_error is not None:
                await _invoke(on_error, error)
            return

        finally:
            await self._close_stream()

        self._mark_closed(CloseReason.NORMAL)
        logger.info(
            "Change feed subscription closed",
            extra={"records_delivered": self.records_delivered, "invalidated": self._invalidated},
        )

    async def _open_stream(self) -> AsyncChangeStream:
        options: dict[str, Any] = {"full_document": self._full_document}
        if self._resume_token is not None:
            options["resume_after"] = self._resume_token
        if self._max_await_time_ms is not None:
            options["max_await_time_ms"] = self._max_await_time_ms
        return await self._collection.watch([], **options)

    async def _backfill(self, record: ChangeRecord) -> ChangeRecord:
        """Fetch the current document for an update that arrived without one.

        The lookup can observe a state newer than the triggering event when
        writes race it; the record then carries at least that change.
        """
        try:
            document = await self._collection.find_one({"_id": record.document_key})
        except PyMongoError as exc:
            changefeed_backfill_total.labels(outcome="error").inc()
            logger.warning(
                "Full document lookup failed; forwarding update without it",
                extra={"document_key": record.document_key, "error": str(exc)},
            )
            return record

        changefeed_backfill_total.labels(outcome="found" if document else "missing").inc()
        return record.with_full_document(document)

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        with contextlib.suppress(PyMongoError):
            await stream.close()

    # ──────────────────────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────────────────────

    def _ensure_idle(self) -> None:
        if self._state is not SubscriptionState.IDLE:
            raise SubscriptionStateError(
                f"Subscription {self.subscription_id} is {self._state.value}; "
                "create a new FeedSubscriber to subscribe again"
            )

    def _mark_closed(self, reason: CloseReason, error: ChangeFeedError | None = None) -> None:
        if self._state is SubscriptionState.CLOSED:
            return
        self._state = SubscriptionState.CLOSED
        self._close_reason = reason
        self._error = error
        changefeed_subscription_active.set(0)

    def _wrap_error(self, exc: Exception) -> ChangeFeedError:
        resumable = not (
            isinstance(exc, OperationFailure) and exc.code in NON_RESUMABLE_ERROR_CODES
        )
        error = ChangeFeedError(
            f"Change stream on {self.collection_id!r} failed: {exc}",
            collection_id=self.collection_id,
            resume_token=self._last_token,
            resumable=resumable,
        )
        error.__cause__ = exc
        return error
