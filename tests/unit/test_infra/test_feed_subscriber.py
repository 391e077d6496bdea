"""Unit tests for FeedSubscriber over a fake change stream."""
from __future__ import annotations

import pytest
from pymongo.errors import AutoReconnect, OperationFailure

from changefeed_service.infra.realtime.exceptions import ChangeFeedError, SubscriptionStateError
from changefeed_service.infra.realtime.records import OperationType
from changefeed_service.infra.realtime.subscriber import (
    CloseReason,
    FeedSubscriber,
    SubscriptionState,
)
from tests.fixtures import FakeCollection, change_event
from tests.utils import settle, wait_for

PENDING = {
    "_id": 200,
    "id": 200,
    "customer_name": "Ada",
    "product_name": "Keyboard",
    "status": "pending",
}
SHIPPED = {**PENDING, "status": "shipped"}


class Recorder:
    """Collects records and errors handed out by a subscriber."""

    def __init__(self) -> None:
        self.records = []
        self.errors = []

    async def on_record(self, record) -> None:
        self.records.append(record)

    def on_error(self, error) -> None:
        self.errors.append(error)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.mark.unit
class TestFeedSubscriberDelivery:
    """Records are delivered in order with the right payload."""

    async def test_insert_delivered_with_full_document(self, fake_collection, recorder):
        stream = fake_collection.next_stream()
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record, recorder.on_error)

        stream.push(change_event("insert", 200, full_document=PENDING))
        await wait_for(lambda: len(recorder.records) == 1)

        record = recorder.records[0]
        assert record.operation is OperationType.INSERT
        assert record.document_key == 200
        assert record.full_document["status"] == "pending"
        assert subscriber.state is SubscriptionState.ACTIVE

        await subscriber.stop()

    async def test_update_carries_post_image(self, fake_collection, recorder):
        stream = fake_collection.next_stream()
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record)

        stream.push(
            change_event("update", 200, full_document=SHIPPED, updated_fields={"status": "shipped"})
        )
        await wait_for(lambda: len(recorder.records) == 1)

        record = recorder.records[0]
        assert record.full_document["status"] == "shipped"
        assert record.changed_fields.updated_fields == {"status": "shipped"}

        await subscriber.stop()

    async def test_records_delivered_in_arrival_order(self, fake_collection, recorder):
        events = [change_event("insert", key, full_document={"_id": key}) for key in range(1, 6)]
        fake_collection.next_stream(events)
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record)

        await wait_for(lambda: len(recorder.records) == 5)

        assert [r.document_key for r in recorder.records] == [1, 2, 3, 4, 5]
        assert subscriber.records_delivered == 5
        assert subscriber.last_token == {"_data": "insert-5"}

        await subscriber.stop()

    async def test_delete_has_no_full_document(self, fake_collection, recorder):
        fake_collection.next_stream([change_event("delete", 200)])
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record)

        await wait_for(lambda: len(recorder.records) == 1)

        record = recorder.records[0]
        assert record.operation is OperationType.DELETE
        assert record.document_key == 200
        assert record.full_document is None

        await subscriber.stop()

    async def test_non_data_events_are_skipped(self, fake_collection, recorder):
        fake_collection.next_stream(
            [
                change_event("createIndexes"),
                change_event("insert", 1, full_document={"_id": 1}),
            ]
        )
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record)

        await wait_for(lambda: len(recorder.records) == 1)

        assert recorder.records[0].document_key == 1
        await subscriber.stop()

    async def test_sync_handler_is_supported(self, fake_collection):
        received = []
        fake_collection.next_stream([change_event("delete", 7)])
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(received.append)

        await wait_for(lambda: len(received) == 1)

        assert received[0].document_key == 7
        await subscriber.stop()


@pytest.mark.unit
class TestFeedSubscriberBackfill:
    """Updates that arrive without a post-image."""

    async def test_update_backfilled_from_collection(self, recorder):
        collection = FakeCollection(documents=[SHIPPED])
        collection.next_stream([change_event("update", 200, updated_fields={"status": "shipped"})])
        subscriber = FeedSubscriber(collection, full_document="default")
        subscriber.start(recorder.on_record)

        await wait_for(lambda: len(recorder.records) == 1)

        assert recorder.records[0].full_document == SHIPPED
        assert collection.watch_calls[0]["full_document"] is None
        await subscriber.stop()

    async def test_backfill_failure_still_delivers_update(self, recorder):
        collection = FakeCollection(documents=[SHIPPED])
        collection.find_one_error = AutoReconnect("lookup failed")
        collection.next_stream([change_event("update", 200, updated_fields={"status": "shipped"})])
        subscriber = FeedSubscriber(collection)
        subscriber.start(recorder.on_record)

        await wait_for(lambda: len(recorder.records) == 1)

        record = recorder.records[0]
        assert record.full_document is None
        assert record.changed_fields.updated_fields == {"status": "shipped"}
        assert subscriber.state is SubscriptionState.ACTIVE
        await subscriber.stop()

    async def test_backfill_disabled(self, recorder):
        collection = FakeCollection(documents=[SHIPPED])
        collection.next_stream([change_event("update", 200, updated_fields={"status": "shipped"})])
        subscriber = FeedSubscriber(collection, backfill_on_update=False)
        subscriber.start(recorder.on_record)

        await wait_for(lambda: len(recorder.records) == 1)

        assert recorder.records[0].full_document is None
        await subscriber.stop()


@pytest.mark.unit
class TestFeedSubscriberLifecycle:
    """State transitions, errors and stop."""

    async def test_starts_idle(self, fake_collection):
        subscriber = FeedSubscriber(fake_collection)

        assert subscriber.state is SubscriptionState.IDLE
        assert subscriber.close_reason is None
        assert subscriber.collection_id == "orders"

    async def test_transient_error_closes_with_error(self, fake_collection, recorder):
        stream = fake_collection.next_stream([change_event("insert", 1, full_document={"_id": 1})])
        stream.fail(AutoReconnect("connection reset"))
        stream.push(change_event("insert", 2, full_document={"_id": 2}))
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record, recorder.on_error)

        await subscriber.wait_closed()

        assert subscriber.state is SubscriptionState.CLOSED
        assert subscriber.close_reason is CloseReason.ERROR
        assert [r.document_key for r in recorder.records] == [1]
        assert len(recorder.errors) == 1

        error = recorder.errors[0]
        assert isinstance(error, ChangeFeedError)
        assert error.resumable
        assert error.resume_token == {"_data": "insert-1"}
        assert isinstance(error.__cause__, AutoReconnect)
        assert subscriber.error is error
        assert stream.closed

    async def test_history_lost_is_not_resumable(self, fake_collection, recorder):
        stream = fake_collection.next_stream()
        stream.fail(OperationFailure("resume point no longer in oplog", code=286))
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record, recorder.on_error)

        await subscriber.wait_closed()

        assert subscriber.close_reason is CloseReason.ERROR
        assert recorder.errors[0].resumable is False

    async def test_watch_failure_closes_with_error(self, fake_collection, recorder):
        fake_collection.watch_error = OperationFailure("not a replica set", code=40573)
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record, recorder.on_error)

        await subscriber.wait_closed()

        assert subscriber.close_reason is CloseReason.ERROR
        assert recorder.records == []
        assert len(recorder.errors) == 1

    async def test_handler_exception_closes_with_error(self, fake_collection, recorder):
        fake_collection.next_stream([change_event("delete", 1)])

        def explode(record):
            raise ValueError("handler broke")

        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(explode, recorder.on_error)

        await subscriber.wait_closed()

        assert subscriber.close_reason is CloseReason.ERROR
        assert subscriber.last_token is None
        assert isinstance(recorder.errors[0].__cause__, ValueError)

    async def test_invalidate_closes_normally(self, fake_collection, recorder):
        stream = fake_collection.next_stream(
            [change_event("drop"), change_event("invalidate")]
        )
        stream.push(change_event("insert", 9, full_document={"_id": 9}))
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record, recorder.on_error)

        await subscriber.wait_closed()

        assert subscriber.close_reason is CloseReason.NORMAL
        assert subscriber.invalidated
        assert [r.operation for r in recorder.records] == [OperationType.INVALIDATE]
        assert recorder.errors == []

    async def test_stream_end_closes_normally(self, fake_collection, recorder):
        stream = fake_collection.next_stream()
        stream.end()
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record)

        await subscriber.wait_closed()

        assert subscriber.close_reason is CloseReason.NORMAL
        assert not subscriber.invalidated

    async def test_start_twice_raises(self, fake_collection, recorder):
        fake_collection.next_stream()
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record)

        with pytest.raises(SubscriptionStateError):
            subscriber.start(recorder.on_record)

        await subscriber.stop()

    async def test_closed_subscriber_cannot_restart(self, fake_collection, recorder):
        subscriber = FeedSubscriber(fake_collection)
        await subscriber.stop()

        assert subscriber.close_reason is CloseReason.NORMAL
        with pytest.raises(SubscriptionStateError):
            subscriber.start(recorder.on_record)

    async def test_stop_closes_stream_and_is_idempotent(self, fake_collection, recorder):
        stream = fake_collection.next_stream()
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record, recorder.on_error)
        await wait_for(lambda: subscriber.state is SubscriptionState.ACTIVE)

        await subscriber.stop()
        await subscriber.stop()

        assert subscriber.close_reason is CloseReason.NORMAL
        assert stream.closed
        assert recorder.errors == []

    async def test_no_records_after_stop(self, fake_collection, recorder):
        stream = fake_collection.next_stream()
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record)
        await wait_for(lambda: subscriber.state is SubscriptionState.ACTIVE)

        await subscriber.stop()
        stream.push(change_event("insert", 1, full_document={"_id": 1}))
        await settle()

        assert recorder.records == []

    async def test_resume_token_passed_to_watch(self, fake_collection, recorder):
        fake_collection.next_stream()
        token = {"_data": "8263"}
        subscriber = FeedSubscriber(fake_collection, resume_token=token, max_await_time_ms=500)
        subscriber.start(recorder.on_record)
        await wait_for(lambda: bool(fake_collection.watch_calls))

        call = fake_collection.watch_calls[0]
        assert call["resume_after"] == token
        assert call["full_document"] == "updateLookup"
        assert call["max_await_time_ms"] == 500
        assert subscriber.last_token == token

        await subscriber.stop()

    async def test_fresh_subscription_omits_resume_after(self, fake_collection, recorder):
        fake_collection.next_stream()
        subscriber = FeedSubscriber(fake_collection)
        subscriber.start(recorder.on_record)
        await wait_for(lambda: bool(fake_collection.watch_calls))

        assert "resume_after" not in fake_collection.watch_calls[0]
        await subscriber.stop()

    async def test_run_consumes_in_calling_task(self, fake_collection, recorder):
        fake_collection.next_stream([change_event("delete", 3), change_event("invalidate")])
        subscriber = FeedSubscriber(fake_collection)

        await subscriber.run(recorder.on_record)

        assert [r.operation for r in recorder.records] == [
            OperationType.DELETE,
            OperationType.INVALIDATE,
        ]
        assert subscriber.is_closed
