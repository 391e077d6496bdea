"""Test doubles shared across the suite."""

from .mongo import (
    FakeChangeStream,
    FakeCollection,
    RecordingChannel,
    change_event,
)

__all__ = [
    "FakeChangeStream",
    "FakeCollection",
    "RecordingChannel",
    "change_event",
]
