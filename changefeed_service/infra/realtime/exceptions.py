"""Errors raised by the change feed pipeline."""

from __future__ import annotations

from typing import Any


class ChangeFeedError(Exception):
    """A change feed subscription failed and was closed.

    Covers transient conditions (network drop, cursor expiry, primary
    stepdown, resume token no longer in the oplog). The surrounding process
    may start a new subscription from ``resume_token``.

    Attributes:
        collection_id: Collection the failed subscription watched.
        resume_token: Last token handed off before the failure, if any.
        resumable: False when resuming from ``resume_token`` is known to fail
            and a new subscription has to start from "now".
    """

    def __init__(
        self,
        message: str,
        *,
        collection_id: str | None = None,
        resume_token: Any = None,
        resumable: bool = True,
    ) -> None:
        super().__init__(message)
        self.collection_id = collection_id
        self.resume_token = resume_token
        self.resumable = resumable


class ChangeFeedInvalidatedError(ChangeFeedError):
    """The watched collection was dropped or renamed; the feed cannot resume."""

    def __init__(self, message: str, *, collection_id: str | None = None) -> None:
        super().__init__(message, collection_id=collection_id, resumable=False)


class SubscriptionStateError(RuntimeError):
    """An operation is not valid in the subscription's current state."""
