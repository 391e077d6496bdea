"""Canonical change records.

A ``ChangeRecord`` is the normalized, pipeline-internal form of one MongoDB
change stream event. It is built once per upstream event, never mutated, and
dropped as soon as the broadcast hub has encoded it for its channels.

Native events map as follows:

    insert / update / replace / delete  ->  the matching OperationType
    invalidate                          ->  OperationType.INVALIDATE (terminal)
    drop / rename / dropDatabase / ...  ->  skipped; MongoDB follows them with
                                            an invalidate event for a
                                            collection-scoped stream
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bson import ObjectId
from fastapi.encoders import jsonable_encoder

ORDER_CHANGED_EVENT = "orderChanged"


class OperationType(str, Enum):
    """Operations carried by a change record."""

    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    INVALIDATE = "invalidate"


_DATA_OPERATIONS = frozenset(
    {OperationType.INSERT, OperationType.UPDATE, OperationType.REPLACE}
)


@dataclass(frozen=True, slots=True)
class UpdateDescription:
    """Sparse description of the fields touched by an update."""

    updated_fields: dict[str, Any] = field(default_factory=dict)
    removed_fields: tuple[str, ...] = ()
    truncated_arrays: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_native(cls, raw: dict[str, Any] | None) -> UpdateDescription | None:
        if not raw:
            return None
        return cls(
            updated_fields=dict(raw.get("updatedFields") or {}),
            removed_fields=tuple(raw.get("removedFields") or ()),
            truncated_arrays=tuple(raw.get("truncatedArrays") or ()),
        )

    def to_native(self) -> dict[str, Any]:
        return {
            "updatedFields": self.updated_fields,
            "removedFields": list(self.removed_fields),
            "truncatedArrays": list(self.truncated_arrays),
        }


@dataclass(frozen=True, slots=True)
class ChangeRecord:
    """One normalized change event.

    Attributes:
        operation: What happened to the document.
        collection_id: Logical collection the change applies to.
        namespace: ``{"db": ..., "coll": ...}`` as reported by the server.
        document_key: ``_id`` of the affected document; None for invalidate.
        full_document: Post-operation document for insert/update/replace when
            obtainable; always None for delete and invalidate.
        changed_fields: Field delta for update events only.
        sequence_token: Resume token of the event. Used only to resume the
            feed; excluded from equality and never sent to clients.
    """

    operation: OperationType
    collection_id: str
    document_key: Any = None
    full_document: dict[str, Any] | None = None
    changed_fields: UpdateDescription | None = None
    namespace: dict[str, str] = field(default_factory=dict)
    sequence_token: Any = field(default=None, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.operation is OperationType.INVALIDATE

    def with_full_document(self, document: dict[str, Any] | None) -> ChangeRecord:
        """Return a copy carrying ``document`` as the post-image."""
        return ChangeRecord(
            operation=self.operation,
            collection_id=self.collection_id,
            document_key=self.document_key,
            full_document=document,
            changed_fields=self.changed_fields,
            namespace=self.namespace,
            sequence_token=self.sequence_token,
        )

    def to_message(self) -> dict[str, Any]:
        """Build the JSON-safe ``orderChanged`` payload pushed to clients."""
        payload = {
            "type": ORDER_CHANGED_EVENT,
            "op": self.operation.value,
            "ns": self.namespace or None,
            "documentKey": self.document_key,
            "fullDocument": self.full_document,
            "updateDescription": (
                self.changed_fields.to_native() if self.changed_fields else None
            ),
        }
        return jsonable_encoder(payload, custom_encoder={ObjectId: str})


def normalize_change(raw: dict[str, Any], collection_id: str) -> ChangeRecord | None:
    """Convert a native change stream document into a ``ChangeRecord``.

    Args:
        raw: The document yielded by the driver's change stream.
        collection_id: Logical collection name the stream is scoped to.

    Returns:
        The record, or None when the event has no counterpart in
        ``OperationType`` (drop, rename, DDL events) and should be skipped.
    """
    native_op = raw.get("operationType")
    try:
        operation = OperationType(native_op)
    except ValueError:
        return None

    document_key = None
    native_key = raw.get("documentKey")
    if isinstance(native_key, dict):
        document_key = native_key.get("_id")

    full_document = None
    if operation in _DATA_OPERATIONS:
        full_document = raw.get("fullDocument")

    changed_fields = None
    if operation is OperationType.UPDATE:
        changed_fields = UpdateDescription.from_native(raw.get("updateDescription"))

    namespace = dict(raw.get("ns") or {})

    return ChangeRecord(
        operation=operation,
        collection_id=collection_id,
        document_key=document_key,
        full_document=full_document,
        changed_fields=changed_fields,
        namespace=namespace,
        sequence_token=raw.get("_id"),
    )
