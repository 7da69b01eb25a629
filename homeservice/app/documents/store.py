"""Document store abstraction shared by the billing repositories."""
from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()

SUPPORTED_OPERATORS = ("==", "in", "<", "<=", ">", ">=")


class IndexUnavailableError(RuntimeError):
    """Raised when the store cannot serve an ordered query efficiently."""


class StoreUnavailableError(RuntimeError):
    """Raised when the backing database cannot be reached."""


@dataclass(frozen=True)
class FieldFilter:
    """Equality or range predicate on a single top-level document field."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in SUPPORTED_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class StoredDocument:
    """A document together with its identifier."""

    id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


class DocumentStore(Protocol):
    """Per-record persistence without multi-document transactions."""

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        ...

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        precondition: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Merge ``fields`` into the document.

        Returns ``False`` without writing when the document is missing or when
        any ``precondition`` key differs from the stored value (``None`` matches
        an absent field).
        """

    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        ...


def query_sorted(
    store: DocumentStore,
    collection: str,
    filters: Sequence[FieldFilter],
    *,
    order_by: str,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[StoredDocument]:
    """Run an ordered query, sorting client-side when the store has no index for it."""

    try:
        return store.query(
            collection,
            filters,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )
    except IndexUnavailableError:
        logger.warning(
            "Ordered query unavailable, sorting in memory",
            extra={"collection": collection, "order_by": order_by},
        )
    documents = store.query(collection, filters)
    documents = sort_documents(documents, order_by, descending=descending)
    return documents[:limit] if limit is not None else documents


def sort_documents(
    documents: Iterable[StoredDocument],
    order_by: str,
    *,
    descending: bool = False,
) -> List[StoredDocument]:
    # Documents missing the field sort first in ascending order, as an index would.
    def _key(document: StoredDocument) -> Tuple[int, Any]:
        value = document.data.get(order_by)
        if value is None:
            return (0, "")
        if isinstance(value, datetime):
            return (1, value.isoformat())
        return (1, value)

    return sorted(documents, key=_key, reverse=descending)


def matches_filters(data: Mapping[str, Any], filters: Sequence[FieldFilter]) -> bool:
    for item in filters:
        value = data.get(item.field, _MISSING)
        if value is _MISSING:
            return False
        if not _compare(value, item.op, item.value):
            return False
    return True


def _compare(value: Any, op: str, expected: Any) -> bool:
    if op == "==":
        return value == expected
    if op == "in":
        return value in expected
    try:
        if op == "<":
            return value < expected
        if op == "<=":
            return value <= expected
        if op == ">":
            return value > expected
        return value >= expected
    except TypeError:
        return False


class InMemoryDocumentStore:
    """Thread-safe in-memory store suitable for tests and local development.

    Ordered queries are only served for ``indexed_fields``; any other ordering
    raises :class:`IndexUnavailableError` the way a hosted document database
    does when a composite index is missing.
    """

    def __init__(self, *, indexed_fields: Iterable[str] = ()) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._indexed_fields = set(indexed_fields)
        self._lock = threading.Lock()

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(dict(data))

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        precondition: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            if document is None:
                return False
            for key, expected in (precondition or {}).items():
                if document.get(key) != expected:
                    return False
            document.update(copy.deepcopy(dict(fields)))
            return True

    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        if order_by is not None and order_by not in self._indexed_fields:
            raise IndexUnavailableError(f"No index for {collection}.{order_by}")
        with self._lock:
            documents = [
                StoredDocument(id=doc_id, data=copy.deepcopy(data))
                for doc_id, data in self._collections.get(collection, {}).items()
                if matches_filters(data, filters)
            ]
        if order_by is not None:
            documents = sort_documents(documents, order_by, descending=descending)
        return documents[:limit] if limit is not None else documents

    def clear(self) -> None:
        with self._lock:
            self._collections.clear()
