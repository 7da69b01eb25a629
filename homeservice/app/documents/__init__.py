"""Document store interface and its implementations."""

from .postgres import PostgresDocumentStore
from .store import (
    DocumentStore,
    FieldFilter,
    IndexUnavailableError,
    InMemoryDocumentStore,
    StoredDocument,
    StoreUnavailableError,
    query_sorted,
)

__all__ = [
    "DocumentStore",
    "FieldFilter",
    "InMemoryDocumentStore",
    "IndexUnavailableError",
    "PostgresDocumentStore",
    "StoredDocument",
    "StoreUnavailableError",
    "query_sorted",
]
