"""sqljson - a JSON document store on a relational backend.

Each collection is one table, each document one row holding the JSON text
and a 64-bit content digest.  Tables are created lazily, the backend
engine is created lazily and retried until it answers, and writes are
deduplicated by digest.

Quick start::

    from sqljson import ConnectionManager, DocumentStore

    store = DocumentStore(ConnectionManager("sqlite:///docs.db"), table_prefix="doc_")
    store.write("inventory", "item-42", {"qty": 10})
    store.read_decoded("inventory", "item-42")        # {'qty': 10}
"""

from .connection import ConnectionInfo, ConnectionManager
from .equality import deep_equal
from .errors import (
    ConnectionUnavailableError,
    ConstraintViolationError,
    DatabaseError,
    DocStoreError,
    DocumentNotFoundError,
    InvalidKeyError,
    QueryError,
    SerializationError,
    TableCreationError,
)
from .hashing import compute_digest
from .registry import CollectionRegistry, CollectionState
from .store import DocumentInfo, DocumentStore, WriteObserver

__version__ = "0.1.0"

__all__ = [
    "CollectionRegistry",
    "CollectionState",
    "ConnectionInfo",
    "ConnectionManager",
    "ConnectionUnavailableError",
    "ConstraintViolationError",
    "DatabaseError",
    "DocStoreError",
    "DocumentInfo",
    "DocumentNotFoundError",
    "DocumentStore",
    "InvalidKeyError",
    "QueryError",
    "SerializationError",
    "TableCreationError",
    "WriteObserver",
    "compute_digest",
    "deep_equal",
]
