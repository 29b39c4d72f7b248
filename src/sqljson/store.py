"""
Document store - keyed JSON documents in per-collection tables.

Manifesto:
    A collection is a table, a document is a row: ``id`` (the key), ``j``
    (the JSON text) and ``xxh`` (a 64-bit digest of JSON + key).  The store
    adds nothing the backend can do itself: uniqueness of keys and digests,
    upsert and ignore semantics, timestamps are all enforced in SQL.

    - **Lazy schema:** a collection's table is created on first touch
    - **Content addressed:** every write carries its digest
    - **Short borrows:** each operation takes a pooled connection and
      returns it before the call ends

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        DocumentStore                          │
        ├──────────────────────────────────────────────────────────────┤
        │  read / read_decoded / stat                                   │
        │  write / write_if_changed ──► observers (best effort)         │
        │  list_keys / list_keys_with_prefix / list_keys_where_unsafe   │
        └───────────────┬──────────────────────────────┬───────────────┘
                        │ ensure_table()               │ acquire()
                        ▼                              ▼
              ┌──────────────────┐          ┌────────────────────┐
              │CollectionRegistry│─acquire─►│ ConnectionManager  │
              │ name → state     │          │ one pooled Engine  │
              └──────────────────┘          └────────────────────┘

    Write path::

        raw    = codec.encode(value)            # tab-indented, sorted keys
        digest = compute_digest(raw, key)       # xxh64(raw + key)
        write:            INSERT … ON CONFLICT(id) overwrite j, xxh
        write_if_changed: INSERT … ON CONFLICT(id) update only if xxh differs,
                          any unique violation silently ignored

Examples:
    >>> store = DocumentStore(ConnectionManager("memory"), table_prefix="doc_")
    >>> store.write("inventory", "item-42", {"qty": 10})
    >>> store.read_decoded("inventory", "item-42")
    {'qty': 10}
    >>> store.list_keys("inventory")
    ['item-42']

Guardrails:
    ❌ DON'T: pass untrusted input to ``list_keys_where_unsafe``
    ✅ DO: use ``list_keys_with_prefix`` or filter in Python

    ❌ DON'T: rely on observers for delivery guarantees
    ✅ DO: treat them as notifications; a failing observer is logged and skipped

    Known edge case: ``write_if_changed`` drops a write silently when its
    digest already belongs to another key's row.

Tags:
    document-store, json, upsert, deduplication, sqljson
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import codec
from .connection import ConnectionManager
from .dialect import KEY_MAX_BYTES, Dialect, get_dialect
from .errors import (
    ConstraintViolationError,
    DocumentNotFoundError,
    InvalidKeyError,
    QueryError,
    SerializationError,
)
from .hashing import compute_digest
from .logging import get_logger
from .registry import CollectionRegistry

if TYPE_CHECKING:
    from .settings import DocStoreSettings

logger = get_logger(__name__)

WriteObserver = Callable[[str, str, Any], None]
"""``(collection, key, original_value) -> None``, called after each write."""


@dataclass(frozen=True)
class DocumentInfo:
    """Stored metadata of one document."""

    collection: str
    key: str
    digest: int
    create_time: datetime | None
    update_time: datetime | None


class DocumentStore:
    """Read, write and enumerate JSON documents.

    Args:
        connections: Shared connection manager.
        table_prefix: Prepended to collection names to form table names.
        after_write: Optional observer registered at construction.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        *,
        table_prefix: str = "",
        after_write: WriteObserver | None = None,
    ):
        self.connections = connections
        self.registry = CollectionRegistry(connections, table_prefix)
        self._observers: list[WriteObserver] = []
        if after_write is not None:
            self.add_observer(after_write)

    @classmethod
    def from_settings(cls, settings: DocStoreSettings, **kwargs: Any) -> DocumentStore:
        """Build a store (and its connection manager) from settings."""
        return cls(
            ConnectionManager.from_settings(settings),
            table_prefix=settings.table_prefix,
            **kwargs,
        )

    def table_name(self, collection: str) -> str:
        return self.registry.table_name(collection)

    # ── observers ────────────────────────────────────────────────────────

    def add_observer(self, observer: WriteObserver) -> None:
        """Register a callback fired after every successful write.

        Delivery is synchronous, in registration order, and best effort:
        an exception raised by an observer is logged and discarded, and it
        never reaches the writer.  Observers also fire when
        ``write_if_changed`` left the row untouched.
        """
        self._observers.append(observer)

    def remove_observer(self, observer: WriteObserver) -> None:
        self._observers.remove(observer)

    def _notify(self, collection: str, key: str, value: Any) -> None:
        for observer in list(self._observers):
            try:
                observer(collection, key, value)
            except Exception as e:
                logger.warning(
                    "observer_failed",
                    collection=collection,
                    key=key,
                    observer=getattr(observer, "__qualname__", repr(observer)),
                    error=str(e),
                )

    # ── reads ────────────────────────────────────────────────────────────

    def read(self, collection: str, key: str) -> bytes:
        """Return the stored JSON bytes of a document.

        Raises:
            DocumentNotFoundError: no row for *key*, or its payload is NULL
            TableCreationError: the collection table could not be created
            QueryError: the backend rejected the query
        """
        table = self._prepare(collection)
        _, dialect = self._borrow()
        row = self._fetch_one(collection, key, table, dialect.select_document(table))
        if row is None or row["j"] is None:
            raise DocumentNotFoundError("Document not exists").with_context(
                collection=collection, key=key, table=table
            )
        payload = row["j"]
        return payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)

    def read_decoded(self, collection: str, key: str, target: Any = None) -> Any:
        """Read a document and decode it.

        *target* is ``None`` for plain JSON values, or any type pydantic can
        validate into (a ``BaseModel`` subclass, a dataclass,
        ``dict[str, int]``, ...).

        Raises:
            SerializationError: stored JSON does not decode into *target*
        """
        raw = self.read(collection, key)
        try:
            return codec.decode(raw, target)
        except SerializationError as e:
            e.with_context(collection=collection, key=key)
            raise

    def stat(self, collection: str, key: str) -> DocumentInfo:
        """Return the stored digest and timestamps of a document."""
        table = self._prepare(collection)
        _, dialect = self._borrow()
        row = self._fetch_one(collection, key, table, dialect.select_info(table))
        if row is None:
            raise DocumentNotFoundError("Document not exists").with_context(
                collection=collection, key=key, table=table
            )
        return DocumentInfo(
            collection=collection,
            key=row["id"],
            digest=dialect.decode_digest(row["xxh"]),
            create_time=dialect.parse_timestamp(row["create_time"]),
            update_time=dialect.parse_timestamp(row["update_time"]),
        )

    # ── writes ───────────────────────────────────────────────────────────

    def write(self, collection: str, key: str, value: Any) -> None:
        """Insert or overwrite a document.

        On a key conflict ``j`` and ``xxh`` are replaced unconditionally.

        Raises:
            ConstraintViolationError: the digest already belongs to another key
            SerializationError: *value* cannot be encoded
        """
        self._check_key(key)
        table = self._prepare(collection)
        raw = codec.encode(value)
        digest = compute_digest(raw, key)
        engine, dialect = self._borrow()

        try:
            with engine.begin() as conn:
                conn.execute(
                    text(dialect.upsert(table)),
                    {"id": key, "j": raw.decode("utf-8"), "xxh": dialect.encode_digest(digest)},
                )
        except IntegrityError as e:
            raise ConstraintViolationError(
                f"Unique constraint rejected document {key!r}",
                cause=e,
            ).with_context(collection=collection, key=key, table=table, digest=digest) from e
        except SQLAlchemyError as e:
            raise QueryError(f"Write of {key!r} failed", cause=e).with_context(
                collection=collection, key=key, table=table
            ) from e

        logger.debug("document_written", collection=collection, key=key, digest=digest)
        self._notify(collection, key, value)

    def write_if_changed(self, collection: str, key: str, value: Any) -> bool:
        """Write a document only when its content differs from the stored row.

        A new key is inserted; an existing key is updated only if the digest
        changed.  Unique violations are silently ignored, so a payload whose
        digest already belongs to a *different* key is dropped without an
        error.  Observers fire whether or not the row changed.

        Returns:
            True when the backend reported an inserted or updated row.  MySQL
            reports matched rows, so an unchanged row may still count there.
        """
        self._check_key(key)
        table = self._prepare(collection)
        raw = codec.encode(value)
        digest = compute_digest(raw, key)
        engine, dialect = self._borrow()

        changed = False
        try:
            with engine.begin() as conn:
                result = conn.execute(
                    text(dialect.insert_if_changed(table)),
                    {"id": key, "j": raw.decode("utf-8"), "xxh": dialect.encode_digest(digest)},
                )
                changed = result.rowcount > 0
        except IntegrityError as e:
            logger.debug(
                "write_ignored",
                collection=collection,
                key=key,
                digest=digest,
                error=str(e.orig),
            )
        except SQLAlchemyError as e:
            raise QueryError(f"Write of {key!r} failed", cause=e).with_context(
                collection=collection, key=key, table=table
            ) from e

        if changed:
            logger.debug("document_written", collection=collection, key=key, digest=digest)
        self._notify(collection, key, value)
        return changed

    # ── key enumeration ──────────────────────────────────────────────────

    def list_keys(self, collection: str) -> list[str]:
        """All keys of a collection, in no guaranteed order."""
        table = self._prepare(collection)
        _, dialect = self._borrow()
        return self._fetch_keys(collection, table, dialect.select_keys(table))

    def list_keys_with_prefix(self, collection: str, prefix: str) -> list[str]:
        """Keys starting with *prefix*; the prefix is bound as a parameter."""
        table = self._prepare(collection)
        _, dialect = self._borrow()
        escaped = prefix.replace("!", "!!").replace("%", "!%").replace("_", "!_")
        return self._fetch_keys(
            collection, table, dialect.select_keys_like(table), {"pattern": escaped + "%"}
        )

    def list_keys_where_unsafe(self, collection: str, where_sql: str) -> list[str]:
        """Keys of rows matching a raw SQL ``WHERE`` fragment.

        UNSAFE: *where_sql* is appended to ``SELECT id FROM <table> WHERE``
        verbatim, with no validation or escaping.  Only pass fragments you
        wrote yourself; never pass user input.
        """
        table = self._prepare(collection)
        _, dialect = self._borrow()
        return self._fetch_keys(collection, table, dialect.select_keys_where(table, where_sql))

    # ── helpers ──────────────────────────────────────────────────────────

    def _prepare(self, collection: str) -> str:
        self.registry.ensure_table(collection)
        return self.table_name(collection)

    @staticmethod
    def _check_key(key: str) -> None:
        if not isinstance(key, str) or not key:
            raise InvalidKeyError(key, "Document key must be a non-empty string")
        if len(key.encode("utf-8")) > KEY_MAX_BYTES:
            raise InvalidKeyError(key, f"Document key exceeds {KEY_MAX_BYTES} bytes")

    def _borrow(self) -> tuple[Engine, Dialect]:
        engine = self.connections.acquire()
        return engine, get_dialect(engine.dialect.name)

    def _fetch_one(self, collection: str, key: str, table: str, statement: str) -> Any:
        engine = self.connections.acquire()
        try:
            with engine.connect() as conn:
                return conn.execute(text(statement), {"id": key}).mappings().first()
        except SQLAlchemyError as e:
            raise QueryError(f"Read of {key!r} failed", cause=e).with_context(
                collection=collection, key=key, table=table
            ) from e

    def _fetch_keys(
        self,
        collection: str,
        table: str,
        statement: str,
        params: dict[str, Any] | None = None,
    ) -> list[str]:
        engine = self.connections.acquire()
        try:
            with engine.connect() as conn:
                rows = conn.execute(text(statement), params or {}).mappings().all()
        except SQLAlchemyError as e:
            raise QueryError("Key listing failed", cause=e).with_context(
                collection=collection, table=table
            ) from e
        return [row["id"] for row in rows]


__all__ = [
    "DocumentInfo",
    "DocumentStore",
    "WriteObserver",
]
