"""Collection registry - which collection tables this process has verified.

Each collection is backed by one table named ``table_prefix + collection``.
Before any read or write the store asks the registry to make sure that
table exists.  The first call for a collection issues the dialect's
``CREATE TABLE IF NOT EXISTS``; after it succeeds the collection is
``VERIFIED`` for the rest of the process and later calls return without
touching the backend.

State machine (per collection)::

    UNKNOWN ──ensure_table()──► VERIFYING ──create ok──► VERIFIED (terminal)
                                    │
                                    └──create failed──► UNKNOWN (error raised, nothing cached)

Concurrency:
    The map is a plain ``dict``.  Lookups and the ``VERIFYING`` mark are
    single atomic operations with no lock, so callers never contend on the
    fast path.  Only the two completion writes (mark ``VERIFIED``, clear a
    failed mark) share a short lock, so a failing caller can never clear a
    ``VERIFIED`` that a concurrent caller just stored.  Two callers
    racing on the same unverified collection may both issue the create
    statement; that is harmless because the statement is idempotent.

Guardrails:
    Collection names are concatenated into the table name without escaping
    or validation.  A name the backend cannot accept fails at create time
    with ``TableCreationError``; a hostile name is the caller's problem.
"""

from __future__ import annotations

import threading
from enum import Enum

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .connection import ConnectionManager
from .dialect import get_dialect
from .errors import TableCreationError
from .logging import get_logger

logger = get_logger(__name__)


class CollectionState(str, Enum):
    """Verification state of one collection's table."""

    UNKNOWN = "unknown"
    VERIFYING = "verifying"
    VERIFIED = "verified"


class CollectionRegistry:
    """Per-process cache of verified collection tables.

    Args:
        connections: Source of the shared engine.
        table_prefix: Prepended to every collection name.
    """

    def __init__(self, connections: ConnectionManager, table_prefix: str = ""):
        self._connections = connections
        self.table_prefix = table_prefix
        self._states: dict[str, CollectionState] = {}
        self._completion_lock = threading.Lock()

    def table_name(self, collection: str) -> str:
        """Physical table for *collection* (unescaped)."""
        return self.table_prefix + collection

    def state(self, collection: str) -> CollectionState:
        return self._states.get(collection, CollectionState.UNKNOWN)

    def is_verified(self, collection: str) -> bool:
        return self._states.get(collection) is CollectionState.VERIFIED

    def verified_collections(self) -> list[str]:
        """Collections whose table is known to exist, sorted."""
        return sorted(
            name for name, state in self._states.copy().items()
            if state is CollectionState.VERIFIED
        )

    def ensure_table(self, collection: str) -> None:
        """Create the collection's table unless this process already did.

        Raises:
            TableCreationError: the backend rejected the create statement.
        """
        if self._states.get(collection) is CollectionState.VERIFIED:
            return

        self._states.setdefault(collection, CollectionState.VERIFYING)
        table = self.table_name(collection)
        engine = self._connections.acquire()
        dialect = get_dialect(engine.dialect.name)

        try:
            with engine.begin() as conn:
                conn.execute(text(dialect.create_table(table)))
        except SQLAlchemyError as e:
            with self._completion_lock:
                if self._states.get(collection) is not CollectionState.VERIFIED:
                    self._states.pop(collection, None)
            logger.error("table_creation_failed", collection=collection, table=table, error=str(e))
            raise TableCreationError(
                f"Cannot create table {table!r} for collection {collection!r}",
                cause=e,
            ).with_context(collection=collection, table=table) from e

        with self._completion_lock:
            self._states[collection] = CollectionState.VERIFIED
        logger.debug("collection_verified", collection=collection, table=table)


__all__ = [
    "CollectionRegistry",
    "CollectionState",
]
