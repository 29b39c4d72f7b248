"""
Structured error types for the sqljson document store.

Every failure the store can report to a caller is a ``DocStoreError``
subclass carrying a category, a retryable flag, structured context
(collection, key, table) and the chained backend exception.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure the caller can act on
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry the collection/key they concern
    - **Error Chaining:** The SQLAlchemy/driver exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       DocStoreError                              │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError        DatabaseError          ValidationError    │
        │  (retryable=True)      (DATABASE)             (VALIDATION)       │
        │       │                     │                      │             │
        │  ConnectionUnavailable  TableCreationError     InvalidKeyError   │
        │  (never surfaced)       QueryError                               │
        │                         ConstraintViolationError                 │
        │                                                                  │
        │  DocumentNotFoundError  SerializationError                       │
        │  (NOT_FOUND)            (SERIALIZATION)                          │
        └─────────────────────────────────────────────────────────────────┘

Propagation:
    Table creation, read, write and list failures are raised synchronously
    to the immediate caller. ``ConnectionUnavailableError`` is only built
    inside the connection retry loop, where it is logged and the attempt is
    repeated; it never reaches a caller. Errors raised by write observers
    are logged and discarded.

Examples:
    >>> error = DocumentNotFoundError("Document not exists").with_context(
    ...     collection="inventory", key="item-42"
    ... )
    >>> error.context.collection
    'inventory'
    >>> error.retryable
    False

Tags:
    error-handling, exception-hierarchy, sqljson
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by their typical retry behavior:
    - **Infrastructure (usually transient):** NETWORK, DATABASE
    - **Data errors:** NOT_FOUND, SERIALIZATION, VALIDATION
    - **Internal errors:** INTERNAL, UNKNOWN
    """

    NETWORK = "NETWORK"
    DATABASE = "DATABASE"
    NOT_FOUND = "NOT_FOUND"
    SERIALIZATION = "SERIALIZATION"
    VALIDATION = "VALIDATION"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured context attached to a DocStoreError.

    Attributes:
        collection: Logical collection name
        key: Document key
        table: Physical table name (prefix + collection)
        metadata: Additional key-value pairs
    """

    collection: str | None = None
    key: str | None = None
    table: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for name in ("collection", "key", "table"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DocStoreError(Exception):
    """
    Base exception for all sqljson errors.

    All DocStoreError instances carry:
    - **category:** ErrorCategory enum for classification
    - **retryable:** Boolean indicating if the operation can be retried
    - **retry_after:** Optional seconds to wait before retry
    - **context:** ErrorContext with collection/key/table
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable``.

    Examples:
        >>> error = DocStoreError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DocStoreError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueryError("Read failed", cause=e).with_context(
                collection="users", key="alice"
            )
        """
        for name, value in kwargs.items():
            if name != "metadata" and hasattr(self.context, name):
                setattr(self.context, name, value)
            else:
                self.context.metadata[name] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS
# =============================================================================


class TransientError(DocStoreError):
    """Temporary error that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class ConnectionUnavailableError(TransientError):
    """
    The backend could not be reached while establishing the engine.

    Only the connection manager builds this error: it logs it and retries
    after a delay instead of raising it.
    """

    default_category = ErrorCategory.DATABASE


# =============================================================================
# DATABASE ERRORS
# =============================================================================


class DatabaseError(DocStoreError):
    """Database statement or transaction error."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class TableCreationError(DatabaseError):
    """The backend rejected ``CREATE TABLE IF NOT EXISTS`` for a collection."""

    pass


class QueryError(DatabaseError):
    """A read, write or list statement failed."""

    pass


class ConstraintViolationError(DatabaseError):
    """
    A unique constraint on ``id`` or ``xxh`` rejected a write.

    Raised by ``DocumentStore.write`` when the digest of the new payload
    already belongs to a different key.
    """

    pass


# =============================================================================
# DOCUMENT ERRORS
# =============================================================================


class DocumentNotFoundError(DocStoreError):
    """No row for the key, or the row's payload column is NULL."""

    default_category = ErrorCategory.NOT_FOUND
    default_retryable = False


class SerializationError(DocStoreError):
    """Encoding a value to JSON or decoding stored JSON failed."""

    default_category = ErrorCategory.SERIALIZATION
    default_retryable = False


class ValidationError(DocStoreError):
    """Caller input rejected before any statement ran."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class InvalidKeyError(ValidationError):
    """Document key is empty or longer than the ``id`` column allows."""

    def __init__(self, key: str, message: str | None = None):
        super().__init__(
            message or f"Invalid document key: {key!r}",
            field="key",
            value=key,
        )


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, DocStoreError):
        return error.retryable
    return isinstance(error, (ConnectionError, OSError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, DocStoreError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, (TypeError, ValueError)):
        return ErrorCategory.SERIALIZATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DocStoreError",
    "TransientError",
    "ConnectionUnavailableError",
    "DatabaseError",
    "TableCreationError",
    "QueryError",
    "ConstraintViolationError",
    "DocumentNotFoundError",
    "SerializationError",
    "ValidationError",
    "InvalidKeyError",
    "is_retryable",
    "categorize_error",
]
