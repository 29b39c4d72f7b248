"""SQL dialects for document tables.

Every collection table has the same logical layout on every backend::

    aid          auto-increment primary key (internal)
    id           VARCHAR(128), unique      - document key
    j            large text                - JSON payload
    xxh          64-bit integer, unique    - content digest
    create_time  set at insert
    update_time  refreshed when a write changes the row

A ``Dialect`` turns that layout into backend SQL: the idempotent
``CREATE TABLE IF NOT EXISTS``, the unconditional upsert used by
``write``, the change-only insert used by ``write_if_changed``, and the
key queries.  Statements use SQLAlchemy ``text()`` named parameters
(``:id``, ``:j``, ``:xxh``) so the driver's own paramstyle never leaks
into this module.

Manifesto:
    The store must behave the same on MySQL (the production target),
    PostgreSQL, and SQLite (tests, single-host deployments).  Backend
    syntax lives here and nowhere else.

    - **One interface:** ``Dialect`` protocol for all statement text
    - **Same semantics:** upsert / ignore / timestamps line up per backend
    - **Unsigned digests:** backends without ``BIGINT UNSIGNED`` store the
      digest's two's-complement image

Guardrails:
    ❌ Table names are quoted but NOT escaped or validated.  A collection
       name containing the quote character produces broken SQL, which the
       backend rejects when the table is created.
    ❌ ``select_keys_where`` splices caller SQL verbatim.

Tags:
    dialect, sql, mysql, postgresql, sqlite, sqljson
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .hashing import to_signed64, to_unsigned64

KEY_MAX_BYTES = 128


@runtime_checkable
class Dialect(Protocol):
    """Statement text for one backend."""

    @property
    def name(self) -> str:
        ...

    def quote_table(self, table: str) -> str:
        ...

    def create_table(self, table: str) -> str:
        ...

    def upsert(self, table: str) -> str:
        ...

    def insert_if_changed(self, table: str) -> str:
        ...

    def select_document(self, table: str) -> str:
        ...

    def select_info(self, table: str) -> str:
        ...

    def select_keys(self, table: str) -> str:
        ...

    def select_keys_where(self, table: str, where_sql: str) -> str:
        ...

    def select_keys_like(self, table: str) -> str:
        ...

    def encode_digest(self, digest: int) -> int:
        ...

    def decode_digest(self, value: Any) -> int:
        ...

    def parse_timestamp(self, value: Any) -> datetime | None:
        ...


class _CommonQueries:
    """Queries that read the same on every backend."""

    quote_char = '"'

    def quote_table(self, table: str) -> str:
        return f"{self.quote_char}{table}{self.quote_char}"

    def select_document(self, table: str) -> str:
        return f"SELECT j FROM {self.quote_table(table)} WHERE id = :id"

    def select_info(self, table: str) -> str:
        return (
            f"SELECT id, xxh, create_time, update_time "
            f"FROM {self.quote_table(table)} WHERE id = :id"
        )

    def select_keys(self, table: str) -> str:
        return f"SELECT id FROM {self.quote_table(table)}"

    def select_keys_where(self, table: str, where_sql: str) -> str:
        # Escape colons so text() does not read them as bind parameters;
        # the backend receives where_sql unchanged.
        return f"SELECT id FROM {self.quote_table(table)} WHERE " + where_sql.replace(":", "\\:")

    def select_keys_like(self, table: str) -> str:
        return f"SELECT id FROM {self.quote_table(table)} WHERE id LIKE :pattern ESCAPE '!'"

    def encode_digest(self, digest: int) -> int:
        return to_signed64(digest)

    def decode_digest(self, value: Any) -> int:
        return to_unsigned64(int(value))

    def parse_timestamp(self, value: Any) -> datetime | None:
        if value is None or isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value))


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect(_CommonQueries):
    """SQLite dialect - ``INTEGER`` digests, ``datetime('now')`` timestamps."""

    @property
    def name(self) -> str:
        return "sqlite"

    def create_table(self, table: str) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self.quote_table(table)} ("
            "aid INTEGER PRIMARY KEY AUTOINCREMENT, "
            f"id VARCHAR({KEY_MAX_BYTES}) NOT NULL UNIQUE, "
            "j TEXT NOT NULL, "
            "xxh INTEGER UNIQUE, "
            "create_time TEXT NOT NULL DEFAULT (datetime('now')), "
            "update_time TEXT NOT NULL DEFAULT (datetime('now')))"
        )

    def upsert(self, table: str) -> str:
        return (
            f"INSERT INTO {self.quote_table(table)} (id, j, xxh) VALUES (:id, :j, :xxh) "
            "ON CONFLICT (id) DO UPDATE SET j = excluded.j, xxh = excluded.xxh, "
            "update_time = CASE WHEN xxh IS excluded.xxh THEN update_time "
            "ELSE datetime('now') END"
        )

    def insert_if_changed(self, table: str) -> str:
        return (
            f"INSERT INTO {self.quote_table(table)} (id, j, xxh) VALUES (:id, :j, :xxh) "
            "ON CONFLICT (id) DO UPDATE SET j = excluded.j, xxh = excluded.xxh, "
            "update_time = datetime('now') "
            "WHERE xxh IS NOT excluded.xxh"
        )


class PostgreSQLDialect(_CommonQueries):
    """PostgreSQL dialect - ``BIGINT`` digests, ``NOW()`` timestamps."""

    @property
    def name(self) -> str:
        return "postgresql"

    def create_table(self, table: str) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self.quote_table(table)} ("
            "aid BIGSERIAL PRIMARY KEY, "
            f"id VARCHAR({KEY_MAX_BYTES}) NOT NULL UNIQUE, "
            "j TEXT NOT NULL, "
            "xxh BIGINT UNIQUE, "
            "create_time TIMESTAMPTZ NOT NULL DEFAULT NOW(), "
            "update_time TIMESTAMPTZ NOT NULL DEFAULT NOW())"
        )

    def upsert(self, table: str) -> str:
        return (
            f"INSERT INTO {self.quote_table(table)} AS d (id, j, xxh) VALUES (:id, :j, :xxh) "
            "ON CONFLICT (id) DO UPDATE SET j = EXCLUDED.j, xxh = EXCLUDED.xxh, "
            "update_time = CASE WHEN d.xxh IS DISTINCT FROM EXCLUDED.xxh THEN NOW() "
            "ELSE d.update_time END"
        )

    def insert_if_changed(self, table: str) -> str:
        return (
            f"INSERT INTO {self.quote_table(table)} AS d (id, j, xxh) VALUES (:id, :j, :xxh) "
            "ON CONFLICT (id) DO UPDATE SET j = EXCLUDED.j, xxh = EXCLUDED.xxh, "
            "update_time = NOW() "
            "WHERE d.xxh IS DISTINCT FROM EXCLUDED.xxh"
        )


class MySQLDialect(_CommonQueries):
    """MySQL / MariaDB dialect - ``BIGINT UNSIGNED`` digests, ``INSERT IGNORE``.

    ``update_time`` is maintained by ``ON UPDATE CURRENT_TIMESTAMP``, which
    MySQL only applies when a column value actually changes.
    """

    quote_char = "`"

    @property
    def name(self) -> str:
        return "mysql"

    def create_table(self, table: str) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self.quote_table(table)} ("
            "`aid` BIGINT NOT NULL AUTO_INCREMENT, "
            f"`id` VARCHAR({KEY_MAX_BYTES}) NOT NULL, "
            "`j` LONGTEXT NOT NULL, "
            "`xxh` BIGINT UNSIGNED, "
            "`create_time` DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP, "
            "`update_time` DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP "
            "ON UPDATE CURRENT_TIMESTAMP, "
            "PRIMARY KEY (`aid`), UNIQUE (`id`), UNIQUE (`xxh`)"
            ") ROW_FORMAT=COMPRESSED"
        )

    def upsert(self, table: str) -> str:
        return (
            f"INSERT INTO {self.quote_table(table)} (id, j, xxh) VALUES (:id, :j, :xxh) "
            "ON DUPLICATE KEY UPDATE j = :j, xxh = :xxh"
        )

    def insert_if_changed(self, table: str) -> str:
        return (
            f"INSERT IGNORE INTO {self.quote_table(table)} (id, j, xxh) VALUES (:id, :j, :xxh) "
            "ON DUPLICATE KEY UPDATE j = :j, xxh = :xxh"
        )

    def encode_digest(self, digest: int) -> int:
        return digest

    def decode_digest(self, value: Any) -> int:
        return int(value)


# =========================================================================
# Registry / Factory
# =========================================================================

_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),
    "mysql": MySQLDialect(),
    "mariadb": MySQLDialect(),
}


def get_dialect(name: str) -> Dialect:
    """Get a dialect by backend name (``engine.dialect.name``).

    Raises:
        ValueError: If ``name`` is not recognised.

    Example:
        >>> get_dialect("mysql").quote_table("doc_users")
        '`doc_users`'
    """
    key = name.lower()
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{name}'. "
            f"Supported: {sorted(set(_DIALECTS) - {'postgres', 'mariadb'})}"
        )
    return _DIALECTS[key]


def register_dialect(name: str, dialect: Dialect) -> None:
    """Register a custom dialect implementation."""
    _DIALECTS[name.lower()] = dialect


__all__ = [
    "KEY_MAX_BYTES",
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "MySQLDialect",
    "get_dialect",
    "register_dialect",
]
