"""Connection manager - one lazily created, pooled engine per store.

Every store operation borrows the same SQLAlchemy ``Engine``.  The engine
is built on first use and memoized for the life of the process.  If the
backend cannot be reached, the first caller keeps retrying with a linear,
capped delay and every other caller waits behind it: ``acquire()`` never
raises for an unreachable backend, it blocks.

Supported URLs
--------------
==================  ==========================================  ============
Input               Example                                     Backend
==================  ==========================================  ============
``memory``          ``memory`` or ``:memory:`` or ``None``       SQLite RAM
``sqlite``          ``sqlite:///path/to/docs.db``                SQLite file
``(file path)``     ``./data/docs.db``                           SQLite file
``mysql``           ``mysql://user:pw@host:3306/db``             MySQL
``postgresql``      ``postgresql://user:pw@host:5432/db``        PostgreSQL
``scheme+driver``   ``mysql+pymysql://...``                      as given
==================  ==========================================  ============

Usage
-----
::

    from sqljson.connection import ConnectionManager

    connections = ConnectionManager("mysql://app:secret@db/docs")
    engine = connections.acquire()      # blocks until the backend answers

Design
------
``acquire()`` is double-checked lazy initialization:

1. Unlocked read of the memoized engine (the fast path, never blocks).
2. Otherwise take the init lock, re-check, then loop: build the engine,
   run ``SELECT 1``; on failure log ``connection_failed``, sleep
   ``min(attempt * retry_step, retry_max)`` and try again.

There is no timeout and no cancellation.  Callers on latency-sensitive
paths should check ``is_established`` or wrap ``acquire()`` in their own
deadline.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .errors import ConnectionUnavailableError
from .logging import get_logger

if TYPE_CHECKING:
    from .settings import DocStoreSettings

logger = get_logger(__name__)

DEFAULT_MAX_OPEN = 100
DEFAULT_MAX_IDLE = 10
DEFAULT_RETRY_STEP = 1.0
DEFAULT_RETRY_MAX = 60.0


# ── ConnectionInfo ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConnectionInfo:
    """Metadata about the configured backend."""

    backend: str
    """Backend identifier: ``"sqlite"``, ``"mysql"``, ``"postgresql"``, ..."""

    persistent: bool
    """Whether data survives process exit."""

    url: str
    """SQLAlchemy URL with the password masked."""

    resolved_path: str | None = None
    """For file-based SQLite, the resolved absolute path."""

    @property
    def is_sqlite(self) -> bool:
        return self.backend == "sqlite"

    @property
    def is_mysql(self) -> bool:
        return self.backend in ("mysql", "mariadb")

    @property
    def is_postgres(self) -> bool:
        return self.backend == "postgresql"


# ── URL parsing ──────────────────────────────────────────────────────────


def _parse_url(db: str | None) -> tuple[str, str]:
    """Parse a database URL into (scheme, target).

    ``scheme`` is one of ``"memory"``, ``"sqlite"``, ``"file"``,
    ``"mysql"``, ``"postgresql"`` or ``"url"`` (a SQLAlchemy URL that
    already names its driver).
    """
    if db is None or db in ("", "memory", ":memory:", "sqlite://", "sqlite:///:memory:"):
        return "memory", ":memory:"

    if db.startswith("sqlite:///"):
        return "sqlite", db[len("sqlite:///"):]

    if db.startswith("mysql://"):
        return "mysql", "mysql+mysqlconnector://" + db[len("mysql://"):]

    if db.startswith(("postgresql://", "postgres://")):
        rest = db.split("://", 1)[1]
        return "postgresql", "postgresql+psycopg://" + rest

    if "://" in db:
        return "url", db

    return "file", db


def _resolve(db: str | None) -> tuple[str, ConnectionInfo]:
    """Return the SQLAlchemy URL and ``ConnectionInfo`` for *db*."""
    scheme, target = _parse_url(db)

    if scheme == "memory":
        return "sqlite://", ConnectionInfo(backend="sqlite", persistent=False, url="sqlite://")

    if scheme in ("sqlite", "file"):
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        resolved = str(path.resolve())
        sa_url = f"sqlite:///{resolved}"
        return sa_url, ConnectionInfo(
            backend="sqlite",
            persistent=True,
            url=sa_url,
            resolved_path=resolved,
        )

    url = make_url(target)
    return target, ConnectionInfo(
        backend=url.get_backend_name(),
        persistent=True,
        url=url.render_as_string(hide_password=True),
    )


def retry_delay(attempt: int, step: float = DEFAULT_RETRY_STEP, cap: float = DEFAULT_RETRY_MAX) -> float:
    """Seconds to wait after failed attempt number *attempt* (1-based).

    >>> [retry_delay(n) for n in (1, 2, 3, 59, 60, 61, 500)]
    [1.0, 2.0, 3.0, 59.0, 60.0, 60.0, 60.0]
    """
    return min(attempt * step, cap)


# ── Manager ──────────────────────────────────────────────────────────────


class ConnectionManager:
    """Owns the single pooled engine shared by every store operation.

    Args:
        url: Database URL, SQLite path or ``"memory"`` (see module docs).
        max_open: Most connections the pool opens at once.
        max_idle: Connections kept open while idle.
        retry_step: Delay added per failed connection attempt, in seconds.
        retry_max: Cap on the delay between attempts, in seconds.
        sleep: Called with the delay between attempts.
        engine_options: Extra keyword arguments for ``sqlalchemy.create_engine``.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        max_open: int = DEFAULT_MAX_OPEN,
        max_idle: int = DEFAULT_MAX_IDLE,
        retry_step: float = DEFAULT_RETRY_STEP,
        retry_max: float = DEFAULT_RETRY_MAX,
        sleep: Callable[[float], None] = time.sleep,
        engine_options: dict[str, Any] | None = None,
    ):
        if max_idle > max_open:
            raise ValueError("max_idle must not exceed max_open")
        self._sa_url, self.info = _resolve(url)
        self.max_open = max_open
        self.max_idle = max_idle
        self.retry_step = retry_step
        self.retry_max = retry_max
        self._sleep = sleep
        self._engine_options = dict(engine_options or {})
        self._engine: Engine | None = None
        self._lock = threading.Lock()
        self.failed_attempts = 0

    @classmethod
    def from_settings(cls, settings: DocStoreSettings, **kwargs: Any) -> ConnectionManager:
        """Build a manager from ``DocStoreSettings``."""
        return cls(
            settings.dsn,
            max_open=settings.max_open_conns,
            max_idle=settings.max_idle_conns,
            retry_step=settings.retry_step_seconds,
            retry_max=settings.retry_max_seconds,
            **kwargs,
        )

    @property
    def is_established(self) -> bool:
        """True once an engine has been created and verified."""
        return self._engine is not None

    def acquire(self) -> Engine:
        """Return the shared engine, creating it on first use.

        Blocks, possibly forever, while the backend is unreachable.  Never
        returns an engine that failed verification.
        """
        engine = self._engine
        if engine is not None:
            return engine

        with self._lock:
            if self._engine is None:
                self._engine = self._establish()
            return self._engine

    def dispose(self) -> None:
        """Close pooled connections and forget the engine."""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None

    def _establish(self) -> Engine:
        attempt = 0
        while True:
            engine: Engine | None = None
            try:
                engine = self._create_engine()
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
            except (SQLAlchemyError, OSError) as e:
                if engine is not None:
                    engine.dispose()
                attempt += 1
                self.failed_attempts += 1
                delay = retry_delay(attempt, self.retry_step, self.retry_max)
                error = ConnectionUnavailableError(
                    f"Cannot connect to {self.info.backend}: {e}",
                    retry_after=int(delay),
                    cause=e,
                ).with_context(url=self.info.url, attempt=attempt)
                logger.warning("connection_failed", retry_in=delay, **error.to_dict())
                self._sleep(delay)
                continue

            logger.info(
                "connection_established",
                backend=self.info.backend,
                url=self.info.url,
                attempts=attempt + 1,
            )
            return engine

    def _create_engine(self) -> Engine:
        options = dict(self._engine_options)

        if self.info.is_sqlite:
            connect_args = dict(options.get("connect_args", {}))
            connect_args.setdefault("check_same_thread", False)
            connect_args.setdefault("timeout", 30)
            options["connect_args"] = connect_args
            if not self.info.persistent:
                options.setdefault("poolclass", StaticPool)

        if "poolclass" not in options:
            options.setdefault("pool_size", self.max_idle)
            options.setdefault("max_overflow", self.max_open - self.max_idle)

        engine = create_engine(self._sa_url, **options)

        if self.info.is_sqlite and self.info.persistent:

            @event.listens_for(engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.close()

        return engine


__all__ = [
    "ConnectionInfo",
    "ConnectionManager",
    "retry_delay",
]
