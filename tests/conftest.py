"""
Shared pytest fixtures for sqljson tests.

This module provides:
- A file-backed SQLite connection manager under ``tmp_path``
- A recording sleep so retry loops never actually wait
- A ready ``DocumentStore`` with the ``doc_`` table prefix

File-backed SQLite is used instead of ``memory`` wherever threads are
involved: every pooled connection then sees the same database.
"""

import sys
from pathlib import Path

import pytest

# Ensure sqljson package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sqljson.connection import ConnectionManager
from sqljson.store import DocumentStore


class RecordingSleep:
    """Stand-in for ``time.sleep`` that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "docs.db"


@pytest.fixture
def connections(db_path: Path, fake_sleep: RecordingSleep):
    manager = ConnectionManager(f"sqlite:///{db_path}", sleep=fake_sleep)
    yield manager
    manager.dispose()


@pytest.fixture
def store(connections: ConnectionManager) -> DocumentStore:
    return DocumentStore(connections, table_prefix="doc_")
