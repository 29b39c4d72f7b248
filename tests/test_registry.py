"""
Tests for sqljson.registry module.

Tests cover:
- Lazy table creation and the UNKNOWN → VERIFIED transition
- Failures are raised and never cached
- Concurrent ensure_table on one collection
"""

import threading
from unittest.mock import patch

import pytest
from sqlalchemy import inspect, text

from sqljson.errors import TableCreationError
from sqljson.registry import CollectionRegistry, CollectionState


@pytest.fixture
def registry(connections):
    return CollectionRegistry(connections, table_prefix="doc_")


def _tables(connections):
    return set(inspect(connections.acquire()).get_table_names())


class TestCollectionRegistry:
    def test_table_name_uses_prefix(self, registry):
        assert registry.table_name("users") == "doc_users"

    def test_unknown_before_first_use(self, registry):
        assert registry.state("users") is CollectionState.UNKNOWN
        assert not registry.is_verified("users")

    def test_ensure_table_creates_and_verifies(self, registry, connections):
        registry.ensure_table("users")

        assert "doc_users" in _tables(connections)
        assert registry.state("users") is CollectionState.VERIFIED
        assert registry.verified_collections() == ["users"]

    def test_ensure_table_is_idempotent(self, registry, connections):
        registry.ensure_table("users")
        registry.ensure_table("users")

        assert _tables(connections) >= {"doc_users"}

    def test_existing_table_is_accepted(self, connections):
        CollectionRegistry(connections, "doc_").ensure_table("users")
        other = CollectionRegistry(connections, "doc_")

        other.ensure_table("users")

        assert other.is_verified("users")

    def test_failure_raises_and_is_not_cached(self, registry):
        bad = 'bad"name'

        with pytest.raises(TableCreationError) as exc_info:
            registry.ensure_table(bad)

        assert exc_info.value.context.collection == bad
        assert exc_info.value.context.table == 'doc_bad"name'
        assert registry.state(bad) is CollectionState.UNKNOWN

        with pytest.raises(TableCreationError):
            registry.ensure_table(bad)

    def test_failure_keeps_concurrent_verification(self, registry):
        """Test that a failing create cannot clear VERIFIED set by another caller."""

        def create_racing_with_success(sql):
            # Another caller finishes its create while this one is in flight
            registry._states["users"] = CollectionState.VERIFIED
            return text("CREATE TABLE (")

        with patch("sqljson.registry.text", side_effect=create_racing_with_success):
            with pytest.raises(TableCreationError):
                registry.ensure_table("users")

        assert registry.is_verified("users")
        assert registry.verified_collections() == ["users"]

    def test_verified_collections_sorted(self, registry):
        for name in ("b", "a", "c"):
            registry.ensure_table(name)

        assert registry.verified_collections() == ["a", "b", "c"]

    def test_concurrent_first_use(self, registry, connections):
        """Test that 50 threads racing on a new collection all succeed."""
        barrier = threading.Barrier(50)
        errors = []

        def worker():
            barrier.wait()
            try:
                registry.ensure_table("orders")
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert registry.is_verified("orders")
        assert "doc_orders" in _tables(connections)
