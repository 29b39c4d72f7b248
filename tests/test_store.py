"""
Tests for sqljson.store module.

Tests cover:
- Read/write round trips and lazy collection creation
- Digest stored with each row
- write_if_changed skipping unchanged content
- Observers, including failing ones
- Key enumeration (all, prefix, raw WHERE)
- Key validation and unique-digest conflicts
"""

import json
import threading
import time

import pytest
from pydantic import BaseModel
from sqlalchemy import text
from structlog.testing import capture_logs

from sqljson import codec
from sqljson.connection import ConnectionManager
from sqljson.errors import (
    ConstraintViolationError,
    DocumentNotFoundError,
    InvalidKeyError,
    QueryError,
    SerializationError,
)
from sqljson.hashing import compute_digest
from sqljson.store import DocumentInfo, DocumentStore


class Item(BaseModel):
    name: str
    qty: int


def _row_count(store, collection):
    engine = store.connections.acquire()
    with engine.connect() as conn:
        return conn.execute(text(f'SELECT COUNT(*) FROM "{store.table_name(collection)}"')).scalar()


# =============================================================================
# Reads and writes
# =============================================================================


class TestReadWrite:
    def test_write_then_read(self, store):
        store.write("inventory", "item-42", {"qty": 10})

        assert store.read_decoded("inventory", "item-42") == {"qty": 10}

    def test_read_returns_encoded_bytes(self, store):
        store.write("inventory", "item-42", {"qty": 10, "bin": "A1"})

        raw = store.read("inventory", "item-42")

        assert raw == codec.encode({"bin": "A1", "qty": 10})
        assert raw == b'{\n\t"bin": "A1",\n\t"qty": 10\n}'

    def test_table_has_prefix(self, store):
        store.write("inventory", "item-42", {"qty": 10})

        assert store.table_name("inventory") == "doc_inventory"
        assert store.registry.is_verified("inventory")

    def test_overwrite(self, store):
        store.write("inventory", "item-42", {"qty": 10})
        store.write("inventory", "item-42", {"qty": 11})

        assert store.read_decoded("inventory", "item-42") == {"qty": 11}
        assert _row_count(store, "inventory") == 1

    def test_idempotent_write(self, store):
        store.write("inventory", "item-42", {"qty": 10})
        store.write("inventory", "item-42", {"qty": 10})

        assert store.list_keys("inventory") == ["item-42"]

    def test_decode_into_model(self, store):
        store.write("parts", "p1", Item(name="bolt", qty=3))

        assert store.read_decoded("parts", "p1", Item) == Item(name="bolt", qty=3)

    def test_decode_mismatch_has_context(self, store):
        store.write("parts", "p1", {"name": "bolt"})

        with pytest.raises(SerializationError) as exc_info:
            store.read_decoded("parts", "p1", Item)

        assert exc_info.value.context.collection == "parts"
        assert exc_info.value.context.key == "p1"

    def test_unserializable_value(self, store):
        with pytest.raises(SerializationError):
            store.write("parts", "p1", {"handle": object()})

    def test_missing_document(self, store):
        with pytest.raises(DocumentNotFoundError, match="Document not exists") as exc_info:
            store.read("inventory", "nope")

        assert exc_info.value.context.key == "nope"
        assert exc_info.value.context.table == "doc_inventory"

    def test_read_creates_collection(self, store):
        """Test that reading an unknown collection creates its table first."""
        with pytest.raises(DocumentNotFoundError):
            store.read("fresh", "k")

        assert store.registry.is_verified("fresh")
        assert store.list_keys("fresh") == []

    def test_memory_backend(self):
        store = DocumentStore(ConnectionManager("memory"))
        try:
            store.write("c", "k", [1, 2, 3])
            assert store.read_decoded("c", "k") == [1, 2, 3]
        finally:
            store.connections.dispose()


# =============================================================================
# Digests and stat
# =============================================================================


class TestDigest:
    def test_stat_reports_digest(self, store):
        store.write("c", "a", {"x": 1})

        info = store.stat("c", "a")

        assert isinstance(info, DocumentInfo)
        assert info.key == "a"
        assert info.digest == compute_digest(codec.encode({"x": 1}), "a")
        assert info.create_time is not None
        assert info.update_time is not None

    def test_stat_missing(self, store):
        with pytest.raises(DocumentNotFoundError):
            store.stat("c", "missing")

    def test_write_same_content_keeps_update_time(self, store):
        store.write("c", "a", {"x": 1})
        before = store.stat("c", "a")
        time.sleep(1.1)

        store.write("c", "a", {"x": 1})

        assert store.stat("c", "a").update_time == before.update_time

    def test_write_changed_content_moves_update_time(self, store):
        store.write("c", "a", {"x": 1})
        before = store.stat("c", "a")
        time.sleep(1.1)

        store.write("c", "a", {"x": 2})

        after = store.stat("c", "a")
        assert after.update_time > before.update_time
        assert after.create_time == before.create_time

    def test_same_payload_under_two_keys(self, store):
        """Key salting keeps identical payloads from colliding."""
        store.write("c", "a", {"x": 1})
        store.write("c", "b", {"x": 1})

        assert sorted(store.list_keys("c")) == ["a", "b"]
        assert store.stat("c", "a").digest != store.stat("c", "b").digest

    def test_high_bit_digest_round_trips(self, store):
        """Find a digest above 2**63 and check it survives SQLite storage."""
        for n in range(200):
            key = f"k{n}"
            digest = compute_digest(codec.encode({"n": n}), key)
            if digest >= 1 << 63:
                break
        else:
            pytest.fail("no high-bit digest found")

        store.write("c", key, {"n": n})

        assert store.stat("c", key).digest == digest

    def test_digest_collision_rejected_by_write(self, store):
        store.write("c", "a", {"x": 1})
        # Move the row, and its digest, to another key
        engine = store.connections.acquire()
        with engine.begin() as conn:
            conn.execute(text('UPDATE "doc_c" SET id = :new WHERE id = :old'), {"new": "squatter", "old": "a"})

        with pytest.raises(ConstraintViolationError) as exc_info:
            store.write("c", "a", {"x": 1})

        assert exc_info.value.context.key == "a"


# =============================================================================
# write_if_changed
# =============================================================================


class TestWriteIfChanged:
    def test_inserts_new_key(self, store):
        assert store.write_if_changed("c", "a", {"x": 1}) is True
        assert store.read_decoded("c", "a") == {"x": 1}
        assert store.stat("c", "a").digest == compute_digest(codec.encode({"x": 1}), "a")

    def test_unchanged_is_skipped(self, store):
        store.write_if_changed("c", "a", {"x": 1})

        assert store.write_if_changed("c", "a", {"x": 1}) is False

    def test_unchanged_keeps_update_time(self, store):
        store.write_if_changed("c", "a", {"x": 1})
        before = store.stat("c", "a")
        time.sleep(1.1)

        store.write_if_changed("c", "a", {"x": 1})

        assert store.stat("c", "a").update_time == before.update_time

    def test_changed_is_written(self, store):
        store.write_if_changed("c", "a", {"x": 1})

        assert store.write_if_changed("c", "a", {"x": 2}) is True
        assert store.read_decoded("c", "a") == {"x": 2}

    def test_digest_collision_silently_dropped(self, store):
        store.write("c", "a", {"x": 1})
        digest = store.stat("c", "a").digest
        engine = store.connections.acquire()
        with engine.begin() as conn:
            conn.execute(text('UPDATE "doc_c" SET id = :new WHERE id = :old'), {"new": "squatter", "old": "a"})

        assert store.write_if_changed("c", "a", {"x": 1}) is False
        assert store.list_keys("c") == ["squatter"]
        assert store.stat("c", "squatter").digest == digest


# =============================================================================
# Observers
# =============================================================================


class TestObservers:
    def test_observer_receives_original_value(self, store):
        seen = []
        value = Item(name="bolt", qty=3)
        store.add_observer(lambda c, k, v: seen.append((c, k, v)))

        store.write("parts", "p1", value)

        assert seen == [("parts", "p1", value)]
        assert seen[0][2] is value

    def test_constructor_observer(self, connections):
        seen = []
        store = DocumentStore(connections, after_write=lambda c, k, v: seen.append(k))

        store.write("c", "a", {})

        assert seen == ["a"]

    def test_observers_in_registration_order(self, store):
        order = []
        store.add_observer(lambda c, k, v: order.append(1))
        store.add_observer(lambda c, k, v: order.append(2))

        store.write("c", "a", {})

        assert order == [1, 2]

    def test_failing_observer_does_not_reach_writer(self, store):
        seen = []

        def broken(collection, key, value):
            raise RuntimeError("observer blew up")

        store.add_observer(broken)
        store.add_observer(lambda c, k, v: seen.append(k))

        store.write("c", "a", {"x": 1})

        assert seen == ["a"]
        assert store.read_decoded("c", "a") == {"x": 1}

    def test_failing_observer_is_logged(self, store):
        def broken(collection, key, value):
            raise RuntimeError("observer blew up")

        store.add_observer(broken)
        with capture_logs() as logs:
            store.write("c", "a", {})

        failures = [entry for entry in logs if entry["event"] == "observer_failed"]
        assert len(failures) == 1
        assert failures[0]["error"] == "observer blew up"
        assert failures[0]["key"] == "a"

    def test_fires_for_unchanged_write_if_changed(self, store):
        seen = []
        store.write_if_changed("c", "a", {"x": 1})
        store.add_observer(lambda c, k, v: seen.append(k))

        store.write_if_changed("c", "a", {"x": 1})

        assert seen == ["a"]

    def test_not_fired_when_write_fails(self, store):
        seen = []
        store.add_observer(lambda c, k, v: seen.append(k))

        with pytest.raises(InvalidKeyError):
            store.write("c", "", {})

        assert seen == []

    def test_remove_observer(self, store):
        seen = []

        def observer(c, k, v):
            seen.append(k)

        store.add_observer(observer)
        store.remove_observer(observer)
        store.write("c", "a", {})

        assert seen == []


# =============================================================================
# Key enumeration
# =============================================================================


class TestListKeys:
    def test_empty_collection(self, store):
        assert store.list_keys("empty") == []

    def test_all_keys(self, store):
        for key in ("a", "b", "c"):
            store.write("c", key, {"k": key})

        assert sorted(store.list_keys("c")) == ["a", "b", "c"]

    def test_collections_are_separate(self, store):
        store.write("one", "a", {})
        store.write("two", "b", {})

        assert store.list_keys("one") == ["a"]
        assert store.list_keys("two") == ["b"]

    def test_prefix(self, store):
        for key in ("user:1", "user:2", "order:1"):
            store.write("c", key, {"k": key})

        assert sorted(store.list_keys_with_prefix("c", "user:")) == ["user:1", "user:2"]

    def test_prefix_wildcards_are_literal(self, store):
        for key in ("a_1", "ab1", "a%2", "a!3", "a!!"):
            store.write("c", key, {"k": key})

        assert store.list_keys_with_prefix("c", "a_") == ["a_1"]
        assert store.list_keys_with_prefix("c", "a%") == ["a%2"]
        assert sorted(store.list_keys_with_prefix("c", "a!")) == ["a!!", "a!3"]

    def test_where_unsafe(self, store):
        store.write("c", "a", {"status": "open"})
        store.write("c", "b", {"status": "closed"})

        assert store.list_keys_where_unsafe("c", "j LIKE '%open%'") == ["a"]

    def test_where_unsafe_with_colon(self, store):
        store.write("c", "user:1", {})
        store.write("c", "user:2", {})

        assert store.list_keys_where_unsafe("c", "id = 'user:2'") == ["user:2"]

    def test_where_unsafe_bad_sql(self, store):
        with pytest.raises(QueryError):
            store.list_keys_where_unsafe("c", "no_such_column = 1")


# =============================================================================
# Key validation
# =============================================================================


class TestKeyValidation:
    def test_empty_key_rejected(self, store):
        with pytest.raises(InvalidKeyError):
            store.write("c", "", {})

    def test_non_string_key_rejected(self, store):
        with pytest.raises(InvalidKeyError):
            store.write_if_changed("c", 42, {})

    def test_key_limit_is_in_bytes(self, store):
        store.write("c", "k" * 128, {})

        with pytest.raises(InvalidKeyError):
            store.write("c", "é" * 65, {})

    def test_rejected_before_touching_backend(self, store):
        with pytest.raises(InvalidKeyError):
            store.write("c", "x" * 129, {})

        assert not store.connections.is_established


# =============================================================================
# Concurrency
# =============================================================================


@pytest.mark.slow
class TestConcurrentWrites:
    def test_writers_on_new_collection(self, store):
        barrier = threading.Barrier(20)
        errors = []

        def worker(n):
            barrier.wait()
            try:
                store.write("shared", f"k{n}", {"n": n})
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.list_keys("shared")) == 20
        assert json.loads(store.read("shared", "k7")) == {"n": 7}
