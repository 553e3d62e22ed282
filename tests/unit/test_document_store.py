"""
Unit tests for the document store backends.

Tests cover:
1. Versioned documents and compare-and-set
2. Idempotent record appends and time-range queries
3. The time-bounded wrapper
4. The Redis backend against a mocked client
"""

import threading
from unittest.mock import MagicMock

import pytest

from core.errors import StoreTimeoutError, StoreUnavailableError, TransientStoreError, WriteConflictError
from storage.document_store import InMemoryDocumentStore, TimeBoundedDocumentStore, create_document_store


# =============================================================================
# In-Memory Backend
# =============================================================================

class TestInMemoryDocuments:

    def test_missing_document(self, store):
        assert store.get("profiles", "nobody") is None

    def test_create_then_update(self, store):
        v1 = store.compare_and_set("profiles", "u1", {"n": 1}, None)
        v2 = store.compare_and_set("profiles", "u1", {"n": 2}, v1)

        doc = store.get("profiles", "u1")
        assert (v1, v2) == (1, 2)
        assert doc.data == {"n": 2}
        assert doc.version == 2

    def test_stale_version_conflicts(self, store):
        store.compare_and_set("profiles", "u1", {"n": 1}, None)
        store.compare_and_set("profiles", "u1", {"n": 2}, 1)

        with pytest.raises(WriteConflictError):
            store.compare_and_set("profiles", "u1", {"n": 3}, 1)

    def test_create_conflicts_when_present(self, store):
        store.compare_and_set("profiles", "u1", {}, None)

        with pytest.raises(WriteConflictError):
            store.compare_and_set("profiles", "u1", {}, None)

    def test_returned_data_is_a_copy(self, store):
        store.compare_and_set("profiles", "u1", {"items": [1]}, None)

        store.get("profiles", "u1").data["items"].append(2)

        assert store.get("profiles", "u1").data == {"items": [1]}

    def test_delete(self, store):
        store.compare_and_set("profiles", "u1", {}, None)

        assert store.delete("profiles", "u1") is True
        assert store.delete("profiles", "u1") is False
        assert store.get("profiles", "u1") is None


class TestInMemoryRecords:

    def test_append_is_idempotent(self, store):
        assert store.append("events", "u1", "e1", 10.0, {"id": "e1"}) is True
        assert store.append("events", "u1", "e1", 10.0, {"id": "changed"}) is False

        assert store.query("events", "u1") == [{"id": "e1"}]

    def test_query_orders_by_timestamp(self, store):
        store.append("events", "u1", "late", 30.0, {"id": "late"})
        store.append("events", "u1", "early", 10.0, {"id": "early"})
        store.append("events", "u1", "mid", 20.0, {"id": "mid"})

        assert [r["id"] for r in store.query("events", "u1")] == ["early", "mid", "late"]

    def test_query_range_and_limit(self, store):
        for i in range(5):
            store.append("events", "u1", f"e{i}", float(i), {"i": i})

        assert [r["i"] for r in store.query("events", "u1", since=1, until=3)] == [1, 2, 3]
        # Limit keeps the most recent, still oldest first
        assert [r["i"] for r in store.query("events", "u1", limit=2)] == [3, 4]
        assert store.query("events", "u1", limit=0) == []

    def test_users_are_isolated(self, store):
        store.append("events", "u1", "a", 1.0, {"u": 1})
        store.append("events", "u2", "b", 1.0, {"u": 2})

        assert store.query("events", "u1") == [{"u": 1}]

    def test_upsert_moves_record(self, store):
        store.upsert_record("sessions", "u1", "s1", 5.0, {"v": 1})
        store.upsert_record("sessions", "u1", "s1", 50.0, {"v": 2})

        assert store.query("sessions", "u1") == [{"v": 2}]
        assert store.query("sessions", "u1", until=10) == []

    def test_delete_user_records(self, store):
        store.append("events", "u1", "a", 1.0, {})
        store.append("events", "u1", "b", 2.0, {})

        assert store.delete_user_records("events", "u1") == 2
        assert store.query("events", "u1") == []
        # Keys are free again
        assert store.append("events", "u1", "a", 1.0, {}) is True


# =============================================================================
# Time-Bounded Wrapper
# =============================================================================

class TestTimeBoundedStore:

    def test_passes_calls_through(self):
        bounded = TimeBoundedDocumentStore(InMemoryDocumentStore(), timeout_seconds=1.0)
        try:
            bounded.compare_and_set("profiles", "u1", {"a": 1}, None)
            assert bounded.get("profiles", "u1").data == {"a": 1}
            assert bounded.append("events", "u1", "e", 1.0, {}) is True
            assert bounded.query("events", "u1") == [{}]
        finally:
            bounded.close()

    def test_slow_call_times_out(self):
        release = threading.Event()
        inner = MagicMock()
        inner.get.side_effect = lambda *args: release.wait(2)
        bounded = TimeBoundedDocumentStore(inner, timeout_seconds=0.05)

        try:
            with pytest.raises(StoreTimeoutError) as exc:
                bounded.get("profiles", "u1")
            assert isinstance(exc.value, TransientStoreError)
            assert exc.value.details["op"] == "get"
        finally:
            release.set()
            bounded.close()

    def test_inner_errors_propagate(self):
        inner = MagicMock()
        inner.compare_and_set.side_effect = WriteConflictError("conflict")
        bounded = TimeBoundedDocumentStore(inner, timeout_seconds=1.0)

        try:
            with pytest.raises(WriteConflictError):
                bounded.compare_and_set("profiles", "u1", {}, None)
        finally:
            bounded.close()


class TestFactory:

    def test_memory_backend(self):
        from config.settings import get_settings_for_testing

        store = create_document_store(get_settings_for_testing(store_timeout_seconds=0.5))
        try:
            assert isinstance(store, TimeBoundedDocumentStore)
            assert isinstance(store.inner, InMemoryDocumentStore)
        finally:
            store.close()


# =============================================================================
# Redis Backend (mocked client)
# =============================================================================

@pytest.mark.redis
class TestRedisDocumentStore:

    @pytest.fixture
    def redis_mod(self):
        return pytest.importorskip("redis")

    @pytest.fixture
    def client(self, redis_mod):
        return MagicMock()

    @pytest.fixture
    def redis_store(self, client):
        from storage.document_store import RedisDocumentStore

        return RedisDocumentStore(client=client, key_prefix="t")

    def test_get_missing(self, redis_store, client):
        client.hgetall.return_value = {}

        assert redis_store.get("profiles", "u1") is None
        client.hgetall.assert_called_once_with("t:profiles:doc:u1")

    def test_get_parses_document(self, redis_store, client):
        client.hgetall.return_value = {"data": '{"a": 1}', "version": "4"}

        doc = redis_store.get("profiles", "u1")

        assert doc.data == {"a": 1}
        assert doc.version == 4

    def test_compare_and_set_commits(self, redis_store, client):
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.hget.return_value = "2"

        assert redis_store.compare_and_set("profiles", "u1", {"a": 1}, 2) == 3
        pipe.watch.assert_called_once_with("t:profiles:doc:u1")
        pipe.multi.assert_called_once()
        pipe.execute.assert_called_once()

    def test_compare_and_set_version_mismatch(self, redis_store, client):
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.hget.return_value = "5"

        with pytest.raises(WriteConflictError):
            redis_store.compare_and_set("profiles", "u1", {}, 2)
        pipe.execute.assert_not_called()

    def test_watch_error_is_conflict(self, redis_store, client, redis_mod):
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.hget.return_value = None
        pipe.execute.side_effect = redis_mod.WatchError()

        with pytest.raises(WriteConflictError):
            redis_store.compare_and_set("profiles", "u1", {}, None)

    def test_connection_error_is_transient(self, redis_store, client, redis_mod):
        client.hgetall.side_effect = redis_mod.ConnectionError("refused")

        with pytest.raises(StoreUnavailableError):
            redis_store.get("profiles", "u1")

    def test_append_duplicate(self, redis_store, client):
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [None, 0]

        assert redis_store.append("events", "u1", "e1", 1.0, {}) is False

    def test_append_new(self, redis_store, client):
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [True, 1]

        assert redis_store.append("events", "u1", "e1", 1.0, {"x": 1}) is True
        pipe.set.assert_called_once_with("t:events:rec:e1", '{"x": 1}', nx=True)
        pipe.zadd.assert_called_once_with("t:events:idx:u1", {"e1": 1.0}, nx=True)
        pipe.execute.assert_called_once()
        client.set.assert_not_called()
        client.zadd.assert_not_called()

    def test_append_record_and_index_commit_together(self, redis_store, client):
        # A duplicate whose index entry went missing gets it back in the same MULTI
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [None, 1]

        assert redis_store.append("events", "u1", "e1", 1.0, {}) is False
        client.pipeline.assert_called_once_with()
        pipe.zadd.assert_called_once_with("t:events:idx:u1", {"e1": 1.0}, nx=True)

    def test_query_applies_limit(self, redis_store, client):
        client.zrangebyscore.return_value = ["a", "b", "c"]
        client.mget.return_value = ['{"k": "b"}', '{"k": "c"}']

        assert redis_store.query("events", "u1", limit=2) == [{"k": "b"}, {"k": "c"}]
        client.mget.assert_called_once_with(["t:events:rec:b", "t:events:rec:c"])
