import time

import pytest
from django.db import OperationalError

from apps.search.exceptions import (
    ConfigurationError,
    DimensionMismatchError,
    OperationCancelled,
    StoreUnavailableError,
)
from apps.search.services import vector_store
from apps.search.services.deadline import Deadline
from apps.search.services.vector_store import (
    HybridVectorStore,
    InMemoryVectorBackend,
    PgVectorBackend,
)
from apps.search.tests.fakes import DIMENSIONS


def _wait_for_state(backend, timeout=2.0):
    give_up_at = time.monotonic() + timeout
    while backend.state == PgVectorBackend.PENDING and time.monotonic() < give_up_at:
        time.sleep(0.01)
    return backend.state


@pytest.fixture
def primary(mocker):
    backend = mocker.Mock(spec=PgVectorBackend)
    backend.name = "pgvector"
    backend.state = PgVectorBackend.READY
    return backend


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class TestInMemoryVectorBackend:

    def test_query_embedding_first_write_wins(self, memory_backend):
        memory_backend.upsert_query_embedding("h", "query", [1.0, 0.0, 0.0, 0.0])
        memory_backend.upsert_query_embedding("h", "query", [0.0, 1.0, 0.0, 0.0])
        assert memory_backend.get_query_embedding("h") == [1.0, 0.0, 0.0, 0.0]
        assert memory_backend.get_query_embedding("other") is None

    def test_result_embeddings_first_write_wins(self, memory_backend):
        memory_backend.upsert_result_embeddings({"a": [1.0, 0.0, 0.0, 0.0]})
        memory_backend.upsert_result_embeddings({"a": [0.0, 0.0, 0.0, 1.0], "b": [0.0, 1.0, 0.0, 0.0]})
        assert memory_backend.get_result_embeddings(["a", "b", "missing"]) == {
            "a": [1.0, 0.0, 0.0, 0.0],
            "b": [0.0, 1.0, 0.0, 0.0],
        }

    def test_search_orders_by_descending_inner_product(self, memory_backend):
        memory_backend.upsert_result_embeddings({
            "low": [0.1, 0.9, 0.0, 0.0],
            "high": [0.9, 0.1, 0.0, 0.0],
            "mid": [0.5, 0.5, 0.0, 0.0],
        })
        assert memory_backend.search_similar([1.0, 0.0, 0.0, 0.0], 10) == ["high", "mid", "low"]
        assert memory_backend.search_similar([1.0, 0.0, 0.0, 0.0], 2) == ["high", "mid"]

    def test_search_is_restricted_to_scope(self, memory_backend):
        memory_backend.upsert_result_embeddings({
            "a": [0.9, 0.0, 0.0, 0.0],
            "b": [0.5, 0.0, 0.0, 0.0],
            "c": [0.1, 0.0, 0.0, 0.0],
        })
        ranked = memory_backend.search_similar([1.0, 0.0, 0.0, 0.0], 10, scope=["c", "a", "unknown"])
        assert ranked == ["a", "c"]
        assert memory_backend.search_similar([1.0, 0.0, 0.0, 0.0], 10, scope=[]) == []

    def test_size_and_bound(self):
        backend = InMemoryVectorBackend(max_vectors=2)
        backend.upsert_result_embeddings({
            "a": [1.0, 0.0, 0.0, 0.0],
            "b": [0.0, 1.0, 0.0, 0.0],
            "c": [0.0, 0.0, 1.0, 0.0],
        })
        backend.upsert_query_embedding("h", "q", [1.0, 0.0, 0.0, 0.0])
        assert backend.size() == {"queries": 1, "results": 2}
        assert backend.get_result_embeddings(["a"]) == {}


# ---------------------------------------------------------------------------
# Hybrid facade
# ---------------------------------------------------------------------------

class TestHybridVectorStore:

    def test_needs_at_least_one_backend(self):
        with pytest.raises(ConfigurationError):
            HybridVectorStore()

    def test_wrong_dimension_is_rejected_before_any_write(self, memory_store, memory_backend):
        with pytest.raises(DimensionMismatchError):
            memory_store.upsert_result_embeddings({"a": [1.0, 0.0]})
        with pytest.raises(DimensionMismatchError):
            memory_store.upsert_query_embedding("h", "q", [1.0] * (DIMENSIONS + 1))
        assert memory_backend.size() == {"queries": 0, "results": 0}

    def test_wrong_dimension_search_is_rejected(self, memory_store):
        with pytest.raises(DimensionMismatchError):
            memory_store.search_similar([1.0, 0.0], 5)

    def test_memory_only_store_serves_everything(self, memory_store):
        memory_store.upsert_result_embeddings({"a": [1.0, 0.0, 0.0, 0.0]})
        memory_store.upsert_query_embedding("h", "q", [0.0, 1.0, 0.0, 0.0])

        assert memory_store.get_result_embeddings(["a", "b"]) == {"a": [1.0, 0.0, 0.0, 0.0]}
        assert memory_store.get_query_embedding("h") == [0.0, 1.0, 0.0, 0.0]
        assert memory_store.search_similar([1.0, 0.0, 0.0, 0.0], 3) == ["a"]

    def test_healthy_primary_serves_reads(self, primary, memory_backend):
        primary.search_similar.return_value = ["from-db"]
        store = HybridVectorStore(primary=primary, fallback=memory_backend, dimensions=DIMENSIONS)

        assert store.search_similar([1.0, 0.0, 0.0, 0.0], 5, scope=["from-db"]) == ["from-db"]
        primary.search_similar.assert_called_once()

    def test_writes_are_mirrored_into_memory(self, primary, memory_backend):
        store = HybridVectorStore(primary=primary, fallback=memory_backend, dimensions=DIMENSIONS)
        store.upsert_result_embeddings({"a": [1.0, 0.0, 0.0, 0.0]})

        primary.upsert_result_embeddings.assert_called_once()
        assert memory_backend.get_result_embeddings(["a"]) == {"a": [1.0, 0.0, 0.0, 0.0]}

    def test_failing_primary_falls_back_to_memory(self, primary, memory_backend):
        primary.search_similar.side_effect = StoreUnavailableError("connection reset")
        primary.get_result_embeddings.side_effect = StoreUnavailableError("connection reset")
        primary.upsert_result_embeddings.side_effect = StoreUnavailableError("connection reset")
        store = HybridVectorStore(primary=primary, fallback=memory_backend, dimensions=DIMENSIONS)

        store.upsert_result_embeddings({"a": [1.0, 0.0, 0.0, 0.0]})
        assert store.get_result_embeddings(["a"]) == {"a": [1.0, 0.0, 0.0, 0.0]}
        assert store.search_similar([1.0, 0.0, 0.0, 0.0], 5) == ["a"]

    def test_failing_primary_without_fallback_returns_empty(self, primary):
        primary.search_similar.side_effect = StoreUnavailableError("down")
        primary.get_query_embedding.side_effect = StoreUnavailableError("down")
        store = HybridVectorStore(primary=primary, dimensions=DIMENSIONS)

        assert store.search_similar([1.0, 0.0, 0.0, 0.0], 5) == []
        assert store.get_query_embedding("h") is None

    def test_failed_primary_is_skipped(self, primary, memory_backend):
        primary.state = PgVectorBackend.FAILED
        store = HybridVectorStore(primary=primary, fallback=memory_backend, dimensions=DIMENSIONS)

        assert store.get_result_embeddings(["a"]) == {}
        primary.get_result_embeddings.assert_not_called()

    def test_readiness_wait_is_bounded(self, primary, memory_backend):
        primary.state = PgVectorBackend.PENDING
        store = HybridVectorStore(
            primary=primary, fallback=memory_backend, dimensions=DIMENSIONS,
            ready_timeout=0.2, poll_interval=0.05,
        )

        started = time.monotonic()
        assert store.get_result_embeddings(["a"]) == {}
        elapsed = time.monotonic() - started

        assert 0.15 <= elapsed < 1.5
        primary.get_result_embeddings.assert_not_called()

    def test_timed_out_wait_is_not_repeated_while_pending(self, primary, memory_backend):
        primary.state = PgVectorBackend.PENDING
        primary.get_query_embedding.return_value = [0.5, 0.5, 0.0, 0.0]
        store = HybridVectorStore(
            primary=primary, fallback=memory_backend, dimensions=DIMENSIONS,
            ready_timeout=0.2, poll_interval=0.01,
        )
        store.get_result_embeddings(["a"])

        started = time.monotonic()
        store.search_similar([1.0, 0.0, 0.0, 0.0], 5)
        store.get_query_embedding("h")
        assert time.monotonic() - started < 0.15

        primary.state = PgVectorBackend.READY
        assert store.get_query_embedding("h") == [0.5, 0.5, 0.0, 0.0]

    def test_primary_becoming_ready_during_wait_is_used(self, primary, memory_backend):
        states = iter([PgVectorBackend.PENDING, PgVectorBackend.PENDING, PgVectorBackend.READY])
        type(primary).state = property(lambda self: next(states, PgVectorBackend.READY))
        primary.get_query_embedding.return_value = [0.5, 0.5, 0.0, 0.0]
        store = HybridVectorStore(
            primary=primary, fallback=memory_backend, dimensions=DIMENSIONS,
            ready_timeout=2.0, poll_interval=0.01,
        )

        assert store.get_query_embedding("h") == [0.5, 0.5, 0.0, 0.0]

    def test_cancelled_deadline_propagates(self, memory_store):
        deadline = Deadline()
        deadline.cancel()
        with pytest.raises(OperationCancelled):
            memory_store.get_result_embeddings(["a"], deadline=deadline)

    def test_status_reports_backends(self, memory_store):
        assert memory_store.status() == {
            "primary": "disabled",
            "fallback": {"queries": 0, "results": 0},
            "dimensions": DIMENSIONS,
        }


# ---------------------------------------------------------------------------
# pgvector backend (database mocked)
# ---------------------------------------------------------------------------

class TestPgVectorBackend:

    @pytest.fixture
    def connection(self, mocker):
        connections = mocker.patch.object(vector_store, "connections")
        return connections.__getitem__.return_value

    def test_ready_when_tables_exist(self, connection):
        connection.introspection.table_names.return_value = [
            "query_embeddings", "result_embeddings", "django_migrations",
        ]
        backend = PgVectorBackend()
        backend.start()

        assert _wait_for_state(backend) == PgVectorBackend.READY
        connection.close.assert_called()

    def test_connection_is_closed_before_state_is_published(self, connection, mocker):
        connection.introspection.table_names.return_value = [
            "query_embeddings", "result_embeddings",
        ]
        backend = PgVectorBackend()
        closed_when_published = []
        mocker.patch.object(
            backend, "_set_state",
            side_effect=lambda state: closed_when_published.append(connection.close.called),
        )

        backend._initialize()

        backend._set_state.assert_called_once_with(PgVectorBackend.READY)
        assert closed_when_published == [True]

    def test_failed_when_tables_missing(self, connection):
        connection.introspection.table_names.return_value = ["django_migrations"]
        backend = PgVectorBackend()
        backend.start()

        assert _wait_for_state(backend) == PgVectorBackend.FAILED

    def test_failed_when_database_unreachable(self, connection):
        connection.ensure_connection.side_effect = OperationalError("could not connect")
        backend = PgVectorBackend()
        backend.start()

        assert _wait_for_state(backend) == PgVectorBackend.FAILED

    def test_start_is_idempotent(self, connection, mocker):
        thread = mocker.patch.object(vector_store.threading, "Thread")
        backend = PgVectorBackend()
        backend.start()
        backend.start()
        assert thread.call_count == 1

    def test_failed_initialization_is_retried_after_interval(self, connection, mocker):
        thread = mocker.patch.object(vector_store.threading, "Thread")
        backend = PgVectorBackend(retry_interval=0)
        backend.start()
        backend._set_state(PgVectorBackend.FAILED)
        backend.start()
        assert thread.call_count == 2
        assert backend.state == PgVectorBackend.PENDING

    def test_database_errors_become_store_unavailable(self, connection, mocker):
        mocker.patch.object(
            vector_store.transaction, "atomic", side_effect=OperationalError("server closed")
        )
        backend = PgVectorBackend()
        with pytest.raises(StoreUnavailableError):
            backend.get_result_embeddings(["a"])
        with pytest.raises(StoreUnavailableError):
            backend.search_similar([1.0, 0.0, 0.0, 0.0], 5, scope=["a"])

    def test_search_uses_negative_inner_product_ordering(self, connection, mocker):
        mocker.patch.object(vector_store.transaction, "atomic")
        connection.ops.quote_name.side_effect = lambda name: f'"{name}"'
        cursor = connection.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = [("b",), ("a",)]

        backend = PgVectorBackend()
        ranked = backend.search_similar([1.0, 0.0, 0.0, 0.0], 2, scope=["a", "b"])

        assert ranked == ["b", "a"]
        sql, params = cursor.execute.call_args.args
        assert "<#>" in sql
        assert "result_id = ANY(%s)" in sql
        assert params == [["a", "b"], "[1.0,0.0,0.0,0.0]", 2]

    def test_statement_timeout_follows_deadline(self, connection, mocker):
        mocker.patch.object(vector_store.transaction, "atomic")
        cursor = connection.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = []

        PgVectorBackend().search_similar([1.0, 0.0, 0.0, 0.0], 2, deadline=Deadline(1.5))

        first_sql, first_params = cursor.execute.call_args_list[0].args
        assert first_sql == "SET LOCAL statement_timeout = %s"
        assert 0 < first_params[0] <= 1500

    def test_empty_scope_skips_the_query(self, connection):
        assert PgVectorBackend().search_similar([1.0, 0.0, 0.0, 0.0], 5, scope=[]) == []
        connection.cursor.assert_not_called()
