"""
Vector store for query and result embeddings.

Two backends implement the same interface:

    - ``PgVectorBackend``: PostgreSQL + pgvector, HNSW index on inner product
    - ``InMemoryVectorBackend``: process-local numpy index, best effort

``HybridVectorStore`` is the facade the rest of the app talks to. It tries
the database first and falls back to memory when the database is disabled,
still initializing past the readiness wait, or failing. Falling back is
never an error for the caller.
"""

import abc
import logging
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from typing import Dict, Iterable, List, Mapping, Optional

import numpy as np
from django.db import Error as DatabaseError
from django.db import connections, transaction

from apps.search.exceptions import ConfigurationError, StoreUnavailableError
from apps.search.services.deadline import Deadline
from apps.search.services.locks import ReadWriteLock
from apps.search.services.vectors import Vector, as_vector, validate_dimension

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONS = 512
DEFAULT_READY_TIMEOUT = 2.0
DEFAULT_POLL_INTERVAL = 0.05
DEFAULT_BULK_BATCH_SIZE = 500
DEFAULT_MEMORY_MAX_VECTORS = 50_000
DEFAULT_INIT_RETRY_INTERVAL = 60.0


# ---------------------------------------------------------------------------
# Backend interface
# ---------------------------------------------------------------------------

class VectorBackend(abc.ABC):
    """Storage strategy behind ``HybridVectorStore``.

    Backends assume vectors were already validated by the facade.
    """

    name = "base"

    @abc.abstractmethod
    def upsert_query_embedding(
        self, query_hash: str, query_text: str, vector: Vector,
        deadline: Optional[Deadline] = None,
    ) -> None:
        """Insert unless a record with ``query_hash`` exists."""

    @abc.abstractmethod
    def get_query_embedding(
        self, query_hash: str, deadline: Optional[Deadline] = None
    ) -> Optional[Vector]:
        """Return the stored vector or ``None``."""

    @abc.abstractmethod
    def upsert_result_embeddings(
        self, vectors: Mapping[str, Vector], deadline: Optional[Deadline] = None
    ) -> None:
        """Insert every missing ID; existing rows are kept."""

    @abc.abstractmethod
    def get_result_embeddings(
        self, ids: Iterable[str], deadline: Optional[Deadline] = None
    ) -> Dict[str, Vector]:
        """Return vectors for the IDs that have one."""

    @abc.abstractmethod
    def search_similar(
        self, vector: Vector, top_k: int, scope: Optional[Iterable[str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[str]:
        """Result IDs ordered by descending inner product with ``vector``."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryVectorBackend(VectorBackend):
    """Exact top-K by inner product over whatever this process has stored."""

    name = "memory"

    def __init__(self, max_vectors: Optional[int] = DEFAULT_MEMORY_MAX_VECTORS):
        self.max_vectors = max_vectors
        self._queries: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._results: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._lock = ReadWriteLock()

    def _trim(self, entries: OrderedDict) -> None:
        if self.max_vectors:
            while len(entries) > self.max_vectors:
                entries.popitem(last=False)

    def upsert_query_embedding(self, query_hash, query_text, vector, deadline=None):
        with self._lock.write():
            if query_hash not in self._queries:
                self._queries[query_hash] = np.asarray(vector, dtype=np.float64)
                self._trim(self._queries)

    def get_query_embedding(self, query_hash, deadline=None):
        with self._lock.read():
            stored = self._queries.get(query_hash)
        return as_vector(stored) if stored is not None else None

    def upsert_result_embeddings(self, vectors, deadline=None):
        with self._lock.write():
            for result_id, vector in vectors.items():
                if result_id not in self._results:
                    self._results[result_id] = np.asarray(vector, dtype=np.float64)
            self._trim(self._results)

    def get_result_embeddings(self, ids, deadline=None):
        with self._lock.read():
            found = {rid: self._results[rid] for rid in ids if rid in self._results}
        return {rid: as_vector(stored) for rid, stored in found.items()}

    def search_similar(self, vector, top_k, scope=None, deadline=None):
        if top_k <= 0:
            return []
        with self._lock.read():
            if scope is None:
                ids = list(self._results)
            else:
                ids = [rid for rid in dict.fromkeys(scope) if rid in self._results]
            if not ids:
                return []
            matrix = np.stack([self._results[rid] for rid in ids])

        scores = matrix @ np.asarray(vector, dtype=np.float64)
        ranked = sorted(zip(ids, scores.tolist()), key=lambda pair: (-pair[1], pair[0]))
        return [rid for rid, _ in ranked[:top_k]]

    def size(self) -> Dict[str, int]:
        with self._lock.read():
            return {"queries": len(self._queries), "results": len(self._results)}


# ---------------------------------------------------------------------------
# PostgreSQL / pgvector backend
# ---------------------------------------------------------------------------

class PgVectorBackend(VectorBackend):
    """pgvector-backed storage using the tables from ``apps.search.models``.

    Initialization (connect, check the tables exist) runs in a background
    thread started by ``start()``; ``state`` moves from ``pending`` to
    ``ready`` or ``failed``. A failed initialization is retried by a later
    ``start()`` once ``retry_interval`` has passed.
    """

    name = "pgvector"

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"

    def __init__(
        self,
        using: str = "default",
        bulk_batch_size: int = DEFAULT_BULK_BATCH_SIZE,
        retry_interval: float = DEFAULT_INIT_RETRY_INTERVAL,
    ):
        self.using = using
        self.bulk_batch_size = bulk_batch_size
        self.retry_interval = retry_interval
        self._state = self.PENDING
        self._started_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def start(self) -> None:
        with self._lock:
            if self._started_at is not None:
                if self._state != self.FAILED:
                    return
                if time.monotonic() - self._started_at < self.retry_interval:
                    return
            self._state = self.PENDING
            self._started_at = time.monotonic()

        threading.Thread(
            target=self._initialize, name="pgvector-init", daemon=True
        ).start()

    def _set_state(self, state: str) -> None:
        with self._lock:
            self._state = state

    def _initialize(self) -> None:
        try:
            ready = self._check_schema()
        except DatabaseError as exc:
            logger.warning("Vector database '%s' initialization failed: %s", self.using, exc)
            ready = False

        # The init connection is closed before the state is published.
        self._set_state(self.READY if ready else self.FAILED)
        if ready:
            logger.info("Vector database '%s' ready", self.using)

    def _check_schema(self) -> bool:
        from apps.search.models import QueryEmbedding, ResultEmbedding

        connection = connections[self.using]
        try:
            connection.ensure_connection()
            tables = set(connection.introspection.table_names())
        finally:
            connection.close()

        required = {QueryEmbedding._meta.db_table, ResultEmbedding._meta.db_table}
        missing = sorted(required - tables)
        if missing:
            logger.error(
                "Vector tables missing on '%s': %s. Run `manage.py migrate search`.",
                self.using, ", ".join(missing),
            )
            return False
        return True

    @contextmanager
    def _session(self, deadline: Optional[Deadline]):
        """Transaction with a statement timeout taken from the deadline.

        Database errors leave as ``StoreUnavailableError``.
        """
        connection = connections[self.using]
        try:
            connection.close_if_unusable_or_obsolete()
            with transaction.atomic(using=self.using):
                timeout = deadline.timeout_for(None) if deadline is not None else None
                if timeout is not None:
                    with connection.cursor() as cursor:
                        cursor.execute(
                            "SET LOCAL statement_timeout = %s", [max(1, int(timeout * 1000))]
                        )
                yield connection
        except DatabaseError as exc:
            raise StoreUnavailableError(f"Vector database call failed: {exc}") from exc

    def upsert_query_embedding(self, query_hash, query_text, vector, deadline=None):
        from apps.search.models import QueryEmbedding

        with self._session(deadline):
            QueryEmbedding.objects.using(self.using).bulk_create(
                [QueryEmbedding(query_hash=query_hash, query_text=query_text, embedding=vector)],
                ignore_conflicts=True,
            )

    def get_query_embedding(self, query_hash, deadline=None):
        from apps.search.models import QueryEmbedding

        with self._session(deadline):
            stored = (
                QueryEmbedding.objects.using(self.using)
                .filter(query_hash=query_hash)
                .values_list("embedding", flat=True)
                .first()
            )
        return as_vector(stored) if stored is not None else None

    def upsert_result_embeddings(self, vectors, deadline=None):
        from apps.search.models import ResultEmbedding

        if not vectors:
            return
        rows = [
            ResultEmbedding(result_id=result_id, embedding=vector)
            for result_id, vector in vectors.items()
        ]
        with self._session(deadline):
            ResultEmbedding.objects.using(self.using).bulk_create(
                rows, batch_size=self.bulk_batch_size, ignore_conflicts=True
            )

    def get_result_embeddings(self, ids, deadline=None):
        from apps.search.models import ResultEmbedding

        ids = list(dict.fromkeys(ids))
        if not ids:
            return {}
        with self._session(deadline):
            rows = list(
                ResultEmbedding.objects.using(self.using)
                .filter(result_id__in=ids)
                .values_list("result_id", "embedding")
            )
        return {result_id: as_vector(stored) for result_id, stored in rows}

    def search_similar(self, vector, top_k, scope=None, deadline=None):
        """
        Nearest results by inner product using the HNSW index.

        ``<#>`` is pgvector's negative inner product, so ascending order is
        descending similarity.
        """
        from apps.search.models import ResultEmbedding

        if top_k <= 0:
            return []

        vector_literal = "[" + ",".join(str(float(v)) for v in vector) + "]"
        params: list = []
        scope_filter = ""
        if scope is not None:
            scope = list(dict.fromkeys(scope))
            if not scope:
                return []
            scope_filter = "WHERE result_id = ANY(%s)"
            params.append(scope)
        params.extend([vector_literal, top_k])

        with self._session(deadline) as connection:
            table = connection.ops.quote_name(ResultEmbedding._meta.db_table)
            sql = f"""
            SELECT result_id
            FROM {table}
            {scope_filter}
            ORDER BY embedding <#> %s::vector
            LIMIT %s;
            """
            with connection.cursor() as cursor:
                cursor.execute(sql, params)
                return [row[0] for row in cursor.fetchall()]


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------

class HybridVectorStore:
    """Primary (persistent) backend with an in-memory fallback.

    Writes go to the primary when it is available and are mirrored into the
    fallback, so the in-memory side keeps warming up while the database is
    healthy. Reads are served by the primary and fall back on
    ``StoreUnavailableError``.
    """

    def __init__(
        self,
        primary: Optional[PgVectorBackend] = None,
        fallback: Optional[InMemoryVectorBackend] = None,
        dimensions: int = DEFAULT_DIMENSIONS,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        if primary is None and fallback is None:
            raise ConfigurationError("HybridVectorStore needs at least one backend")
        self.primary = primary
        self.fallback = fallback
        self.dimensions = dimensions
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._gave_up = False

    def warm_up(self) -> None:
        """Start primary initialization if it has not started yet."""
        if self.primary is not None:
            self.primary.start()

    def _primary_available(self, deadline: Deadline) -> bool:
        """Wait, bounded by ``ready_timeout``, for the primary to finish initializing.

        Once a wait has timed out, later calls skip waiting until the primary
        leaves the pending state, so a request pays the wait at most once.
        """
        if self.primary is None:
            return False
        self.primary.start()
        give_up_at = time.monotonic() + self.ready_timeout
        while True:
            state = self.primary.state
            if state == PgVectorBackend.READY:
                self._gave_up = False
                return True
            if state == PgVectorBackend.FAILED:
                self._gave_up = False
                return False
            if self._gave_up:
                return False
            if time.monotonic() >= give_up_at:
                self._gave_up = True
                logger.warning(
                    "Vector database not ready after %.1fs, using in-memory store",
                    self.ready_timeout,
                )
                return False
            deadline.sleep(self.poll_interval)

    def _read(self, method: str, *args, deadline: Optional[Deadline] = None, empty=None):
        deadline = deadline or Deadline()
        deadline.check()
        if self._primary_available(deadline):
            try:
                return getattr(self.primary, method)(*args, deadline=deadline)
            except StoreUnavailableError as exc:
                logger.warning("Vector database %s failed, using in-memory store: %s", method, exc)
        if self.fallback is None:
            return empty
        return getattr(self.fallback, method)(*args, deadline=deadline)

    def _write(self, method: str, *args, deadline: Optional[Deadline] = None) -> None:
        deadline = deadline or Deadline()
        deadline.check()
        if self._primary_available(deadline):
            try:
                getattr(self.primary, method)(*args, deadline=deadline)
            except StoreUnavailableError as exc:
                logger.warning("Vector database %s failed, writing to memory only: %s", method, exc)
        if self.fallback is not None:
            getattr(self.fallback, method)(*args, deadline=deadline)

    def upsert_query_embedding(
        self, query_hash: str, query_text: str, vector: Vector,
        deadline: Optional[Deadline] = None,
    ) -> None:
        validate_dimension(vector, self.dimensions)
        self._write("upsert_query_embedding", query_hash, query_text, list(vector), deadline=deadline)

    def get_query_embedding(
        self, query_hash: str, deadline: Optional[Deadline] = None
    ) -> Optional[Vector]:
        return self._read("get_query_embedding", query_hash, deadline=deadline)

    def upsert_result_embeddings(
        self, vectors: Mapping[str, Vector], deadline: Optional[Deadline] = None
    ) -> None:
        for vector in vectors.values():
            validate_dimension(vector, self.dimensions)
        if vectors:
            self._write(
                "upsert_result_embeddings",
                {rid: list(vector) for rid, vector in vectors.items()},
                deadline=deadline,
            )

    def get_result_embeddings(
        self, ids: Iterable[str], deadline: Optional[Deadline] = None
    ) -> Dict[str, Vector]:
        ids = list(ids)
        if not ids:
            return {}
        return self._read("get_result_embeddings", ids, deadline=deadline, empty={})

    def search_similar(
        self, vector: Vector, top_k: int, scope: Optional[Iterable[str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[str]:
        validate_dimension(vector, self.dimensions)
        if scope is not None:
            scope = list(scope)
        return self._read("search_similar", list(vector), top_k, scope, deadline=deadline, empty=[])

    def status(self) -> Dict[str, object]:
        return {
            "primary": self.primary.state if self.primary is not None else "disabled",
            "fallback": self.fallback.size() if self.fallback is not None else "disabled",
            "dimensions": self.dimensions,
        }
