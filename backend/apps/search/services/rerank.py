"""
Semantic reranking of provider search results.

This service handles:
- Fetching raw candidates from the search provider
- Resolving the query embedding (cache, then store, then generation)
- Reordering candidates by similarity without ever dropping one
- Scheduling embedding backfill for candidates the store does not know yet

Only the candidate fetch is mandatory. Every other step degrades to the
provider's own ordering when it fails.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Sequence

from apps.search.exceptions import OperationCancelled, SearchError
from apps.search.services.deadline import Deadline
from apps.search.services.embeddings import EmbeddingService
from apps.search.services.provider import PaperSearchClient, SearchResult
from apps.search.services.vector_store import HybridVectorStore, InMemoryVectorBackend
from apps.search.services.vectors import (
    Vector,
    as_vector,
    hash_query,
    normalize_query,
    validate_dimension,
)

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_TIMEOUT = 15.0
DEFAULT_QUERY_EMBEDDING_TIMEOUT = 5.0
DEFAULT_BACKFILL_TIMEOUT = 60.0
DEFAULT_RERANK_LIMIT = 200
DEFAULT_WORKERS = 4


def merge_by_similarity(
    candidates: Sequence[SearchResult], ranked_ids: Iterable[str]
) -> List[SearchResult]:
    """
    Reorder ``candidates`` so that those in ``ranked_ids`` come first, in that order.

    IDs not among the candidates are ignored; candidates not ranked keep
    their original relative order after the ranked prefix. The output is
    always a permutation of the input.
    """
    first_index = {}
    for index, candidate in enumerate(candidates):
        first_index.setdefault(candidate.id, index)

    emitted = set()
    merged: List[SearchResult] = []
    for result_id in ranked_ids:
        index = first_index.get(result_id)
        if index is None or index in emitted:
            continue
        emitted.add(index)
        merged.append(candidates[index])

    merged.extend(c for i, c in enumerate(candidates) if i not in emitted)
    return merged


def _log_backfill_outcome(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Embedding backfill failed: %s", exc)


class ThreadBackfillScheduler:
    """Run backfill in a small in-process thread pool."""

    def __init__(self, max_workers: int = 2):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="embedding-backfill"
        )

    def schedule(self, service: "RerankingSearchService", candidates: List[SearchResult]):
        future = self._executor.submit(service.backfill, candidates)
        future.add_done_callback(_log_backfill_outcome)
        return future

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class CeleryBackfillScheduler:
    """Dispatch backfill to a Celery worker.

    Only useful with the persistent store: a worker's in-memory store is not
    the web process's.
    """

    def schedule(self, service: "RerankingSearchService", candidates: List[SearchResult]):
        from apps.search.tasks import backfill_result_embeddings

        return backfill_result_embeddings.delay([c.to_dict() for c in candidates])

    def close(self) -> None:
        pass


class RerankingSearchService:
    """Search entry point: provider results reordered by embedding similarity."""

    def __init__(
        self,
        provider: PaperSearchClient,
        store: HybridVectorStore,
        embedding_service: Optional[EmbeddingService] = None,
        backfill_scheduler=None,
        rerank_limit: int = DEFAULT_RERANK_LIMIT,
        timeout: float = DEFAULT_SEARCH_TIMEOUT,
        query_embedding_timeout: float = DEFAULT_QUERY_EMBEDDING_TIMEOUT,
        backfill_timeout: float = DEFAULT_BACKFILL_TIMEOUT,
        max_workers: int = DEFAULT_WORKERS,
    ):
        self.provider = provider
        self.store = store
        self.embedding_service = embedding_service
        self.backfill_scheduler = backfill_scheduler
        self.rerank_limit = rerank_limit
        self.timeout = timeout
        self.query_embedding_timeout = query_embedding_timeout
        self.backfill_timeout = backfill_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="search"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self.backfill_scheduler is not None:
            self.backfill_scheduler.close()
        if self.embedding_service is not None:
            self.embedding_service.close()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str, deadline: Optional[Deadline] = None) -> List[SearchResult]:
        """
        Fetch candidates for ``query`` and return them reranked.

        Args:
            query: Search query text
            deadline: Caller deadline; defaults to ``timeout`` seconds

        Returns:
            The provider's candidates, same length and IDs, reordered.

        Raises:
            UpstreamError: the search provider failed.
            OperationCancelled: the deadline was cancelled or expired.
        """
        query = (query or "").strip()
        if not query:
            raise ValueError("Search query cannot be empty")

        deadline = deadline or Deadline(self.timeout)
        started = time.monotonic()
        self.store.warm_up()

        embedding_scope = deadline.child(self.query_embedding_timeout)
        embedding_future = self._executor.submit(
            self._resolve_or_none, query, embedding_scope
        )
        try:
            candidates = self.provider.search(query, deadline=deadline)
        except Exception:
            embedding_scope.cancel()
            raise

        query_embedding = embedding_future.result()
        deadline.check()

        results = self._rerank(query, candidates, query_embedding, deadline)
        logger.info(
            "Search completed: results=%d, reranked=%s, duration_ms=%d, query_preview=%s",
            len(results), query_embedding is not None,
            (time.monotonic() - started) * 1000, query[:50],
        )
        return results

    def rerank(
        self,
        query: str,
        candidates: Sequence[SearchResult],
        query_embedding: Optional[Vector] = None,
        deadline: Optional[Deadline] = None,
        result_embeddings: Optional[Sequence[Optional[Vector]]] = None,
    ) -> List[SearchResult]:
        """Rerank a caller-supplied candidate list.

        A supplied ``query_embedding`` must have the store's dimension;
        otherwise it is resolved the same way ``search`` does.

        With ``result_embeddings`` (one entry per candidate, ``None`` allowed)
        candidates are ranked against those vectors in memory and nothing is
        stored or backfilled. Entries that are missing or of the wrong
        dimension keep their candidate in provider order after the ranked ones.

        Raises:
            ValueError: ``result_embeddings`` and ``candidates`` differ in length.
        """
        candidates = list(candidates)
        if result_embeddings is not None and len(result_embeddings) != len(candidates):
            raise ValueError(
                f"Results and embeddings length mismatch: "
                f"{len(candidates)} vs {len(result_embeddings)}"
            )

        deadline = deadline or Deadline(self.timeout)
        self.store.warm_up()
        if query_embedding is not None:
            validate_dimension(query_embedding, self.store.dimensions)
        else:
            query_embedding = self._resolve_or_none(
                query, deadline.child(self.query_embedding_timeout)
            )

        if result_embeddings is None:
            return self._rerank(query, candidates, query_embedding, deadline)
        if query_embedding is None:
            return candidates
        return self._rank_supplied(candidates, query_embedding, result_embeddings)

    def _rank_supplied(self, candidates, query_embedding, result_embeddings) -> List[SearchResult]:
        vectors = {}
        for candidate, vector in zip(candidates, result_embeddings):
            if vector is None or candidate.id in vectors:
                continue
            try:
                vector = as_vector(vector)
                validate_dimension(vector, self.store.dimensions)
            except (TypeError, ValueError) as exc:
                logger.debug("Ignoring embedding for %s: %s", candidate.id, exc)
                continue
            vectors[candidate.id] = vector

        if not vectors:
            return candidates
        scratch = InMemoryVectorBackend(max_vectors=None)
        scratch.upsert_result_embeddings(vectors)
        ranked = scratch.search_similar(query_embedding, len(vectors))
        logger.debug("Ranked %d of %d candidates by supplied embeddings", len(ranked), len(candidates))
        return merge_by_similarity(candidates, ranked)

    def _rerank(self, query, candidates, query_embedding, deadline) -> List[SearchResult]:
        candidates = list(candidates)
        if not candidates:
            return []

        ordered = candidates
        if query_embedding is not None:
            ordered = self._order_by_similarity(candidates, query_embedding, deadline)
            self._persist_query_embedding(query, query_embedding, deadline)

        self._schedule_backfill(candidates)
        return ordered

    def _order_by_similarity(self, candidates, query_embedding, deadline) -> List[SearchResult]:
        ids = [c.id for c in candidates]
        top_k = min(len(ids), self.rerank_limit)
        try:
            ranked = self.store.search_similar(
                query_embedding, top_k, scope=ids, deadline=deadline
            )
        except OperationCancelled:
            raise
        except (SearchError, ValueError) as exc:
            logger.warning("Similarity search failed, keeping provider order: %s", exc)
            return candidates

        logger.debug("Similarity search ranked %d of %d candidates", len(ranked), len(ids))
        return merge_by_similarity(candidates, ranked)

    def _persist_query_embedding(self, query, query_embedding, deadline) -> None:
        try:
            self.store.upsert_query_embedding(
                hash_query(query), normalize_query(query), query_embedding, deadline=deadline
            )
        except (SearchError, ValueError) as exc:
            logger.warning("Failed to store query embedding: %s", exc)

    # ------------------------------------------------------------------
    # Query embedding
    # ------------------------------------------------------------------

    def resolve_query_embedding(
        self, query: str, deadline: Optional[Deadline] = None
    ) -> Optional[Vector]:
        """Cached vector, else the stored one, else a freshly generated one.

        Returns ``None`` when nothing is stored and no embedding service is
        configured. Generation errors propagate.
        """
        deadline = deadline or Deadline(self.query_embedding_timeout)

        if self.embedding_service is not None:
            cached = self.embedding_service.cached_embedding(query)
            if cached is not None:
                return cached

        stored = self.store.get_query_embedding(hash_query(query), deadline=deadline)
        if stored is not None:
            if self.embedding_service is not None:
                self.embedding_service.prime(query, stored)
            return stored

        if self.embedding_service is None:
            return None
        return self.embedding_service.generate_embedding(query, deadline=deadline)

    def _resolve_or_none(self, query: str, deadline: Deadline) -> Optional[Vector]:
        try:
            return self.resolve_query_embedding(query, deadline)
        except (SearchError, ValueError) as exc:
            logger.warning("Query embedding unavailable, returning provider order: %s", exc)
        except Exception:
            logger.exception("Unexpected error resolving query embedding")
        return None

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def _schedule_backfill(self, candidates: List[SearchResult]) -> None:
        if self.embedding_service is None or self.backfill_scheduler is None:
            return
        try:
            self.backfill_scheduler.schedule(self, candidates)
        except Exception as exc:
            logger.warning("Failed to schedule embedding backfill: %s", exc)

    def missing_embeddings(
        self, candidates: Iterable[SearchResult], deadline: Optional[Deadline] = None
    ) -> List[SearchResult]:
        """Candidates (first occurrence per ID) with no stored result embedding."""
        unique = {}
        for candidate in candidates:
            unique.setdefault(candidate.id, candidate)
        if not unique:
            return []
        existing = self.store.get_result_embeddings(list(unique), deadline=deadline)
        return [
            c for result_id, c in unique.items()
            if result_id not in existing and c.embedding_text.strip()
        ]

    def backfill(
        self, candidates: Iterable[SearchResult], deadline: Optional[Deadline] = None
    ) -> int:
        """
        Generate and store embeddings for candidates that lack one.

        Returns the number of embeddings stored. Errors propagate to the
        scheduler, which logs them.
        """
        if self.embedding_service is None:
            logger.debug("Skipping backfill: no embedding service configured")
            return 0

        deadline = deadline or Deadline(self.backfill_timeout)
        missing = self.missing_embeddings(candidates, deadline=deadline)
        if not missing:
            return 0

        vectors = self.embedding_service.generate_embeddings(
            [c.embedding_text for c in missing], deadline=deadline
        )
        self.store.upsert_result_embeddings(
            {c.id: vector for c, vector in zip(missing, vectors)}, deadline=deadline
        )
        logger.info("Backfilled %d result embeddings", len(missing))
        return len(missing)
