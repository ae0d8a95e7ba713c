"""
Shared fixtures for the search app tests.

External services are replaced by in-process fakes; no test needs the
network or PostgreSQL.
"""

import threading

import pytest

from apps.search.services.embeddings import EmbeddingCache, EmbeddingService
from apps.search.services.provider import SearchResult
from apps.search.services.rerank import RerankingSearchService
from apps.search.services.vector_store import HybridVectorStore, InMemoryVectorBackend
from apps.search.tests.fakes import DIMENSIONS, FakeEmbeddingClient, RecordingScheduler


@pytest.fixture
def embedding_client():
    return FakeEmbeddingClient()


@pytest.fixture
def embedding_service(embedding_client):
    service = EmbeddingService(
        client=embedding_client,
        cache=EmbeddingCache(),
        semaphore=threading.BoundedSemaphore(15),
        dimensions=DIMENSIONS,
        stagger_delay=0,
    )
    yield service
    service.close()


@pytest.fixture
def memory_backend():
    return InMemoryVectorBackend()


@pytest.fixture
def memory_store(memory_backend):
    return HybridVectorStore(fallback=memory_backend, dimensions=DIMENSIONS)


@pytest.fixture
def candidates():
    return [
        SearchResult(id="2401.00001", title="Paper A", published_at="2024-01-01T00:00:00.000Z"),
        SearchResult(id="2401.00002", title="Paper B"),
        SearchResult(id="2401.00003", title="Paper C", summary="About C"),
        SearchResult(id="2401.00004", title="Paper D"),
        SearchResult(id="2401.00005", title="Paper E"),
    ]


@pytest.fixture
def make_search_service(memory_store, embedding_service):
    """Factory for ``RerankingSearchService`` wired to fakes."""
    created = []

    def _make(provider, store=memory_store, embedding_service=embedding_service,
              scheduler=None, **kwargs):
        service = RerankingSearchService(
            provider=provider,
            store=store,
            embedding_service=embedding_service,
            backfill_scheduler=scheduler if scheduler is not None else RecordingScheduler(),
            **kwargs,
        )
        created.append(service)
        return service

    yield _make
    for service in created:
        service._executor.shutdown(wait=True)
