"""
Build the search service graph from Django settings.

Called once per process by ``SearchConfig.ready()``. Nothing here touches
the network or the database; the persistent store initializes on the first
``warm_up()``.
"""

import logging
import threading

from django.conf import settings

from apps.search.exceptions import ConfigurationError
from apps.search.services import embeddings, provider, rerank, vector_store

logger = logging.getLogger(__name__)

BACKFILL_SCHEDULERS = {
    "thread": rerank.ThreadBackfillScheduler,
    "celery": rerank.CeleryBackfillScheduler,
}


def build_embedding_service():
    """Return an ``EmbeddingService``; raises ``ConfigurationError`` when unconfigured."""
    client = embeddings.TextEmbeddingClient(
        endpoint_url=getattr(settings, "EMBEDDING_ENDPOINT_URL", ""),
        api_token=getattr(settings, "EMBEDDING_API_TOKEN", ""),
        timeout=getattr(settings, "EMBEDDING_REQUEST_TIMEOUT", embeddings.DEFAULT_REQUEST_TIMEOUT),
    )
    cache = embeddings.EmbeddingCache(
        max_entries=getattr(settings, "EMBEDDING_CACHE_MAX_ENTRIES", embeddings.DEFAULT_CACHE_MAX_ENTRIES),
        ttl_seconds=getattr(settings, "EMBEDDING_CACHE_TTL_SECONDS", embeddings.DEFAULT_CACHE_TTL_SECONDS),
    )
    max_concurrency = getattr(settings, "EMBEDDING_MAX_CONCURRENCY", embeddings.DEFAULT_MAX_CONCURRENCY)
    stagger_ms = getattr(settings, "EMBEDDING_BATCH_STAGGER_MS", embeddings.DEFAULT_STAGGER_DELAY * 1000)

    service = embeddings.EmbeddingService(
        client=client,
        cache=cache,
        semaphore=threading.BoundedSemaphore(max_concurrency),
        dimensions=getattr(settings, "EMBEDDING_DIMENSIONS", vector_store.DEFAULT_DIMENSIONS),
        max_batch_size=getattr(settings, "EMBEDDING_MAX_BATCH_SIZE", embeddings.DEFAULT_MAX_BATCH_SIZE),
        max_workers=max_concurrency,
        stagger_delay=stagger_ms / 1000.0,
        parallel_lookup_threshold=getattr(
            settings, "EMBEDDING_PARALLEL_LOOKUP_THRESHOLD",
            embeddings.DEFAULT_PARALLEL_LOOKUP_THRESHOLD,
        ),
    )
    logger.info("Embedding service configured: %r", client)
    return service


def build_vector_store():
    enabled = getattr(settings, "VECTOR_DB_ENABLED", True)
    use_fallback = getattr(settings, "VECTOR_DB_FALLBACK", True)

    dimensions = getattr(settings, "EMBEDDING_DIMENSIONS", vector_store.DEFAULT_DIMENSIONS)

    primary = None
    if enabled:
        from apps.search.models import EMBEDDING_DIMENSIONS as column_dimensions

        if dimensions != column_dimensions:
            raise ConfigurationError(
                f"EMBEDDING_DIMENSIONS={dimensions} does not match the vector "
                f"columns ({column_dimensions}); add a migration first"
            )
        primary = vector_store.PgVectorBackend(
            using=getattr(settings, "VECTOR_DB_ALIAS", "default"),
            bulk_batch_size=getattr(settings, "VECTOR_DB_BULK_BATCH_SIZE", vector_store.DEFAULT_BULK_BATCH_SIZE),
        )

    fallback = None
    if use_fallback or primary is None:
        fallback = vector_store.InMemoryVectorBackend(
            max_vectors=getattr(settings, "VECTOR_MEMORY_MAX_VECTORS", vector_store.DEFAULT_MEMORY_MAX_VECTORS),
        )

    logger.info(
        "Vector store configured: primary=%s, fallback=%s",
        primary.name if primary else "disabled",
        fallback.name if fallback else "disabled",
    )
    return vector_store.HybridVectorStore(
        primary=primary,
        fallback=fallback,
        dimensions=dimensions,
        ready_timeout=getattr(settings, "VECTOR_DB_READY_TIMEOUT", vector_store.DEFAULT_READY_TIMEOUT),
        poll_interval=getattr(settings, "VECTOR_DB_READY_POLL_INTERVAL", vector_store.DEFAULT_POLL_INTERVAL),
    )


def build_backfill_scheduler():
    mode = getattr(settings, "SEARCH_BACKFILL_MODE", "thread")
    scheduler_class = BACKFILL_SCHEDULERS.get(mode)
    if scheduler_class is None:
        raise ConfigurationError(
            f"Unknown SEARCH_BACKFILL_MODE '{mode}'. "
            f"Available: {', '.join(BACKFILL_SCHEDULERS)}"
        )
    return scheduler_class()


def build_search_service() -> rerank.RerankingSearchService:
    try:
        embedding_service = build_embedding_service()
    except ConfigurationError as exc:
        logger.warning("Embedding service disabled, results will not be reranked: %s", exc)
        embedding_service = None

    search_provider = provider.PaperSearchClient(
        base_url=getattr(settings, "SEARCH_PROVIDER_URL", provider.DEFAULT_PROVIDER_URL),
        timeout=getattr(settings, "SEARCH_PROVIDER_TIMEOUT", provider.DEFAULT_PROVIDER_TIMEOUT),
    )

    return rerank.RerankingSearchService(
        provider=search_provider,
        store=build_vector_store(),
        embedding_service=embedding_service,
        backfill_scheduler=build_backfill_scheduler(),
        rerank_limit=getattr(settings, "SEARCH_RERANK_LIMIT", rerank.DEFAULT_RERANK_LIMIT),
        timeout=getattr(settings, "SEARCH_TIMEOUT", rerank.DEFAULT_SEARCH_TIMEOUT),
        query_embedding_timeout=getattr(
            settings, "SEARCH_QUERY_EMBEDDING_TIMEOUT", rerank.DEFAULT_QUERY_EMBEDDING_TIMEOUT
        ),
        backfill_timeout=getattr(settings, "SEARCH_BACKFILL_TIMEOUT", rerank.DEFAULT_BACKFILL_TIMEOUT),
        max_workers=getattr(settings, "SEARCH_WORKERS", rerank.DEFAULT_WORKERS),
    )
