"""
Celery tasks for embedding backfill.

Used when SEARCH_BACKFILL_MODE = "celery": the web process hands the
candidates of a search to a worker, which embeds and stores the ones the
vector store does not have yet.
"""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def backfill_result_embeddings(self, candidates: list) -> dict:
    """
    Generate and store embeddings for candidates that lack one.

    Args:
        candidates: Serialized search results (``SearchResult.to_dict()``).

    Returns:
        dict with backfill summary.
    """
    from apps.search.apps import get_search_service
    from apps.search.exceptions import SearchError, UpstreamError
    from apps.search.services.provider import SearchResult

    try:
        results = [SearchResult.from_dict(item) for item in candidates]
    except (KeyError, TypeError) as exc:
        logger.error("Invalid backfill payload: %s", exc)
        return {"status": "error", "detail": f"Invalid payload: {exc}"}

    if not results:
        return {"status": "skipped", "detail": "No candidates"}

    service = get_search_service()
    if service is None or service.embedding_service is None:
        logger.info("Embedding service not configured, skipping backfill")
        return {"status": "skipped", "detail": "Embedding service not configured"}

    try:
        stored = service.backfill(results)
    except UpstreamError as exc:
        logger.error("Embedding backfill failed for %d candidates: %s", len(results), exc)
        if self.request.retries < self.max_retries:
            logger.info("Retrying embedding backfill (attempt %d/%d)",
                        self.request.retries + 1, self.max_retries)
            raise self.retry(countdown=self.default_retry_delay, exc=exc)
        return {
            "status": "failed",
            "error": str(exc),
            "retries_exhausted": True,
        }
    except SearchError as exc:
        logger.error("Embedding backfill failed: %s", exc)
        return {"status": "failed", "error": str(exc)}

    if not stored:
        return {"status": "skipped", "detail": "All candidates already have embeddings"}

    logger.info("Backfilled %d of %d candidates", stored, len(results))
    return {
        "status": "completed",
        "embeddings_generated": stored,
        "total_candidates": len(results),
    }
