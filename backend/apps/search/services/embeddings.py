"""
Text embedding generation against an external inference endpoint.

The endpoint speaks the text-embeddings-inference protocol:

    POST <EMBEDDING_ENDPOINT_URL>
    Authorization: Bearer <EMBEDDING_API_TOKEN>
    {"inputs": ["text", ...]}  ->  [[0.1, ...], ...]

``EmbeddingService`` sits in front of the client and adds the in-process
cache, batching (at most ``max_batch_size`` texts per call), a process-wide
semaphore bounding in-flight calls, and a stagger between batches so a cold
endpoint is not hit by a synchronized burst. Failed calls are not retried
here; callers decide.
"""

import logging
import math
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from apps.search.exceptions import (
    ConfigurationError,
    UpstreamCallError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from apps.search.services.deadline import Deadline
from apps.search.services.locks import ReadWriteLock
from apps.search.services.vectors import Vector, hash_text, validate_dimension

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 32
DEFAULT_MAX_CONCURRENCY = 15
DEFAULT_STAGGER_DELAY = 0.1  # seconds per batch index
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_PARALLEL_LOOKUP_THRESHOLD = 100
DEFAULT_CACHE_MAX_ENTRIES = 10_000
DEFAULT_CACHE_TTL_SECONDS = 24 * 3600
LOOKUP_WORKERS = 4


# ---------------------------------------------------------------------------
# In-process cache
# ---------------------------------------------------------------------------

class EmbeddingCache:
    """Text-hash -> vector cache with TTL expiry and a size bound.

    Entries are kept in insertion order and evicted oldest first, so reads
    never reorder anything and can share the lock. Expired entries are
    invisible to readers and purged on the next write.
    """

    def __init__(
        self,
        max_entries: Optional[int] = DEFAULT_CACHE_MAX_ENTRIES,
        ttl_seconds: Optional[float] = DEFAULT_CACHE_TTL_SECONDS,
        clock=time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Tuple[float, ...]]]" = OrderedDict()
        self._lock = ReadWriteLock()
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def _is_fresh(self, stored_at: float, now: float) -> bool:
        return not self.ttl_seconds or now - stored_at < self.ttl_seconds

    def get(self, key: str) -> Optional[Vector]:
        now = self._clock()
        with self._lock.read():
            entry = self._entries.get(key)
        hit = entry is not None and self._is_fresh(entry[0], now)
        with self._stats_lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1
        return list(entry[1]) if hit else None

    def set(self, key: str, vector: Sequence[float]) -> None:
        self.set_many([(key, vector)])

    def set_many(self, items: Iterable[Tuple[str, Sequence[float]]]) -> None:
        now = self._clock()
        with self._lock.write():
            for key, vector in items:
                self._entries.pop(key, None)
                self._entries[key] = (now, tuple(vector))
            self._evict(now)

    def _evict(self, now: float) -> None:
        """Drop expired entries, then the oldest ones beyond ``max_entries``."""
        if self.ttl_seconds:
            while self._entries:
                stored_at, _ = next(iter(self._entries.values()))
                if self._is_fresh(stored_at, now):
                    break
                self._entries.popitem(last=False)
        if self.max_entries:
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock.write():
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        return {"entries": len(self), "hits": hits, "misses": misses}


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

def _error_detail(response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "")[:200]
    if isinstance(payload, dict) and payload.get("error"):
        error_type = payload.get("error_type")
        return f"{payload['error']} ({error_type})" if error_type else str(payload["error"])
    return str(payload)[:200]


def _parse_vectors(payload, expected: int) -> List[Vector]:
    if isinstance(payload, dict) and payload.get("error"):
        raise UpstreamCallError(
            f"Embedding endpoint reported an error: {payload['error']}",
            service="embedding",
        )
    if not isinstance(payload, list):
        raise UpstreamResponseError(
            f"Expected a JSON array of embeddings, got {type(payload).__name__}",
            service="embedding",
        )
    if len(payload) != expected:
        raise UpstreamResponseError(
            f"Embedding endpoint returned {len(payload)} vectors for {expected} inputs",
            service="embedding",
        )

    vectors: List[Vector] = []
    for i, item in enumerate(payload):
        if not isinstance(item, list) or not item:
            raise UpstreamResponseError(
                f"Embedding {i} is not a non-empty array", service="embedding"
            )
        if any(isinstance(v, bool) or not isinstance(v, (int, float)) for v in item):
            raise UpstreamResponseError(
                f"Embedding {i} contains non-numeric values", service="embedding"
            )
        vectors.append([float(v) for v in item])
    return vectors


class TextEmbeddingClient:
    """Thin ``requests`` client for the embedding endpoint."""

    def __init__(
        self,
        endpoint_url: str,
        api_token: str,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if not endpoint_url:
            raise ConfigurationError(
                "EMBEDDING_ENDPOINT_URL is not configured. "
                "Set the EMBEDDING_ENDPOINT_URL environment variable."
            )
        if not api_token:
            raise ConfigurationError(
                "EMBEDDING_API_TOKEN is not configured. "
                "Set the EMBEDDING_API_TOKEN environment variable."
            )
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Accept": "application/json",
        }

    def __repr__(self) -> str:
        return f"<TextEmbeddingClient {self.endpoint_url}>"

    def embed(self, texts: Sequence[str], deadline: Optional[Deadline] = None) -> List[Vector]:
        """Return one vector per text, in input order."""
        timeout = deadline.timeout_for(self.timeout) if deadline is not None else self.timeout

        try:
            response = self.session.post(
                self.endpoint_url,
                json={"inputs": list(texts)},
                headers=self._headers,
                timeout=timeout,
            )
        except requests.Timeout as exc:
            raise UpstreamTimeoutError(
                f"Embedding request timed out after {timeout:.1f}s", service="embedding"
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamCallError(
                f"Cannot reach embedding endpoint: {exc}", service="embedding"
            ) from exc

        if not 200 <= response.status_code < 300:
            raise UpstreamCallError(
                f"Embedding endpoint returned HTTP {response.status_code}: "
                f"{_error_detail(response)}",
                service="embedding",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamResponseError(
                "Embedding endpoint returned invalid JSON", service="embedding"
            ) from exc

        return _parse_vectors(payload, expected=len(texts))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EmbeddingService:
    """Cache-or-generate embeddings with batching and a shared concurrency limit.

    ``semaphore`` must be shared by every service talking to the same
    endpoint; it bounds in-flight calls for the whole process.
    """

    def __init__(
        self,
        client: TextEmbeddingClient,
        cache: Optional[EmbeddingCache] = None,
        semaphore: Optional[threading.Semaphore] = None,
        dimensions: Optional[int] = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        max_workers: int = DEFAULT_MAX_CONCURRENCY,
        stagger_delay: float = DEFAULT_STAGGER_DELAY,
        parallel_lookup_threshold: int = DEFAULT_PARALLEL_LOOKUP_THRESHOLD,
    ):
        if max_batch_size < 1:
            raise ConfigurationError("EMBEDDING_MAX_BATCH_SIZE must be at least 1")
        self.client = client
        self.cache = cache if cache is not None else EmbeddingCache()
        self.semaphore = semaphore or threading.BoundedSemaphore(DEFAULT_MAX_CONCURRENCY)
        self.dimensions = dimensions
        self.max_batch_size = max_batch_size
        self.stagger_delay = stagger_delay
        self.parallel_lookup_threshold = parallel_lookup_threshold
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="embedding-batch"
        )
        self._lookup_executor = ThreadPoolExecutor(
            max_workers=LOOKUP_WORKERS, thread_name_prefix="embedding-lookup"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._lookup_executor.shutdown(wait=False, cancel_futures=True)

    def cached_embedding(self, text: str) -> Optional[Vector]:
        """Return the cached vector for ``text`` without calling the endpoint."""
        return self.cache.get(hash_text(text))

    def prime(self, text: str, vector: Vector) -> None:
        """Seed the cache with a vector obtained elsewhere, e.g. the store."""
        self.cache.set(hash_text(text), vector)

    def generate_embedding(self, text: str, deadline: Optional[Deadline] = None) -> Vector:
        return self.generate_embeddings([text], deadline=deadline)[0]

    def generate_embeddings(
        self, texts: Sequence[str], deadline: Optional[Deadline] = None
    ) -> List[Vector]:
        """
        Return one vector per text, preserving input order and length.

        Cached texts are served locally; the rest are sent in batches of at
        most ``max_batch_size``. The first failing batch aborts the others and
        its error is raised unchanged.
        """
        texts = list(texts)
        if not texts:
            return []
        deadline = deadline or Deadline()

        results, missing = self._lookup(texts)
        if not missing:
            logger.debug("Embeddings served from cache: count=%d", len(texts))
            return results

        generated = self._dispatch([texts[i] for i in missing], deadline)
        for index, vector in zip(missing, generated):
            results[index] = vector

        logger.info(
            "Generated embeddings: requested=%d, cached=%d, generated=%d",
            len(texts), len(texts) - len(missing), len(missing),
        )
        return results

    def _lookup(self, texts: List[str]) -> Tuple[List[Optional[Vector]], List[int]]:
        """Cache lookups; sequential for small inputs, fanned out for large ones."""
        if len(texts) > self.parallel_lookup_threshold:
            size = math.ceil(len(texts) / LOOKUP_WORKERS)
            slices = [texts[i: i + size] for i in range(0, len(texts), size)]
            found: List[Optional[Vector]] = []
            for part in self._lookup_executor.map(self._lookup_slice, slices):
                found.extend(part)
        else:
            found = self._lookup_slice(texts)
        missing = [i for i, vector in enumerate(found) if vector is None]
        return found, missing

    def _lookup_slice(self, texts: List[str]) -> List[Optional[Vector]]:
        return [self.cache.get(hash_text(text)) for text in texts]

    def _dispatch(self, texts: List[str], deadline: Deadline) -> List[Vector]:
        size = self.max_batch_size
        batches = [texts[i: i + size] for i in range(0, len(texts), size)]
        if len(batches) == 1:
            return self._embed_batch(0, batches[0], deadline)

        scope = deadline.child()
        futures = [
            self._executor.submit(self._embed_batch, index, batch, scope)
            for index, batch in enumerate(batches)
        ]
        try:
            for future in as_completed(futures):
                future.result()
        except Exception:
            # Calls already in flight finish in the background and release
            # their semaphore slots on their own.
            scope.cancel()
            for future in futures:
                future.cancel()
            raise

        vectors: List[Vector] = []
        for future in futures:
            vectors.extend(future.result())
        return vectors

    def _embed_batch(self, index: int, batch: List[str], deadline: Deadline) -> List[Vector]:
        if index and self.stagger_delay:
            deadline.sleep(index * self.stagger_delay)

        deadline.acquire(self.semaphore)
        try:
            vectors = self.client.embed(batch, deadline=deadline)
        finally:
            self.semaphore.release()

        if self.dimensions:
            for vector in vectors:
                validate_dimension(vector, self.dimensions)

        self.cache.set_many(
            (hash_text(text), vector) for text, vector in zip(batch, vectors)
        )
        logger.debug("Embedded batch %d: size=%d", index, len(batch))
        return vectors
