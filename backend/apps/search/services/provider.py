"""
External keyword search provider.

The provider returns the raw candidate list that the reranker reorders.
Candidates are fetched with ``GET <SEARCH_PROVIDER_URL>?q=<query>``; the
Hugging Face papers API wraps each item as ``{"paper": {...}}``, plain
providers return the fields at the top level. Both are accepted.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from apps.search.exceptions import (
    UpstreamCallError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from apps.search.services.deadline import Deadline

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_URL = "https://huggingface.co/api/papers/search"
DEFAULT_PROVIDER_TIMEOUT = 10.0


@dataclass(frozen=True)
class SearchResult:
    """A candidate document as returned by the provider."""

    id: str
    title: str
    summary: str = ""
    published_at: str = ""

    @property
    def embedding_text(self) -> str:
        """Text embedded for this result: title and summary."""
        if self.summary:
            return f"{self.title}. {self.summary}"
        return self.title

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResult":
        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            summary=str(data.get("summary") or ""),
            published_at=str(data.get("publishedAt") or data.get("published_at") or ""),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "publishedAt": self.published_at,
        }


def parse_results(payload) -> List[SearchResult]:
    """Convert a provider body into candidates, dropping items without ID or title."""
    if not isinstance(payload, list):
        raise UpstreamResponseError(
            f"Expected a JSON array of results, got {type(payload).__name__}",
            service="search",
        )

    results: List[SearchResult] = []
    skipped = 0
    for item in payload:
        if isinstance(item, dict) and isinstance(item.get("paper"), dict):
            item = item["paper"]
        if not isinstance(item, dict) or not item.get("id") or not item.get("title"):
            skipped += 1
            continue
        results.append(SearchResult.from_dict(item))

    if skipped:
        logger.debug("Dropped %d provider items without id or title", skipped)
    return results


class PaperSearchClient:
    """Fetch raw candidates from the search provider."""

    def __init__(
        self,
        base_url: str = DEFAULT_PROVIDER_URL,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f"<PaperSearchClient {self.base_url}>"

    def search(self, query: str, deadline: Optional[Deadline] = None) -> List[SearchResult]:
        timeout = deadline.timeout_for(self.timeout) if deadline is not None else self.timeout

        try:
            response = self.session.get(
                self.base_url,
                params={"q": query},
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except requests.Timeout as exc:
            raise UpstreamTimeoutError(
                f"Search provider timed out after {timeout:.1f}s", service="search"
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamCallError(
                f"Cannot reach search provider: {exc}", service="search"
            ) from exc

        if not 200 <= response.status_code < 300:
            raise UpstreamCallError(
                f"Search provider returned HTTP {response.status_code}",
                service="search",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamResponseError(
                "Search provider returned invalid JSON", service="search"
            ) from exc

        results = parse_results(payload)
        logger.info("Search provider returned %d results for query_preview=%s", len(results), query[:50])
        return results
