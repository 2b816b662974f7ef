"""Search and content-enrichment interfaces plus source helpers."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from urllib.parse import urlparse

from comet_search.models import Source

logger = logging.getLogger(__name__)


class SearchProvider(ABC):
    """Web search backend."""

    @abstractmethod
    async def search(self, query: str, result_count: int) -> list[Source]:
        """Return up to ``result_count`` sources, possibly an empty list.

        Raises:
            ProviderError: On non-2xx status, network failure or malformed body.
        """
        ...


class ContentEnricher(ABC):
    """Fetches readable page text for a URL."""

    @abstractmethod
    async def enrich(self, url: str) -> str:
        """Return extracted page text, or "" on any failure. Never raises."""
        ...


def domain_of(url: str) -> str:
    """Host part of ``url`` with a leading "www." removed."""
    host = urlparse(url).hostname or ""
    return host.removeprefix("www.")


def source_from_result(title: str, url: str, snippet: str) -> Source:
    return Source(
        title=title or url,
        url=url,
        domain=domain_of(url),
        snippet=snippet,
        content=snippet,
    )


async def enrich_sources(
    sources: list[Source],
    enricher: ContentEnricher,
    limit: int = 3,
) -> list[Source]:
    """Fetch content for the first ``limit`` sources concurrently.

    Returns new Source objects in the original order. Sources past the limit,
    and sources whose enrichment came back empty, keep the snippet as content.
    """
    head = sources[:limit]
    contents = await asyncio.gather(*(enricher.enrich(s.url) for s in head))
    enriched = [
        replace(s, content=text, enriched=True) if text else replace(s, content=s.snippet)
        for s, text in zip(head, contents)
    ]
    logger.debug("Enriched %d/%d sources", sum(1 for s in enriched if s.enriched), len(head))
    return enriched + [replace(s) for s in sources[limit:]]
