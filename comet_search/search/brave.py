"""Brave web search over httpx."""

import logging
from typing import Any

import httpx

from comet_search.models import Source
from comet_search.providers.base import ProviderError
from comet_search.search.base import SearchProvider, source_from_result
from config.config_loader import Credentials, SearchConfig

logger = logging.getLogger(__name__)

BRAVE_API_URL = "https://api.search.brave.com/res/v1/web/search"


class BraveSearchProvider(SearchProvider):
    def __init__(self, api_key: str, base_url: str = BRAVE_API_URL, timeout_sec: float = 20.0) -> None:
        self.api_key = api_key.strip()
        self.base_url = base_url
        # One pooled client per provider; sub-queries reuse connections
        self.client = httpx.AsyncClient(
            timeout=timeout_sec,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    async def search(self, query: str, result_count: int) -> list[Source]:
        if not self.api_key:
            raise ProviderError("brave", "Missing API key")
        headers = {
            "X-Subscription-Token": self.api_key,
            "Accept": "application/json",
        }
        try:
            resp = await self.client.get(
                self.base_url,
                params={"q": query, "count": result_count},
                headers=headers,
            )
            resp.raise_for_status()
            data: Any = resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ProviderError("brave", f"Brave API error: {status}", status=status) from exc
        except httpx.RequestError as exc:
            raise ProviderError("brave", f"Request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError("brave", "Malformed JSON response") from exc

        if not isinstance(data, dict):
            raise ProviderError("brave", "Malformed response body")

        results = (data.get("web") or {}).get("results") or []
        sources = [
            source_from_result(str(r.get("title") or ""), str(r["url"]), str(r.get("description") or ""))
            for r in results
            if isinstance(r, dict) and r.get("url")
        ]
        logger.info("Search '%s': %d results", query, len(sources))
        return sources

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def build_search_provider(config: SearchConfig, credentials: Credentials) -> BraveSearchProvider:
    return BraveSearchProvider(
        api_key=credentials.get(config.api_key_env),
        base_url=config.base_url,
        timeout_sec=config.timeout_sec,
    )
