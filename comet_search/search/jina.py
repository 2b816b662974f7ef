"""Page-content enrichment through the Jina reader proxy."""

import logging
import re

import httpx

from comet_search.search.base import ContentEnricher
from config.config_loader import Credentials, EnrichmentConfig

logger = logging.getLogger(__name__)

JINA_READER_URL = "https://r.jina.ai/"

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


class JinaReaderEnricher(ContentEnricher):
    """GET <reader>/http://<host/path> returns the page as plain text/markdown."""

    def __init__(self, base_url: str = JINA_READER_URL, api_key: str = "", timeout_sec: float = 20.0) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.api_key = api_key.strip()
        self.client = httpx.AsyncClient(timeout=timeout_sec, follow_redirects=True)

    def reader_url(self, url: str) -> str:
        return f"{self.base_url}http://{_SCHEME_RE.sub('', url)}"

    async def enrich(self, url: str) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = await self.client.get(self.reader_url(url), headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug("Enrichment failed for %s: %s", url, exc)
            return ""
        if resp.status_code >= 400:
            logger.debug("Enrichment failed for %s: HTTP %d", url, resp.status_code)
            return ""
        return resp.text.strip()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def build_enricher(config: EnrichmentConfig, credentials: Credentials) -> JinaReaderEnricher:
    return JinaReaderEnricher(
        base_url=config.base_url,
        api_key=credentials.get(config.api_key_env),
        timeout_sec=config.timeout_sec,
    )
