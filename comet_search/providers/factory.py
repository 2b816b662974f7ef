"""Build chat providers from backend config plus explicitly passed credentials."""

import asyncio
import logging
from collections.abc import Iterable

from comet_search.providers.anthropic import AnthropicProvider
from comet_search.providers.base import ChatProvider, ProviderError
from comet_search.providers.gemini import GeminiProvider
from comet_search.providers.openai_compat import OpenAICompatibleProvider
from config.config_loader import Credentials, ModelConfig

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[ChatProvider]] = {
    "openai": OpenAICompatibleProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def build_provider(model_cfg: ModelConfig, credentials: Credentials) -> ChatProvider:
    """Instantiate the provider class for ``model_cfg.sdk``.

    Raises:
        ProviderError: Unknown sdk or missing API key.
    """
    provider_cls = PROVIDER_CLASSES.get(model_cfg.sdk)
    if provider_cls is None:
        raise ProviderError(model_cfg.name, f"Unsupported sdk: {model_cfg.sdk!r}")
    return provider_cls(model_cfg, credentials.get(model_cfg.api_key_env))


def build_available_providers(
    models: dict[str, ModelConfig],
    credentials: Credentials,
) -> dict[str, ChatProvider]:
    """Build every backend that has credentials. Returns dict keyed by backend id."""
    providers: dict[str, ChatProvider] = {}
    for backend_id, model_cfg in models.items():
        if not credentials.has_key_for(model_cfg):
            continue
        try:
            providers[backend_id] = build_provider(model_cfg, credentials)
        except ProviderError as exc:
            logger.warning("Failed to instantiate backend '%s': %s", backend_id, exc)
    return providers


async def close_providers(providers: Iterable[ChatProvider]) -> None:
    """Close every provider concurrently. A failed close is logged, not raised."""
    providers = list(providers)
    results = await asyncio.gather(*(p.close() for p in providers), return_exceptions=True)
    for provider, result in zip(providers, results):
        if isinstance(result, Exception):
            logger.warning("Failed to close backend '%s': %s", provider.name(), result)
