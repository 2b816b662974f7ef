"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator

from google import genai
from google.genai import types as genai_types

from comet_search.providers.base import ChatProvider, CompletionOptions, ProviderError
from config.config_loader import ModelConfig

logger = logging.getLogger(__name__)


class GeminiProvider(ChatProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig, api_key: str = "") -> None:
        self._config = config
        api_key = api_key.strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def close(self) -> None:
        await self._client.aio.aclose()

    def _generation_config(self, system_prompt: str, options: CompletionOptions) -> genai_types.GenerateContentConfig:
        return genai_types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            temperature=options.temperature,
            max_output_tokens=min(options.max_tokens, self._config.max_tokens),
        )

    async def complete(self, system_prompt: str, user_prompt: str, options: CompletionOptions) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.model,
                    contents=user_prompt,
                    config=self._generation_config(system_prompt, options),
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            status = getattr(exc, "code", None)
            raise ProviderError(self._config.name, f"API call failed: {exc}", status=status) from exc

        latency = time.monotonic() - start

        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info("%s completion: %.2fs, %s tokens", self._config.name, latency, token_count)
        return response.text

    async def stream_complete(
        self, system_prompt: str, user_prompt: str, options: CompletionOptions
    ) -> AsyncIterator[str]:
        try:
            stream = await asyncio.wait_for(
                self._client.aio.models.generate_content_stream(
                    model=self._config.model,
                    contents=user_prompt,
                    config=self._generation_config(system_prompt, options),
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            status = getattr(exc, "code", None)
            raise ProviderError(self._config.name, f"API call failed: {exc}", status=status) from exc

        try:
            async for chunk in stream:
                if chunk.text:
                    yield chunk.text
        except Exception as exc:
            raise ProviderError(self._config.name, f"Stream failed: {exc}") from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
