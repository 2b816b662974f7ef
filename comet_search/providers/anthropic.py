"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator

import anthropic as anthropic_sdk

from comet_search.providers.base import ChatProvider, CompletionOptions, ProviderError
from config.config_loader import ModelConfig

logger = logging.getLogger(__name__)


class AnthropicProvider(ChatProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig, api_key: str = "") -> None:
        self._config = config
        api_key = api_key.strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, timeout=config.timeout_sec)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def close(self) -> None:
        await self._client.close()

    def _request(self, system_prompt: str, user_prompt: str, options: CompletionOptions) -> dict:
        kwargs = {
            "model": self._config.model,
            "max_tokens": min(options.max_tokens, self._config.max_tokens),
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        return kwargs

    async def complete(self, system_prompt: str, user_prompt: str, options: CompletionOptions) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(**self._request(system_prompt, user_prompt, options)),
                timeout=self._config.timeout_sec,
            )
        except (TimeoutError, anthropic_sdk.APITimeoutError) as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            raise ProviderError(self._config.name, f"API call failed: {exc}", status=status) from exc

        latency = time.monotonic() - start

        if not response.content:
            raise ProviderError(self._config.name, "Empty response content")

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.info("%s completion: %.2fs, %s tokens", self._config.name, latency, token_count)
        return "\n".join(text_blocks)

    async def stream_complete(
        self, system_prompt: str, user_prompt: str, options: CompletionOptions
    ) -> AsyncIterator[str]:
        # Leaving the context manager closes the HTTP response, including on early exit
        try:
            async with self._client.messages.stream(**self._request(system_prompt, user_prompt, options)) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic_sdk.APITimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            raise ProviderError(self._config.name, f"Stream failed: {exc}", status=status) from exc
