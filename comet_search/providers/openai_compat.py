"""OpenAI-compatible chat provider (Moonshot/Kimi, LM Studio, OpenAI) using the openai SDK."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator

from openai import AsyncOpenAI, APITimeoutError

from comet_search.providers.base import ChatProvider, CompletionOptions, ProviderError
from config.config_loader import ModelConfig

logger = logging.getLogger(__name__)

# LM Studio and similar local servers ignore the key, but the SDK insists on one
_LOCAL_PLACEHOLDER_KEY = "not-needed"


class OpenAICompatibleProvider(ChatProvider):
    """Any backend speaking the OpenAI chat-completions protocol."""

    def __init__(self, config: ModelConfig, api_key: str = "") -> None:
        self._config = config
        api_key = api_key.strip()
        if config.api_key_env and not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = AsyncOpenAI(
            api_key=api_key or _LOCAL_PLACEHOLDER_KEY,
            base_url=config.base_url,
            timeout=config.timeout_sec,
        )

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def close(self) -> None:
        await self._client.close()

    def _request(self, system_prompt: str, user_prompt: str, options: CompletionOptions) -> dict:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return {
            "model": self._config.model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": min(options.max_tokens, self._config.max_tokens),
        }

    async def complete(self, system_prompt: str, user_prompt: str, options: CompletionOptions) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**self._request(system_prompt, user_prompt, options)),
                timeout=self._config.timeout_sec,
            )
        except (TimeoutError, APITimeoutError) as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            raise ProviderError(self._config.name, f"API call failed: {exc}", status=status) from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.info("%s completion: %.2fs, %s tokens", self._config.name, latency, token_count)
        return choice.message.content

    async def stream_complete(
        self, system_prompt: str, user_prompt: str, options: CompletionOptions
    ) -> AsyncIterator[str]:
        try:
            stream = await asyncio.wait_for(
                self._client.chat.completions.create(
                    **self._request(system_prompt, user_prompt, options),
                    stream=True,
                ),
                timeout=self._config.timeout_sec,
            )
        except (TimeoutError, APITimeoutError) as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            raise ProviderError(self._config.name, f"API call failed: {exc}", status=status) from exc

        try:
            async for chunk in stream:
                choice = chunk.choices[0] if chunk.choices else None
                delta = choice.delta.content if choice and choice.delta else None
                if delta:
                    yield delta
        except APITimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"Stream failed: {exc}") from exc
        finally:
            await stream.close()
