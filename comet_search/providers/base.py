"""Abstract base for all chat-completion backends."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass


class ProviderError(Exception):
    """Raised when a search, enrichment or completion call fails."""

    def __init__(self, provider_name: str, message: str, status: int | None = None) -> None:
        self.provider_name = provider_name
        self.status = status
        super().__init__(f"[{provider_name}] {message}")


@dataclass
class CompletionOptions:
    temperature: float = 0.7
    max_tokens: int = 2000


class ChatProvider(ABC):
    """Abstract base for all language-model backends."""

    @abstractmethod
    def name(self) -> str:
        """Return the backend id (e.g. 'kimi-k2', 'lmstudio')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        options: CompletionOptions,
    ) -> str:
        """Return a single completion for the prompt pair.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...

    @abstractmethod
    def stream_complete(
        self,
        system_prompt: str,
        user_prompt: str,
        options: CompletionOptions,
    ) -> AsyncIterator[str]:
        """Yield text chunks in emission order.

        The consumer may stop iterating early; closing the iterator
        (``aclose()``) must release the underlying connection.

        Raises:
            ProviderError: On API failure or timeout, possibly mid-stream.
        """
        ...

    async def close(self) -> None:
        """Release the SDK client and its connection pool. Safe to call twice."""
        return None
