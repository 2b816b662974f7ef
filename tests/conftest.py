"""Shared pytest fixtures and test doubles."""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from comet_search.models import ModelResponse, Source, Status
from comet_search.providers.base import ChatProvider, CompletionOptions
from comet_search.search.base import ContentEnricher, SearchProvider, source_from_result
from config.config_loader import (
    AppConfig,
    CouncilConfig,
    CouncilPrompts,
    Credentials,
    EnrichmentConfig,
    InboxConfig,
    ModelConfig,
    ResearchConfig,
    ResearchPrompts,
    SearchConfig,
)


class MockProvider(ChatProvider):
    """Test double ChatProvider.

    ``complete`` is an AsyncMock; ``stream_complete`` yields ``chunks`` one
    per event-loop turn and then raises ``stream_error`` if set.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        response_content: str = "Mock response",
        chunks: list[str] | None = None,
    ) -> None:
        self._name = provider_name
        self.chunks = chunks if chunks is not None else [response_content]
        self.stream_error: Exception | None = None
        self.stream_closed = False
        self.close_count = 0
        # Shadow the class method with an AsyncMock at the instance level.
        self.complete = AsyncMock(return_value=response_content)  # type: ignore[method-assign]

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def complete(self, system_prompt: str, user_prompt: str, options: CompletionOptions) -> str:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return "Mock response"

    async def stream_complete(  # type: ignore[override]
        self,
        system_prompt: str,
        user_prompt: str,
        options: CompletionOptions,
    ) -> AsyncIterator[str]:
        try:
            for chunk in self.chunks:
                await asyncio.sleep(0)
                yield chunk
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True

    async def close(self) -> None:
        self.close_count += 1

    @property
    def closed(self) -> bool:
        return self.close_count > 0


class FakeSearch(SearchProvider):
    """Returns canned results per query, or generated ones; records every call."""

    def __init__(
        self,
        results: dict[str, list[Source]] | None = None,
        error: Exception | None = None,
        per_query: int = 2,
    ) -> None:
        self.results = results or {}
        self.error = error
        self.per_query = per_query
        self.calls: list[str] = []

    async def search(self, query: str, result_count: int) -> list[Source]:
        self.calls.append(query)
        if self.error is not None:
            raise self.error
        if query in self.results:
            return list(self.results[query])
        slug = query.lower().replace(" ", "-")
        return [
            source_from_result(f"{query} #{i}", f"https://example.com/{slug}/{i}", f"Snippet {i} about {query}")
            for i in range(1, self.per_query + 1)
        ][:result_count]


class FakeEnricher(ContentEnricher):
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.calls: list[str] = []

    async def enrich(self, url: str) -> str:
        self.calls.append(url)
        return self.text


# System prompts double as routing keys for scripted_llm.
@pytest.fixture
def research_prompts() -> ResearchPrompts:
    return ResearchPrompts(
        plan_system="PLAN",
        plan="Plan research for: {query}",
        summary_system="SUMMARY",
        summary="Summarize {sub_query}:\n{sources}",
        gap_system="GAP",
        gap="Gaps for {query}:\n{findings}",
        synthesis_system="SYNTH",
        synthesis="Report on {query}:\n{findings}",
    )


@pytest.fixture
def council_prompts() -> CouncilPrompts:
    return CouncilPrompts(
        answer_system="ANSWER",
        consensus_system="CONSENSUS",
        consensus="Compare answers to {query}:\n{responses}",
    )


def scripted_llm(
    plan: str | Exception = "first angle\nsecond angle",
    summary: str | Exception = "A short summary [1].",
    gaps: str | Exception = "",
    report: str | Exception = "# Final report",
) -> MockProvider:
    """MockProvider whose complete() answers by system prompt (see research_prompts)."""
    replies = {"PLAN": plan, "SUMMARY": summary, "GAP": gaps, "SYNTH": report}
    llm = MockProvider("researcher")

    async def reply(system_prompt: str, user_prompt: str, options: CompletionOptions) -> str:
        value = replies[system_prompt]
        if isinstance(value, Exception):
            raise value
        return value

    llm.complete = AsyncMock(side_effect=reply)
    return llm


@pytest.fixture
def research_config() -> ResearchConfig:
    return ResearchConfig(model="researcher", max_sub_queries=5, max_gap_queries=2)


@pytest.fixture
def council_config() -> CouncilConfig:
    return CouncilConfig(synthesizer="gamma", default_panel=["alpha", "beta"])


def make_model_config(name: str, stream: bool = False, api_key_env: str | None = None) -> ModelConfig:
    return ModelConfig(
        name=name,
        sdk="openai",
        model=f"{name}-model",
        api_key_env=api_key_env,
        timeout_sec=30,
        max_tokens=1024,
        display_name=name.title(),
        provider_kind="local" if api_key_env is None else "hosted",
        stream=stream,
    )


@pytest.fixture
def model_configs() -> dict[str, ModelConfig]:
    return {name: make_model_config(name) for name in ("alpha", "beta", "gamma")}


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(api_keys={"BRAVE_API_KEY": "brave-test", "MOONSHOT_API_KEY": "moon-test"})


@pytest.fixture
def sample_app_config(
    tmp_path: Path,
    research_prompts: ResearchPrompts,
    council_prompts: CouncilPrompts,
    research_config: ResearchConfig,
    council_config: CouncilConfig,
    model_configs: dict[str, ModelConfig],
) -> AppConfig:
    return AppConfig(
        output_dir=tmp_path / "output",
        search=SearchConfig(base_url="https://search.test/web", api_key_env="BRAVE_API_KEY", timeout_sec=5),
        enrichment=EnrichmentConfig(base_url="https://reader.test/", timeout_sec=5),
        research=research_config,
        council=council_config,
        inbox=InboxConfig(dir=tmp_path / "inbox", archive_dir=tmp_path / "inbox" / "archive"),
        models=model_configs,
        research_prompts=research_prompts,
        council_prompts=council_prompts,
    )


@pytest.fixture
def sample_responses() -> list[ModelResponse]:
    return [
        ModelResponse(
            backend_id="alpha",
            display_name="Alpha",
            provider_kind="local",
            status=Status.COMPLETED,
            text="Solar power is renewable energy",
            latency_ms=120,
        ),
        ModelResponse(
            backend_id="beta",
            display_name="Beta",
            provider_kind="hosted",
            status=Status.COMPLETED,
            text="Renewable energy includes solar power",
            latency_ms=340,
        ),
    ]


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()
