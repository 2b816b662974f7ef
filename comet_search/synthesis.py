"""Prompt assembly and the model calls behind planning, summaries, gaps, reports and consensus.

Every function here raises on failure (ProviderError, or RuntimeError for an
empty answer). Fallback policy belongs to the engines.
"""

import logging
import re

from comet_search.models import ModelResponse, Source
from comet_search.providers.base import ChatProvider, CompletionOptions
from config.config_loader import CouncilPrompts, ResearchPrompts

logger = logging.getLogger(__name__)

_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def parse_query_lines(text: str, limit: int) -> list[str]:
    """One query per non-empty line, list markers and wrapping quotes removed."""
    queries: list[str] = []
    for line in text.splitlines():
        cleaned = _LIST_MARKER_RE.sub("", line).strip().strip('"').strip()
        if cleaned:
            queries.append(cleaned)
    return queries[:limit]


def fallback_plan(query: str) -> list[str]:
    return [
        f"{query} overview",
        f"{query} latest developments",
        f"{query} examples and case studies",
        f"{query} expert opinions",
    ]


def format_sources_block(sources: list[Source], max_chars: int) -> str:
    """Numbered source list for citation-style prompts."""
    return "\n\n".join(
        f"[{i}] {s.title}\n{(s.content or s.snippet)[:max_chars]}"
        for i, s in enumerate(sources, start=1)
    )


def format_responses_block(responses: list[ModelResponse]) -> str:
    return "\n".join(f"=== {r.display_name} ===\n{r.text}\n" for r in responses)


async def _ask(provider: ChatProvider, system_prompt: str, user_prompt: str, options: CompletionOptions) -> str:
    text = (await provider.complete(system_prompt, user_prompt, options)).strip()
    if not text:
        raise RuntimeError(f"{provider.name()} returned empty content")
    return text


async def plan_sub_queries(
    query: str,
    provider: ChatProvider,
    prompts: ResearchPrompts,
    options: CompletionOptions,
    limit: int = 5,
) -> list[str]:
    text = await _ask(provider, prompts.plan_system, prompts.plan.format(query=query), options)
    sub_queries = parse_query_lines(text, limit)
    if not sub_queries:
        raise RuntimeError(f"{provider.name()} returned no sub-queries")
    return sub_queries


async def summarize_findings(
    sub_query: str,
    sources: list[Source],
    provider: ChatProvider,
    prompts: ResearchPrompts,
    options: CompletionOptions,
    max_source_chars: int = 2000,
) -> str:
    prompt = prompts.summary.format(
        sub_query=sub_query,
        sources=format_sources_block(sources, max_source_chars),
    )
    return await _ask(provider, prompts.summary_system, prompt, options)


async def find_gaps(
    query: str,
    findings: list[str],
    provider: ChatProvider,
    prompts: ResearchPrompts,
    options: CompletionOptions,
    limit: int = 2,
) -> list[str]:
    prompt = prompts.gap.format(query=query, findings="\n\n".join(findings))
    text = (await provider.complete(prompts.gap_system, prompt, options)).strip()
    return parse_query_lines(text, limit)


async def synthesize_report(
    query: str,
    findings: list[str],
    provider: ChatProvider,
    prompts: ResearchPrompts,
    options: CompletionOptions,
) -> str:
    logger.info("Running report synthesis via %s", provider.name())
    prompt = prompts.synthesis.format(query=query, findings="\n\n---\n\n".join(findings))
    return await _ask(provider, prompts.synthesis_system, prompt, options)


async def analyze_consensus(
    query: str,
    responses: list[ModelResponse],
    provider: ChatProvider,
    prompts: CouncilPrompts,
    options: CompletionOptions,
) -> str:
    """Model-written comparison of the given (completed) responses."""
    logger.info("Running consensus analysis via %s over %d responses", provider.name(), len(responses))
    prompt = prompts.consensus.format(query=query, responses=format_responses_block(responses))
    return await _ask(provider, prompts.consensus_system, prompt, options)
