"""Deep research: plan -> search -> analyze -> gap analysis -> follow-up search -> synthesize."""

import asyncio
import copy
import logging
from collections.abc import Callable

from comet_search.models import ResearchSession, RunState, Source
from comet_search.providers.base import ChatProvider, CompletionOptions, ProviderError
from comet_search.providers.factory import build_provider, close_providers
from comet_search.search.base import ContentEnricher, SearchProvider, enrich_sources
from comet_search.search.brave import build_search_provider
from comet_search.search.jina import build_enricher
from comet_search.sessions import (
    SessionPublisher,
    ValidationError,
    begin_step,
    complete_step,
    fail_step,
    finish,
    merge_sources,
    new_research_session,
)
from comet_search.synthesis import (
    fallback_plan,
    find_gaps,
    plan_sub_queries,
    summarize_findings,
    synthesize_report,
)
from config.config_loader import AppConfig, Credentials, ResearchConfig, ResearchPrompts

logger = logging.getLogger(__name__)

SYNTHESIS_FALLBACK = "Unable to synthesize final report. Please review the individual findings above."
NO_RESULTS = "No search results found"


def _bullets(items: list[str]) -> str:
    return "\n".join(f"• {item}" for item in items)


class ResearchEngine:
    """Runs one research session at a time and owns its state until it is terminal.

    Observers registered with ``subscribe`` receive a deep-copied snapshot
    after every state change. ``stop`` may be called from any coroutine or
    observer; the run then ends ``stopped`` and no later result is applied.
    """

    def __init__(
        self,
        search: SearchProvider,
        enricher: ContentEnricher,
        llm: ChatProvider,
        settings: ResearchConfig,
        prompts: ResearchPrompts,
        completion: dict[str, CompletionOptions] | None = None,
        result_count: int = 10,
        enrich_limit: int = 3,
    ) -> None:
        self._search = search
        self._enricher = enricher
        self._llm = llm
        self._settings = settings
        self._prompts = prompts
        self._completion = completion or {}
        self._result_count = result_count
        self._enrich_limit = enrich_limit
        self._publisher = SessionPublisher()
        self._session: ResearchSession | None = None
        self._task: asyncio.Task | None = None
        self._stop_requested = False

    def subscribe(self, observer: Callable[[ResearchSession], None]) -> Callable[[], None]:
        return self._publisher.subscribe(observer)

    @property
    def session(self) -> ResearchSession | None:
        """Snapshot of the current (or last) session."""
        return copy.deepcopy(self._session)

    def stop(self) -> None:
        self._stop_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def run(self, query: str) -> ResearchSession:
        """Run the full pipeline for ``query`` and return the terminal session.

        Raises:
            ValidationError: Empty query, or a run already in progress.
        """
        if self._task is not None and not self._task.done():
            raise ValidationError("A research run is already in progress")

        session = new_research_session(query)
        self._session = session
        self._stop_requested = False
        logger.info("Research %s started: %s", session.id, session.query)
        self._publish()

        self._task = asyncio.create_task(self._execute(session))
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._stop_requested:
                self._task.cancel()
                self._mark_stopped(session)
                raise
            logger.info("Research %s stopped by request", session.id)
        except Exception as exc:
            session.error = session.error or str(exc)
            self._mark_stopped(session)
            raise

        self._mark_stopped(session)
        return copy.deepcopy(session)

    async def close(self) -> None:
        """Close the search, enrichment and model clients."""
        try:
            for client in (self._search, self._enricher):
                close = getattr(client, "close", None)
                if close is not None:
                    await close()
        finally:
            await close_providers([self._llm])

    # --- pipeline ---

    async def _execute(self, session: ResearchSession) -> None:
        query = session.query
        findings: list[str] = []

        # 1. plan
        self._begin(session, "plan")
        sub_queries = await self._plan(query)
        complete_step(
            session,
            "plan",
            f"Research plan created with {len(sub_queries)} sub-queries:\n{_bullets(sub_queries)}",
            sub_queries=sub_queries,
        )
        self._publish()
        self._checkpoint()

        # 2. initial search; a search failure or an empty result set ends the run
        self._begin(session, "search-1")
        try:
            step_sources = await self._search_all(session, sub_queries, findings, label="Query", fatal=True)
        except ProviderError as exc:
            logger.error("Initial search failed: %s", exc)
            self._abort(session, "search-1", f"Search failed: {exc}")
            return
        if not session.sources:
            logger.error("Initial search returned no results for any sub-query")
            self._abort(session, "search-1", NO_RESULTS)
            return
        complete_step(
            session,
            "search-1",
            f"Completed {len(sub_queries)} searches",
            sources=step_sources,
            sub_queries=sub_queries,
        )
        self._publish()
        self._checkpoint()

        # 3. analyze checkpoint
        self._begin(session, "analyze-1")
        if self._settings.analyze_pause_sec > 0:
            await asyncio.sleep(self._settings.analyze_pause_sec)
        complete_step(
            session,
            "analyze-1",
            f"Analyzed {len(session.sources)} sources across {len(sub_queries)} sub-queries",
        )
        self._publish()
        self._checkpoint()

        # 4. gap analysis
        self._begin(session, "followup")
        gaps = await self._gaps(query, findings)
        complete_step(
            session,
            "followup",
            f"Identified {len(gaps)} knowledge gaps:\n{_bullets(gaps)}" if gaps else "No significant gaps identified",
            sub_queries=gaps,
        )
        self._publish()
        self._checkpoint()

        # 5. follow-up search
        if gaps:
            self._begin(session, "search-2")
            step_sources = await self._search_all(session, gaps, findings, label="Gap Query", fatal=False)
            complete_step(
                session,
                "search-2",
                f"Filled {len(gaps)} knowledge gaps",
                sources=step_sources,
                sub_queries=gaps,
            )
        else:
            complete_step(session, "search-2", "Skipped - no gaps identified")
        self._publish()
        self._checkpoint()

        # 6. synthesis
        self._begin(session, "synthesize")
        report, synthesized = await self._synthesize(query, findings)
        session.final_report = report
        complete_step(
            session,
            "synthesize",
            "Comprehensive research report generated" if synthesized else "Report synthesis failed; see step results",
        )
        finish(session, RunState.COMPLETED)
        logger.info("Research %s completed with %d sources", session.id, len(session.sources))
        self._publish()

    async def _search_all(
        self,
        session: ResearchSession,
        queries: list[str],
        findings: list[str],
        label: str,
        fatal: bool,
    ) -> list[Source]:
        """Search, enrich and summarize each query in order. Returns this step's sources."""
        step_sources: list[Source] = []
        for sub_query in queries:
            self._checkpoint()
            try:
                results = await self._search.search(sub_query, self._result_count)
            except ProviderError as exc:
                if fatal:
                    raise
                logger.warning("Follow-up search failed for '%s': %s", sub_query, exc)
                continue

            if results:
                sources = await enrich_sources(results, self._enricher, self._enrich_limit)
                summary = await self._summarize(sub_query, sources)
            else:
                sources = []
                summary = f"Found 0 sources for '{sub_query}'"

            findings.append(f"{label}: {sub_query}\n{summary}")
            step_sources = merge_sources(step_sources, sources)
            session.sources = merge_sources(session.sources, sources)
            self._publish()
        return step_sources

    async def _plan(self, query: str) -> list[str]:
        try:
            return await plan_sub_queries(
                query,
                self._llm,
                self._prompts,
                self._options("plan"),
                limit=self._settings.max_sub_queries,
            )
        except (ProviderError, RuntimeError) as exc:
            logger.warning("Planning failed, using template sub-queries: %s", exc)
            return fallback_plan(query)

    async def _summarize(self, sub_query: str, sources: list[Source]) -> str:
        try:
            return await summarize_findings(
                sub_query,
                sources,
                self._llm,
                self._prompts,
                self._options("summary"),
                max_source_chars=self._settings.max_source_chars,
            )
        except (ProviderError, RuntimeError) as exc:
            logger.warning("Summary failed for '%s': %s", sub_query, exc)
            return f"Found {len(sources)} sources for '{sub_query}'"

    async def _gaps(self, query: str, findings: list[str]) -> list[str]:
        try:
            return await find_gaps(
                query,
                findings,
                self._llm,
                self._prompts,
                self._options("gap"),
                limit=self._settings.max_gap_queries,
            )
        except ProviderError as exc:
            logger.warning("Gap analysis failed, treating as no gaps: %s", exc)
            return []

    async def _synthesize(self, query: str, findings: list[str]) -> tuple[str, bool]:
        try:
            report = await synthesize_report(query, findings, self._llm, self._prompts, self._options("synthesis"))
            return report, True
        except (ProviderError, RuntimeError) as exc:
            logger.warning("Report synthesis failed: %s", exc)
            return SYNTHESIS_FALLBACK, False

    # --- helpers ---

    def _options(self, purpose: str) -> CompletionOptions:
        return self._completion.get(purpose, CompletionOptions())

    def _begin(self, session: ResearchSession, step_id: str) -> None:
        step = begin_step(session, step_id)
        logger.info("Step %s: %s", step.id, step.title)
        self._publish()

    def _abort(self, session: ResearchSession, step_id: str, message: str) -> None:
        fail_step(session, step_id, message)
        session.error = message
        finish(session, RunState.STOPPED)
        self._publish()

    def _checkpoint(self) -> None:
        if self._stop_requested:
            raise asyncio.CancelledError()

    def _mark_stopped(self, session: ResearchSession) -> None:
        if session.run_state == RunState.RUNNING:
            finish(session, RunState.STOPPED)
            self._publish()

    def _publish(self) -> None:
        if self._session is not None:
            self._publisher.publish(self._session)


def build_research_engine(config: AppConfig, credentials: Credentials) -> ResearchEngine:
    """Wire the configured search, enrichment and research backend.

    Raises:
        ValidationError: No search API key, or unknown research backend.
        ProviderError: The research backend cannot be built (e.g. missing key).
    """
    if not credentials.get(config.search.api_key_env):
        raise ValidationError(f"Missing search API key: set {config.search.api_key_env}")
    model_cfg = config.models.get(config.research.model)
    if model_cfg is None:
        raise ValidationError(f"Unknown research backend: {config.research.model}")
    llm = build_provider(model_cfg, credentials)
    return ResearchEngine(
        search=build_search_provider(config.search, credentials),
        enricher=build_enricher(config.enrichment, credentials),
        llm=llm,
        settings=config.research,
        prompts=config.research_prompts,
        completion=config.completion,
        result_count=config.search.result_count,
        enrich_limit=config.enrichment.max_sources,
    )
