"""Council orchestration: concurrent answers from N backends, then consensus."""

import asyncio
import copy
import logging
import time
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import replace

from comet_search.aggregation import (
    INSUFFICIENT_RESPONSES,
    consensus_highlights,
    keyword_consensus_summary,
)
from comet_search.models import CouncilSession, ModelResponse, RunState, Status
from comet_search.providers.base import ChatProvider, CompletionOptions, ProviderError
from comet_search.providers.factory import build_provider, close_providers
from comet_search.sessions import (
    TERMINAL_STATUSES,
    SessionPublisher,
    ValidationError,
    cast_vote,
    finish,
    new_council_session,
    transition,
)
from comet_search.synthesis import analyze_consensus
from config.config_loader import AppConfig, CouncilConfig, CouncilPrompts, Credentials, ModelConfig

logger = logging.getLogger(__name__)

CANCELLED = "Cancelled"
_RETRY_TIMEOUT_FACTOR = 1.5

ProviderFactory = Callable[[ModelConfig, Credentials], ChatProvider]


def pick_synthesizer(
    available: list[str],
    panel: list[str],
    preferred: str,
) -> tuple[str | None, bool]:
    """Pick the consensus backend, preferring one that did not answer.

    Returns (backend_id, is_participant). backend_id is None when nothing
    is available; is_participant is True only when every available backend
    is on the panel.
    """
    if not available:
        return None, False
    not_in_panel = [b for b in available if b not in panel]
    if not_in_panel:
        if preferred in not_in_panel:
            return preferred, False
        return not_in_panel[0], False
    if preferred in available:
        return preferred, True
    return available[0], True


class CouncilEngine:
    """Fans one query out to several backends and compares the answers.

    Each backend runs in its own task, so ``stop`` and ``stop_backend``
    cancel the underlying HTTP calls rather than just ignoring them.
    """

    def __init__(
        self,
        models: dict[str, ModelConfig],
        prompts: CouncilPrompts,
        settings: CouncilConfig,
        answer_options: CompletionOptions | None = None,
        consensus_options: CompletionOptions | None = None,
        provider_factory: ProviderFactory = build_provider,
    ) -> None:
        self._models = models
        self._prompts = prompts
        self._settings = settings
        self._answer_options = answer_options or CompletionOptions()
        self._consensus_options = consensus_options or CompletionOptions()
        self._factory = provider_factory
        self._publisher = SessionPublisher()
        self._session: CouncilSession | None = None
        self._task: asyncio.Task | None = None
        self._backend_tasks: dict[str, asyncio.Task] = {}
        self._pending_stops: set[str] = set()
        self._stop_requested = False

    def subscribe(self, observer: Callable[[CouncilSession], None]) -> Callable[[], None]:
        return self._publisher.subscribe(observer)

    @property
    def session(self) -> CouncilSession | None:
        return copy.deepcopy(self._session)

    def stop(self) -> None:
        """Abort every in-flight backend call and the consensus call."""
        self._stop_requested = True
        for task in self._backend_tasks.values():
            if not task.done():
                task.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def stop_backend(self, backend_id: str) -> None:
        """Abort one backend; the others keep running.

        A backend that has not been dispatched yet is never started.
        """
        task = self._backend_tasks.get(backend_id)
        if task is None:
            if self._session is None or backend_id not in {r.backend_id for r in self._session.responses}:
                raise ValidationError(f"Backend not in this session: {backend_id}")
            logger.info("Stopping backend %s before dispatch", backend_id)
            self._pending_stops.add(backend_id)
            return
        if not task.done():
            logger.info("Stopping backend %s", backend_id)
            task.cancel()

    def vote_for_best(self, backend_id: str) -> CouncilSession:
        """Move the user's vote to ``backend_id``. No provider is called."""
        if self._session is None:
            raise ValidationError("No council session to vote on")
        cast_vote(self._session, backend_id)
        self._publish()
        return copy.deepcopy(self._session)

    async def run_council(
        self,
        query: str,
        backend_ids: list[str],
        credentials: Credentials,
        synthesizer: str | None = None,
        synthesizer_pool: list[str] | None = None,
    ) -> CouncilSession:
        """Ask every backend in ``backend_ids`` concurrently and build a consensus.

        Args:
            query: The user question, sent verbatim to every backend.
            backend_ids: Backend ids from settings.yaml, 2..max_backends of them.
            credentials: API keys; a backend without a key ends in error.
            synthesizer: Consensus backend chosen by the caller; tried first.
            synthesizer_pool: Backends known to be reachable (e.g. health-checked).
                Defaults to every backend with credentials.

        Returns:
            Snapshot of the terminal session (completed or stopped).

        Raises:
            ValidationError: Empty query, unknown or duplicate backend, too few
                or too many backends, or a run already in progress.
        """
        if self._task is not None and not self._task.done():
            raise ValidationError("A council run is already in progress")
        unknown = [b for b in backend_ids if b not in self._models]
        if synthesizer is not None and synthesizer not in self._models:
            unknown.append(synthesizer)
        if unknown:
            raise ValidationError(f"Unknown backend(s): {', '.join(unknown)}")

        session = new_council_session(
            query,
            [self._models[b] for b in backend_ids],
            min_backends=self._settings.min_backends,
            max_backends=self._settings.max_backends,
        )
        self._session = session
        self._stop_requested = False
        self._backend_tasks = {}
        self._pending_stops = set()
        logger.info("Council %s started with %s", session.id, ", ".join(backend_ids))
        self._publish()

        self._task = asyncio.create_task(self._execute(session, credentials, synthesizer, synthesizer_pool))
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._stop_requested:
                self.stop()
                self._mark_stopped(session)
                raise
            logger.info("Council %s stopped by request", session.id)
        except Exception:
            self.stop()
            self._mark_stopped(session)
            raise

        self._mark_stopped(session)
        return copy.deepcopy(session)

    async def _execute(
        self,
        session: CouncilSession,
        credentials: Credentials,
        synthesizer: str | None,
        synthesizer_pool: list[str] | None,
    ) -> None:
        if self._stop_requested:
            return
        providers: dict[str, ChatProvider] = {}
        try:
            for resp in session.responses:
                try:
                    providers[resp.backend_id] = self._factory(self._models[resp.backend_id], credentials)
                except ProviderError as exc:
                    logger.warning("Backend %s unavailable: %s", resp.backend_id, exc)
                    self._fail(resp, str(exc))
            self._publish()

            for resp in session.responses:
                provider = providers.get(resp.backend_id)
                if provider is None:
                    continue
                if resp.backend_id in self._pending_stops:
                    self._fail(resp, CANCELLED)
                    continue
                self._backend_tasks[resp.backend_id] = asyncio.create_task(
                    self._answer(session, resp, provider, credentials)
                )
            await asyncio.gather(*self._backend_tasks.values(), return_exceptions=True)
        finally:
            await close_providers(providers.values())

        # stop_backend() cancellations that landed before the task body ran
        for resp in session.responses:
            if resp.status not in TERMINAL_STATUSES:
                self._fail(resp, CANCELLED)

        if self._stop_requested:
            return

        completed = [r for r in session.responses if r.status == Status.COMPLETED]
        logger.info(
            "Council %s answers settled: %d/%d completed",
            session.id,
            len(completed),
            len(session.responses),
        )
        await self._build_consensus(session, credentials, synthesizer, synthesizer_pool)
        finish(session, RunState.COMPLETED)
        self._publish()

    async def _answer(
        self,
        session: CouncilSession,
        resp: ModelResponse,
        provider: ChatProvider,
        credentials: Credentials,
    ) -> None:
        """Drive one backend from running to completed or error. Never raises ProviderError."""
        transition(resp, Status.RUNNING)
        self._publish()
        start = time.monotonic()
        model_cfg = self._models[resp.backend_id]
        retry_provider: ChatProvider | None = None

        try:
            try:
                await self._ask(session, resp, provider, model_cfg.stream)
            except ProviderError as exc:
                # retry once on timeout, unless streamed text already arrived
                if "timed out" not in str(exc).lower() or resp.text:
                    raise
                retry_cfg = replace(model_cfg, timeout_sec=int(model_cfg.timeout_sec * _RETRY_TIMEOUT_FACTOR))
                logger.warning(
                    "Backend %s timed out, retrying with %ds (1.5x)",
                    resp.backend_id,
                    retry_cfg.timeout_sec,
                )
                retry_provider = self._factory(retry_cfg, credentials)
                await self._ask(session, resp, retry_provider, model_cfg.stream)
        except asyncio.CancelledError:
            self._fail(resp, CANCELLED, start)
            self._publish()
            raise
        except ProviderError as exc:
            logger.warning("Backend %s failed: %s", resp.backend_id, exc)
            self._fail(resp, str(exc), start)
            self._publish()
        except Exception as exc:
            logger.warning("Backend %s unexpected failure: %s", resp.backend_id, exc)
            self._fail(resp, f"Unexpected error: {exc}", start)
            self._publish()
        else:
            resp.latency_ms = _elapsed_ms(start)
            transition(resp, Status.COMPLETED)
            logger.info("Backend %s answered in %d ms", resp.backend_id, resp.latency_ms)
            self._publish()
        finally:
            if retry_provider is not None:
                await close_providers([retry_provider])

    async def _ask(self, session: CouncilSession, resp: ModelResponse, provider: ChatProvider, stream: bool) -> None:
        system_prompt = self._prompts.answer_system
        if not stream:
            resp.text = await provider.complete(system_prompt, session.query, self._answer_options)
            return

        async with aclosing(provider.stream_complete(system_prompt, session.query, self._answer_options)) as chunks:
            async for chunk in chunks:
                if chunk:
                    resp.text += chunk
                    self._publish()
        if not resp.text:
            raise ProviderError(provider.name(), "Empty streamed response")

    def _synthesizer_order(
        self,
        session: CouncilSession,
        credentials: Credentials,
        synthesizer: str | None,
        synthesizer_pool: list[str] | None,
    ) -> list[str]:
        """Consensus backends to try, best first.

        An explicit ``synthesizer`` leads. Otherwise the non-participant rule
        picks from the pool. The configured synthesizer and then every backend
        that answered follow as fallbacks, since those are known to be reachable.
        """
        panel = [r.backend_id for r in session.responses]
        answered = [r.backend_id for r in session.responses if r.status == Status.COMPLETED]
        if synthesizer_pool is None:
            pool = list(self._models)
        else:
            pool = [b for b in synthesizer_pool if b in self._models]
        pool = [b for b in pool if credentials.has_key_for(self._models[b])]
        preferred = synthesizer or self._settings.synthesizer

        order: list[str] = []
        if synthesizer:
            order.append(synthesizer)
        else:
            first, is_participant = pick_synthesizer(pool, panel, preferred)
            if first is not None:
                logger.info("Consensus by %s (%s)", first, "participant" if is_participant else "non-participant")
                order.append(first)
        if preferred in pool or preferred in answered:
            order.append(preferred)
        order += answered
        usable = [b for b in order if b in self._models and credentials.has_key_for(self._models[b])]
        return list(dict.fromkeys(usable))

    async def _build_consensus(
        self,
        session: CouncilSession,
        credentials: Credentials,
        synthesizer: str | None,
        synthesizer_pool: list[str] | None,
    ) -> None:
        completed = [r for r in session.responses if r.status == Status.COMPLETED and r.text]
        session.highlights = consensus_highlights(session.responses)

        if len(completed) < 2:
            session.consensus = INSUFFICIENT_RESPONSES
            session.consensus_method = "insufficient"
            return

        for synth_id in self._synthesizer_order(session, credentials, synthesizer, synthesizer_pool):
            try:
                provider = self._factory(self._models[synth_id], credentials)
            except ProviderError as exc:
                logger.warning("Synthesizer %s unavailable: %s", synth_id, exc)
                continue
            try:
                text = await analyze_consensus(
                    session.query, completed, provider, self._prompts, self._consensus_options
                )
            except (ProviderError, RuntimeError) as exc:
                logger.warning("Consensus analysis by %s failed: %s", synth_id, exc)
                continue
            finally:
                await close_providers([provider])

            session.consensus = text
            session.consensus_method = "model"
            session.synthesizer = synth_id
            return

        logger.info("No synthesizer backend produced a consensus, using keyword consensus")
        session.consensus = keyword_consensus_summary(session.responses)
        session.consensus_method = "heuristic"

    def _fail(self, resp: ModelResponse, message: str, start: float | None = None) -> None:
        if resp.status in TERMINAL_STATUSES:
            return
        if start is not None:
            resp.latency_ms = _elapsed_ms(start)
        resp.error_message = message
        transition(resp, Status.ERROR)

    def _mark_stopped(self, session: CouncilSession) -> None:
        if session.run_state != RunState.RUNNING:
            return
        for resp in session.responses:
            self._fail(resp, CANCELLED)
        finish(session, RunState.STOPPED)
        self._publish()

    def _publish(self) -> None:
        if self._session is not None:
            self._publisher.publish(self._session)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def build_council_engine(config: AppConfig) -> CouncilEngine:
    return CouncilEngine(
        models=config.models,
        prompts=config.council_prompts,
        settings=config.council,
        answer_options=config.options_for("answer"),
        consensus_options=config.options_for("consensus"),
    )
