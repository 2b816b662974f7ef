"""Session construction, one-way status transitions, and snapshot publishing.

Engines are the only writers of session state. Everything they hand to the
outside world goes through ``SessionPublisher``, which delivers deep copies.
"""

import copy
import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from comet_search.aggregation import best_response_id
from comet_search.models import (
    CouncilSession,
    ModelResponse,
    ResearchSession,
    ResearchStep,
    RunState,
    Source,
    Status,
    StepKind,
)
from config.config_loader import ModelConfig

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Caller misuse, rejected before any provider call."""


class InvalidTransitionError(RuntimeError):
    """A status change that would break the one-way lifecycle."""


TERMINAL_STATUSES = frozenset({Status.COMPLETED, Status.ERROR})

_ALLOWED_TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.PENDING: frozenset({Status.RUNNING, Status.COMPLETED, Status.ERROR}),
    Status.RUNNING: frozenset({Status.COMPLETED, Status.ERROR}),
    Status.COMPLETED: frozenset(),
    Status.ERROR: frozenset(),
}

# (id, kind, title, description), fixed order
RESEARCH_PIPELINE: list[tuple[str, StepKind, str, str]] = [
    ("plan", StepKind.PLAN, "Research Planning", "Analyzing query and creating research strategy"),
    ("search-1", StepKind.SEARCH, "Initial Search", "Gathering information from multiple sources"),
    ("analyze-1", StepKind.ANALYZE, "Analysis", "Processing and summarizing findings"),
    ("followup", StepKind.FOLLOWUP, "Gap Analysis", "Identifying missing information"),
    ("search-2", StepKind.SEARCH, "Follow-up Search", "Filling knowledge gaps"),
    ("synthesize", StepKind.SYNTHESIZE, "Synthesis", "Creating comprehensive report"),
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _require_query(query: str) -> str:
    cleaned = (query or "").strip()
    if not cleaned:
        raise ValidationError("Query must not be empty")
    return cleaned


def new_research_session(query: str) -> ResearchSession:
    return ResearchSession(
        id=_new_id("research"),
        query=_require_query(query),
        steps=[
            ResearchStep(id=step_id, kind=kind, title=title, description=description)
            for step_id, kind, title, description in RESEARCH_PIPELINE
        ],
        started_at=utc_now(),
    )


def new_council_session(
    query: str,
    backends: list[ModelConfig],
    min_backends: int = 2,
    max_backends: int = 3,
) -> CouncilSession:
    cleaned = _require_query(query)
    ids = [b.name for b in backends]
    if len(set(ids)) != len(ids):
        raise ValidationError(f"Duplicate backends selected: {', '.join(ids)}")
    if len(backends) < min_backends:
        raise ValidationError(f"Need at least {min_backends} backends, got {len(backends)}")
    if len(backends) > max_backends:
        raise ValidationError(f"At most {max_backends} backends may be selected, got {len(backends)}")
    return CouncilSession(
        id=_new_id("council"),
        query=cleaned,
        responses=[
            ModelResponse(
                backend_id=b.name,
                display_name=b.display_name or b.name,
                provider_kind=b.provider_kind,
            )
            for b in backends
        ],
        started_at=utc_now(),
    )


def transition(item: ResearchStep | ModelResponse, status: Status) -> None:
    """Move a step or response to ``status``; only forward moves are legal."""
    if status not in _ALLOWED_TRANSITIONS[item.status]:
        label = item.id if isinstance(item, ResearchStep) else item.backend_id
        raise InvalidTransitionError(f"{label}: {item.status.value} -> {status.value}")
    item.status = status


def get_step(session: ResearchSession, step_id: str) -> ResearchStep:
    for step in session.steps:
        if step.id == step_id:
            return step
    raise KeyError(step_id)


def _check_predecessors(session: ResearchSession, step: ResearchStep) -> None:
    for prev in session.steps[: session.steps.index(step)]:
        if prev.status != Status.COMPLETED:
            raise InvalidTransitionError(f"{step.id}: predecessor {prev.id} is {prev.status.value}")


def begin_step(session: ResearchSession, step_id: str) -> ResearchStep:
    step = get_step(session, step_id)
    _check_predecessors(session, step)
    running = [s.id for s in session.steps if s.status == Status.RUNNING]
    if running:
        raise InvalidTransitionError(f"{step_id}: step {running[0]} is still running")
    transition(step, Status.RUNNING)
    step.started_at = utc_now()
    return step


def complete_step(
    session: ResearchSession,
    step_id: str,
    result: str,
    sources: list[Source] | None = None,
    sub_queries: list[str] | None = None,
) -> ResearchStep:
    """Mark a step completed. A pending step may be completed directly (skipped)."""
    step = get_step(session, step_id)
    _check_predecessors(session, step)
    transition(step, Status.COMPLETED)
    now = utc_now()
    step.started_at = step.started_at or now
    step.completed_at = now
    step.result = result
    if sources is not None:
        step.sources = list(sources)
    if sub_queries is not None:
        step.sub_queries = list(sub_queries)
    return step


def fail_step(session: ResearchSession, step_id: str, message: str) -> ResearchStep:
    step = get_step(session, step_id)
    transition(step, Status.ERROR)
    step.completed_at = utc_now()
    step.result = message
    return step


def finish(session: ResearchSession | CouncilSession, run_state: RunState) -> None:
    if session.run_state != RunState.RUNNING:
        raise InvalidTransitionError(f"{session.id}: already {session.run_state.value}")
    if run_state == RunState.RUNNING:
        raise InvalidTransitionError(f"{session.id}: running is not a terminal state")
    session.run_state = run_state
    session.ended_at = utc_now()


def research_progress(session: ResearchSession) -> float:
    """Fraction of pipeline steps that reached a terminal status."""
    done = sum(1 for s in session.steps if s.status in TERMINAL_STATUSES)
    return done / len(session.steps)


def merge_sources(existing: list[Source], incoming: list[Source]) -> list[Source]:
    """Union by url. First-seen metadata wins; enriched content fills an un-enriched entry."""
    merged: dict[str, Source] = {}
    for source in [*existing, *incoming]:
        seen = merged.get(source.url)
        if seen is None:
            merged[source.url] = replace(source)
        elif source.enriched and not seen.enriched:
            merged[source.url] = replace(seen, content=source.content, enriched=True)
    return list(merged.values())


def cast_vote(session: CouncilSession, backend_id: str) -> None:
    """Point the single user vote at ``backend_id``, moving any previous vote."""
    if backend_id not in {r.backend_id for r in session.responses}:
        raise ValidationError(f"Unknown backend for this session: {backend_id}")
    if session.user_vote == backend_id:
        return
    if session.user_vote is not None:
        session.votes[session.user_vote] = session.votes.get(session.user_vote, 0) - 1
    session.votes[backend_id] = session.votes.get(backend_id, 0) + 1
    session.user_vote = backend_id
    session.best_response_id = best_response_id(session.votes)


class SessionPublisher:
    """Fan-out of session snapshots to read-only observers."""

    def __init__(self) -> None:
        self._observers: list[Callable[[Any], None]] = []

    def subscribe(self, observer: Callable[[Any], None]) -> Callable[[], None]:
        """Register ``observer``; returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, session: ResearchSession | CouncilSession) -> None:
        if not self._observers:
            return
        snapshot = copy.deepcopy(session)
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Session observer failed for %s", session.id)
