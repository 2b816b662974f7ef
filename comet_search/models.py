"""Pure dataclasses for research and council sessions. No logic, no deps."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class StepKind(str, Enum):
    PLAN = "plan"
    SEARCH = "search"
    ANALYZE = "analyze"
    FOLLOWUP = "followup"
    SYNTHESIZE = "synthesize"


class Status(str, Enum):
    """Lifecycle of a research step or a council response."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class RunState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"


@dataclass
class Source:
    title: str
    url: str
    domain: str            # url host, "www." stripped
    snippet: str = ""
    content: str = ""      # enriched page text, or the snippet when enrichment failed/skipped
    enriched: bool = False


@dataclass
class ResearchStep:
    id: str                # "plan", "search-1", "analyze-1", "followup", "search-2", "synthesize"
    kind: StepKind
    title: str
    description: str
    status: Status = Status.PENDING
    result: str | None = None
    sources: list[Source] = field(default_factory=list)
    sub_queries: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class ResearchSession:
    id: str
    query: str
    steps: list[ResearchStep]
    started_at: datetime
    run_state: RunState = RunState.RUNNING
    final_report: str | None = None
    sources: list[Source] = field(default_factory=list)   # session-wide, deduplicated by url
    error: str | None = None                              # set when a fatal search failure stopped the run
    ended_at: datetime | None = None


@dataclass
class ModelResponse:
    backend_id: str
    display_name: str
    provider_kind: str     # "local" or "hosted"
    status: Status = Status.PENDING
    text: str = ""
    latency_ms: int = 0
    error_message: str | None = None


@dataclass
class ConsensusHighlights:
    """Keyword-overlap summary. A heuristic, not semantic agreement."""

    keywords: list[str] = field(default_factory=list)
    disagreements: list[str] = field(default_factory=list)
    method: str = "heuristic"


@dataclass
class CouncilSession:
    id: str
    query: str
    responses: list[ModelResponse]
    started_at: datetime
    run_state: RunState = RunState.RUNNING
    consensus: str | None = None
    consensus_method: str | None = None     # "model", "heuristic" or "insufficient"
    synthesizer: str | None = None
    highlights: ConsensusHighlights | None = None
    votes: dict[str, int] = field(default_factory=dict)
    user_vote: str | None = None
    best_response_id: str | None = None
    ended_at: datetime | None = None
