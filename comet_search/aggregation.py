"""Pure aggregation over collected session data: keyword heuristics, votes, report text.

No I/O and no clock reads; the same session state always renders the same text.
"""

import re
from datetime import datetime

from comet_search.models import (
    ConsensusHighlights,
    CouncilSession,
    ModelResponse,
    ResearchSession,
    Status,
)

INSUFFICIENT_RESPONSES = "Insufficient responses for consensus analysis."
DISAGREEMENT_NOTE = "Models appear to disagree on key facts."

_PUNCT_RE = re.compile(r"[^\w\s]")
_MIN_KEYWORD_LEN = 5
_KEYWORDS_IN_SUMMARY = 5


def _completed(responses: list[ModelResponse]) -> list[ModelResponse]:
    return [r for r in responses if r.status == Status.COMPLETED and r.text]


def _words(text: str) -> list[str]:
    return _PUNCT_RE.sub("", text.lower()).split()


def tokenize(text: str) -> list[str]:
    """Lowercased, punctuation-stripped words longer than 4 characters."""
    return [w for w in _words(text) if len(w) >= _MIN_KEYWORD_LEN]


def detect_consensus_keywords(responses: list[ModelResponse]) -> list[str]:
    """Words present in every completed response (heuristic).

    Ordered by first appearance in the first completed response. Fewer than
    two completed responses give an empty list.
    """
    completed = _completed(responses)
    if len(completed) < 2:
        return []
    common = set.intersection(*(set(tokenize(r.text)) for r in completed))
    ordered: list[str] = []
    for word in tokenize(completed[0].text):
        if word in common and word not in ordered:
            ordered.append(word)
    return ordered


def identify_disagreements(responses: list[ModelResponse]) -> list[str]:
    """Flag a yes/no contradiction between any two completed responses (heuristic)."""
    word_sets = [set(_words(r.text)) for r in _completed(responses)]
    for i, first in enumerate(word_sets):
        for second in word_sets[i + 1:]:
            if ("yes" in first and "no" in second) or ("no" in first and "yes" in second):
                return [DISAGREEMENT_NOTE]
    return []


def consensus_highlights(responses: list[ModelResponse]) -> ConsensusHighlights:
    return ConsensusHighlights(
        keywords=detect_consensus_keywords(responses),
        disagreements=identify_disagreements(responses),
    )


def keyword_consensus_summary(responses: list[ModelResponse]) -> str:
    """One-line agreement summary from shared keywords, used when no model can compare."""
    if len(_completed(responses)) < 2:
        return INSUFFICIENT_RESPONSES
    keywords = detect_consensus_keywords(responses)
    if len(keywords) > _KEYWORDS_IN_SUMMARY:
        return f"Models agree on key points including: {', '.join(keywords[:_KEYWORDS_IN_SUMMARY])}."
    return "Models provide different perspectives on this topic."


def best_response_id(votes: dict[str, int]) -> str | None:
    """Backend with the most votes; the earliest-voted backend wins ties."""
    best: str | None = None
    best_count = 0
    for backend_id, count in votes.items():
        if count > best_count:
            best, best_count = backend_id, count
    return best


def format_duration(start: datetime, end: datetime | None) -> str:
    if end is None:
        return "-"
    seconds = max(0, int((end - start).total_seconds()))
    return f"{seconds // 60}:{seconds % 60:02d}"


def format_report(session: ResearchSession, include_sources: bool = True) -> str:
    """Render a research session as markdown."""
    lines: list[str] = [
        f"# Research Report: {session.query}",
        "",
        f"**Session:** {session.id}",
        f"**Status:** {session.run_state.value}",
        f"**Started:** {session.started_at.isoformat(timespec='seconds')}",
        f"**Duration:** {format_duration(session.started_at, session.ended_at)}",
        f"**Sources:** {len(session.sources)}",
        "",
        "---",
        "",
        "## Report",
        "",
        session.final_report or "_No report was produced._",
        "",
    ]
    if session.error:
        lines += [f"> Stopped: {session.error}", ""]

    lines += ["## Research Steps", ""]
    for number, step in enumerate(session.steps, start=1):
        lines.append(f"{number}. **{step.title}** ({step.status.value})")
        if step.result:
            lines += [f"   {line}" for line in step.result.splitlines()]
    lines.append("")

    if include_sources and session.sources:
        lines += ["## Sources", ""]
        for number, source in enumerate(session.sources, start=1):
            lines.append(f"{number}. [{source.title}]({source.url}) - {source.domain}")
        lines.append("")

    return "\n".join(lines)


def format_council_report(session: CouncilSession) -> str:
    """Render a council session as markdown."""
    lines: list[str] = [
        f"# Model Council: {session.query}",
        "",
        f"**Session:** {session.id}",
        f"**Status:** {session.run_state.value}",
        f"**Panel:** {', '.join(r.display_name for r in session.responses)}",
        f"**Started:** {session.started_at.isoformat(timespec='seconds')}",
        f"**Duration:** {format_duration(session.started_at, session.ended_at)}",
        "",
        "---",
        "",
        "## Responses",
        "",
    ]
    for resp in session.responses:
        lines += [f"### {resp.display_name} ({resp.provider_kind})", ""]
        if resp.status == Status.ERROR:
            lines.append(f"*Error: {resp.error_message}*")
        else:
            lines.append(resp.text or "_No response._")
        lines += [
            "",
            f"*Status: {resp.status.value} | Latency: {resp.latency_ms} ms"
            f" | Votes: {session.votes.get(resp.backend_id, 0)}*",
            "",
        ]

    if session.consensus is not None:
        method = session.consensus_method or "model"
        by = f", by {session.synthesizer}" if session.synthesizer and method == "model" else ""
        lines += [f"## Consensus ({method}{by})", "", session.consensus, ""]

    if session.highlights is not None:
        lines += [f"## Highlights ({session.highlights.method})", ""]
        if session.highlights.keywords:
            lines.append(f"- Shared keywords: {', '.join(session.highlights.keywords)}")
        for note in session.highlights.disagreements:
            lines.append(f"- {note}")
        if not session.highlights.keywords and not session.highlights.disagreements:
            lines.append("- Nothing notable.")
        lines.append("")

    if session.best_response_id:
        lines += [f"**Best response (votes):** {session.best_response_id}", ""]

    return "\n".join(lines)
