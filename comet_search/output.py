"""Rich console output and markdown file save for research and council sessions."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from comet_search.aggregation import format_council_report, format_duration, format_report
from comet_search.models import CouncilSession, ModelResponse, ResearchSession, ResearchStep, Status

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATUS_STYLE = {
    Status.PENDING: "dim",
    Status.RUNNING: "yellow",
    Status.COMPLETED: "green",
    Status.ERROR: "red",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _response_preview(response: ModelResponse, words: int = 50) -> str:
    """Return first N words of a response."""
    all_words = response.text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def step_line(step: ResearchStep) -> str:
    """One-line console markup for a step's status."""
    style = _STATUS_STYLE[step.status]
    return f"[{style}]{step.status.value.upper():<9}[/{style}] {step.title}"


def print_steps(session: ResearchSession) -> None:
    console.print(Rule("[bold cyan]Research Steps[/bold cyan]"))
    for step in session.steps:
        console.print(step_line(step))
        if step.result and step.status == Status.ERROR:
            console.print(f"          [red]{escape(step.result)}[/red]")


def print_report(session: ResearchSession) -> None:
    """Print the final report (or the stop reason) using Rich markdown."""
    console.print(Rule("[bold green]Research Report[/bold green]"))
    console.print(
        Text(
            f"Status: {session.run_state.value} | "
            f"Duration: {format_duration(session.started_at, session.ended_at)} | "
            f"Sources: {len(session.sources)}",
            style="dim",
        )
    )
    if session.error:
        console.print(f"[bold red]Stopped:[/bold red] {escape(session.error)}")
    if session.final_report:
        console.print(Markdown(session.final_report))
    if session.sources:
        console.print(Rule("[bold]Sources[/bold]"))
        for number, source in enumerate(session.sources, start=1):
            console.print(f"{number}. {escape(source.title)} [dim]({source.domain})[/dim]")


def print_responses(session: CouncilSession) -> None:
    """Print a preview panel per backend."""
    console.print(Rule("[bold cyan]Council Responses[/bold cyan]"))
    for resp in session.responses:
        if resp.status == Status.ERROR:
            body = f"[red]{escape(resp.error_message or '')}[/red]"
            border = "red"
        else:
            body = escape(_response_preview(resp))
            border = "dim"
        console.print(
            Panel(
                body,
                title=f"[bold]{resp.display_name}[/bold] ({resp.provider_kind})",
                subtitle=f"{resp.latency_ms / 1000:.1f}s",
                border_style=border,
            )
        )


def print_consensus(session: CouncilSession) -> None:
    console.print(Rule("[bold green]Consensus[/bold green]"))
    label = session.consensus_method or "none"
    if session.synthesizer:
        label += f" by {session.synthesizer}"
    console.print(Text(f"Method: {label} | Status: {session.run_state.value}", style="dim"))
    if session.consensus:
        console.print(Markdown(session.consensus))
    if session.highlights and session.highlights.keywords:
        console.print(f"[dim]Shared keywords:[/dim] {', '.join(session.highlights.keywords[:10])}")
    for note in session.highlights.disagreements if session.highlights else []:
        console.print(f"[yellow]{escape(note)}[/yellow]")


def save_to_file(
    session: ResearchSession | CouncilSession,
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save a session as a markdown file.

    Args:
        session: A terminal research or council session.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the query. Useful for inbox mode.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(session.query)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    if isinstance(session, ResearchSession):
        text = format_report(session)
    else:
        text = format_council_report(session)

    filepath.write_text(text, encoding="utf-8")
    logger.info("Session %s saved to: %s", session.id, filepath)
    return filepath
