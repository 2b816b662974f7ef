"""Click CLI: orchestrates config loading, backend selection, research/council runs, and output."""

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from comet_search.council import CouncilEngine, build_council_engine
from comet_search.healthcheck import run_health_checks
from comet_search.inbox import archive_file, ensure_dirs, load_question, scan_inbox
from comet_search.models import CouncilSession, ResearchSession, RunState, Status
from comet_search.output import print_consensus, print_report, print_responses, print_steps, save_to_file
from comet_search.providers.base import ChatProvider, ProviderError
from comet_search.providers.factory import build_available_providers, close_providers
from comet_search.research import ResearchEngine, build_research_engine
from comet_search.sessions import TERMINAL_STATUSES, ValidationError, research_progress
from config.config_loader import AppConfig, Credentials, load_config, load_credentials

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    sys.exit(1)


def _bootstrap(verbose: bool) -> tuple[AppConfig, Credentials]:
    # Reconfigure stdout/stderr to UTF-8 on Windows so model output containing
    # Unicode chars doesn't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)
    return config, load_credentials(config)


def _install_stop_handler(stop: Callable[[], None]) -> Callable[[], None]:
    """Route Ctrl+C to ``stop`` while a run is active. Returns the remover."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop)
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on this platform; Ctrl+C cancels asyncio.run instead.
        return lambda: None
    return lambda: loop.remove_signal_handler(signal.SIGINT)


def _determine_panel(config: AppConfig, models_arg: str | None) -> list[str]:
    """--models overrides the configured default panel."""
    if models_arg:
        return [m.strip() for m in models_arg.split(",") if m.strip()]
    return list(config.council.default_panel)


async def _ping_and_close(providers: dict[str, ChatProvider]) -> dict[str, tuple[bool, str]]:
    try:
        return await run_health_checks(providers)
    finally:
        await close_providers(providers.values())


def _check_and_filter_backends(
    panel: list[str],
    config: AppConfig,
    credentials: Credentials,
) -> tuple[list[str], list[str]]:
    """Ping every backend with credentials, print results, and ask the user what to do on failures.

    Returns (working panel, healthy backend ids). The healthy ids are the
    synthesizer candidates. Panel backends without credentials are left in
    the panel; the council run reports them as errors. Exits if the user
    declines to continue.
    """
    providers = build_available_providers(config.models, credentials)
    if not providers:
        return panel, []

    console.print("\n[bold]Checking backends...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(_ping_and_close(providers))

    failed: list[str] = []
    for backend_id in sorted(results):
        ok, err = results[backend_id]
        if ok:
            console.print(f"  [green]OK  [/green] {backend_id}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {backend_id}: {escape(short_err)}")
            failed.append(backend_id)
    healthy = [b for b in results if b not in failed]

    failed_in_panel = [b for b in panel if b in failed]
    if not failed_in_panel:
        console.print()
        return panel, healthy

    working = [b for b in panel if b not in failed]
    console.print(f"\n[yellow]{len(failed_in_panel)} panel backend(s) failed:[/yellow] {', '.join(failed_in_panel)}")
    console.print(f"Working backends: {', '.join(working) or 'none'}")

    if not click.confirm("Continue with working backends only?", default=True):
        sys.exit(0)

    console.print()
    return working, healthy


async def _run_research(
    query: str,
    engine: ResearchEngine,
    output_dir: Path | None,
    slug_override: str | None = None,
) -> tuple[ResearchSession, Path | None]:
    """Run one research session with a live progress bar. Saves unless output_dir is None."""
    console.print("\n[bold cyan]Deep Research[/bold cyan]")
    console.print(f"Query: [italic]{escape(query[:80])}{'...' if len(query) > 80 else ''}[/italic]\n")

    remove_handler = _install_stop_handler(engine.stop)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task("Starting research...", total=1.0)
            finished_steps: set[str] = set()

            def on_update(snapshot: ResearchSession) -> None:
                running = next((s for s in snapshot.steps if s.status == Status.RUNNING), None)
                description = f"{running.title}: {running.description}" if running else "Working..."
                progress.update(task_id, description=description, completed=research_progress(snapshot))
                for step in snapshot.steps:
                    if step.status in TERMINAL_STATUSES and step.id not in finished_steps:
                        finished_steps.add(step.id)
                        mark = "[green]OK[/green]" if step.status == Status.COMPLETED else "[red]FAIL[/red]"
                        progress.print(f"{mark} {step.title}")

            unsubscribe = engine.subscribe(on_update)
            try:
                session = await engine.run(query)
            finally:
                unsubscribe()
    finally:
        remove_handler()

    print_steps(session)
    print_report(session)

    saved_path = None
    if output_dir is not None:
        saved_path = save_to_file(session, output_dir, slug_override=slug_override)
        console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return session, saved_path


async def _run_council(
    query: str,
    engine: CouncilEngine,
    panel: list[str],
    credentials: Credentials,
    synthesizer: str | None,
    output_dir: Path | None,
    slug_override: str | None = None,
    synthesizer_pool: list[str] | None = None,
) -> tuple[CouncilSession, Path | None]:
    """Run one council session with a live progress line. Saves unless output_dir is None."""
    console.print(f"\n[bold cyan]Model Council[/bold cyan] - {len(panel)} backends")
    console.print(f"Panel: {', '.join(panel)}")
    console.print(f"Query: [italic]{escape(query[:80])}{'...' if len(query) > 80 else ''}[/italic]\n")

    remove_handler = _install_stop_handler(engine.stop)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task("Waiting for backends...", total=None)
            reported: set[str] = set()

            def on_update(snapshot: CouncilSession) -> None:
                done = [r for r in snapshot.responses if r.status in TERMINAL_STATUSES]
                if len(done) < len(snapshot.responses):
                    description = f"Waiting for backends ({len(done)}/{len(snapshot.responses)} done)..."
                else:
                    description = "Analyzing consensus..."
                progress.update(task_id, description=description)
                for resp in done:
                    if resp.backend_id not in reported:
                        reported.add(resp.backend_id)
                        if resp.status == Status.COMPLETED:
                            progress.print(f"[green]OK[/green] {resp.display_name} ({resp.latency_ms} ms)")
                        else:
                            progress.print(f"[red]FAIL[/red] {resp.display_name}: {escape(resp.error_message or '')}")

            unsubscribe = engine.subscribe(on_update)
            try:
                session = await engine.run_council(
                    query, panel, credentials, synthesizer=synthesizer, synthesizer_pool=synthesizer_pool
                )
            finally:
                unsubscribe()
    finally:
        remove_handler()

    print_responses(session)
    print_consensus(session)

    saved_path = None
    if output_dir is not None:
        saved_path = save_to_file(session, output_dir, slug_override=slug_override)
        console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return session, saved_path


async def _run_inbox(
    config: AppConfig,
    credentials: Credentials,
    inbox_dir: Path,
    archive_dir: Path,
    output_dir: Path,
) -> None:
    """Process all .md files in the inbox folder, oldest first.

    Front matter picks the mode (research or council) and the council panel;
    a file whose run does not complete is archived with a FAILED_ prefix.
    """
    ensure_dirs(inbox_dir, archive_dir)
    files = scan_inbox(inbox_dir)

    if not files:
        click.echo("No files in inbox.")
        return

    for file_path in files:
        try:
            queued = load_question(file_path)
            if queued.mode == "council":
                engine = build_council_engine(config)
                panel = queued.models or list(config.council.default_panel)
                session, saved = await _run_council(
                    queued.query,
                    engine,
                    panel,
                    credentials,
                    queued.synthesizer,
                    output_dir,
                    slug_override=file_path.stem,
                )
            else:
                research_engine = build_research_engine(config, credentials)
                try:
                    session, saved = await _run_research(
                        queued.query,
                        research_engine,
                        output_dir,
                        slug_override=file_path.stem,
                    )
                finally:
                    await research_engine.close()

            if session.run_state != RunState.COMPLETED:
                raise RuntimeError(f"run ended {session.run_state.value}")
            archived = archive_file(file_path, archive_dir)
            click.echo(f"Processed: {file_path.name} -> {saved} (archived: {archived.name})")
        except Exception as e:
            logger.error("Failed: %s -- %s", file_path.name, e)
            archive_file(file_path, archive_dir, failed=True)


@click.group()
def main() -> None:
    """Comet Search -- deep research and multi-model council from the terminal.

    \b
    Examples:
      comet research "What is retrieval-augmented generation?"
      comet council "What is RAG?" --models kimi-k2,lmstudio
      comet council "Monorepo vs polyrepo?" --synthesizer claude --skip-health-check
      comet inbox --inbox-dir ./my_queue
    """


@main.command()
@click.argument("query")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--no-save", is_flag=True, default=False, help="Print only, don't write a report file")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def research(query: str, output_path: str | None, no_save: bool, verbose: bool) -> None:
    """Plan, search, analyze and synthesize a cited report for QUERY."""
    config, credentials = _bootstrap(verbose)
    output_dir = None if no_save else (Path(output_path) if output_path else config.output_dir)

    try:
        engine = build_research_engine(config, credentials)
    except (ValidationError, ProviderError) as exc:
        _fail(f"{exc}. Check API keys in .env.")

    async def _main() -> ResearchSession:
        try:
            session, _ = await _run_research(query, engine, output_dir)
            return session
        finally:
            await engine.close()

    try:
        session = asyncio.run(_main())
    except ValidationError as exc:
        _fail(str(exc))

    if session.run_state != RunState.COMPLETED:
        sys.exit(1)


@main.command()
@click.argument("query")
@click.option("--models", default=None, help="Comma-separated backend ids (default: council.default_panel)")
@click.option("--synthesizer", default=None, help="Preferred consensus backend (default: from config)")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--no-save", is_flag=True, default=False, help="Print only, don't write a report file")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def council(
    query: str,
    models: str | None,
    synthesizer: str | None,
    skip_health_check: bool,
    output_path: str | None,
    no_save: bool,
    verbose: bool,
) -> None:
    """Ask QUERY to several backends at once and compare their answers."""
    config, credentials = _bootstrap(verbose)
    output_dir = None if no_save else (Path(output_path) if output_path else config.output_dir)

    panel = _determine_panel(config, models)
    unknown = [b for b in panel if b not in config.models]
    if unknown:
        _fail(f"Unknown backend(s): {', '.join(unknown)}. Known: {', '.join(config.models)}")

    synthesizer_pool = None
    if not skip_health_check:
        panel, synthesizer_pool = _check_and_filter_backends(panel, config, credentials)

    engine = build_council_engine(config)
    try:
        session, _ = asyncio.run(
            _run_council(query, engine, panel, credentials, synthesizer, output_dir, synthesizer_pool=synthesizer_pool)
        )
    except ValidationError as exc:
        _fail(str(exc))

    if session.run_state != RunState.COMPLETED:
        sys.exit(1)


@main.command()
@click.option("--inbox-dir", "inbox_dir_override", default=None,
              help="Override inbox folder path (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def inbox(inbox_dir_override: str | None, output_path: str | None, verbose: bool) -> None:
    """Process every queued question in the inbox folder."""
    config, credentials = _bootstrap(verbose)
    inbox_dir = Path(inbox_dir_override) if inbox_dir_override else config.inbox.dir
    output_dir = Path(output_path) if output_path else config.output_dir
    asyncio.run(_run_inbox(config, credentials, inbox_dir, config.inbox.archive_dir, output_dir))


if __name__ == "__main__":
    main()
