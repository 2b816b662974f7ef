"""Queued questions: inbox folder scanning, front matter parsing, and archive logic."""

import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import frontmatter

MODES = ("research", "council")


@dataclass
class QueuedQuestion:
    path: Path
    query: str
    mode: str = "research"
    models: list[str] = field(default_factory=list)
    synthesizer: str | None = None


def ensure_dirs(inbox_dir: Path, archive_dir: Path) -> None:
    """Create inbox and archive directories if they don't exist."""
    inbox_dir.mkdir(parents=True, exist_ok=True)
    archive_dir.mkdir(parents=True, exist_ok=True)


def scan_inbox(inbox_dir: Path) -> list[Path]:
    """Return all .md files in inbox_dir, sorted by mtime ascending (oldest first)."""
    files = list(inbox_dir.glob("*.md"))
    return sorted(files, key=lambda p: p.stat().st_mtime)


def parse_file(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown file with optional YAML front matter.

    Returns:
        (content, metadata) where content is the body text and metadata
        may hold: mode ("research" or "council"), models (str or list),
        synthesizer (str). If no front matter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    content = post.content.strip()
    metadata = dict(post.metadata)
    return content, metadata


def load_question(file_path: Path) -> QueuedQuestion:
    """Read one queued question.

    Raises:
        ValueError: Empty body or unknown mode.
    """
    content, meta = parse_file(file_path)
    if not content:
        raise ValueError(f"{file_path.name}: no question text")

    mode = str(meta.get("mode", "research")).strip().lower()
    if mode not in MODES:
        raise ValueError(f"{file_path.name}: unknown mode {mode!r}")

    raw_models = meta.get("models", [])
    if isinstance(raw_models, str):
        raw_models = raw_models.split(",")
    models = [str(m).strip() for m in raw_models if str(m).strip()]

    synthesizer = meta.get("synthesizer")
    return QueuedQuestion(
        path=file_path,
        query=content,
        mode=mode,
        models=models,
        synthesizer=str(synthesizer) if synthesizer else None,
    )


def archive_file(file_path: Path, archive_dir: Path, *, failed: bool = False) -> Path:
    """Move file to archive_dir with a timestamp prefix.

    Args:
        file_path: Source file to archive.
        archive_dir: Destination directory.
        failed: If True, prefix filename with "FAILED_".

    Returns:
        Path to the archived file.
    """
    timestamp = datetime.now().strftime("%Y-%m-%dT%H%M")
    prefix = "FAILED_" if failed else ""
    dest = archive_dir / f"{prefix}{timestamp}_{file_path.name}"
    shutil.move(str(file_path), str(dest))
    return dest
