"""Unit tests for comet_search/inbox.py -- no API calls."""

import os
import textwrap
from pathlib import Path

import pytest

from comet_search.inbox import archive_file, ensure_dirs, load_question, parse_file, scan_inbox


def test_parse_file_no_frontmatter(tmp_path: Path) -> None:
    """File without front matter returns full content and empty metadata."""
    f = tmp_path / "question.md"
    f.write_text("What is retrieval-augmented generation?", encoding="utf-8")
    content, metadata = parse_file(f)
    assert content == "What is retrieval-augmented generation?"
    assert metadata == {}


def test_parse_file_with_frontmatter(tmp_path: Path) -> None:
    f = tmp_path / "question.md"
    f.write_text(
        textwrap.dedent("""\
            ---
            mode: council
            models: kimi-k2,lmstudio
            ---
            What is RAG?
        """),
        encoding="utf-8",
    )
    content, metadata = parse_file(f)
    assert content == "What is RAG?"
    assert metadata["mode"] == "council"
    assert metadata["models"] == "kimi-k2,lmstudio"


def test_load_question_defaults_to_research(tmp_path: Path) -> None:
    f = tmp_path / "plain.md"
    f.write_text("History of solar panels", encoding="utf-8")
    queued = load_question(f)
    assert queued.mode == "research"
    assert queued.query == "History of solar panels"
    assert queued.models == []
    assert queued.synthesizer is None


def test_load_question_council_models_string(tmp_path: Path) -> None:
    f = tmp_path / "council.md"
    f.write_text("---\nmode: Council\nmodels: kimi-k2, lmstudio\nsynthesizer: claude\n---\nWhat is RAG?\n", encoding="utf-8")
    queued = load_question(f)
    assert queued.mode == "council"
    assert queued.models == ["kimi-k2", "lmstudio"]
    assert queued.synthesizer == "claude"


def test_load_question_models_list(tmp_path: Path) -> None:
    f = tmp_path / "council.md"
    f.write_text("---\nmode: council\nmodels: [openai, claude]\n---\nWhat is RAG?\n", encoding="utf-8")
    assert load_question(f).models == ["openai", "claude"]


def test_load_question_rejects_unknown_mode(tmp_path: Path) -> None:
    f = tmp_path / "odd.md"
    f.write_text("---\nmode: debate\n---\nWhat is RAG?\n", encoding="utf-8")
    with pytest.raises(ValueError, match="unknown mode"):
        load_question(f)


def test_load_question_rejects_empty_body(tmp_path: Path) -> None:
    f = tmp_path / "empty.md"
    f.write_text("---\nmode: research\n---\n\n", encoding="utf-8")
    with pytest.raises(ValueError, match="no question text"):
        load_question(f)


def test_archive_file_success(tmp_path: Path) -> None:
    """archive_file() moves file to archive dir with timestamp prefix."""
    inbox = tmp_path / "inbox"
    archive = tmp_path / "archive"
    ensure_dirs(inbox, archive)

    src = inbox / "my-question.md"
    src.write_text("A question", encoding="utf-8")

    dest = archive_file(src, archive)

    assert not src.exists()
    assert dest.exists()
    assert dest.parent == archive
    assert dest.name.endswith("_my-question.md")
    assert not dest.name.startswith("FAILED_")


def test_archive_file_failed(tmp_path: Path) -> None:
    inbox = tmp_path / "inbox"
    archive = tmp_path / "archive"
    ensure_dirs(inbox, archive)

    src = inbox / "broken.md"
    src.write_text("Bad question", encoding="utf-8")

    dest = archive_file(src, archive, failed=True)

    assert not src.exists()
    assert dest.name.startswith("FAILED_")
    assert "broken.md" in dest.name


def test_scan_inbox_empty(tmp_path: Path) -> None:
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    assert scan_inbox(inbox) == []


def test_scan_inbox_oldest_first_md_only(tmp_path: Path) -> None:
    newer = tmp_path / "newer.md"
    older = tmp_path / "older.md"
    newer.write_text("b", encoding="utf-8")
    older.write_text("a", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    os.utime(older, (1_000_000, 1_000_000))
    os.utime(newer, (2_000_000, 2_000_000))

    assert scan_inbox(tmp_path) == [older, newer]
