"""Tests for comet_search/output.py."""

from pathlib import Path

import pytest

from comet_search.models import ModelResponse, RunState, Source, Status
from comet_search.output import (
    _response_preview,
    _slug,
    console,
    print_consensus,
    print_report,
    print_responses,
    print_steps,
    save_to_file,
    step_line,
)
from comet_search.sessions import complete_step, finish, new_council_session, new_research_session


def test_slug_basic():
    assert _slug("What is RAG?") == "what-is-rag"


def test_slug_max_len():
    assert len(_slug("a" * 100)) <= 40


def test_slug_special_chars():
    result = _slug("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result
    assert ")" not in result


def test_response_preview_truncates():
    resp = ModelResponse("alpha", "Alpha", "local", text=" ".join(["word"] * 60))
    preview = _response_preview(resp, words=50)
    assert preview.endswith("...")
    assert len(preview.split()) == 50


def test_response_preview_short_text_unchanged():
    resp = ModelResponse("alpha", "Alpha", "local", text="Short answer.")
    assert _response_preview(resp) == "Short answer."


@pytest.fixture
def finished_research():
    session = new_research_session("What is RAG?")
    for step in session.steps:
        complete_step(session, step.id, f"{step.title} done")
    session.final_report = "## Summary\nRAG grounds answers in documents."
    session.sources = [
        Source(title="RAG paper", url="https://arxiv.org/abs/2005.11401", domain="arxiv.org"),
    ]
    finish(session, RunState.COMPLETED)
    return session


@pytest.fixture
def finished_council(model_configs):
    session = new_council_session("What is RAG?", [model_configs["alpha"], model_configs["beta"]])
    session.responses[0].status = Status.COMPLETED
    session.responses[0].text = "Alpha says retrieval."
    session.responses[1].status = Status.ERROR
    session.responses[1].error_message = "[beta] Request timed out after 30s"
    session.consensus = "Insufficient responses for consensus analysis."
    session.consensus_method = "insufficient"
    finish(session, RunState.COMPLETED)
    return session


def test_save_research_creates_file(tmp_path: Path, finished_research):
    saved = save_to_file(finished_research, tmp_path / "output")
    assert saved.exists()
    assert saved.suffix == ".md"
    assert saved.name.endswith("_what-is-rag.md")


def test_save_creates_output_dir(tmp_path: Path, finished_research):
    output_dir = tmp_path / "nested" / "output"
    assert not output_dir.exists()
    save_to_file(finished_research, output_dir)
    assert output_dir.exists()


def test_save_research_content(tmp_path: Path, finished_research):
    content = save_to_file(finished_research, tmp_path).read_text(encoding="utf-8")
    assert "# Research Report: What is RAG?" in content
    assert "RAG grounds answers in documents." in content
    assert "[RAG paper](https://arxiv.org/abs/2005.11401) - arxiv.org" in content


def test_save_council_content(tmp_path: Path, finished_council):
    content = save_to_file(finished_council, tmp_path).read_text(encoding="utf-8")
    assert "# Model Council: What is RAG?" in content
    assert "Alpha says retrieval." in content
    assert "*Error: [beta] Request timed out after 30s*" in content
    assert "## Consensus (insufficient)" in content


def test_save_slug_override(tmp_path: Path, finished_council):
    saved = save_to_file(finished_council, tmp_path, slug_override="inbox-item")
    assert saved.name.endswith("_inbox-item.md")


def test_step_line_shows_status_and_title(finished_research):
    assert "COMPLETED" in step_line(finished_research.steps[0])
    assert "Research Planning" in step_line(finished_research.steps[0])


def test_print_research(finished_research):
    with console.capture() as capture:
        print_steps(finished_research)
        print_report(finished_research)
    text = capture.get()
    assert "Research Planning" in text
    assert "RAG grounds answers in documents." in text
    assert "arxiv.org" in text


def test_print_council(finished_council):
    with console.capture() as capture:
        print_responses(finished_council)
        print_consensus(finished_council)
    text = capture.get()
    assert "Alpha says retrieval." in text
    assert "timed out" in text
    assert "Insufficient responses" in text
