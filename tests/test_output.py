"""Tests for forge/output.py."""

from pathlib import Path

import pytest

from forge.models import SessionStatus
from forge.orchestrator import RoundOrchestrator
from forge.output import print_final, print_round_summary, render_markdown, save_to_file, slugify


def test_slug_basic():
    assert slugify("Should we use YAML or JSON?") == "should-we-use-yaml-or-json"


def test_slug_max_len():
    long_text = "a" * 100
    assert len(slugify(long_text)) <= 40


def test_slug_special_chars():
    result = slugify("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result
    assert ")" not in result


@pytest.fixture
async def finished_session(sample_session, directory, sample_prompts_config):
    return await RoundOrchestrator(sample_session, directory, sample_prompts_config).run()


def test_render_markdown_sections(finished_session):
    content = render_markdown(finished_session)
    assert content.startswith("# Forge Session: Design a rate limiter")
    assert "**Status:** complete (converged)" in content
    assert "**Participants:** alpha (drafter), alpha (critic), beta (critic), alpha (synthesizer)" in content
    assert "## Round 0: Draft" in content
    assert "### beta (beta-model): 72/100" in content
    assert "- Clarified the storage section" in content
    assert "- alpha: AGREE (90/100)" in content
    assert content.rstrip().endswith("Counters live in Redis with a TTL per window.")


def test_render_markdown_without_artifact(sample_session):
    sample_session.status = SessionStatus.ABORTED
    assert "*No artifact was produced.*" in render_markdown(sample_session)


def test_save_to_file_creates_output_dir(tmp_path: Path, finished_session):
    output_dir = tmp_path / "nested" / "output"
    assert not output_dir.exists()
    saved = save_to_file(finished_session, output_dir)
    assert saved.exists()
    assert saved.suffix == ".md"
    assert saved.name.endswith("_design-a-rate-limiter.md")


def test_save_to_file_with_stem(tmp_path: Path, finished_session):
    saved = save_to_file(finished_session, tmp_path, stem="run1")
    assert saved == tmp_path / "run1.md"
    assert "## Final Artifact" in saved.read_text(encoding="utf-8")


def test_console_rendering_covers_every_round(finished_session, capsys):
    for rnd in finished_session.rounds:
        print_round_summary(rnd)
    print_final(finished_session)
    out = capsys.readouterr().out
    assert "Round 3: Convergence" in out
    assert "Final Artifact" in out
