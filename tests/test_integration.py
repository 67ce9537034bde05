"""Integration tests: real API calls, no mocks. Requires .env with 2+ API keys."""

import os
from dataclasses import replace
from pathlib import Path

import pytest
from dotenv import load_dotenv

load_dotenv()

# Skip entire module if fewer than 2 API keys are set
_AVAILABLE_KEYS = [
    k for k in ["ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY", "XAI_API_KEY"]
    if os.environ.get(k, "").strip()
]
pytestmark = pytest.mark.integration

if len(_AVAILABLE_KEYS) < 2:
    pytestmark = pytest.mark.skip(reason=f"Need 2+ API keys, found {len(_AVAILABLE_KEYS)}")


async def test_short_session_pipeline(tmp_path: Path):
    """Run a real three-round session with available providers, verify no crash."""
    from config.config_loader import load_config
    from forge.cli import _build_all_providers, _new_session
    from forge.directory import ParticipantDirectory
    from forge.healthcheck import run_health_checks
    from forge.models import RoundKind, Topic
    from forge.orchestrator import RoundOrchestrator
    from forge.output import save_to_file
    from forge.serialization import load_session, save_session

    config = load_config()
    all_providers = _build_all_providers(config)

    assert len(all_providers) >= 2, f"Need 2+ providers, got {len(all_providers)}"

    directory = ParticipantDirectory(all_providers, config.defaults.roles)
    directory.apply_health(await run_health_checks(all_providers))

    settings = replace(config.session, max_rounds=3, max_cost_usd=1.0, max_output_tokens=1024)
    topic = Topic(
        title="Write a one-page design note for rotating API keys without downtime",
        constraints=["Keep it under 300 words"],
    )
    session = _new_session(topic, settings)

    result = await RoundOrchestrator(session, directory, config.prompts).run()

    assert [r.kind for r in result.rounds] == [RoundKind.DRAFT, RoundKind.CRITIQUE, RoundKind.SYNTHESIS]
    assert result.final_content, "No artifact produced"
    assert result.rounds[1].critiques, "No critique survived parsing"
    assert result.total_tokens.total > 0

    saved = save_to_file(result, tmp_path / "output")
    assert "## Round 2: Synthesis" in saved.read_text(encoding="utf-8")
    assert load_session(save_session(result, tmp_path / "session.json")) == result
