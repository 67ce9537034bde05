"""Shared pytest fixtures."""

from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PromptsConfig, SessionConfig
from forge.directory import ParticipantDirectory
from forge.models import Critique, Participant, Role, Session, Suggestion, SuggestionCategory, Topic
from forge.providers.base import AIProvider, ModelRequest, ModelResponse

DRAFT_TEXT = (
    "# Rate Limiter\n\n"
    "## Overview\nA token bucket per client key.\n\n"
    "## Storage\nCounters live in Redis with a TTL per window."
)

CRITIQUE_TEMPLATE = """## Strengths
- Clear structure

## Weaknesses
- Missing tests

## Suggestions
### Suggestion 1
Section: Storage
Category: {category}
Priority: {priority}
Description: Add integration tests for the Redis counters

## Score
Score: {score}
"""

SYNTHESIS_TEXT = DRAFT_TEXT + "\n\nCHANGES:\n- Clarified the storage section"
AGREE_VOTE = "VOTE: AGREE\nSCORE: 90\nCONCERNS:\n- none"
DISAGREE_VOTE = "VOTE: DISAGREE\nSCORE: 40\nCONCERNS:\n- Storage section is vague"
COMPROMISE_TEXT = "RESOLUTION: Keep the handler but document it\nRATIONALE: Covers both concerns"
REFINED_TEXT = DRAFT_TEXT + "\n\n## Security\nKeys are hashed before storage."


def critique_text(score: int = 70, priority: int = 3, category: str = "completeness") -> str:
    return CRITIQUE_TEMPLATE.format(score=score, priority=priority, category=category)


def scripted(
    draft: str = DRAFT_TEXT,
    critique: str | None = None,
    synthesis: str = SYNTHESIS_TEXT,
    vote: str = AGREE_VOTE,
    compromise: str = COMPROMISE_TEXT,
    refine: str = REFINED_TEXT,
) -> Callable[[ModelRequest], str]:
    """Reply chooser keyed on the tag each test prompt template starts with."""
    critique = critique if critique is not None else critique_text()

    def reply(request: ModelRequest) -> str:
        prompt = request.prompt
        if "[DRAFT]" in prompt:
            return draft
        if "[CRITIQUE]" in prompt:
            return critique
        if "[SYNTHESIS]" in prompt:
            return synthesis
        if "[VOTE]" in prompt:
            return vote
        if "[COMPROMISE]" in prompt:
            return compromise
        if "[REFINE]" in prompt:
            return refine
        return "OK"

    return reply


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(
        self,
        provider_name: str = "mock",
        response_content: str = "Mock response",
        responder: Callable[[ModelRequest], str] | None = None,
        cost_per_call: float = 0.0,
    ) -> None:
        self._name = provider_name
        self._response_content = response_content
        self._responder = responder
        self._cost_per_call = cost_per_call
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because invoke is defined in the class body below.
        self.invoke = AsyncMock(side_effect=self.reply)  # type: ignore[assignment]

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return f"{self._name}-model"

    def sdk(self) -> str:
        return "mock"

    def cost_usd(self, response: ModelResponse) -> float:
        return self._cost_per_call

    def reply(self, request: ModelRequest) -> ModelResponse:
        content = self._responder(request) if self._responder else self._response_content
        return ModelResponse(
            provider=self._name,
            model=self.model_string(),
            content=content,
            latency_sec=0.1,
            input_tokens=10,
            output_tokens=5,
        )

    async def invoke(self, request: ModelRequest) -> ModelResponse:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return self.reply(request)


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="test",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        draft="[DRAFT] {title}\n{description}\n{constraints}\n{feedback}",
        critique="[CRITIQUE] {title}\n{content}\n{feedback}",
        synthesis="[SYNTHESIS] {title}\n{content}\n{critiques}\n{resolutions}\n{feedback}",
        refinement="[REFINE] {title} focus={focus_area} depth={depth}\n{content}\n{feedback}",
        convergence="[VOTE] {title}\n{content}",
        compromise="[COMPROMISE] {issue}\n{positions}",
        system={"drafter": "You draft.", "critic": "You critique."},
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        output_dir=tmp_path / "output",
        roles={"drafter": ["alpha"], "critic": ["alpha", "beta"], "synthesizer": ["alpha"]},
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        model="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=4096,
    )
    return AppConfig(
        defaults=sample_defaults_config,
        models={"claude": model_cfg},
        prompts=sample_prompts_config,
        available_providers={"claude"},
    )


@pytest.fixture
def session_config() -> SessionConfig:
    """Fast, deterministic settings for orchestration tests."""
    return SessionConfig(
        max_rounds=12,
        min_rounds=1,
        min_consensus=2,
        max_retries=1,
        retry_base_delay_sec=0.0,
        round_timeout_sec=5.0,
    )


@pytest.fixture
def sample_topic() -> Topic:
    return Topic(title="Design a rate limiter", description="For the public API.", constraints=["Use Redis"])


@pytest.fixture
def sample_session(sample_topic: Topic, session_config: SessionConfig) -> Session:
    return Session(id="session-1", name="rate-limiter", topic=sample_topic, config=session_config)


@pytest.fixture
def two_mock_providers() -> dict[str, MockProvider]:
    return {
        "alpha": MockProvider("alpha", responder=scripted(critique=critique_text(score=70))),
        "beta": MockProvider("beta", responder=scripted(critique=critique_text(score=72))),
    }


@pytest.fixture
def directory(two_mock_providers: dict[str, MockProvider], sample_defaults_config: DefaultsConfig) -> ParticipantDirectory:
    return ParticipantDirectory(two_mock_providers, sample_defaults_config.roles)


def make_participant(name: str, role: Role = Role.CRITIC) -> Participant:
    return Participant(model_id=f"{name}-model", display_name=name, provider="mock", role=role)


def make_critique(
    name: str,
    strengths: list[str] | None = None,
    weaknesses: list[str] | None = None,
    suggestions: list[Suggestion] | None = None,
    score: int = 70,
    role: Role = Role.CRITIC,
) -> Critique:
    return Critique(
        critic=make_participant(name, role),
        strengths=strengths or [],
        weaknesses=weaknesses or [],
        suggestions=suggestions or [],
        score=score,
        raw_content="",
    )


def make_suggestion(
    text: str,
    section: str | None = None,
    priority: int = 3,
    category: SuggestionCategory = SuggestionCategory.OTHER,
) -> Suggestion:
    return Suggestion(text=text, section=section, priority=priority, category=category)
