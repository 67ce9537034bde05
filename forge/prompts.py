"""Build ModelRequests for each round kind from the templates in settings.yaml."""

from config.config_loader import PromptsConfig
from forge.models import (
    ConflictPosition,
    ConflictResolution,
    Critique,
    Participant,
    Topic,
)
from forge.providers.base import Message, ModelRequest

_PROMPT_SUMMARY_LEN = 120


def _feedback_block(feedback: list[str]) -> str:
    if not feedback:
        return ""
    lines = "\n".join(f"- {item}" for item in feedback)
    return f"\nOperator feedback (treat as an additional reviewer):\n{lines}\n"


def _request(
    prompts: PromptsConfig,
    participant: Participant,
    text: str,
    max_tokens: int,
    temperature: float | None = None,
) -> ModelRequest:
    return ModelRequest(
        system_prompt=prompts.system.get(participant.role.value, ""),
        messages=[Message(role="user", content=text)],
        max_tokens=max_tokens,
        temperature=temperature,
    )


def summarize_prompt(topic: Topic) -> str:
    summary = f"{topic.title}: {topic.description}".strip(": ")
    if len(summary) > _PROMPT_SUMMARY_LEN:
        summary = summary[:_PROMPT_SUMMARY_LEN - 3] + "..."
    return summary


def format_critiques(critiques: list[Critique]) -> str:
    parts: list[str] = []
    for critique in critiques:
        lines = [f"### {critique.critic.display_name} (score {critique.score}/100)"]
        lines += [f"- Strength: {s}" for s in critique.strengths]
        lines += [f"- Weakness: {w}" for w in critique.weaknesses]
        for s in critique.suggestions:
            where = f" [{s.section}]" if s.section else ""
            lines.append(f"- Suggestion (priority {s.priority}, {s.category.value}){where}: {s.text}")
        parts.append("\n".join(lines))
    return "\n\n".join(parts) if parts else "(no critiques)"


def format_resolutions(resolutions: list[ConflictResolution]) -> str:
    if not resolutions:
        return "(none)"
    return "\n".join(
        f"- {r.issue}: {r.resolution} ({r.strategy.value}; {r.rationale})" for r in resolutions
    )


def format_positions(positions: list[ConflictPosition]) -> str:
    return "\n".join(f"- {p.participant.display_name}: {p.statement}" for p in positions)


def build_draft_request(
    prompts: PromptsConfig, participant: Participant, topic: Topic, feedback: list[str], max_tokens: int
) -> ModelRequest:
    constraints = "\n".join(f"- {c}" for c in topic.constraints) or "- none"
    text = prompts.draft.format(
        title=topic.title,
        description=topic.description,
        constraints=constraints,
        feedback=_feedback_block(feedback),
    )
    return _request(prompts, participant, text, max_tokens)


def build_critique_request(
    prompts: PromptsConfig,
    participant: Participant,
    topic: Topic,
    content: str,
    feedback: list[str],
    max_tokens: int,
) -> ModelRequest:
    text = prompts.critique.format(title=topic.title, content=content, feedback=_feedback_block(feedback))
    return _request(prompts, participant, text, max_tokens)


def build_synthesis_request(
    prompts: PromptsConfig,
    participant: Participant,
    topic: Topic,
    content: str,
    critiques: list[Critique],
    resolutions: list[ConflictResolution],
    feedback: list[str],
    max_tokens: int,
) -> ModelRequest:
    text = prompts.synthesis.format(
        title=topic.title,
        content=content,
        critiques=format_critiques(critiques),
        resolutions=format_resolutions(resolutions),
        feedback=_feedback_block(feedback),
    )
    return _request(prompts, participant, text, max_tokens)


def build_refinement_request(
    prompts: PromptsConfig,
    participant: Participant,
    topic: Topic,
    content: str,
    focus_area: str,
    depth: int,
    feedback: list[str],
    max_tokens: int,
) -> ModelRequest:
    text = prompts.refinement.format(
        title=topic.title,
        content=content,
        focus_area=focus_area,
        depth=depth,
        feedback=_feedback_block(feedback),
    )
    return _request(prompts, participant, text, max_tokens)


def build_vote_request(
    prompts: PromptsConfig, participant: Participant, topic: Topic, content: str, max_tokens: int
) -> ModelRequest:
    text = prompts.convergence.format(title=topic.title, content=content)
    return _request(prompts, participant, text, max_tokens, temperature=0.0)


def build_compromise_request(
    prompts: PromptsConfig,
    participant: Participant,
    issue: str,
    positions: list[ConflictPosition],
    max_tokens: int,
) -> ModelRequest:
    text = prompts.compromise.format(issue=issue, positions=format_positions(positions))
    return _request(prompts, participant, text, max_tokens, temperature=0.3)
