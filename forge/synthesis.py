"""Synthesis: reconcile the latest critiques and rewrite the artifact."""

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from config.config_loader import PromptsConfig
from forge.conflicts import ConflictResolver, detect_conflicts
from forge.errors import OrchestrationInvariant
from forge.history import latest_content, latest_critique_round
from forge.models import ConflictResolution, Participant, Round, Topic
from forge.prompts import build_synthesis_request
from forge.providers.base import ModelRequest, ModelResponse

logger = logging.getLogger(__name__)

_CHANGES_MARKER = re.compile(r"^\W*changes\W*:?\W*$", re.IGNORECASE | re.MULTILINE)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<item>.*\S)")


@dataclass
class SynthesisOutcome:
    content: str
    changes: list[str] = field(default_factory=list)
    resolutions: list[ConflictResolution] = field(default_factory=list)
    responses: list[ModelResponse] = field(default_factory=list)  # every model call made


def split_changes(text: str) -> tuple[str, list[str]]:
    """Split synthesizer output at its last ``CHANGES:`` line.

    Returns:
        (artifact content, change bullet list). Without a marker the whole
        text is the content and there are no changes.
    """
    markers = list(_CHANGES_MARKER.finditer(text))
    if not markers:
        return text.strip(), []
    marker = markers[-1]
    content = text[:marker.start()].strip()
    changes = [
        m.group("item").strip()
        for m in (_BULLET.match(line) for line in text[marker.end():].splitlines())
        if m
    ]
    return content, changes


def format_transcript(rounds: list[Round]) -> str:
    """Format the content-bearing rounds into one transcript string."""
    parts: list[str] = []
    for rnd in rounds:
        content = getattr(rnd, "content", None)
        if content is None:
            continue
        parts.append(f"### Round {rnd.number} ({rnd.kind.value})\n\n{content}")
    return "\n\n".join(parts)


async def synthesize(
    topic: Topic,
    rounds: list[Round],
    synthesizer: Participant,
    invoke: Callable[[Participant, ModelRequest], Awaitable[ModelResponse]],
    prompts: PromptsConfig,
    resolver: ConflictResolver,
    feedback: list[str] | None = None,
    max_tokens: int = 4096,
) -> SynthesisOutcome:
    """Resolve the latest critique round's conflicts and produce the next version.

    Raises:
        OrchestrationInvariant: If there is no artifact to synthesize from.
        ProviderError: If the synthesizer call itself fails.
    """
    content = latest_content(rounds)
    if content is None:
        raise OrchestrationInvariant("synthesis requested before any draft exists")

    critique_round = latest_critique_round(rounds)
    critiques = critique_round.critiques if critique_round else []

    conflicts = detect_conflicts(critiques)
    logger.info("Synthesis via %s: %d conflicts to resolve", synthesizer.display_name, len(conflicts))
    resolutions, responses = await resolver.resolve_all(conflicts)

    request = build_synthesis_request(
        prompts, synthesizer, topic, content, critiques, resolutions, feedback or [], max_tokens
    )
    response = await invoke(synthesizer, request)
    responses.append(response)

    new_content, changes = split_changes(response.content)
    if not new_content:
        logger.warning("Synthesizer %s returned no content; keeping previous version", synthesizer.display_name)
        new_content = content

    return SynthesisOutcome(content=new_content, changes=changes, resolutions=resolutions, responses=responses)
