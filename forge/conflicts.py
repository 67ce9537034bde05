"""Find disagreements across a critique round and resolve them.

Detection is three independent passes (assessments, suggestions, scores)
merged and sorted by severity. Resolution runs exactly one strategy per
conflict; only the compromise strategy calls a model.
"""

import logging
import re
from collections import defaultdict
from collections.abc import Awaitable, Callable
from itertools import combinations

from config.config_loader import PromptsConfig
from forge.models import (
    ConflictPosition,
    ConflictResolution,
    Critique,
    DetectedConflict,
    Participant,
    ResolutionStrategy,
    Role,
)
from forge.prompts import build_compromise_request
from forge.providers.base import ModelRequest, ModelResponse, ProviderError

logger = logging.getLogger(__name__)

InvokeFn = Callable[[Participant, ModelRequest], Awaitable[ModelResponse]]

SCORE_SPREAD_LIMIT = 30
EXPERT_ROLES = (Role.DOMAIN_EXPERT, Role.CODE_REVIEWER)

# Longer phrases first so "test coverage" wins over "testing".
TOPIC_VOCABULARY = (
    "error handling",
    "test coverage",
    "edge cases",
    "api design",
    "data model",
    "performance",
    "security",
    "scalability",
    "maintainability",
    "readability",
    "documentation",
    "architecture",
    "naming",
    "complexity",
    "modularity",
    "logging",
    "validation",
    "concurrency",
    "usability",
    "testing",
)

ANTONYM_PAIRS = (
    ("add", "remove"),
    ("increase", "decrease"),
    ("simplify", "elaborate"),
    ("split", "merge"),
    ("keep", "remove"),
)

_POSITIVE_WORDS = (
    "strength", "good", "clear", "strong", "well", "excellent", "robust", "effective",
    "sufficient", "agree", "high", "add", "increase", "keep", "elaborate",
)
_NEGATIVE_WORDS = (
    "weakness", "poor", "lack", "lacks", "missing", "unclear", "weak", "insufficient",
    "disagree", "low", "remove", "decrease", "bad", "confusing",
)

RESOLUTION_PLACEHOLDER = "No resolution provided."
RATIONALE_PLACEHOLDER = "No rationale provided."


def _word_forms(word: str) -> str:
    stem = word[:-1] if word.endswith("e") else word
    doubled = word + word[-1]
    forms = {word, f"{word}s", f"{word}d", f"{stem}ed", f"{stem}ing", f"{doubled}ed", f"{doubled}ing"}
    return "|".join(sorted(forms, key=len, reverse=True))


_ANTONYM_PATTERNS = {
    word: re.compile(rf"\b(?:{_word_forms(word)})\b", re.IGNORECASE)
    for pair in ANTONYM_PAIRS
    for word in pair
}
_POSITIVE_RE = re.compile(rf"\b(?:{'|'.join(_POSITIVE_WORDS)})\b", re.IGNORECASE)
_NEGATIVE_RE = re.compile(rf"\b(?:{'|'.join(_NEGATIVE_WORDS)})\b", re.IGNORECASE)


def topic_key(statement: str) -> str:
    """Canonical topic of an assessment: a vocabulary phrase, else its first three words."""
    lowered = statement.lower()
    for phrase in TOPIC_VOCABULARY:
        if phrase in lowered:
            return phrase
    return " ".join(re.findall(r"[a-z0-9']+", lowered)[:3])


def is_positive(statement: str) -> bool:
    return len(_POSITIVE_RE.findall(statement)) > len(_NEGATIVE_RE.findall(statement))


def split_positions(positions: list[ConflictPosition]) -> tuple[list[ConflictPosition], list[ConflictPosition]]:
    positive = [p for p in positions if is_positive(p.statement)]
    negative = [p for p in positions if not is_positive(p.statement)]
    return positive, negative


def suggest_strategies(positions: list[ConflictPosition], severity: int) -> list[ResolutionStrategy]:
    strategies: list[ResolutionStrategy] = []
    if any(p.participant.role in EXPERT_ROLES for p in positions):
        strategies.append(ResolutionStrategy.DEFER_TO_EXPERT)
    positive, negative = split_positions(positions)
    if len(positive) != len(negative):
        strategies.append(ResolutionStrategy.MAJORITY_VOTE)
    if severity >= 4:
        strategies.append(ResolutionStrategy.ESCALATE_TO_HUMAN)
    strategies.append(ResolutionStrategy.COMPROMISE)
    return strategies


def _conflict(conflict_id: str, topic: str, severity: int, positions: list[ConflictPosition]) -> DetectedConflict:
    return DetectedConflict(
        id=conflict_id,
        topic=topic,
        severity=severity,
        positions=positions,
        suggested_strategies=suggest_strategies(positions, severity),
    )


def detect_assessment_conflicts(critiques: list[Critique]) -> list[DetectedConflict]:
    positive: dict[str, list[ConflictPosition]] = defaultdict(list)
    negative: dict[str, list[ConflictPosition]] = defaultdict(list)
    topics: list[str] = []

    for critique in critiques:
        for text in critique.strengths:
            key = topic_key(text)
            topics.append(key)
            positive[key].append(ConflictPosition(critique.critic, f"Strength: {text}", confidence=0.8))
        for text in critique.weaknesses:
            key = topic_key(text)
            topics.append(key)
            negative[key].append(ConflictPosition(critique.critic, f"Weakness: {text}", confidence=0.8))

    conflicts = []
    for key in dict.fromkeys(topics):
        if not positive[key] or not negative[key]:
            continue
        split = abs(len(positive[key]) - len(negative[key]))
        severity = 4 if split == 0 else 3 if split == 1 else 2
        conflicts.append(
            _conflict(f"assessment:{key}", f"Assessment of {key}", severity, positive[key] + negative[key])
        )
    return conflicts


def _opposed(a: str, b: str) -> bool:
    for left, right in ANTONYM_PAIRS:
        l_re, r_re = _ANTONYM_PATTERNS[left], _ANTONYM_PATTERNS[right]
        if (l_re.search(a) and r_re.search(b)) or (r_re.search(a) and l_re.search(b)):
            return True
    return False


def detect_suggestion_conflicts(critiques: list[Critique]) -> list[DetectedConflict]:
    by_section: dict[str, list[tuple[Participant, str]]] = defaultdict(list)
    for critique in critiques:
        for suggestion in critique.suggestions:
            section = (suggestion.section or "general").strip().lower()
            by_section[section].append((critique.critic, suggestion.text))

    conflicts = []
    for section, entries in by_section.items():
        for (i, (critic_a, text_a)), (j, (critic_b, text_b)) in combinations(enumerate(entries), 2):
            if critic_a == critic_b or not _opposed(text_a, text_b):
                continue
            positions = [
                ConflictPosition(critic_a, text_a, confidence=0.7),
                ConflictPosition(critic_b, text_b, confidence=0.7),
            ]
            conflicts.append(_conflict(f"suggestion:{section}:{i}-{j}", f"Changes to {section}", 3, positions))
    return conflicts


def _parsed_score(critique: Critique) -> int:
    return critique.score if critique.raw_score is None else critique.raw_score


def detect_score_conflicts(critiques: list[Critique]) -> list[DetectedConflict]:
    """Flag critics whose scores, as they gave them, are more than 30 apart."""
    if len(critiques) < 2:
        return []
    high = max(critiques, key=_parsed_score)
    low = min(critiques, key=_parsed_score)
    high_score, low_score = _parsed_score(high), _parsed_score(low)
    spread = high_score - low_score
    if spread <= SCORE_SPREAD_LIMIT:
        return []
    positions = [
        ConflictPosition(
            high.critic,
            f"High score {high_score}/100",
            evidence=high.strengths[0] if high.strengths else None,
            confidence=high_score / 100,
        ),
        ConflictPosition(
            low.critic,
            f"Low score {low_score}/100",
            evidence=low.weaknesses[0] if low.weaknesses else None,
            confidence=1 - low_score / 100,
        ),
    ]
    return [_conflict("score", f"Overall quality (score spread {spread})", 2, positions)]


def detect_conflicts(critiques: list[Critique]) -> list[DetectedConflict]:
    """All conflicts in one critique round, most severe first."""
    found = (
        detect_assessment_conflicts(critiques)
        + detect_suggestion_conflicts(critiques)
        + detect_score_conflicts(critiques)
    )
    return sorted(found, key=lambda c: -c.severity)


def parse_compromise(text: str) -> tuple[str, str]:
    resolution = rationale = None
    for line in text.splitlines():
        cleaned = line.strip().lstrip("*").strip()
        upper = cleaned.upper()
        if upper.startswith("RESOLUTION:") and resolution is None:
            resolution = cleaned.split(":", 1)[1].strip(" *")
        elif upper.startswith("RATIONALE:") and rationale is None:
            rationale = cleaned.split(":", 1)[1].strip(" *")
    return resolution or RESOLUTION_PLACEHOLDER, rationale or RATIONALE_PLACEHOLDER


class ConflictResolver:
    """Executes one resolution strategy per conflict."""

    def __init__(
        self,
        invoke: InvokeFn | None = None,
        synthesizer: Participant | None = None,
        prompts: PromptsConfig | None = None,
        preferred: ResolutionStrategy | None = None,
        max_tokens: int = 1024,
    ) -> None:
        self._invoke = invoke
        self._synthesizer = synthesizer
        self._prompts = prompts
        self._preferred = preferred
        self._max_tokens = max_tokens

    def choose_strategy(self, conflict: DetectedConflict) -> ResolutionStrategy:
        if self._preferred is not None and self._preferred in conflict.suggested_strategies:
            return self._preferred
        if conflict.suggested_strategies:
            return conflict.suggested_strategies[0]
        return ResolutionStrategy.COMPROMISE

    async def resolve(self, conflict: DetectedConflict) -> tuple[ConflictResolution, ModelResponse | None]:
        strategy = self.choose_strategy(conflict)
        logger.info("Resolving %s (severity %d) via %s", conflict.id, conflict.severity, strategy.value)

        if strategy is ResolutionStrategy.COMPROMISE:
            return await self._compromise(conflict)
        if strategy is ResolutionStrategy.DEFER_TO_EXPERT:
            return self._defer_to_expert(conflict), None
        if strategy is ResolutionStrategy.MAJORITY_VOTE:
            return self._majority_vote(conflict), None
        return self._template(conflict, strategy), None

    async def resolve_all(
        self, conflicts: list[DetectedConflict]
    ) -> tuple[list[ConflictResolution], list[ModelResponse]]:
        resolutions: list[ConflictResolution] = []
        responses: list[ModelResponse] = []
        for conflict in conflicts:
            resolution, response = await self.resolve(conflict)
            resolutions.append(resolution)
            if response is not None:
                responses.append(response)
        return resolutions, responses

    def _majority_vote(self, conflict: DetectedConflict) -> ConflictResolution:
        positive, negative = split_positions(conflict.positions)
        # a tie adopts the critical side so the concern gets addressed
        winners, stance = (positive, "positive") if len(positive) > len(negative) else (negative, "negative")
        total = len(conflict.positions)
        return ConflictResolution(
            issue=conflict.topic,
            positions=list(conflict.positions),
            resolution=f"Adopt the {stance} position: {winners[0].statement}",
            rationale=f"{len(winners)} of {total} positions take the {stance} stance.",
            strategy=ResolutionStrategy.MAJORITY_VOTE,
        )

    def _defer_to_expert(self, conflict: DetectedConflict) -> ConflictResolution:
        for position in conflict.positions:
            if position.participant.role in EXPERT_ROLES:
                return ConflictResolution(
                    issue=conflict.topic,
                    positions=list(conflict.positions),
                    resolution=position.statement,
                    rationale=(
                        f"Deferred to {position.participant.display_name} "
                        f"({position.participant.role.value})."
                    ),
                    strategy=ResolutionStrategy.DEFER_TO_EXPERT,
                )
        return self._majority_vote(conflict)

    async def _compromise(self, conflict: DetectedConflict) -> tuple[ConflictResolution, ModelResponse | None]:
        if self._invoke is None or self._synthesizer is None or self._prompts is None:
            logger.warning("No synthesizer available for compromise on %s, using majority vote", conflict.id)
            return self._majority_vote(conflict), None

        request = build_compromise_request(
            self._prompts, self._synthesizer, conflict.topic, conflict.positions, self._max_tokens
        )
        try:
            response = await self._invoke(self._synthesizer, request)
        except ProviderError as exc:
            logger.warning("Compromise call failed for %s: %s; using majority vote", conflict.id, exc)
            return self._majority_vote(conflict), None

        resolution, rationale = parse_compromise(response.content)
        return (
            ConflictResolution(
                issue=conflict.topic,
                positions=list(conflict.positions),
                resolution=resolution,
                rationale=rationale,
                strategy=ResolutionStrategy.COMPROMISE,
            ),
            response,
        )

    def _template(self, conflict: DetectedConflict, strategy: ResolutionStrategy) -> ConflictResolution:
        if strategy is ResolutionStrategy.IMPLEMENT_BOTH:
            resolution = "Implement both approaches: " + "; ".join(p.statement for p in conflict.positions)
            rationale = "The positions can coexist; each covers a distinct concern."
        elif strategy is ResolutionStrategy.DEFER:
            resolution = f"Defer the decision on '{conflict.topic}' to a later round."
            rationale = "Not blocking for the current draft; revisit with more information."
        else:
            resolution = f"Escalated to a human reviewer: {conflict.topic}"
            rationale = f"Severity {conflict.severity} disagreement needs a human decision."
        return ConflictResolution(
            issue=conflict.topic,
            positions=list(conflict.positions),
            resolution=resolution,
            rationale=rationale,
            strategy=strategy,
        )
