"""Read-only queries over a session's round history."""

from collections import Counter

from forge.models import (
    CONTENT_ROUNDS,
    CritiqueRound,
    Round,
    SuggestionCategory,
    TokenUsage,
)

_CATEGORY_ORDER = list(SuggestionCategory)


def content_versions(rounds: list[Round]) -> list[str]:
    """All artifact versions in order: drafts, syntheses and refinements."""
    return [r.content for r in rounds if isinstance(r, CONTENT_ROUNDS)]


def latest_content(rounds: list[Round]) -> str | None:
    versions = content_versions(rounds)
    return versions[-1] if versions else None


def latest_critique_round(rounds: list[Round]) -> CritiqueRound | None:
    for rnd in reversed(rounds):
        if isinstance(rnd, CritiqueRound):
            return rnd
    return None


def focus_areas(rounds: list[Round], max_priority: int = 2) -> list[str]:
    """Categories of high-priority suggestions in the latest critique round, most frequent first."""
    critique_round = latest_critique_round(rounds)
    if critique_round is None:
        return []
    counts = Counter(
        s.category
        for c in critique_round.critiques
        for s in c.suggestions
        if s.priority <= max_priority
    )
    ordered = sorted(counts, key=lambda cat: (-counts[cat], _CATEGORY_ORDER.index(cat)))
    return [cat.value for cat in ordered]


def sum_tokens(rounds: list[Round]) -> TokenUsage:
    total = TokenUsage()
    for rnd in rounds:
        total.add(rnd.tokens)
    return total
