"""Tests for forge/critique_parser.py."""

import pytest

from forge.critique_parser import (
    DEFAULT_SCORE,
    normalize_scores,
    parse_category,
    parse_critique,
    parse_lenient,
    parse_priority,
    parse_structured,
)
from forge.errors import ParseFailure
from forge.models import SuggestionCategory, TokenUsage
from tests.conftest import critique_text, make_participant

STRUCTURED = """## Strengths
- Clear separation of concerns
- Good error handling

## Weaknesses
- No load test numbers

## Suggestions
### Suggestion 1: Cache tokens
Section: Storage
Category: Performance
Priority: 1
Description: Cache bucket state in process
for hot keys.

### Suggestion 2
Section: API
Category: code-quality
Priority: low
Description: Rename the limiter factory

## Score
Score: 82
"""


def test_structured_extracts_sections():
    parsed = parse_structured(STRUCTURED)
    assert parsed is not None
    assert parsed.strengths == ["Clear separation of concerns", "Good error handling"]
    assert parsed.weaknesses == ["No load test numbers"]
    assert parsed.score == 82


def test_structured_suggestion_fields():
    parsed = parse_structured(STRUCTURED)
    first, second = parsed.suggestions
    assert first.section == "Storage"
    assert first.category is SuggestionCategory.PERFORMANCE
    assert first.priority == 1
    assert first.text == "Cache bucket state in process for hot keys."
    assert second.category is SuggestionCategory.CODE_QUALITY
    assert second.priority == 5


def test_structured_bold_term_fallback():
    text = """**Strengths:**
- Concise

**Weaknesses:**
- Vague on limits

Recommendations:
1. **Security**: hash client keys
2. **Clarity** - define the window size

Overall score: 64
"""
    parsed = parse_structured(text)
    assert parsed is not None
    assert [s.text for s in parsed.suggestions] == ["hash client keys", "define the window size"]
    assert parsed.suggestions[0].category is SuggestionCategory.SECURITY
    assert parsed.suggestions[0].section == "Security"
    assert parsed.score == 64


def test_structured_requires_score():
    text = "## Strengths\n- a\n\n## Weaknesses\n- b\n"
    assert parse_structured(text) is None


def test_structured_requires_weaknesses():
    assert parse_structured("## Strengths\n- a\n\nScore: 70\n") is None


def test_lenient_collects_bullets_and_defaults_score():
    text = "What I liked (strengths):\n- fast\nIssues found:\n- slow startup\nI recommend:\n- add a cache\n"
    parsed = parse_lenient(text)
    assert parsed.strengths == ["fast"]
    assert parsed.weaknesses == ["slow startup"]
    assert [s.text for s in parsed.suggestions] == ["add a cache"]
    assert parsed.score == DEFAULT_SCORE


def test_lenient_reads_score_anywhere():
    parsed = parse_lenient("Strengths\n- ok\nMy score would be about 55 overall.")
    assert parsed.score == 55


def test_lenient_fails_without_items():
    assert parse_lenient("Looks fine to me, score 90.") is None


def test_parse_critique_prefers_structured():
    critic = make_participant("alpha")
    critique = parse_critique(critique_text(score=77), critic, tokens=TokenUsage(10, 5), duration_sec=1.5)
    assert critique.critic == critic
    assert critique.score == 77
    assert critique.strengths == ["Clear structure"]
    assert critique.suggestions[0].section == "Storage"
    assert critique.tokens.total == 15
    assert critique.duration_sec == 1.5


def test_parse_critique_clamps_score():
    text = "## Strengths\n- a\n\n## Weaknesses\n- b\n\nScore: 140\n"
    assert parse_critique(text, make_participant("alpha")).score == 100


def test_parse_critique_raises_parse_failure():
    with pytest.raises(ParseFailure):
        parse_critique("I have no opinion.", make_participant("alpha"))


@pytest.mark.parametrize(
    "label, expected",
    [
        ("Code Quality", SuggestionCategory.CODE_QUALITY),
        ("code-quality", SuggestionCategory.CODE_QUALITY),
        ("CODE_QUALITY", SuggestionCategory.CODE_QUALITY),
        ("security", SuggestionCategory.SECURITY),
        ("vibes", SuggestionCategory.OTHER),
        ("", SuggestionCategory.OTHER),
    ],
)
def test_parse_category(label, expected):
    assert parse_category(label) is expected


def test_parse_priority():
    assert parse_priority("2") == 2
    assert parse_priority("9") == 5
    assert parse_priority("0") == 1
    assert parse_priority("Critical") == 1
    assert parse_priority("medium") == 3
    assert parse_priority("") == 3


def test_normalize_scores_spreads_to_center():
    assert normalize_scores([50, 90]) == [55, 85]


def test_normalize_scores_leaves_close_scores():
    assert normalize_scores([70, 72, 75]) == [70, 72, 75]


def test_normalize_scores_single_and_empty():
    assert normalize_scores([95]) == [95]
    assert normalize_scores([]) == []
