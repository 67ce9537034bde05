"""Turn a critic's free-text response into a Critique.

Parsers are tried in order; each returns a ``ParsedCritique`` or ``None``.
The structured parser expects the labeled format the critique prompt asks
for. The lenient parser only needs some bullet items to work with.
"""

import logging
import re
import statistics
from collections.abc import Callable
from dataclasses import dataclass, field

from forge.errors import ParseFailure
from forge.models import Critique, Participant, Suggestion, SuggestionCategory, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_SCORE = 70
NORMALIZE_STDDEV = 15.0
NORMALIZE_CENTER = 70.0
NORMALIZE_SPREAD = 15.0

_BULLET = re.compile(r"^\s*(?:[-*•+]|\d+[.)])\s+(?P<item>.*\S)\s*$")
_HEADING = re.compile(r"^\s*#{1,6}\s+\S")
_SECTION_LABELS = r"strengths?|weaknesses|weakness|issues|suggestions?|recommendations?|score|overall score|final score"
_SECTION_LINE = re.compile(
    rf"^\s*(?:#{{1,6}}\s*)?\**\s*(?P<label>{_SECTION_LABELS})\s*\**\s*:?\s*\**\s*$",
    re.IGNORECASE,
)
_SUGGESTION_HEAD = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?\**[ \t]*suggestion[ \t]+(?P<num>\d+)\b\**[ \t]*[:.\-]?[ \t]*\**(?P<title>[^\n]*?)\**[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_FIELD = re.compile(
    r"^\s*(?:[-*]\s*)?\**(?P<name>section|category|priority|description)\**\s*:\s*\**\s*(?P<value>.*?)\s*$",
    re.IGNORECASE,
)
_BOLD_TERM = re.compile(r"^\s*\d+[.)]\s+\*\*(?P<term>[^*]+?)\*\*\s*[:\-–]?\s*(?P<rest>.*?)\s*$")
_SCORE_LINE = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?\**[ \t]*(?:overall[ \t]+|final[ \t]+)?score[ \t]*\**[ \t]*[:=][ \t]*\**[ \t]*(?P<score>\d{1,3})",
    re.IGNORECASE | re.MULTILINE,
)
_LEADING_NUMBER = re.compile(r"^\s*\**\s*(?P<score>\d{1,3})\b")
_LOOSE_SCORE = re.compile(r"score\D{0,20}?(?P<score>\d{1,3})", re.IGNORECASE)

_PRIORITY_WORDS = {"critical": 1, "high": 1, "medium": 3, "moderate": 3, "low": 5}


@dataclass
class ParsedCritique:
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    suggestions: list[Suggestion] = field(default_factory=list)
    score: int = DEFAULT_SCORE

    @property
    def item_count(self) -> int:
        return len(self.strengths) + len(self.weaknesses) + len(self.suggestions)


def clamp_score(value: float) -> int:
    return max(0, min(100, int(round(value))))


def parse_category(label: str) -> SuggestionCategory:
    """Map a free-text category label onto the fixed set, defaulting to OTHER."""
    key = re.sub(r"[\s\-]+", "_", label.strip().lower())
    key = key.strip("*_`")
    try:
        return SuggestionCategory(key)
    except ValueError:
        return SuggestionCategory.OTHER


def parse_priority(value: str) -> int:
    match = re.search(r"\d+", value)
    if match:
        return max(1, min(5, int(match.group())))
    for word, priority in _PRIORITY_WORDS.items():
        if word in value.lower():
            return priority
    return 3


def _section_spans(lines: list[str]) -> dict[str, tuple[int, int]]:
    """Locate labeled sections. Returns label -> (first body line, end line)."""
    starts: list[tuple[int, str]] = []
    for i, line in enumerate(lines):
        match = _SECTION_LINE.match(line)
        if match:
            label = match.group("label").lower()
            if label.startswith("strength"):
                key = "strengths"
            elif label.startswith("weakness") or label == "issues":
                key = "weaknesses"
            elif label.startswith(("suggestion", "recommendation")):
                key = "suggestions"
            else:
                key = "score"
            starts.append((i, key))

    spans: dict[str, tuple[int, int]] = {}
    for idx, (start, key) in enumerate(starts):
        end = len(lines)
        for j in range(start + 1, len(lines)):
            if (idx + 1 < len(starts) and j == starts[idx + 1][0]) or (
                _HEADING.match(lines[j]) and not _SUGGESTION_HEAD.match(lines[j])
            ):
                end = j
                break
        spans.setdefault(key, (start + 1, end))
    return spans


def _bullets(lines: list[str]) -> list[str]:
    items = []
    for line in lines:
        match = _BULLET.match(line)
        if match:
            items.append(match.group("item").strip())
    return items


def _parse_suggestion_block(title: str, body: str) -> Suggestion | None:
    fields: dict[str, str] = {}
    loose: list[str] = []
    current: str | None = None
    for line in body.splitlines():
        match = _FIELD.match(line)
        if match:
            current = match.group("name").lower()
            fields[current] = match.group("value")
        elif line.strip():
            if current == "description":
                fields["description"] = f"{fields['description']} {line.strip()}".strip()
            else:
                loose.append(line.strip())

    text = fields.get("description") or " ".join(loose) or title.strip()
    if not text:
        return None
    return Suggestion(
        text=text,
        section=fields.get("section") or None,
        priority=parse_priority(fields.get("priority", "")),
        category=parse_category(fields.get("category", "")),
    )


def _numbered_suggestions(text: str) -> list[Suggestion]:
    heads = list(_SUGGESTION_HEAD.finditer(text))
    suggestions: list[Suggestion] = []
    for i, head in enumerate(heads):
        end = heads[i + 1].start() if i + 1 < len(heads) else len(text)
        body = text[head.end():end]
        # the last block stops at the next unrelated heading or the score label
        stop = re.search(r"^[ \t]*(?:#{1,6}[ \t]+(?!suggestion)|\**[ \t]*(?:overall[ \t]+)?score\b)", body,
                         re.IGNORECASE | re.MULTILINE)
        if stop:
            body = body[:stop.start()]
        suggestion = _parse_suggestion_block(head.group("title"), body)
        if suggestion:
            suggestions.append(suggestion)
    return suggestions


def _bold_term_suggestions(lines: list[str]) -> list[Suggestion]:
    suggestions = []
    for line in lines:
        match = _BOLD_TERM.match(line)
        if match:
            term = match.group("term").strip().rstrip(":")
            rest = match.group("rest").strip()
            suggestions.append(
                Suggestion(
                    text=rest or term,
                    section=term if rest else None,
                    category=parse_category(term),
                )
            )
    return suggestions


def _labeled_score(text: str, lines: list[str], spans: dict[str, tuple[int, int]]) -> int | None:
    match = _SCORE_LINE.search(text)
    if match:
        return clamp_score(int(match.group("score")))
    if "score" in spans:
        start, end = spans["score"]
        for line in lines[start:end]:
            if line.strip():
                number = _LEADING_NUMBER.match(line)
                return clamp_score(int(number.group("score"))) if number else None
    return None


def parse_structured(text: str) -> ParsedCritique | None:
    """Parse the labeled format. None when strengths, weaknesses or score is missing."""
    lines = text.splitlines()
    spans = _section_spans(lines)
    if "strengths" not in spans or "weaknesses" not in spans:
        return None

    score = _labeled_score(text, lines, spans)
    if score is None:
        return None

    strengths = _bullets(lines[slice(*spans["strengths"])])
    weaknesses = _bullets(lines[slice(*spans["weaknesses"])])

    suggestions = _numbered_suggestions(text)
    if not suggestions:
        if "suggestions" in spans:
            candidate_lines = lines[slice(*spans["suggestions"])]
        else:
            skip = set(range(*spans["strengths"])) | set(range(*spans["weaknesses"]))
            candidate_lines = [line for i, line in enumerate(lines) if i not in skip]
        suggestions = _bold_term_suggestions(candidate_lines)

    return ParsedCritique(strengths=strengths, weaknesses=weaknesses, suggestions=suggestions, score=score)


def parse_lenient(text: str) -> ParsedCritique | None:
    """Keyword-driven line scan. None only when no items at all were found."""
    parsed = ParsedCritique()
    cursor: str | None = None
    for line in text.splitlines():
        bullet = _BULLET.match(line)
        if bullet is None:
            lowered = line.lower()
            if "strength" in lowered:
                cursor = "strengths"
            elif "weakness" in lowered or "issue" in lowered:
                cursor = "weaknesses"
            elif "suggestion" in lowered or "recommend" in lowered:
                cursor = "suggestions"
            continue
        if cursor is None:
            continue
        item = bullet.group("item").strip()
        if cursor == "suggestions":
            parsed.suggestions.append(Suggestion(text=item))
        else:
            getattr(parsed, cursor).append(item)

    if parsed.item_count == 0:
        return None

    match = _LOOSE_SCORE.search(text)
    parsed.score = clamp_score(int(match.group("score"))) if match else DEFAULT_SCORE
    return parsed


PARSERS: tuple[tuple[str, Callable[[str], ParsedCritique | None]], ...] = (
    ("structured", parse_structured),
    ("lenient", parse_lenient),
)


def parse_critique(
    text: str,
    critic: Participant,
    tokens: TokenUsage | None = None,
    duration_sec: float = 0.0,
) -> Critique:
    """Run the parser chain over one response.

    Raises:
        ParseFailure: If no parser could extract anything.
    """
    for name, parser in PARSERS:
        parsed = parser(text)
        if parsed is not None:
            logger.debug("Critique from %s parsed by %s parser", critic.display_name, name)
            return Critique(
                critic=critic,
                strengths=parsed.strengths,
                weaknesses=parsed.weaknesses,
                suggestions=parsed.suggestions,
                score=parsed.score,
                raw_content=text,
                tokens=tokens or TokenUsage(),
                duration_sec=duration_sec,
                raw_score=parsed.score,
            )
    raise ParseFailure(critic.display_name, "no strengths, weaknesses or suggestions found")


def normalize_scores(scores: list[int]) -> list[int]:
    """Pull scores toward a common center when critics disagree widely.

    Leaves the scores alone unless their population standard deviation
    exceeds 15; otherwise maps each to ``70 + 15 * z`` clamped to [0, 100].
    """
    if len(scores) < 2:
        return list(scores)
    stdev = statistics.pstdev(scores)
    if stdev <= NORMALIZE_STDDEV:
        return list(scores)
    mean = statistics.fmean(scores)
    return [clamp_score(NORMALIZE_CENTER + NORMALIZE_SPREAD * (s - mean) / stdev) for s in scores]
