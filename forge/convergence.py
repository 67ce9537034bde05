"""Decide whether the artifact has settled and the participants accept it.

The metric score is a pure function of the round history. It is blended with
the participants' vote score, and the result only converges when enough of
them actually agree.
"""

import logging
import re
import statistics
from dataclasses import dataclass, field
from itertools import combinations

from config.config_loader import SessionConfig
from forge.critique_parser import clamp_score
from forge.history import content_versions, latest_critique_round
from forge.models import ConvergenceVote, Participant, Round

logger = logging.getLogger(__name__)

METRIC_WEIGHT = 0.6
VOTE_WEIGHT = 0.4
ISSUE_SATURATION = 20
STALL_WINDOW = 3
STALL_EPSILON = 0.01
TREND_EPSILON = 0.05
DEFAULT_VOTE_SCORE = 50

_WORD = re.compile(r"[a-z0-9']+")
_HEADER = re.compile(r"^#{1,6}\s+\S", re.MULTILINE)
_VOTE_LINE = re.compile(r"^\W*vote\W*:\W*(?P<vote>agree|disagree)\b", re.IGNORECASE | re.MULTILINE)
_SCORE_LINE = re.compile(r"^\W*score\W*:\W*(?P<score>\d{1,3})", re.IGNORECASE | re.MULTILINE)
_CONCERNS_LINE = re.compile(r"^\W*concerns\W*:(?P<rest>.*)$", re.IGNORECASE | re.MULTILINE)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<item>.*\S)")
_NONE_WORDS = {"none", "n/a", "no concerns", "-", ""}


@dataclass
class ConvergenceResult:
    score: float              # blended metric and vote score
    converged: bool
    metrics: dict[str, float] = field(default_factory=dict)
    metric_score: float = 0.0
    vote_score: float = 0.0
    votes: list[ConvergenceVote] = field(default_factory=list)
    remaining_issues: list[str] = field(default_factory=list)
    trend: str = "stable"
    stalled: bool = False


def _words(text: str) -> list[str]:
    return _WORD.findall(text.lower())


def jaccard(a: set, b: set) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def _trigrams(text: str) -> set[tuple[str, ...]]:
    words = _words(text)
    return {tuple(words[i:i + 3]) for i in range(len(words) - 2)}


def agreement_metric(rounds: list[Round]) -> float:
    critique_round = latest_critique_round(rounds)
    if critique_round is None or not critique_round.critiques:
        return 0.0
    scores = [c.score for c in critique_round.critiques]
    mean = statistics.fmean(scores)
    variance = statistics.pvariance(scores)
    return 0.6 * mean / 100 + 0.4 / (1 + variance / 100)


def change_velocity_metric(versions: list[str]) -> float:
    if len(versions) < 2:
        return 0.0
    return jaccard(set(_words(versions[-2])), set(_words(versions[-1])))


def issue_count_metric(rounds: list[Round]) -> float:
    critique_round = latest_critique_round(rounds)
    if critique_round is None:
        return 0.0
    issues = sum(len(c.weaknesses) + len(c.suggestions) for c in critique_round.critiques)
    return 1 - min(1.0, issues / ISSUE_SATURATION)


def semantic_similarity_metric(versions: list[str]) -> float:
    recent = versions[-3:]
    if len(recent) < 2:
        return 0.0
    pairs = [jaccard(_trigrams(a), _trigrams(b)) for a, b in combinations(recent, 2)]
    return statistics.fmean(pairs)


def section_stability_metric(versions: list[str]) -> float:
    recent = versions[-3:]
    if len(recent) < 2:
        return 0.0
    counts = [len(_HEADER.findall(v)) for v in recent]
    return 1.0 if max(counts) - min(counts) <= 1 else 0.0


def compute_metrics(rounds: list[Round]) -> dict[str, float]:
    """All five stability metrics, each in [0, 1]. Pure."""
    versions = content_versions(rounds)
    return {
        "agreement": agreement_metric(rounds),
        "change_velocity": change_velocity_metric(versions),
        "issue_count": issue_count_metric(rounds),
        "semantic_similarity": semantic_similarity_metric(versions),
        "section_stability": section_stability_metric(versions),
    }


def weighted_score(metrics: dict[str, float], weights: dict[str, float]) -> float:
    return sum(metrics.get(name, 0.0) * weight for name, weight in weights.items())


def vote_score(votes: list[ConvergenceVote]) -> float:
    if not votes:
        return 0.0
    return statistics.fmean(v.score for v in votes) / 100


def blend(metric: float, votes: float) -> float:
    return METRIC_WEIGHT * metric + VOTE_WEIGHT * votes


def decide(
    blended: float,
    votes: list[ConvergenceVote],
    threshold: float,
    min_consensus: int,
    require_unanimous: bool,
    participant_count: int,
) -> bool:
    """The gating rule: score at or above threshold and enough agreement."""
    if blended < threshold:
        return False
    agrees = sum(1 for v in votes if v.agrees)
    if require_unanimous:
        return participant_count > 0 and agrees >= participant_count
    return agrees >= min_consensus


def remaining_issues(votes: list[ConvergenceVote]) -> list[str]:
    return [
        f"{v.participant.display_name}: {concern}"
        for v in votes
        if not v.agrees
        for concern in v.concerns
    ]


def is_stalled(history: list[float]) -> bool:
    if len(history) < STALL_WINDOW:
        return False
    window = history[-STALL_WINDOW:]
    return all(curr <= prev + STALL_EPSILON for prev, curr in zip(window, window[1:]))


def trend(history: list[float]) -> str:
    if len(history) < 2:
        return "stable"
    diff = history[-1] - history[-2]
    if diff > TREND_EPSILON:
        return "improving"
    if diff < -TREND_EPSILON:
        return "degrading"
    return "stable"


def parse_vote(text: str, participant: Participant) -> ConvergenceVote:
    """Read VOTE / SCORE / CONCERNS lines, falling back to keyword checks."""
    match = _VOTE_LINE.search(text)
    if match:
        agrees = match.group("vote").lower() == "agree"
    else:
        lowered = text.lower()
        agrees = "disagree" not in lowered and "agree" in lowered

    score_match = _SCORE_LINE.search(text)
    score = clamp_score(int(score_match.group("score"))) if score_match else DEFAULT_VOTE_SCORE

    concerns: list[str] = []
    concerns_match = _CONCERNS_LINE.search(text)
    if concerns_match:
        inline = concerns_match.group("rest").strip()
        if inline.lower() not in _NONE_WORDS:
            concerns.append(inline)
        for line in text[concerns_match.end():].splitlines():
            bullet = _BULLET.match(line)
            if bullet:
                item = bullet.group("item").strip()
                if item.lower() not in _NONE_WORDS:
                    concerns.append(item)
            elif line.strip():
                break

    return ConvergenceVote(participant=participant, agrees=agrees, score=score, concerns=concerns)


class ConvergenceDetector:
    """Scores convergence checks and keeps the score history for stall and trend."""

    def __init__(self, config: SessionConfig) -> None:
        self._config = config
        self.history: list[float] = []

    def ready(self, rounds: list[Round]) -> bool:
        """False until enough rounds exist for a real check."""
        return len(rounds) >= self._config.min_rounds

    def evaluate(
        self, rounds: list[Round], votes: list[ConvergenceVote], participant_count: int
    ) -> ConvergenceResult:
        if not self.ready(rounds):
            logger.info("Convergence check skipped: %d of %d rounds", len(rounds), self._config.min_rounds)
            return ConvergenceResult(score=0.0, converged=False)

        metrics = compute_metrics(rounds)
        metric = weighted_score(metrics, self._config.metric_weights)
        votes_component = vote_score(votes)
        blended = blend(metric, votes_component)
        converged = decide(
            blended,
            votes,
            self._config.convergence_threshold,
            self._config.min_consensus,
            self._config.require_unanimous,
            participant_count,
        )

        self.history.append(blended)
        stalled = is_stalled(self.history)
        if stalled and not converged:
            logger.warning("Convergence stalled at %.3f over the last %d checks", blended, STALL_WINDOW)

        logger.info(
            "Convergence %.3f (metrics %.3f, votes %.3f), %d/%d agree -> %s",
            blended,
            metric,
            votes_component,
            sum(1 for v in votes if v.agrees),
            len(votes),
            "converged" if converged else "not converged",
        )
        return ConvergenceResult(
            score=blended,
            converged=converged,
            metrics=metrics,
            metric_score=metric,
            vote_score=votes_component,
            votes=list(votes),
            remaining_issues=remaining_issues(votes),
            trend=trend(self.history),
            stalled=stalled,
        )
