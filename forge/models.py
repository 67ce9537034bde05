"""Pure dataclasses for the forge session and its rounds. No logic, no deps."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar

from config.config_loader import SessionConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    INITIALIZED = "initialized"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    CONVERGED = "converged"
    COMPLETE = "complete"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"


class TerminalReason(str, Enum):
    CONVERGED = "converged"
    MAX_ROUNDS = "max_rounds"
    MAX_COST = "max_cost"
    MAX_DURATION = "max_duration"
    ABORTED = "aborted"
    FAILED = "failed"


class RoundKind(str, Enum):
    DRAFT = "draft"
    CRITIQUE = "critique"
    SYNTHESIS = "synthesis"
    REFINEMENT = "refinement"
    CONVERGENCE = "convergence"


class Role(str, Enum):
    DRAFTER = "drafter"
    CRITIC = "critic"
    SYNTHESIZER = "synthesizer"
    DOMAIN_EXPERT = "domain_expert"
    CODE_REVIEWER = "code_reviewer"


class SuggestionCategory(str, Enum):
    CORRECTNESS = "correctness"
    CLARITY = "clarity"
    COMPLETENESS = "completeness"
    CODE_QUALITY = "code_quality"
    ARCHITECTURE = "architecture"
    PERFORMANCE = "performance"
    SECURITY = "security"
    OTHER = "other"


class ResolutionStrategy(str, Enum):
    MAJORITY_VOTE = "majority_vote"
    DEFER_TO_EXPERT = "defer_to_expert"
    IMPLEMENT_BOTH = "implement_both"
    COMPROMISE = "compromise"
    DEFER = "defer"
    ESCALATE_TO_HUMAN = "escalate_to_human"


@dataclass(frozen=True)
class Participant:
    model_id: str
    display_name: str = field(compare=False)
    provider: str
    role: Role
    is_human: bool = field(default=False, compare=False)


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def add(self, other: "TokenUsage") -> None:
        self.input += other.input
        self.output += other.output


@dataclass
class Topic:
    title: str
    description: str = ""
    constraints: list[str] = field(default_factory=list)


@dataclass
class Suggestion:
    text: str
    section: str | None = None
    priority: int = 3      # 1 = highest
    category: SuggestionCategory = SuggestionCategory.OTHER


@dataclass
class Critique:
    critic: Participant
    strengths: list[str]
    weaknesses: list[str]
    suggestions: list[Suggestion]
    score: int             # always clamped to [0, 100]
    raw_content: str
    tokens: TokenUsage = field(default_factory=TokenUsage)
    duration_sec: float = 0.0
    raw_score: int | None = None   # as parsed, before normalization


@dataclass
class ConflictPosition:
    participant: Participant
    statement: str
    evidence: str | None = None
    confidence: float = 0.5


@dataclass
class DetectedConflict:
    id: str
    topic: str
    severity: int          # 1-5
    positions: list[ConflictPosition]
    suggested_strategies: list[ResolutionStrategy] = field(default_factory=list)


@dataclass
class ConflictResolution:
    issue: str
    positions: list[ConflictPosition]
    resolution: str
    rationale: str
    strategy: ResolutionStrategy


@dataclass
class ConvergenceVote:
    participant: Participant
    agrees: bool
    score: int
    concerns: list[str] = field(default_factory=list)


@dataclass(kw_only=True)
class Round:
    kind: ClassVar[RoundKind]

    number: int
    timestamp: datetime = field(default_factory=utcnow)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0


@dataclass(kw_only=True)
class DraftRound(Round):
    kind: ClassVar[RoundKind] = RoundKind.DRAFT

    drafter: Participant
    content: str
    prompt_summary: str = ""
    duration_sec: float = 0.0


@dataclass(kw_only=True)
class CritiqueRound(Round):
    kind: ClassVar[RoundKind] = RoundKind.CRITIQUE

    critiques: list[Critique] = field(default_factory=list)


@dataclass(kw_only=True)
class SynthesisRound(Round):
    kind: ClassVar[RoundKind] = RoundKind.SYNTHESIS

    synthesizer: Participant
    content: str
    resolved_conflicts: list[ConflictResolution] = field(default_factory=list)
    changes: list[str] = field(default_factory=list)


@dataclass(kw_only=True)
class RefinementRound(Round):
    kind: ClassVar[RoundKind] = RoundKind.REFINEMENT

    refiner: Participant
    focus_area: str
    content: str
    depth: int = 1


@dataclass(kw_only=True)
class ConvergenceRound(Round):
    kind: ClassVar[RoundKind] = RoundKind.CONVERGENCE

    score: float
    converged: bool
    votes: list[ConvergenceVote] = field(default_factory=list)
    remaining_issues: list[str] = field(default_factory=list)
    metrics: dict[str, float] = field(default_factory=dict)
    trend: str = "stable"
    stalled: bool = False


CONTENT_ROUNDS = (DraftRound, SynthesisRound, RefinementRound)


@dataclass
class Session:
    id: str
    name: str
    topic: Topic
    config: SessionConfig = field(default_factory=SessionConfig)
    participants: list[Participant] = field(default_factory=list)
    rounds: list[Round] = field(default_factory=list)
    status: SessionStatus = SessionStatus.INITIALIZED
    current_round: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    total_tokens: TokenUsage = field(default_factory=TokenUsage)
    total_cost_usd: float = 0.0
    terminal_reason: TerminalReason | None = None
    final_content: str | None = None
