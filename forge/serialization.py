"""Session <-> JSON. Also the truncation step used before resuming a session."""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from pathlib import Path

from config.config_loader import session_config_from_dict
from forge.history import latest_content, sum_tokens
from forge.models import (
    ConflictPosition,
    ConflictResolution,
    ConvergenceRound,
    ConvergenceVote,
    Critique,
    CritiqueRound,
    DraftRound,
    Participant,
    RefinementRound,
    ResolutionStrategy,
    Role,
    Round,
    RoundKind,
    Session,
    SessionStatus,
    Suggestion,
    SuggestionCategory,
    SynthesisRound,
    TerminalReason,
    TokenUsage,
    Topic,
    utcnow,
)

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def _plain(value):
    """Make asdict() output JSON-friendly."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def round_to_dict(rnd: Round) -> dict:
    data = _plain(asdict(rnd))
    data["kind"] = rnd.kind.value
    return data


def session_to_dict(session: Session) -> dict:
    data = _plain(asdict(session))
    data["rounds"] = [round_to_dict(r) for r in session.rounds]
    data["format_version"] = FORMAT_VERSION
    return data


def _participant(raw: dict) -> Participant:
    return Participant(
        model_id=raw["model_id"],
        display_name=raw["display_name"],
        provider=raw["provider"],
        role=Role(raw["role"]),
        is_human=raw.get("is_human", False),
    )


def _tokens(raw: dict | None) -> TokenUsage:
    raw = raw or {}
    return TokenUsage(input=raw.get("input", 0), output=raw.get("output", 0))


def _positions(raw: list[dict]) -> list[ConflictPosition]:
    return [
        ConflictPosition(
            participant=_participant(p["participant"]),
            statement=p["statement"],
            evidence=p.get("evidence"),
            confidence=p.get("confidence", 0.5),
        )
        for p in raw
    ]


def _critique(raw: dict) -> Critique:
    return Critique(
        critic=_participant(raw["critic"]),
        strengths=list(raw["strengths"]),
        weaknesses=list(raw["weaknesses"]),
        suggestions=[
            Suggestion(
                text=s["text"],
                section=s.get("section"),
                priority=s.get("priority", 3),
                category=SuggestionCategory(s.get("category", "other")),
            )
            for s in raw["suggestions"]
        ],
        score=raw["score"],
        raw_content=raw.get("raw_content", ""),
        tokens=_tokens(raw.get("tokens")),
        duration_sec=raw.get("duration_sec", 0.0),
        raw_score=raw.get("raw_score"),
    )


def round_from_dict(raw: dict) -> Round:
    kind = RoundKind(raw["kind"])
    common = {
        "number": raw["number"],
        "timestamp": datetime.fromisoformat(raw["timestamp"]),
        "tokens": _tokens(raw.get("tokens")),
        "cost_usd": raw.get("cost_usd", 0.0),
    }
    if kind is RoundKind.DRAFT:
        return DraftRound(
            **common,
            drafter=_participant(raw["drafter"]),
            content=raw["content"],
            prompt_summary=raw.get("prompt_summary", ""),
            duration_sec=raw.get("duration_sec", 0.0),
        )
    if kind is RoundKind.CRITIQUE:
        return CritiqueRound(**common, critiques=[_critique(c) for c in raw["critiques"]])
    if kind is RoundKind.SYNTHESIS:
        return SynthesisRound(
            **common,
            synthesizer=_participant(raw["synthesizer"]),
            content=raw["content"],
            resolved_conflicts=[
                ConflictResolution(
                    issue=r["issue"],
                    positions=_positions(r["positions"]),
                    resolution=r["resolution"],
                    rationale=r["rationale"],
                    strategy=ResolutionStrategy(r["strategy"]),
                )
                for r in raw.get("resolved_conflicts", [])
            ],
            changes=list(raw.get("changes", [])),
        )
    if kind is RoundKind.REFINEMENT:
        return RefinementRound(
            **common,
            refiner=_participant(raw["refiner"]),
            focus_area=raw["focus_area"],
            content=raw["content"],
            depth=raw.get("depth", 1),
        )
    return ConvergenceRound(
        **common,
        score=raw["score"],
        converged=raw["converged"],
        votes=[
            ConvergenceVote(
                participant=_participant(v["participant"]),
                agrees=v["agrees"],
                score=v["score"],
                concerns=list(v.get("concerns", [])),
            )
            for v in raw.get("votes", [])
        ],
        remaining_issues=list(raw.get("remaining_issues", [])),
        metrics=dict(raw.get("metrics", {})),
        trend=raw.get("trend", "stable"),
        stalled=raw.get("stalled", False),
    )


def session_from_dict(raw: dict) -> Session:
    topic_raw = raw["topic"]
    reason = raw.get("terminal_reason")
    return Session(
        id=raw["id"],
        name=raw["name"],
        topic=Topic(
            title=topic_raw["title"],
            description=topic_raw.get("description", ""),
            constraints=list(topic_raw.get("constraints", [])),
        ),
        config=session_config_from_dict(raw.get("config")),
        participants=[_participant(p) for p in raw.get("participants", [])],
        rounds=[round_from_dict(r) for r in raw.get("rounds", [])],
        status=SessionStatus(raw.get("status", SessionStatus.INITIALIZED.value)),
        current_round=raw.get("current_round", 0),
        created_at=datetime.fromisoformat(raw["created_at"]),
        updated_at=datetime.fromisoformat(raw["updated_at"]),
        total_tokens=_tokens(raw.get("total_tokens")),
        total_cost_usd=raw.get("total_cost_usd", 0.0),
        terminal_reason=TerminalReason(reason) if reason else None,
        final_content=raw.get("final_content"),
    )


def save_session(session: Session, path: Path) -> Path:
    """Write the session as pretty-printed JSON. Returns the path written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(session_to_dict(session), indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Session JSON saved: %s", path)
    return path


def load_session(path: Path) -> Session:
    """Read a session JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a session written by this tool.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or "rounds" not in raw or "topic" not in raw:
        raise ValueError(f"Not a session file: {path}")
    version = raw.get("format_version", FORMAT_VERSION)
    if version > FORMAT_VERSION:
        raise ValueError(f"Session file format {version} is newer than supported ({FORMAT_VERSION})")
    return session_from_dict(raw)


def truncate_rounds(session: Session, keep: int) -> Session:
    """Drop every round from index ``keep`` on, ready to resume from there.

    Aggregates are recomputed from the remaining rounds and the terminal
    state is cleared.

    Raises:
        ValueError: If ``keep`` is negative or beyond the recorded rounds.
    """
    if keep < 0 or keep > len(session.rounds):
        raise ValueError(f"Cannot resume from round {keep}: session has {len(session.rounds)} rounds")
    kept = session.rounds[:keep]
    logger.info("Truncating session %s to %d rounds", session.id, keep)
    session.rounds = kept
    session.total_tokens = sum_tokens(kept)
    session.total_cost_usd = sum(r.cost_usd for r in kept)
    session.current_round = keep
    session.status = SessionStatus.INITIALIZED
    session.terminal_reason = None
    session.final_content = latest_content(kept)
    session.updated_at = utcnow()
    return session

