"""Tests for forge/serialization.py."""

import json

import pytest

from forge.models import (
    ConflictPosition,
    ConflictResolution,
    ConvergenceRound,
    ConvergenceVote,
    CritiqueRound,
    DraftRound,
    RefinementRound,
    ResolutionStrategy,
    Role,
    RoundKind,
    SessionStatus,
    SuggestionCategory,
    SynthesisRound,
    TerminalReason,
    TokenUsage,
)
from forge.serialization import (
    FORMAT_VERSION,
    load_session,
    save_session,
    session_to_dict,
    truncate_rounds,
)
from tests.conftest import DRAFT_TEXT, make_critique, make_participant, make_suggestion


@pytest.fixture
def finished_session(sample_session):
    alpha = make_participant("alpha", Role.DRAFTER)
    beta = make_participant("beta")
    position = ConflictPosition(beta, "Weakness: poor logging", evidence="no levels", confidence=0.8)
    sample_session.participants = [alpha, beta]
    sample_session.rounds = [
        DraftRound(number=0, drafter=alpha, content="v1", tokens=TokenUsage(10, 5), cost_usd=0.01),
        CritiqueRound(
            number=1,
            critiques=[make_critique(
                "beta",
                strengths=["Clear"],
                weaknesses=["Vague"],
                suggestions=[make_suggestion("Hash keys", "Storage", 1, SuggestionCategory.SECURITY)],
                score=64,
            )],
            tokens=TokenUsage(20, 10),
            cost_usd=0.02,
        ),
        SynthesisRound(
            number=2,
            synthesizer=make_participant("alpha", Role.SYNTHESIZER),
            content="v2",
            resolved_conflicts=[ConflictResolution(
                issue="Assessment of logging",
                positions=[position],
                resolution="Add levels",
                rationale="Cheap",
                strategy=ResolutionStrategy.COMPROMISE,
            )],
            changes=["Added levels"],
            tokens=TokenUsage(30, 15),
            cost_usd=0.03,
        ),
        RefinementRound(
            number=3, refiner=make_participant("alpha", Role.SYNTHESIZER), focus_area="security",
            content=DRAFT_TEXT, depth=1,
        ),
        ConvergenceRound(
            number=4,
            score=0.9,
            converged=True,
            votes=[ConvergenceVote(beta, True, 88, ["none really"])],
            metrics={"agreement": 0.8},
            trend="improving",
        ),
    ]
    sample_session.status = SessionStatus.COMPLETE
    sample_session.terminal_reason = TerminalReason.CONVERGED
    sample_session.final_content = DRAFT_TEXT
    sample_session.total_tokens = TokenUsage(60, 30)
    sample_session.total_cost_usd = 0.06
    return sample_session


def test_session_to_dict_is_json_ready(finished_session):
    data = session_to_dict(finished_session)
    json.dumps(data)
    assert data["format_version"] == FORMAT_VERSION
    assert [r["kind"] for r in data["rounds"]] == ["draft", "critique", "synthesis", "refinement", "convergence"]
    assert data["status"] == "complete"
    assert data["rounds"][1]["critiques"][0]["suggestions"][0]["category"] == "security"


def test_save_and_load_preserves_session(finished_session, tmp_path):
    path = save_session(finished_session, tmp_path / "nested" / "session.json")
    loaded = load_session(path)

    assert loaded == finished_session
    assert loaded.rounds[2].resolved_conflicts[0].positions[0].evidence == "no levels"
    assert loaded.rounds[3].kind is RoundKind.REFINEMENT
    assert loaded.rounds[4].votes[0].participant.display_name == "beta"
    assert loaded.config == finished_session.config


def test_load_rejects_other_json(tmp_path):
    path = tmp_path / "other.json"
    path.write_text('{"hello": "world"}', encoding="utf-8")
    with pytest.raises(ValueError, match="Not a session file"):
        load_session(path)


def test_load_rejects_newer_format(finished_session, tmp_path):
    data = session_to_dict(finished_session)
    data["format_version"] = FORMAT_VERSION + 1
    path = tmp_path / "future.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    with pytest.raises(ValueError, match="newer"):
        load_session(path)


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_session(tmp_path / "missing.json")


def test_truncate_rounds_recomputes_aggregates(finished_session):
    truncate_rounds(finished_session, 2)

    assert [r.number for r in finished_session.rounds] == [0, 1]
    assert finished_session.total_tokens == TokenUsage(30, 15)
    assert finished_session.total_cost_usd == pytest.approx(0.03)
    assert finished_session.status is SessionStatus.INITIALIZED
    assert finished_session.terminal_reason is None
    assert finished_session.final_content == "v1"
    assert finished_session.current_round == 2


def test_truncate_rounds_bounds(finished_session):
    with pytest.raises(ValueError):
        truncate_rounds(finished_session, 6)
    with pytest.raises(ValueError):
        truncate_rounds(finished_session, -1)
    assert truncate_rounds(finished_session, 5).rounds == finished_session.rounds
