"""Tests for forge/cli.py: setting overrides, provider selection and the command itself."""

import json
from dataclasses import replace

import pytest
from click.testing import CliRunner

import forge.cli as cli
from config.config_loader import ModelConfig, SessionConfig
from forge.cli import PROVIDER_CLASSES, _build_all_providers, _select_models, _session_settings, main
from tests.conftest import MockProvider


class _FakeProvider(MockProvider):
    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config.name)
        self._config = config


def test_session_settings_overrides():
    base = SessionConfig(max_rounds=12)
    cfg = _session_settings(base, max_rounds=4, threshold=0.9, serial=True)
    assert cfg.max_rounds == 4
    assert cfg.convergence_threshold == 0.9
    assert cfg.parallel is False
    assert base.max_rounds == 12


def test_session_settings_keeps_base_when_unset():
    base = SessionConfig(max_rounds=7, convergence_threshold=0.8)
    assert _session_settings(base, None, None, False) == base


def test_select_models_filters_and_orders():
    providers = {name: MockProvider(name) for name in ("claude", "gemini", "openai")}
    selected = _select_models(providers, "openai, claude,unknown")
    assert list(selected) == ["openai", "claude"]
    assert _select_models(providers, None) is providers


def test_build_all_providers_uses_sdk(sample_app_config, monkeypatch):
    monkeypatch.setitem(PROVIDER_CLASSES, "anthropic", _FakeProvider)
    sample_app_config.models["mystery"] = ModelConfig(
        name="mystery", sdk="carrier-pigeon", model="m", api_key_env="X", timeout_sec=1, max_tokens=1
    )
    sample_app_config.available_providers = {"claude", "mystery"}

    providers = _build_all_providers(sample_app_config)

    assert list(providers) == ["claude"]
    assert isinstance(providers["claude"], _FakeProvider)
    assert providers["claude"]._config.sdk == "anthropic"


@pytest.fixture
def cli_env(sample_app_config, session_config, two_mock_providers, monkeypatch):
    sample_app_config.session = session_config
    monkeypatch.setattr(cli, "load_config", lambda: sample_app_config)
    monkeypatch.setattr(cli, "_build_all_providers", lambda config: dict(two_mock_providers))
    monkeypatch.setattr(cli, "_setup_logging", lambda verbose: None)
    return sample_app_config


def test_main_requires_a_topic(cli_env):
    result = CliRunner().invoke(main, ["--skip-health-check"])
    assert result.exit_code == 1
    assert "Provide a TOPIC" in result.output


def test_main_from_round_requires_resume(cli_env):
    result = CliRunner().invoke(main, ["Some topic", "--from-round", "2"])
    assert result.exit_code == 1
    assert "--from-round requires --resume" in result.output


def test_main_runs_session_and_saves(cli_env, tmp_path):
    out = tmp_path / "out"
    result = CliRunner().invoke(main, ["Design a rate limiter", "--skip-health-check", "--output", str(out)])

    assert result.exit_code == 0, result.output
    saved_md = list(out.glob("*.md"))
    saved_json = list(out.glob("*.json"))
    assert len(saved_md) == 1 and len(saved_json) == 1
    data = json.loads(saved_json[0].read_text(encoding="utf-8"))
    assert data["status"] == "complete"
    assert [r["kind"] for r in data["rounds"]] == ["draft", "critique", "synthesis", "convergence"]


def test_main_resume_from_round(cli_env, tmp_path):
    out = tmp_path / "out"
    first = CliRunner().invoke(main, ["Design a rate limiter", "--skip-health-check", "--output", str(out)])
    assert first.exit_code == 0, first.output
    saved = next(out.glob("*.json"))

    resumed_out = tmp_path / "resumed"
    result = CliRunner().invoke(main, [
        "--resume", str(saved), "--from-round", "2", "--skip-health-check", "--output", str(resumed_out),
    ])

    assert result.exit_code == 0, result.output
    data = json.loads(next(resumed_out.glob("*.json")).read_text(encoding="utf-8"))
    assert len(data["rounds"]) == 4
    assert data["id"] == json.loads(saved.read_text(encoding="utf-8"))["id"]


def test_main_resume_rejects_bad_round(cli_env, tmp_path):
    out = tmp_path / "out"
    CliRunner().invoke(main, ["Design a rate limiter", "--skip-health-check", "--output", str(out)])
    saved = next(out.glob("*.json"))

    result = CliRunner().invoke(main, ["--resume", str(saved), "--from-round", "9", "--skip-health-check"])

    assert result.exit_code == 1
    assert "Resume error" in result.output


def test_main_topic_file_front_matter(cli_env, tmp_path):
    topic = tmp_path / "topic.md"
    topic.write_text("---\nmax_rounds: 2\nmodels: [alpha, beta]\n---\n# Queue design\n\nAt least once.\n",
                     encoding="utf-8")
    out = tmp_path / "out"

    result = CliRunner().invoke(main, ["--file", str(topic), "--skip-health-check", "--output", str(out)])

    assert result.exit_code == 0, result.output
    data = json.loads(next(out.glob("*.json")).read_text(encoding="utf-8"))
    assert data["topic"]["title"] == "Queue design"
    assert data["terminal_reason"] == "max_rounds"
    assert len(data["rounds"]) == 2


def test_main_exits_when_no_models_match(cli_env):
    result = CliRunner().invoke(main, ["Topic", "--models", "nobody", "--skip-health-check"])
    assert result.exit_code == 1
    assert "No providers available" in result.output


def test_main_aborted_session_exits_nonzero(cli_env, tmp_path):
    cli_env.session = replace(cli_env.session, min_contributors={"critique": 3})
    result = CliRunner().invoke(main, ["Topic", "--skip-health-check", "--output", str(tmp_path)])
    assert result.exit_code == 1
    data = json.loads(next(tmp_path.glob("*.json")).read_text(encoding="utf-8"))
    assert data["status"] == "aborted"
