"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_DEFAULT_METRIC_WEIGHTS = {
    "agreement": 0.30,
    "change_velocity": 0.20,
    "issue_count": 0.20,
    "semantic_similarity": 0.15,
    "section_stability": 0.15,
}


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    temperature: float = 0.7
    enabled: bool = True
    input_cost_per_mtok: float = 0.0   # USD per million input tokens
    output_cost_per_mtok: float = 0.0  # USD per million output tokens


@dataclass
class PromptsConfig:
    draft: str
    critique: str
    synthesis: str
    refinement: str
    convergence: str
    compromise: str
    system: dict[str, str] = field(default_factory=dict)  # role -> system prompt


@dataclass
class SessionConfig:
    """Orchestration knobs for one session. Every field has a usable default."""

    max_rounds: int = 12
    max_cost_usd: float = 5.0
    max_duration_sec: float = 1800.0
    convergence_threshold: float = 0.85
    min_rounds: int = 3
    min_consensus: int = 2
    require_unanimous: bool = False
    parallel: bool = True
    round_timeout_sec: float = 300.0
    round_timeouts: dict[str, float] = field(default_factory=dict)  # round kind -> seconds
    max_retries: int = 3
    retry_base_delay_sec: float = 1.0
    min_contributors: dict[str, int] = field(default_factory=dict)  # round kind -> count
    recursive_refinement: bool = False
    max_refinement_depth: int = 2
    metric_weights: dict[str, float] = field(default_factory=lambda: dict(_DEFAULT_METRIC_WEIGHTS))
    preferred_resolution: str | None = None
    allow_fallback: bool = True
    event_history: int = 256
    max_output_tokens: int = 4096

    def timeout_for(self, kind: str) -> float:
        return float(self.round_timeouts.get(kind, self.round_timeout_sec))

    def min_contributors_for(self, kind: str) -> int:
        return int(self.min_contributors.get(kind, 1))


@dataclass
class DefaultsConfig:
    output_dir: Path
    roles: dict[str, list[str]] = field(default_factory=dict)  # role -> preferred model names


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    session: SessionConfig = field(default_factory=SessionConfig)
    available_providers: set[str] = field(default_factory=set)


def session_config_from_dict(raw: dict | None) -> SessionConfig:
    """Build a SessionConfig, ignoring unknown keys with a warning."""
    raw = dict(raw or {})
    known = {f.name for f in fields(SessionConfig)}
    for key in sorted(set(raw) - known):
        logger.warning("Unknown session setting ignored: %s", key)
    cfg = SessionConfig(**{k: v for k, v in raw.items() if k in known})
    if "metric_weights" in raw:
        merged = dict(_DEFAULT_METRIC_WEIGHTS)
        merged.update({k: float(v) for k, v in raw["metric_weights"].items()})
        cfg.metric_weights = merged
    return cfg


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError if two
    enabled models share an sdk and model string.
    Logs warnings for missing API keys but does not raise; callers check
    available_providers count.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        output_dir=Path(defaults_raw["output_dir"]),
        roles={str(role): list(names) for role, names in defaults_raw.get("roles", {}).items()},
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        draft=prompts_raw["draft"],
        critique=prompts_raw["critique"],
        synthesis=prompts_raw["synthesis"],
        refinement=prompts_raw["refinement"],
        convergence=prompts_raw["convergence"],
        compromise=prompts_raw["compromise"],
        system={k: str(v) for k, v in raw.get("system_prompts", {}).items()},
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()
    identities: dict[tuple[str, str], str] = {}

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
            temperature=float(model_raw.get("temperature", 0.7)),
            enabled=bool(model_raw.get("enabled", True)),
            input_cost_per_mtok=float(model_raw.get("input_cost_per_mtok", 0.0)),
            output_cost_per_mtok=float(model_raw.get("output_cost_per_mtok", 0.0)),
        )
        models[provider_name] = model_cfg

        if not model_cfg.enabled:
            logger.info("Provider disabled in settings: %s", provider_name)
            continue

        identity = (model_cfg.sdk, model_cfg.model)
        if identity in identities:
            raise ValueError(
                f"Models {identities[identity]} and {provider_name} both use {model_cfg.sdk}/{model_cfg.model}"
            )
        identities[identity] = provider_name

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        session=session_config_from_dict(raw.get("session")),
        available_providers=available_providers,
    )
