"""Abstract base for all AI model providers, plus the request/response shapes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class StopReason(str, Enum):
    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    TOOL_USE = "tool_use"
    ERROR = "error"


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER = "provider"
    AUTH = "auth"          # authentication / configuration, never retried


@dataclass
class Message:
    role: str              # "user" or "assistant"
    content: str


@dataclass
class ModelRequest:
    system_prompt: str
    messages: list[Message]
    max_tokens: int = 4096
    temperature: float | None = None
    stop_sequences: list[str] = field(default_factory=list)

    @property
    def prompt(self) -> str:
        """Text of the last user message."""
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""


@dataclass
class ModelResponse:
    provider: str          # configured model name, e.g. "claude"
    model: str             # actual model string used
    content: str
    latency_sec: float
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: StopReason = StopReason.END_TURN

    @property
    def token_count(self) -> int:
        return self.input_tokens + self.output_tokens


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str, kind: FailureKind = FailureKind.PROVIDER) -> None:
        self.provider_name = provider_name
        self.kind = kind
        super().__init__(f"[{provider_name}] {message}")

    @property
    def recoverable(self) -> bool:
        return self.kind is not FailureKind.AUTH


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    def sdk(self) -> str:
        """Return the provider tag used for participant identity."""
        config = getattr(self, "_config", None)
        return config.sdk if config is not None else self.name()

    def cost_usd(self, response: ModelResponse) -> float:
        """Price a response using the per-million-token rates from settings."""
        config = getattr(self, "_config", None)
        if config is None:
            return 0.0
        return (
            response.input_tokens * config.input_cost_per_mtok
            + response.output_tokens * config.output_cost_per_mtok
        ) / 1_000_000

    @abstractmethod
    async def invoke(self, request: ModelRequest) -> ModelResponse:
        """Run one completion.

        Args:
            request: System prompt, ordered messages and sampling settings.

        Returns:
            ModelResponse dataclass with content and usage metadata.

        Raises:
            ProviderError: On API failure, timeout, or invalid response. The
                error's kind tells callers whether a retry can help.
        """
        ...
