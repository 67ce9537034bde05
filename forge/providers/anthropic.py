"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from forge.providers.base import (
    AIProvider,
    FailureKind,
    ModelRequest,
    ModelResponse,
    ProviderError,
    StopReason,
)

logger = logging.getLogger(__name__)

_STOP_REASONS = {
    "end_turn": StopReason.END_TURN,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
    "tool_use": StopReason.TOOL_USE,
}


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", FailureKind.AUTH)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        start = time.monotonic()
        kwargs = {
            "model": self._config.model,
            "max_tokens": min(request.max_tokens, self._config.max_tokens),
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "temperature": request.temperature if request.temperature is not None else self._config.temperature,
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.stop_sequences:
            kwargs["stop_sequences"] = request.stop_sequences
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name, f"Request timed out after {self._config.timeout_sec}s", FailureKind.TIMEOUT
            ) from exc
        except anthropic_sdk.RateLimitError as exc:
            raise ProviderError(self._config.name, f"Rate limited: {exc}", FailureKind.RATE_LIMITED) from exc
        except (anthropic_sdk.AuthenticationError, anthropic_sdk.PermissionDeniedError) as exc:
            raise ProviderError(self._config.name, f"Authentication failed: {exc}", FailureKind.AUTH) from exc
        except anthropic_sdk.APITimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out: {exc}", FailureKind.TIMEOUT) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.content:
            raise ProviderError(self._config.name, "Empty response content")

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response")

        input_tokens = output_tokens = 0
        if response.usage:
            input_tokens = response.usage.input_tokens
            output_tokens = response.usage.output_tokens

        logger.info(
            "Anthropic %s: %.2fs, %d tokens",
            self._config.model,
            latency,
            input_tokens + output_tokens,
        )

        return ModelResponse(
            provider=self._config.name,
            model=self._config.model,
            content="\n".join(text_blocks),
            latency_sec=latency,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stop_reason=_STOP_REASONS.get(response.stop_reason or "", StopReason.END_TURN),
        )
