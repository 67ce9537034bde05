"""OpenAI provider using openai SDK with native async."""

import asyncio
import logging
import os
import time

import openai
from openai import AsyncOpenAI

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

_FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "content_filter": StopReason.ERROR,
}


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    _label = "OpenAI"

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", FailureKind.AUTH)
        self._client = self._make_client(api_key)

    def _make_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        start = time.monotonic()
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend({"role": m.role, "content": m.content} for m in request.messages)
        kwargs = {
            "model": self._config.model,
            "messages": messages,
            "max_tokens": min(request.max_tokens, self._config.max_tokens),
            "temperature": request.temperature if request.temperature is not None else self._config.temperature,
        }
        if request.stop_sequences:
            kwargs["stop"] = request.stop_sequences
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**kwargs),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name, f"Request timed out after {self._config.timeout_sec}s", FailureKind.TIMEOUT
            ) from exc
        except openai.RateLimitError as exc:
            raise ProviderError(self._config.name, f"Rate limited: {exc}", FailureKind.RATE_LIMITED) from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ProviderError(self._config.name, f"Authentication failed: {exc}", FailureKind.AUTH) from exc
        except openai.APITimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out: {exc}", FailureKind.TIMEOUT) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content")

        input_tokens = output_tokens = 0
        if response.usage:
            input_tokens = response.usage.prompt_tokens
            output_tokens = response.usage.completion_tokens

        logger.info(
            "%s %s: %.2fs, %d tokens",
            self._label,
            self._config.model,
            latency,
            input_tokens + output_tokens,
        )

        return ModelResponse(
            provider=self._config.name,
            model=self._config.model,
            content=choice.message.content,
            latency_sec=latency,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stop_reason=_FINISH_REASONS.get(choice.finish_reason or "", StopReason.END_TURN),
        )
