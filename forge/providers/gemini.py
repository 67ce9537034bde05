"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import os
import time

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

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
    "STOP": StopReason.END_TURN,
    "MAX_TOKENS": StopReason.MAX_TOKENS,
}


def _classify(exc: genai_errors.APIError) -> FailureKind:
    if exc.code == 429:
        return FailureKind.RATE_LIMITED
    if exc.code in (401, 403):
        return FailureKind.AUTH
    if exc.code in (408, 504):
        return FailureKind.TIMEOUT
    return FailureKind.PROVIDER


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", FailureKind.AUTH)
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        start = time.monotonic()
        contents = [
            genai_types.Content(
                role="model" if m.role == "assistant" else "user",
                parts=[genai_types.Part(text=m.content)],
            )
            for m in request.messages
        ]
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.model,
                    contents=contents,
                    config=genai_types.GenerateContentConfig(
                        system_instruction=request.system_prompt or None,
                        max_output_tokens=min(request.max_tokens, self._config.max_tokens),
                        temperature=(
                            request.temperature if request.temperature is not None else self._config.temperature
                        ),
                        stop_sequences=request.stop_sequences or None,
                    ),
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name, f"Request timed out after {self._config.timeout_sec}s", FailureKind.TIMEOUT
            ) from exc
        except genai_errors.APIError as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}", _classify(exc)) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")

        input_tokens = output_tokens = 0
        if response.usage_metadata:
            input_tokens = response.usage_metadata.prompt_token_count or 0
            output_tokens = response.usage_metadata.candidates_token_count or 0

        stop_reason = StopReason.END_TURN
        if response.candidates and response.candidates[0].finish_reason is not None:
            reason_name = getattr(response.candidates[0].finish_reason, "name", "")
            stop_reason = _FINISH_REASONS.get(reason_name, StopReason.END_TURN)

        logger.info(
            "Gemini %s: %.2fs, %d tokens",
            self._config.model,
            latency,
            input_tokens + output_tokens,
        )

        return ModelResponse(
            provider=self._config.name,
            model=self._config.model,
            content=response.text,
            latency_sec=latency,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stop_reason=stop_reason,
        )
