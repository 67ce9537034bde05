"""Model invocation helpers: retried single calls and ordered fan-out."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from forge.providers.base import AIProvider, FailureKind, ModelRequest, ModelResponse, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before retry number ``attempt + 1``: ``base * 2**attempt``."""
    return base_delay * (2 ** attempt)


async def call_provider(
    provider: AIProvider,
    request: ModelRequest,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: SleepFn = asyncio.sleep,
) -> ModelResponse | ProviderError:
    """Call a single provider, retrying recoverable failures with exponential backoff.

    Never raises for provider failures; returns the last ProviderError instead.
    Auth and configuration errors are returned immediately.
    """
    attempt = 0
    while True:
        try:
            return await provider.invoke(request)
        except ProviderError as exc:
            error = exc
        except Exception as exc:
            logger.warning("Provider %s unexpected failure: %s", provider.name(), exc)
            error = ProviderError(provider.name(), f"Unexpected error: {exc}", FailureKind.PROVIDER)

        if not error.recoverable:
            logger.warning("Provider %s failed permanently: %s", provider.name(), error)
            return error
        if attempt >= max_retries:
            logger.warning(
                "Provider %s failed after %d retries: %s", provider.name(), max_retries, error
            )
            return error

        delay = backoff_delay(base_delay, attempt)
        attempt += 1
        logger.warning(
            "Provider %s %s, retry %d/%d in %.1fs",
            provider.name(), error.kind.value, attempt, max_retries, delay,
        )
        await sleep(delay)


async def fan_out(calls: list[Callable[[], Awaitable[T]]], parallel: bool = True) -> list[T]:
    """Run call factories and return their results in the same order.

    Parallel mode uses ``asyncio.gather``; serial mode awaits one at a time
    and yields the same list. If one call raises, the others are cancelled.
    """
    if parallel:
        tasks = [asyncio.ensure_future(call()) for call in calls]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
    results: list[T] = []
    for call in calls:
        results.append(await call())
    return results
