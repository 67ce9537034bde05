"""Provider health checks: ping each API before starting a session."""

import asyncio
import logging

from forge.providers.base import AIProvider, Message, ModelRequest

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


def _ping_request() -> ModelRequest:
    return ModelRequest(
        system_prompt="",
        messages=[Message(role="user", content=_PING_PROMPT)],
        max_tokens=8,
        temperature=0.0,
    )


async def _check_one(name: str, provider: AIProvider) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(provider.invoke(_ping_request()), timeout=_TIMEOUT_SEC)
        return name, True, ""
    except asyncio.TimeoutError:
        return name, False, f"no reply within {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", name, exc)
        return name, False, str(exc)


async def run_health_checks(
    providers: dict[str, AIProvider],
) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    return {name: (ok, err) for name, ok, err in results}
