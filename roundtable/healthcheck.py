"""Client health checks: ping each model API before starting a discussion."""

import asyncio
import logging

from roundtable.providers.base import CompletionOptions, LLMClient

logger = logging.getLogger(__name__)

_PING_MESSAGES = [{"role": "user", "content": "Reply with the word OK only."}]
_PING_OPTIONS = CompletionOptions(temperature=0.0, max_tokens=5)
_TIMEOUT_SEC = 15.0


async def _check_one(name: str, client: LLMClient) -> tuple[str, bool, str]:
    """Ping a single client. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(client.complete(_PING_MESSAGES, _PING_OPTIONS), timeout=_TIMEOUT_SEC)
        return name, True, ""
    except TimeoutError:
        return name, False, f"No reply within {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", name, exc)
        return name, False, str(exc)


async def run_health_checks(clients: dict[str, LLMClient]) -> dict[str, tuple[bool, str]]:
    """Ping all clients in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, c) for n, c in clients.items()))
    return {name: (ok, err) for name, ok, err in results}
