"""Backend health checks: ping each chat backend before a council run."""

import asyncio
import logging

from comet_search.providers.base import ChatProvider, CompletionOptions

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_PING_OPTIONS = CompletionOptions(temperature=0.0, max_tokens=8)
_TIMEOUT_SEC = 15.0


async def _check_one(backend_id: str, provider: ChatProvider) -> tuple[str, bool, str]:
    """Ping a single backend. Returns (backend_id, ok, error_message)."""
    try:
        await asyncio.wait_for(
            provider.complete("", _PING_PROMPT, _PING_OPTIONS),
            timeout=_TIMEOUT_SEC,
        )
        return backend_id, True, ""
    except TimeoutError:
        return backend_id, False, f"No reply within {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", backend_id, exc)
        return backend_id, False, str(exc)


async def run_health_checks(
    providers: dict[str, ChatProvider],
) -> dict[str, tuple[bool, str]]:
    """Ping all backends in parallel.

    Returns:
        Dict mapping backend id -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    return {backend_id: (ok, err) for backend_id, ok, err in results}
