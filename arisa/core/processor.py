"""Message processing inside the core: one agent CLI run at a time."""

from __future__ import annotations

import asyncio
import re
from typing import Optional

from arisa.agents import run_with_cli_fallback
from arisa.config import Settings, get_settings
from arisa.logging_config import get_logger
from arisa.models import CoreResponse, IncomingMessage
from arisa.runtime import SpawnFn

logger = get_logger(__name__)

ERROR_REPLY = "Error processing your message. Please try again."
RATE_LIMIT_REPLY = "The agent hit its rate limit. Try again in a few minutes."
TRUNCATION_NOTICE = "\n\n[Response truncated...]"

_RATE_LIMIT_PATTERN = re.compile(
    r"you'?ve hit your limit|rate limit|quota|credits.*(exceeded|exhausted)", re.IGNORECASE
)


def is_rate_limited(output: str) -> bool:
    return bool(_RATE_LIMIT_PATTERN.search(output))


class CoreProcessor:
    """Runs agent CLIs for incoming messages, serialized through a lock."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        spawn: Optional[SpawnFn] = None,
        candidates: Optional[list[str]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._spawn = spawn
        self._candidates = candidates
        self._lock = asyncio.Lock()

    async def process(self, message: IncomingMessage) -> CoreResponse:
        async with self._lock:
            return CoreResponse(text=await self._run(message.text))

    async def _run(self, text: str) -> str:
        outcome = await run_with_cli_fallback(
            text,
            self._settings.processing_timeout,
            candidates=self._candidates,
            settings=self._settings,
            spawn=self._spawn,
        )
        if outcome.result is None:
            logger.error("core_agent_failed", attempted=outcome.attempted, failures=outcome.failures)
            if any(is_rate_limited(failure) for failure in outcome.failures):
                return RATE_LIMIT_REPLY
            return ERROR_REPLY if outcome.attempted else "No agent CLI is installed on this machine."

        result = outcome.result
        if result.partial and is_rate_limited(result.output + result.stderr):
            return RATE_LIMIT_REPLY

        response = result.output
        limit = self._settings.max_response_length
        if len(response) > limit:
            return response[: limit - 100] + TRUNCATION_NOTICE
        return response
