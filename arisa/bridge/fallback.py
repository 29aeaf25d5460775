"""Direct agent CLI invocation from the daemon when the core is down."""

from __future__ import annotations

from typing import Optional

from arisa.agents import run_with_cli_fallback
from arisa.config import Settings, get_settings
from arisa.logging_config import get_logger
from arisa.runtime import SpawnFn

logger = get_logger(__name__)

FALLBACK_APOLOGY = (
    "[Fallback mode] The assistant is temporarily unavailable and the backup path failed too. "
    "Please try again in a few minutes."
)


class FallbackResponder:
    """Answers a message by running the agent CLI directly, with core error context."""

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

    def build_prompt(self, text: str, core_error: Optional[str] = None) -> str:
        project = self._settings.arisa_project_dir
        if core_error:
            context = (
                f"[System: Core process is down. Error: {core_error}. "
                f"You are running in fallback mode from the daemon. The user's project is at {project}. "
                "Respond to the user normally. If they ask about the error, explain what you see.]"
            )
        else:
            context = (
                "[System: Core process is down. You are running in fallback mode from the daemon. "
                f"The user's project is at {project}. Respond to the user normally.]"
            )
        return f"{context}\n\n{text}"

    async def respond(self, text: str, core_error: Optional[str] = None) -> str:
        logger.warning("fallback_invoked", has_core_error=bool(core_error))
        try:
            outcome = await run_with_cli_fallback(
                self.build_prompt(text, core_error),
                self._settings.processing_timeout,
                candidates=self._candidates,
                settings=self._settings,
                spawn=self._spawn,
            )
        except Exception as exc:
            logger.error("fallback_error", error=str(exc))
            return FALLBACK_APOLOGY

        if outcome.result is None:
            if not outcome.attempted:
                logger.error("fallback_no_agent_cli")
            else:
                logger.error("fallback_failed", attempted=outcome.attempted, failures=outcome.failures)
            return FALLBACK_APOLOGY

        if outcome.result.partial:
            logger.warning("fallback_partial", cli=outcome.result.cli, exit_code=outcome.result.exit_code)
        return outcome.result.output.strip()
