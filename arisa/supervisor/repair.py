"""Auto-fix — rate-limited crash remediation through an external agent CLI.

When the core crashes with a captured error, this engine:
1. Checks the attempt window (max attempts per cooldown period)
2. Extracts file paths from the error as hints for the agent
3. Runs the agent CLI in the project root with a minimal-fix instruction
4. Reports the outcome through the notifier

The agent edits files itself; the supervisor's regular restart picks up
the change.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from arisa.agents import agent_label, run_agent, summarize_error
from arisa.config import Settings, get_settings
from arisa.logging_config import get_logger
from arisa.runtime import Clock, SpawnFn, SystemClock
from arisa.supervisor.audit import AuditLog
from arisa.supervisor.notifier import SupervisorNotifier

logger = get_logger(__name__)

_PATH_PATTERN = re.compile(
    r"(?:[A-Za-z]:)?(?:\.{1,2}/|~/|/)?(?:[\w.\-]+/)+[\w.\-]+\.[A-Za-z0-9]{1,8}"
)


@dataclass
class RemediationWindow:
    """Attempt counter that resets once the cooldown has passed since the last attempt."""

    max_attempts: int = 3
    cooldown: float = 120.0
    attempt_count: int = 0
    last_attempt_at: float = 0.0

    def refresh(self, now: float) -> bool:
        """Reset the counter if the cooldown elapsed. Returns True on reset."""
        if now - self.last_attempt_at > self.cooldown and self.attempt_count:
            self.attempt_count = 0
            return True
        return False

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def record(self, now: float) -> int:
        self.attempt_count += 1
        self.last_attempt_at = now
        return self.attempt_count


def extract_file_hints(diagnostic: str, limit: int = 5) -> list[str]:
    """Return up to ``limit`` distinct file-path-like tokens, in order of appearance."""
    hints: list[str] = []
    for match in _PATH_PATTERN.finditer(diagnostic):
        path = match.group(0)
        if path not in hints:
            hints.append(path)
            if len(hints) >= limit:
                break
    return hints


def build_fix_prompt(diagnostic: str, hints: list[str], tail_chars: int = 1500) -> str:
    """Build the instruction handed to the agent CLI."""
    hint_line = f"\nKey files from the stack trace: {', '.join(hints)}" if hints else ""
    return f"""The Arisa core process crashed. Fix it.

Error:
```
{diagnostic[-tail_chars:]}
```
{hint_line}

Rules:
- If it's a corrupted JSON/data file: delete or recreate it
- If it's a bad import: fix the import
- If it's a code bug: fix the minimal code
- Minimal fix only: do NOT refactor, improve, or change anything beyond the fix
- Be fast: read only the files mentioned in the error"""


class RemediationOrchestrator:
    """Drives an agent CLI to repair the core after a crash, under strict rate limits."""

    def __init__(
        self,
        notifier: Optional[SupervisorNotifier] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        spawn: Optional[SpawnFn] = None,
        audit: Optional[AuditLog] = None,
        agent: str = "",
    ) -> None:
        self._settings = settings or get_settings()
        self._notifier = notifier or SupervisorNotifier()
        self._clock = clock or SystemClock()
        self._spawn = spawn
        self._audit = audit or AuditLog()
        self._agent = agent or (self._settings.agent_cli_order or ["claude"])[0]
        self._timeout = self._settings.autofix_timeout
        self._tail_chars = self._settings.autofix_tail_chars
        self._max_hints = self._settings.autofix_max_file_hints
        self._window = RemediationWindow(
            max_attempts=self._settings.autofix_max_attempts,
            cooldown=self._settings.autofix_cooldown,
        )
        self._escalated = False

    @property
    def window(self) -> RemediationWindow:
        return self._window

    def status(self) -> dict[str, Any]:
        return {
            "attempts": self._window.attempt_count,
            "max_attempts": self._window.max_attempts,
            "last_attempt_at": self._window.last_attempt_at or None,
            "agent": self._agent,
        }

    async def trigger(self, diagnostic: str) -> bool:
        """Attempt one automatic fix. Returns True if the agent attempted a fix."""
        diagnostic = str(diagnostic or "")
        now = self._clock.now()

        if self._window.refresh(now):
            self._escalated = False

        if self._window.exhausted:
            logger.warning(
                "autofix_attempts_exhausted",
                max_attempts=self._window.max_attempts,
                cooldown=self._window.cooldown,
            )
            self._audit.record("autofix_refused", {"attempts": self._window.attempt_count})
            if not self._escalated:
                self._escalated = True
                await self._notifier.notify_escalation(self._window.attempt_count, self._window.cooldown)
            return False

        attempt = self._window.record(now)
        logger.info("autofix_attempt", attempt=attempt, max_attempts=self._window.max_attempts)
        self._audit.record("autofix_attempt", {"attempt": attempt, "error_tail": diagnostic[-300:]})
        await self._notifier.notify_autofix_attempt(attempt, self._window.max_attempts)

        try:
            hints = extract_file_hints(diagnostic, self._max_hints)
            prompt = build_fix_prompt(diagnostic, hints, self._tail_chars)
            result = await run_agent(
                self._agent, prompt, self._timeout, settings=self._settings, spawn=self._spawn,
            )
        except Exception as exc:
            logger.error("autofix_error", error=str(exc))
            self._audit.record("autofix_error", {"error": str(exc)})
            await self._notifier.notify_autofix_failed(f"internal error ({summarize_error(str(exc))})")
            return False

        output = result.stdout.strip()
        if result.exit_code != 0 and not output:
            # The agent produced nothing at all: a real failure.
            logger.error(
                "autofix_agent_failed",
                agent=self._agent,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                stderr=result.stderr[:500],
            )
            self._audit.record("autofix_result", {"success": False, "exit_code": result.exit_code})
            reason = (
                f"{agent_label(self._agent)} timed out after {self._timeout:.0f}s"
                if result.timed_out
                else f"{agent_label(self._agent)} exited with code {result.exit_code} without output"
            )
            await self._notifier.notify_autofix_failed(reason)
            return False

        if result.exit_code != 0:
            # Output means the agent worked on files before hitting a later problem.
            logger.warning(
                "autofix_partial", agent=self._agent, exit_code=result.exit_code, timed_out=result.timed_out,
            )

        summary = output[:300] or "(no output)"
        logger.info("autofix_completed", agent=self._agent, summary=summary[:100])
        self._audit.record("autofix_result", {"success": True, "exit_code": result.exit_code})
        await self._notifier.notify_autofix_applied(summary)
        return True
