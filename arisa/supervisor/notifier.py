"""Supervisor Notifier — turns supervisor events into user-facing notices.

The transport is an injected ``notify(text)`` coroutine supplied by the
channel layer; this module only decides what to say. Sink failures are
logged and never reach the caller.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from arisa.logging_config import get_logger

logger = get_logger(__name__)

NotifyFn = Callable[[str], Awaitable[None]]

SUMMARY_LIMIT = 300


class SupervisorNotifier:
    """Sends notifications about supervisor events to the operator chat."""

    def __init__(self, sink: Optional[NotifyFn] = None) -> None:
        self._sink = sink

    @property
    def is_configured(self) -> bool:
        return self._sink is not None

    async def send(self, message: str) -> bool:
        """Deliver ``message`` through the sink; False if it could not be sent."""
        if self._sink is None:
            logger.debug("notifier_no_sink", message=message[:100])
            return False
        try:
            await self._sink(message)
            return True
        except Exception as exc:
            logger.warning("notifier_send_failed", error=str(exc))
            return False

    async def notify_autofix_attempt(self, attempt: int, max_attempts: int) -> None:
        logger.info("notify_autofix_attempt", attempt=attempt, max_attempts=max_attempts)
        await self.send(f"🔧 Auto-fix: attempt {attempt}/{max_attempts}. Analyzing error...")

    async def notify_autofix_applied(self, summary: str) -> None:
        logger.info("notify_autofix_applied", summary=summary[:100])
        await self.send(
            "✅ Auto-fix applied. Core restarting...\n\n" + summary[:SUMMARY_LIMIT]
        )

    async def notify_autofix_failed(self, reason: str) -> None:
        logger.info("notify_autofix_failed", reason=reason[:100])
        await self.send(f"❌ Auto-fix failed: {reason[:SUMMARY_LIMIT]}\nCheck the logs.")

    async def notify_escalation(self, attempts: int, cooldown: float) -> None:
        """Attempt cap reached inside the cooldown window: a human is needed."""
        logger.warning("notify_escalation", attempts=attempts)
        await self.send(
            f"🚨 Auto-fix gave up after {attempts} attempts. "
            f"The core needs manual attention (next automatic try in {cooldown:.0f}s at the earliest)."
        )
