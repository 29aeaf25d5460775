"""Agent CLI resolution and execution with a local fallback order.

Two agent CLIs are known: Claude and Codex. Callers get the configured
order filtered by what is installed on PATH, and ``run_with_cli_fallback``
walks that order until one of them produces a usable answer.
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from arisa.config import Settings, get_settings
from arisa.logging_config import get_logger
from arisa.runtime import CommandResult, SpawnFn, run_command

logger = get_logger(__name__)

AGENT_LABELS = {"claude": "Claude", "codex": "Codex"}


class AgentCliNotFound(Exception):
    """No agent CLI is available to run a prompt."""


@dataclass
class CliExecutionResult:
    cli: str
    output: str
    stderr: str
    exit_code: int
    partial: bool = False


@dataclass
class CliFallbackOutcome:
    result: Optional[CliExecutionResult]
    attempted: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


def agent_label(cli: str) -> str:
    return AGENT_LABELS.get(cli, cli)


def available_agents(
    order: Optional[Sequence[str]] = None,
    which: Optional[Callable[[str], Optional[str]]] = None,
) -> list[str]:
    """Return the agent CLIs from ``order`` that are installed."""
    order = order if order is not None else get_settings().agent_cli_order
    which = which or shutil.which
    return [cli for cli in order if which(cli) is not None]


def resolve_agent(
    order: Optional[Sequence[str]] = None,
    which: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """Return the first installed agent CLI, or raise :class:`AgentCliNotFound`."""
    order = list(order if order is not None else get_settings().agent_cli_order)
    found = available_agents(order, which)
    if not found:
        raise AgentCliNotFound(f"No agent CLI installed (looked for: {', '.join(order)})")
    return found[0]


def build_agent_command(cli: str, prompt: str, settings: Optional[Settings] = None) -> list[str]:
    """Build the argument list that runs ``prompt`` non-interactively."""
    settings = settings or get_settings()
    if cli == "claude":
        return ["claude", "--dangerously-skip-permissions", "--model", settings.agent_model, "-p", prompt]
    if cli == "codex":
        return [
            "codex", "exec", "--dangerously-bypass-approvals-and-sandbox",
            "-C", str(settings.arisa_project_dir), prompt,
        ]
    raise ValueError(f"Unknown agent CLI: {cli}")


def summarize_error(raw: str, limit: int = 200) -> str:
    """Collapse whitespace and cap the length of an error text."""
    clean = re.sub(r"\s+", " ", raw).strip()
    if not clean:
        return "no details"
    return f"{clean[:limit]}..." if len(clean) > limit else clean


async def run_agent(
    cli: str,
    prompt: str,
    timeout: float,
    *,
    settings: Optional[Settings] = None,
    spawn: Optional[SpawnFn] = None,
) -> CommandResult:
    """Run a single agent CLI from the project root with an inherited environment."""
    settings = settings or get_settings()
    logger.info("agent_cli_run", cli=cli, timeout=timeout)
    return await run_command(
        build_agent_command(cli, prompt, settings),
        timeout=timeout,
        cwd=Path(settings.arisa_project_dir),
        env=dict(os.environ),
        spawn=spawn,
    )


async def run_with_cli_fallback(
    prompt: str,
    timeout: float,
    *,
    candidates: Optional[Sequence[str]] = None,
    settings: Optional[Settings] = None,
    spawn: Optional[SpawnFn] = None,
) -> CliFallbackOutcome:
    """Try each candidate CLI in order until one answers cleanly.

    A zero exit with output wins immediately. The first non-zero exit that
    still produced output is remembered and returned as a partial result if
    nothing better turns up.
    """
    settings = settings or get_settings()
    if candidates is None:
        candidates = available_agents(settings.agent_cli_order)

    outcome = CliFallbackOutcome(result=None)
    partial: Optional[CliExecutionResult] = None

    for cli in candidates:
        outcome.attempted.append(cli)
        try:
            result = await run_agent(cli, prompt, timeout, settings=settings, spawn=spawn)
        except Exception as exc:
            logger.warning("agent_cli_error", cli=cli, error=str(exc))
            outcome.failures.append(f"{agent_label(cli)} error: {summarize_error(str(exc))}")
            continue

        output = result.stdout.strip()
        if result.exit_code == 0 and output:
            outcome.result = CliExecutionResult(cli, output, result.stderr, 0)
            return outcome

        if result.exit_code != 0 and output and partial is None:
            partial = CliExecutionResult(cli, output, result.stderr, result.exit_code, partial=True)

        if result.timed_out:
            reason = f"timed out after {timeout:.0f}s"
        elif result.exit_code == 0:
            reason = "empty output"
            if result.stderr.strip():
                reason += f" (stderr: {summarize_error(result.stderr)})"
        else:
            reason = f"exit={result.exit_code}: {summarize_error(result.stderr or result.stdout)}"
        outcome.failures.append(f"{agent_label(cli)} {reason}")

    outcome.result = partial
    return outcome
