"""Tests for agent CLI resolution, bounded command runs and the fallback responder."""

from __future__ import annotations

import asyncio

import pytest

from arisa.agents import (
    AgentCliNotFound,
    available_agents,
    build_agent_command,
    resolve_agent,
    run_with_cli_fallback,
    summarize_error,
)
from arisa.bridge.fallback import FALLBACK_APOLOGY, FallbackResponder
from arisa.runtime import run_command

from conftest import FakeCliProcess, FakeSpawner


def scripted(**by_cli) -> FakeSpawner:
    """Spawner answering per binary name; values are FakeCliProcess kwargs or an exception."""

    def factory(argv):
        spec = by_cli[argv[0]]
        if isinstance(spec, BaseException):
            return spec
        return FakeCliProcess(**spec)

    return FakeSpawner(factory)


class TestResolution:
    """Which CLIs exist and how they are invoked."""

    def test_available_agents_filters_by_path(self) -> None:
        installed = {"codex": "/usr/local/bin/codex"}
        assert available_agents(["claude", "codex"], which=installed.get) == ["codex"]

    def test_available_agents_keeps_order(self) -> None:
        assert available_agents(["codex", "claude"], which=lambda name: "/bin/" + name) == ["codex", "claude"]

    def test_resolve_agent_picks_first_installed(self) -> None:
        assert resolve_agent(["claude", "codex"], which=lambda name: "/bin/" + name) == "claude"

    def test_resolve_agent_raises_when_none_installed(self) -> None:
        with pytest.raises(AgentCliNotFound):
            resolve_agent(["claude", "codex"], which=lambda name: None)

    def test_claude_command(self, settings) -> None:
        argv = build_agent_command("claude", "fix it", settings)
        assert argv == ["claude", "--dangerously-skip-permissions", "--model", "sonnet", "-p", "fix it"]

    def test_codex_command_runs_in_project(self, settings) -> None:
        argv = build_agent_command("codex", "fix it", settings)
        assert argv[:2] == ["codex", "exec"]
        assert argv[argv.index("-C") + 1] == str(settings.arisa_project_dir)
        assert argv[-1] == "fix it"

    def test_unknown_cli(self, settings) -> None:
        with pytest.raises(ValueError):
            build_agent_command("gemini", "hi", settings)

    def test_summarize_error(self) -> None:
        assert summarize_error("  line one\n\n  line two ") == "line one line two"
        assert summarize_error("") == "no details"
        assert summarize_error("x" * 300) == "x" * 200 + "..."


class TestRunCommand:
    """Bounded subprocess execution."""

    @pytest.mark.asyncio
    async def test_collects_output(self) -> None:
        spawner = FakeSpawner(lambda argv: FakeCliProcess(stdout="hello", stderr="warn", exit_code=3))
        result = await run_command(["tool", "--flag"], timeout=5, spawn=spawner)

        assert (result.exit_code, result.stdout, result.stderr) == (3, "hello", "warn")
        assert not result.timed_out
        argv, kwargs = spawner.calls[0]
        assert argv == ("tool", "--flag")
        assert kwargs["stdout"] == asyncio.subprocess.PIPE

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self) -> None:
        spawner = FakeSpawner(lambda argv: FakeCliProcess(hang=True))
        result = await run_command(["tool"], timeout=0.05, spawn=spawner)

        assert result.timed_out
        assert result.exit_code == -9
        assert spawner.last.killed

    @pytest.mark.asyncio
    async def test_timeout_keeps_output_printed_before_the_deadline(self) -> None:
        spawner = FakeSpawner(lambda argv: FakeCliProcess(stdout="edited app.py\n", stderr="still working", hang=True))
        result = await run_command(["tool"], timeout=0.05, spawn=spawner)

        assert result.timed_out
        assert result.stdout == "edited app.py\n"
        assert result.stderr == "still working"

    @pytest.mark.asyncio
    async def test_spawn_error_propagates(self) -> None:
        spawner = FakeSpawner(lambda argv: FileNotFoundError("tool"))
        with pytest.raises(FileNotFoundError):
            await run_command(["tool"], timeout=5, spawn=spawner)


class TestCliFallback:
    """Walking the configured CLI order."""

    @pytest.mark.asyncio
    async def test_first_clean_answer_wins(self, settings) -> None:
        spawner = scripted(claude={"stdout": "from claude"}, codex={"stdout": "from codex"})
        outcome = await run_with_cli_fallback("hi", 10, candidates=["claude", "codex"],
                                              settings=settings, spawn=spawner)
        assert outcome.result.cli == "claude"
        assert outcome.result.output == "from claude"
        assert outcome.attempted == ["claude"]

    @pytest.mark.asyncio
    async def test_falls_through_to_next_cli(self, settings) -> None:
        spawner = scripted(
            claude={"stdout": "", "stderr": "You've hit your limit", "exit_code": 1},
            codex={"stdout": "from codex"},
        )
        outcome = await run_with_cli_fallback("hi", 10, candidates=["claude", "codex"],
                                              settings=settings, spawn=spawner)
        assert outcome.result.cli == "codex"
        assert outcome.attempted == ["claude", "codex"]
        assert outcome.failures == ["Claude exit=1: You've hit your limit"]

    @pytest.mark.asyncio
    async def test_partial_output_kept_when_nothing_better(self, settings) -> None:
        spawner = scripted(
            claude={"stdout": "half an answer", "exit_code": 1},
            codex=FileNotFoundError("codex"),
        )
        outcome = await run_with_cli_fallback("hi", 10, candidates=["claude", "codex"],
                                              settings=settings, spawn=spawner)
        assert outcome.result.partial
        assert outcome.result.output == "half an answer"
        assert outcome.failures[1].startswith("Codex error:")

    @pytest.mark.asyncio
    async def test_timed_out_agent_output_is_a_partial_answer(self, settings) -> None:
        spawner = scripted(claude={"stdout": "first half", "hang": True}, codex={"stdout": ""})
        outcome = await run_with_cli_fallback("hi", 0.05, candidates=["claude", "codex"],
                                              settings=settings, spawn=spawner)
        assert outcome.result.cli == "claude"
        assert outcome.result.partial
        assert outcome.result.output == "first half"

    @pytest.mark.asyncio
    async def test_empty_output_is_not_an_answer(self, settings) -> None:
        spawner = scripted(claude={"stdout": "   "}, codex={"stdout": ""})
        outcome = await run_with_cli_fallback("hi", 10, candidates=["claude", "codex"],
                                              settings=settings, spawn=spawner)
        assert outcome.result is None
        assert outcome.failures == ["Claude empty output", "Codex empty output"]

    @pytest.mark.asyncio
    async def test_no_candidates(self, settings) -> None:
        outcome = await run_with_cli_fallback("hi", 10, candidates=[], settings=settings,
                                              spawn=FakeSpawner())
        assert outcome.result is None
        assert outcome.attempted == []


class TestFallbackResponder:
    """Direct answers from the daemon while the core is down."""

    def test_prompt_includes_core_error(self, settings) -> None:
        responder = FallbackResponder(settings=settings)
        prompt = responder.build_prompt("what happened?", "KeyError: 'x'")
        assert prompt.startswith("[System: Core process is down. Error: KeyError: 'x'.")
        assert prompt.endswith("\n\nwhat happened?")

    def test_prompt_without_error(self, settings) -> None:
        prompt = FallbackResponder(settings=settings).build_prompt("hi")
        assert "Error:" not in prompt
        assert str(settings.arisa_project_dir) in prompt

    @pytest.mark.asyncio
    async def test_respond_returns_agent_output(self, settings) -> None:
        spawner = scripted(claude={"stdout": "  all good  "})
        responder = FallbackResponder(settings=settings, spawn=spawner, candidates=["claude"])

        assert await responder.respond("hi", "boom") == "all good"
        assert "Error: boom" in spawner.calls[0][0][-1]

    @pytest.mark.asyncio
    async def test_respond_apologizes_when_every_cli_fails(self, settings) -> None:
        spawner = scripted(claude={"stdout": "", "exit_code": 1}, codex={"stdout": "", "exit_code": 1})
        responder = FallbackResponder(settings=settings, spawn=spawner, candidates=["claude", "codex"])
        assert await responder.respond("hi") == FALLBACK_APOLOGY

    @pytest.mark.asyncio
    async def test_respond_apologizes_without_installed_cli(self, settings) -> None:
        responder = FallbackResponder(settings=settings, spawn=FakeSpawner(), candidates=[])
        assert await responder.respond("hi") == FALLBACK_APOLOGY
