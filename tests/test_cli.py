"""Tests for the typer CLI."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

from typer.testing import CliRunner

from arisa.cli import app
from arisa.supervisor.audit import AuditLog

runner = CliRunner()


class TestStatusCommand:

    def test_reports_unreachable_core_and_audit(self, settings) -> None:
        AuditLog(settings.audit_log_path).record("crash_loop", {"crashes": 6})
        with patch("arisa.config.get_settings", return_value=settings), \
             patch("arisa.bridge.health.HealthProbe.is_healthy", AsyncMock(return_value=False)):
            result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "unreachable" in result.output
        assert "crash_loop" in result.output

    def test_healthy_core_without_audit(self, settings) -> None:
        with patch("arisa.config.get_settings", return_value=settings), \
             patch("arisa.bridge.health.HealthProbe.is_healthy", AsyncMock(return_value=True)):
            result = runner.invoke(app, ["status"])

        assert "healthy" in result.output
        assert "No audit log yet" in result.output


class TestAutofixCommand:

    def test_empty_input_fails(self, settings, tmp_path) -> None:
        error_file = tmp_path / "error.txt"
        error_file.write_text("  \n")
        with patch("arisa.config.get_settings", return_value=settings):
            result = runner.invoke(app, ["autofix", str(error_file)])
        assert result.exit_code == 1
        assert "No error input" in result.output

    def test_runs_orchestrator(self, settings, tmp_path) -> None:
        error_file = tmp_path / "error.txt"
        error_file.write_text("KeyError: 'x'")
        with patch("arisa.config.get_settings", return_value=settings), \
             patch("arisa.agents.shutil.which", side_effect=lambda name: "/bin/codex" if name == "codex" else None), \
             patch("arisa.supervisor.repair.RemediationOrchestrator.trigger",
                   AsyncMock(return_value=True)) as trigger:
            result = runner.invoke(app, ["autofix", str(error_file)])

        assert result.exit_code == 0
        trigger.assert_awaited_once_with("KeyError: 'x'")

    def test_fails_without_agent_cli(self, settings, tmp_path) -> None:
        error_file = tmp_path / "error.txt"
        error_file.write_text("KeyError: 'x'")
        with patch("arisa.config.get_settings", return_value=settings), \
             patch("arisa.agents.shutil.which", return_value=None):
            result = runner.invoke(app, ["autofix", str(error_file)])
        assert result.exit_code == 1
        assert "No agent CLI installed" in result.output

    def test_rejects_unknown_policy(self, settings) -> None:
        with patch("arisa.config.get_settings", return_value=settings), \
             patch("arisa.logging_config.setup_logging"):
            result = runner.invoke(app, ["run", "--policy", "drop"])
        assert result.exit_code == 1
        assert "Unknown policy" in result.output
