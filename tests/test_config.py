"""Tests for configuration loading."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from arisa.config import Settings


class TestSettings:
    """Settings defaults, derived values and validation."""

    def test_defaults(self, tmp_path) -> None:
        s = Settings(_env_file=None, arisa_project_dir=tmp_path)
        assert s.core_restart_delay == 2.0
        assert s.crash_loop_window == 10.0
        assert s.crash_loop_threshold == 5
        assert s.stderr_buffer_chars == 2000
        assert s.retry_delay == 3.0
        assert s.queue_retry_interval == 2.0
        assert s.queue_max_age == 60.0
        assert s.health_timeout == 2.0
        assert s.autofix_max_attempts == 3
        assert s.autofix_cooldown == 120.0
        assert s.autofix_timeout == 180.0
        assert s.delivery_policy == "queue"

    def test_request_timeout_adds_margin(self, settings) -> None:
        assert settings.request_timeout == 330.0

    def test_core_url(self, settings) -> None:
        settings.core_port = 8000
        assert settings.core_url == "http://127.0.0.1:8000"

    def test_data_dir_created_under_project(self, settings) -> None:
        path = settings.data_dir
        assert path == settings.arisa_project_dir / ".arisa"
        assert path.is_dir()
        assert settings.audit_log_path.name == "audit_log.jsonl"

    def test_env_overrides(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("DELIVERY_POLICY", "fallback")
        monkeypatch.setenv("QUEUE_MAX_AGE", "90")
        s = Settings(_env_file=None, arisa_project_dir=tmp_path)
        assert s.delivery_policy == "fallback"
        assert s.queue_max_age == 90.0

    def test_rejects_unknown_policy(self, tmp_path) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, arisa_project_dir=tmp_path, delivery_policy="drop")

    def test_rejects_unknown_agent(self, tmp_path) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, arisa_project_dir=tmp_path, agent_cli_order=["claude", "gemini"])
