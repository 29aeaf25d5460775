"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    arisa_env: str = "development"
    arisa_log_level: str = "INFO"
    arisa_project_dir: Path = Field(default_factory=Path.cwd)
    arisa_data_dir: str = ".arisa"

    # ── Core worker (RPC target) ─────────────────────────────────────
    core_host: str = "127.0.0.1"
    core_port: int = 7777
    core_command: list[str] = Field(default_factory=list)
    core_restart_delay: float = 2.0
    crash_loop_window: float = 10.0
    crash_loop_threshold: int = 5
    stderr_buffer_chars: int = 2000

    # ── Daemon push server ───────────────────────────────────────────
    daemon_host: str = "127.0.0.1"
    daemon_port: int = 7778
    port_bind_attempts: int = 5
    port_bind_delay: float = 1.0
    stale_process_grace: float = 3.0

    # ── Delivery ─────────────────────────────────────────────────────
    delivery_policy: Literal["queue", "fallback"] = "queue"
    processing_timeout: float = 300.0
    request_margin: float = 30.0
    retry_delay: float = 3.0
    queue_retry_interval: float = 2.0
    queue_max_age: float = 60.0
    health_timeout: float = 2.0
    max_response_length: int = 50_000

    # ── Agent CLIs ───────────────────────────────────────────────────
    agent_cli_order: list[str] = Field(default_factory=lambda: ["claude", "codex"])
    agent_model: str = "sonnet"

    # ── Auto-fix ─────────────────────────────────────────────────────
    autofix_enabled: bool = True
    autofix_max_attempts: int = 3
    autofix_cooldown: float = 120.0
    autofix_timeout: float = 180.0
    autofix_tail_chars: int = 1500
    autofix_max_file_hints: int = 5

    # ── Notifications ────────────────────────────────────────────────
    notify_chat_id: str = ""

    @field_validator("arisa_project_dir")
    @classmethod
    def _resolve_project_dir(cls, value: Path) -> Path:
        return Path(value).expanduser().resolve()

    @field_validator("agent_cli_order")
    @classmethod
    def _known_agents_only(cls, value: list[str]) -> list[str]:
        unknown = [name for name in value if name not in ("claude", "codex")]
        if unknown:
            raise ValueError(f"Unknown agent CLI(s): {', '.join(unknown)}")
        return value

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def core_url(self) -> str:
        return f"http://{self.core_host}:{self.core_port}"

    @property
    def request_timeout(self) -> float:
        """Per-request RPC deadline: processing budget plus a fixed margin."""
        return self.processing_timeout + self.request_margin

    @property
    def data_dir(self) -> Path:
        """Return the runtime data directory, creating it if needed."""
        path = Path(self.arisa_data_dir)
        if not path.is_absolute():
            path = self.arisa_project_dir / path
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def audit_log_path(self) -> Path:
        return self.data_dir / "audit_log.jsonl"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
