"""Append-only JSONL audit trail of supervisor events."""

from __future__ import annotations

import datetime as dt
import json
from pathlib import Path
from typing import Any, Optional

from arisa.logging_config import get_logger

logger = get_logger(__name__)


class AuditLog:
    """Records process starts, exits, crash loops and auto-fix attempts.

    With no path the log is memory-less: entries are only emitted to the
    structured logger.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def record(self, action: str, details: dict[str, Any] | None = None) -> None:
        """Append an entry to the audit log."""
        logger.info("supervisor_audit", action=action, details=details)
        if self._path is None:
            return
        entry = {
            "timestamp": dt.datetime.now().isoformat(),
            "action": action,
            **(details or {}),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except Exception as exc:
            logger.error("audit_log_write_failed", error=str(exc))

    def recent(self, limit: int = 10) -> list[dict[str, Any]]:
        """Return the last ``limit`` parseable entries, oldest first."""
        if self._path is None or not self._path.exists():
            return []
        try:
            lines = self._path.read_text(encoding="utf-8").strip().splitlines()
        except OSError as exc:
            logger.warning("audit_log_read_failed", error=str(exc))
            return []
        entries = []
        for line in lines[-limit:]:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries
