"""Process Supervisor — spawns, watches, and restarts the core worker.

The supervisor is the outer shell that keeps the core running. It:
- Starts the core as a subprocess and streams its stderr into a bounded buffer
- Detects exits and keeps the captured tail as the last known error
- Detects crash loops (rapid successive exits) and reports them
- Schedules a restart after a fixed delay while the desired state is running

Exactly one core process exists at a time: the handle is cleared the moment
an exit is observed, before any restart is scheduled.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import os
import sys
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from arisa.config import Settings, get_settings
from arisa.logging_config import get_logger
from arisa.runtime import Clock, SpawnFn, SystemClock, default_spawn
from arisa.supervisor.audit import AuditLog
from arisa.supervisor.diagnostics import DiagnosticBuffer
from arisa.supervisor.ports import KillFn, PidFile, stop_stale

logger = get_logger(__name__)

STDERR_READ_SIZE = 4096
STDERR_DRAIN_TIMEOUT = 5.0   # seconds to wait for stderr EOF after the process exits
STOP_TIMEOUT = 10.0

# callback(exit_code, last_error) -> None | Awaitable[None]
ExitCallback = Callable[[int, Optional[str]], Any]


class DesiredState(StrEnum):
    """Whether the supervisor wants the core alive."""

    RUNNING = "running"
    STOPPED = "stopped"


def default_core_command(project_root: Path) -> list[str]:
    """Run the bundled core worker with the project's virtualenv if present."""
    python = project_root / ".venv" / "bin" / "python"
    interpreter = str(python) if python.exists() else sys.executable
    return [interpreter, "-m", "arisa.core"]


class ProcessSupervisor:
    """Spawns and supervises the core worker process."""

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        spawn: Optional[SpawnFn] = None,
        audit: Optional[AuditLog] = None,
        on_exit: Optional[ExitCallback] = None,
        echo_stderr: bool = True,
        pid_file: Optional[PidFile] = None,
        kill: KillFn = os.kill,
    ) -> None:
        settings = settings or get_settings()
        self._root = Path(settings.arisa_project_dir)
        self._command = list(command or settings.core_command or default_core_command(self._root))
        self._clock = clock or SystemClock()
        self._spawn = spawn or default_spawn
        self._audit = audit or AuditLog()
        self._on_exit = on_exit
        self._echo_stderr = echo_stderr
        self._pid_file = pid_file
        self._kill = kill
        self._stale_grace = settings.stale_process_grace

        self._restart_delay = settings.core_restart_delay
        self._crash_loop_window = settings.crash_loop_window
        self._crash_loop_threshold = settings.crash_loop_threshold
        self._buffer_capacity = settings.stderr_buffer_chars

        self._process: Any = None
        self._desired = DesiredState.RUNNING
        self._spawning = False
        self._started_at = 0.0
        self._crash_count = 0
        self._last_crash_at = 0.0
        self._crash_loop_reported = False
        self._buffer = DiagnosticBuffer(self._buffer_capacity)
        self._last_error: Optional[str] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._watchers: set[asyncio.Task] = set()

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def is_up(self) -> bool:
        return self._process is not None

    @property
    def last_error(self) -> Optional[str]:
        """Error output captured when the core last exited, if any."""
        return self._last_error

    @property
    def crash_count(self) -> int:
        return self._crash_count

    @property
    def desired_state(self) -> DesiredState:
        return self._desired

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def uptime(self) -> float:
        if self._process is None:
            return 0.0
        return max(0.0, self._clock.now() - self._started_at)

    def set_exit_handler(self, handler: Optional[ExitCallback]) -> None:
        """Inject the callback run after every unexpected core exit."""
        self._on_exit = handler

    def status(self) -> dict[str, Any]:
        return {
            "up": self.is_up,
            "pid": self.pid,
            "uptime": round(self.uptime, 1),
            "crash_count": self._crash_count,
            "desired_state": str(self._desired),
            "last_error": self._last_error,
        }

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the core unless it is already running or supervision stopped."""
        if self._desired is DesiredState.STOPPED or self._process is not None or self._spawning:
            return

        self._spawning = True
        try:
            if self._pid_file is not None:
                # A core left behind by an earlier daemon would fight the new one for the port.
                await stop_stale(self._pid_file, grace=self._stale_grace, kill=self._kill, clock=self._clock)
            logger.info("core_starting", command=" ".join(self._command))
            proc = await self._spawn(
                *self._command,
                cwd=str(self._root),
                env=dict(os.environ),
                stdout=None,  # pass through so the core's own logs stay visible
                stderr=asyncio.subprocess.PIPE,
            )
        except Exception as exc:
            logger.error("core_spawn_failed", error=str(exc))
            self._audit.record("process_start_failed", {"error": str(exc)})
            self._schedule_restart()
            return
        finally:
            self._spawning = False

        if self._desired is DesiredState.STOPPED:
            logger.info("core_spawned_after_stop", pid=proc.pid)
            await self._terminate(proc)
            return

        self._process = proc
        self._started_at = self._clock.now()
        self._buffer = DiagnosticBuffer(self._buffer_capacity)
        watcher = asyncio.create_task(self._watch(proc, self._buffer))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

        logger.info("core_spawned", pid=proc.pid)
        self._audit.record("process_start", {"pid": proc.pid})
        if self._pid_file is not None:
            self._pid_file.write(proc.pid)

    async def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """Stop supervising: no more restarts, terminate the running core."""
        self._desired = DesiredState.STOPPED
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None

        proc = self._process
        self._process = None
        if proc is None:
            return

        logger.info("core_stopping", pid=proc.pid)
        await self._terminate(proc, timeout)
        self._release_pid(proc)
        self._audit.record("process_stop", {"pid": proc.pid})

    async def _terminate(self, proc: Any, timeout: float = STOP_TIMEOUT) -> None:
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            logger.warning("core_kill_timeout", pid=proc.pid)
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass
        except Exception as exc:
            logger.error("core_stop_failed", pid=proc.pid, error=str(exc))

    def _release_pid(self, proc: Any) -> None:
        if self._pid_file is not None:
            self._pid_file.release(proc.pid)

    # ── Exit handling ────────────────────────────────────────────────

    async def _watch(self, proc: Any, buffer: DiagnosticBuffer) -> None:
        pump = asyncio.create_task(self._pump_stderr(proc, buffer))
        try:
            exit_code = await proc.wait()
        except Exception as exc:
            logger.error("core_wait_failed", pid=proc.pid, error=str(exc))
            exit_code = -1

        try:
            await asyncio.wait_for(pump, timeout=STDERR_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("core_stderr_drain_timeout", pid=proc.pid)

        await self._handle_exit(proc, exit_code, buffer)

    async def _pump_stderr(self, proc: Any, buffer: DiagnosticBuffer) -> None:
        """Copy the core's stderr into the buffer (and our own stderr)."""
        stream = proc.stderr
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await stream.read(STDERR_READ_SIZE)
                if not data:
                    break
                self._capture(buffer, decoder.decode(data))
            self._capture(buffer, decoder.decode(b"", final=True))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("core_stderr_read_failed", pid=proc.pid, error=str(exc))

    def _capture(self, buffer: DiagnosticBuffer, chunk: str) -> None:
        # Diagnostics are best-effort and must never stall supervision.
        try:
            if self._echo_stderr:
                sys.stderr.write(chunk)
            buffer.write(chunk)
        except Exception as exc:
            logger.debug("core_stderr_capture_failed", error=str(exc))

    async def _handle_exit(self, proc: Any, exit_code: int, buffer: DiagnosticBuffer) -> None:
        if self._process is not proc:
            # Exit of a process we stopped ourselves.
            logger.info("core_stopped", pid=proc.pid, exit_code=exit_code)
            return
        self._process = None
        self._release_pid(proc)

        snapshot = buffer.snapshot().strip()
        if snapshot:
            self._last_error = snapshot

        now = self._clock.now()
        if now - self._last_crash_at < self._crash_loop_window:
            self._crash_count += 1
        else:
            self._crash_count = 1
            self._crash_loop_reported = False
        self._last_crash_at = now

        logger.warning("core_exited", pid=proc.pid, exit_code=exit_code, crash_count=self._crash_count)
        self._audit.record("process_exit", {
            "pid": proc.pid,
            "exit_code": exit_code,
            "crash_count": self._crash_count,
            "stderr_tail": snapshot[-500:],
        })

        if self._crash_count > self._crash_loop_threshold and not self._crash_loop_reported:
            self._crash_loop_reported = True
            logger.error(
                "core_crash_loop_detected",
                crashes=self._crash_count,
                window=self._crash_loop_window,
            )
            self._audit.record("crash_loop", {"crashes": self._crash_count})

        self._schedule_restart()

        if self._on_exit is not None:
            try:
                result = self._on_exit(exit_code, self._last_error)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("core_exit_handler_failed", error=str(exc))

    # ── Restart scheduling ───────────────────────────────────────────

    def _schedule_restart(self) -> None:
        if self._desired is not DesiredState.RUNNING:
            return
        if self._restart_task is not None and not self._restart_task.done():
            return
        logger.info("core_restart_scheduled", delay=self._restart_delay)
        self._restart_task = asyncio.create_task(self._restart_after(self._restart_delay))

    async def _restart_after(self, delay: float) -> None:
        await self._clock.sleep(delay)
        self._restart_task = None
        await self.start()
