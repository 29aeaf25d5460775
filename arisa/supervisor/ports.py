"""Process claims and port binding — one live process per role across restarts.

A restarted daemon must not end up running next to the one it replaces:
- ``daemon.pid`` under the data dir names the running daemon; a new daemon
  stops whatever process it names before writing its own PID
- ``core.pid`` names the supervised core, so a core orphaned by a killed
  daemon is stopped before a new one is spawned
- The push port may still be held by a dying daemon for a moment, so the
  bind is retried a few times before giving up
"""

from __future__ import annotations

import errno
import os
import signal
import socket
from pathlib import Path
from typing import Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from arisa.logging_config import get_logger
from arisa.runtime import Clock, SystemClock

logger = get_logger(__name__)

STALE_POLL_INTERVAL = 0.1

KillFn = Callable[[int, int], None]
BindFn = Callable[[str, int], socket.socket]


class PidFile:
    """``<data_dir>/<name>.pid`` holding the PID of the live process for a role."""

    def __init__(self, name: str, data_dir: Path) -> None:
        self.name = name
        self.path = Path(data_dir) / f"{name}.pid"

    def read(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def write(self, pid: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{pid}\n", encoding="utf-8")

    def release(self, pid: Optional[int] = None) -> bool:
        """Remove the file if it still names ``pid`` (ours by default)."""
        pid = os.getpid() if pid is None else pid
        if self.read() != pid:
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


def is_alive(pid: int, kill: KillFn = os.kill) -> bool:
    try:
        kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else; never ours to stop.
        return False
    return True


async def stop_stale(
    pid_file: PidFile,
    *,
    own_pid: Optional[int] = None,
    grace: float = 3.0,
    kill: KillFn = os.kill,
    clock: Optional[Clock] = None,
) -> Optional[int]:
    """Stop the process named by ``pid_file`` if it is alive and not us.

    SIGTERM first, SIGKILL once ``grace`` seconds pass. Returns the PID that
    was stopped, or None when there was nothing to do.
    """
    own_pid = os.getpid() if own_pid is None else own_pid
    clock = clock or SystemClock()
    pid = pid_file.read()
    if pid is None or pid == own_pid or not is_alive(pid, kill):
        return None

    logger.warning("stale_process_found", role=pid_file.name, pid=pid)
    try:
        kill(pid, signal.SIGTERM)
    except OSError:
        pass

    deadline = clock.now() + grace
    while is_alive(pid, kill):
        if clock.now() >= deadline:
            logger.warning("stale_process_kill", role=pid_file.name, pid=pid)
            try:
                kill(pid, signal.SIGKILL)
            except OSError:
                pass
            break
        await clock.sleep(STALE_POLL_INTERVAL)

    logger.info("stale_process_stopped", role=pid_file.name, pid=pid)
    return pid


async def claim_process(
    pid_file: PidFile,
    *,
    own_pid: Optional[int] = None,
    grace: float = 3.0,
    kill: KillFn = os.kill,
    clock: Optional[Clock] = None,
) -> Optional[int]:
    """Stop a previous holder of the role, then record ``own_pid`` as the holder."""
    own_pid = os.getpid() if own_pid is None else own_pid
    stale = await stop_stale(pid_file, own_pid=own_pid, grace=grace, kill=kill, clock=clock)
    pid_file.write(own_pid)
    logger.info("process_claimed", role=pid_file.name, pid=own_pid)
    return stale


def release_process(pid_file: PidFile, own_pid: Optional[int] = None) -> bool:
    released = pid_file.release(own_pid)
    if released:
        logger.info("process_released", role=pid_file.name)
    return released


# ── Port binding ─────────────────────────────────────────────────────

def bind_socket(host: str, port: int) -> socket.socket:
    """Bind a listening TCP socket the way uvicorn would for ``host:port``."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def _port_busy(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno == errno.EADDRINUSE


async def bind_with_retry(
    host: str,
    port: int,
    *,
    attempts: int = 5,
    delay: float = 1.0,
    clock: Optional[Clock] = None,
    bind: BindFn = bind_socket,
) -> socket.socket:
    """Bind ``host:port``, waiting ``delay`` between tries while the port is in use.

    Any other bind error, or the last EADDRINUSE, propagates.
    """
    clock = clock or SystemClock()

    def _log_busy(retry_state) -> None:
        logger.warning(
            "port_busy_retrying", port=port, attempt=retry_state.attempt_number, attempts=attempts,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_fixed(delay),
        retry=retry_if_exception(_port_busy),
        before_sleep=_log_busy,
        sleep=clock.sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            sock = bind(host, port)
    logger.info("port_bound", host=host, port=port)
    return sock
