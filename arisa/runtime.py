"""Injectable runtime capabilities: wall clock and process spawning.

Components never call ``time.time``, ``asyncio.sleep`` or
``asyncio.create_subprocess_exec`` directly; they receive a :class:`Clock`
and a :data:`SpawnFn` at construction so tests can drive them with a
virtual clock and fake processes.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from arisa.logging_config import get_logger

logger = get_logger(__name__)


class Clock(Protocol):
    """Wall-clock time source with an awaitable sleep."""

    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Production clock backed by ``time.time`` and ``asyncio.sleep``."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


# Same call shape as asyncio.create_subprocess_exec(*argv, cwd=..., env=..., stdout=..., stderr=...)
SpawnFn = Callable[..., Awaitable[Any]]

default_spawn: SpawnFn = asyncio.create_subprocess_exec


@dataclass
class CommandResult:
    """Outcome of a bounded external command run."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False


# Bound on collecting output once the child is gone; a grandchild may still hold the pipe.
_PIPE_DRAIN_TIMEOUT = 5.0


async def _pump(stream: Optional[asyncio.StreamReader], sink: bytearray) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        sink.extend(chunk)


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float,
    cwd: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
    spawn: Optional[SpawnFn] = None,
) -> CommandResult:
    """Run ``argv`` to completion, killing it once ``timeout`` elapses.

    Spawn errors (e.g. binary not found) propagate to the caller; a timeout
    does not, it is reported through ``CommandResult.timed_out`` together
    with whatever the command printed before it was killed.
    """
    spawn = spawn or default_spawn
    proc = await spawn(
        *argv,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = bytearray(), bytearray()
    readers = [
        asyncio.create_task(_pump(proc.stdout, stdout)),
        asyncio.create_task(_pump(proc.stderr, stderr)),
    ]
    timed_out = False
    try:
        try:
            exit_code = await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("command_timeout", command=argv[0], timeout=timeout, pid=proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            exit_code = await proc.wait()
        _, pending = await asyncio.wait(readers, timeout=_PIPE_DRAIN_TIMEOUT)
        if pending:
            logger.warning("command_output_truncated", command=argv[0], pid=proc.pid)
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        raise
    finally:
        for reader in readers:
            reader.cancel()

    if exit_code is None:
        exit_code = -9 if timed_out else -1
    return CommandResult(
        exit_code=exit_code,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        timed_out=timed_out,
    )
