"""Shared test fixtures: virtual clock, fake processes and test settings."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import os
import signal
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

os.environ.setdefault("ARISA_ENV", "test")
os.environ.setdefault("ARISA_LOG_LEVEL", "WARNING")

from arisa.config import Settings


async def settle(rounds: int = 100) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Virtual clock: ``sleep`` parks the caller until ``advance`` passes its wake time."""

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + max(0.0, seconds), next(self._seq), fut))
        await fut

    def jump(self, seconds: float) -> None:
        """Move time without waking anyone, as if a blocking call took that long."""
        self._now += seconds

    @property
    def sleeping(self) -> int:
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers in order and letting each one run."""
        target = self._now + seconds
        await settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            wake_at, _, fut = heapq.heappop(self._sleepers)
            if fut.done():
                continue
            self._now = max(self._now, wake_at)
            fut.set_result(None)
            await settle()
        self._now = max(self._now, target)
        await settle()


class FakeProcess:
    """Long-running child process stand-in with a real stderr stream."""

    _pids = itertools.count(4000)

    def __init__(self) -> None:
        self.pid = next(self._pids)
        self.returncode: Optional[int] = None
        self.stdout = None
        self.stderr = asyncio.StreamReader()
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def write_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode("utf-8"))

    def exit(self, code: int = 1) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeCliProcess:
    """One-shot command stand-in for ``run_command`` with real stdout/stderr streams.

    Output is written as soon as the process starts. A hanging process keeps
    its pipes open until it is killed.
    """

    _pids = itertools.count(6000)

    def __init__(self, stdout: str = "", stderr: str = "", exit_code: int = 0, hang: bool = False) -> None:
        self.pid = next(self._pids)
        self.returncode: Optional[int] = None
        self.killed = False
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        if stdout:
            self.stdout.feed_data(stdout.encode("utf-8"))
        if stderr:
            self.stderr.feed_data(stderr.encode("utf-8"))
        self._exited = asyncio.Event()
        if not hang:
            self._finish(exit_code)

    def _finish(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self._finish(-9)


class FakeKernel:
    """Stand-in for ``os.kill`` over a set of fake PIDs.

    A live PID dies on SIGTERM unless it is stubborn; SIGKILL always works.
    """

    def __init__(self, alive=(), stubborn=(), foreign=()) -> None:
        self.alive = set(alive) | set(stubborn) | set(foreign)
        self.stubborn = set(stubborn)
        self.foreign = set(foreign)
        self.signals: list[tuple[int, int]] = []

    def __call__(self, pid: int, sig: int) -> None:
        if pid in self.foreign:
            raise PermissionError(f"Operation not permitted: {pid}")
        if pid not in self.alive:
            raise ProcessLookupError(pid)
        if sig == 0:
            return
        self.signals.append((pid, sig))
        if sig == signal.SIGKILL or pid not in self.stubborn:
            self.alive.discard(pid)


class FakeSpawner:
    """Drop-in for ``asyncio.create_subprocess_exec`` that records calls."""

    def __init__(self, factory: Optional[Callable[[tuple[str, ...]], Any]] = None) -> None:
        self.calls: list[tuple[tuple[str, ...], dict[str, Any]]] = []
        self.processes: list[Any] = []
        self.fail_next = 0
        self._factory = factory or (lambda argv: FakeProcess())

    async def __call__(self, *argv: str, **kwargs: Any) -> Any:
        self.calls.append((argv, kwargs))
        if self.fail_next:
            self.fail_next -= 1
            raise FileNotFoundError(f"No such file or directory: '{argv[0]}'")
        proc = self._factory(argv)
        if isinstance(proc, BaseException):
            raise proc
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> Any:
        return self.processes[-1]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Return isolated test settings rooted in a temp project dir."""
    return Settings(
        _env_file=None,
        arisa_env="test",
        arisa_log_level="WARNING",
        arisa_project_dir=tmp_path,
        core_command=["fake-core", "--serve"],
        agent_cli_order=["claude", "codex"],
        notify_chat_id="",
    )


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test file operations."""
    return tmp_path
