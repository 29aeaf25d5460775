"""Daemon — the always-up gateway between the chat channel and the core.

The daemon owns no policy of its own. It is assembled once by
:func:`build_daemon` from explicit collaborators (supervisor, pipeline,
auto-fix, notifier) and:
- Routes inbound channel messages through the delivery pipeline
- Sends replies (chunked) and attached files back to the chat
- Serves the push endpoint the core uses for unsolicited messages
- Starts a background auto-fix when the core dies with a captured error
- Claims the daemon role through a PID file so a restart replaces the old daemon
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from typing import Any, Awaitable, Callable, Optional, Protocol

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from rich.console import Console

from arisa import __version__
from arisa.bridge.fallback import FallbackResponder
from arisa.bridge.pipeline import DeliveryPipeline, DeliveryPolicy
from arisa.config import Settings, get_settings
from arisa.formatting import chunk_message, split_response
from arisa.logging_config import get_logger
from arisa.models import IncomingMessage, SendRequest
from arisa.runtime import Clock, SystemClock
from arisa.supervisor.audit import AuditLog
from arisa.supervisor.monitor import ProcessSupervisor
from arisa.supervisor.notifier import SupervisorNotifier
from arisa.supervisor.ports import KillFn, PidFile, bind_with_retry, claim_process, release_process
from arisa.supervisor.repair import RemediationOrchestrator

logger = get_logger(__name__)

ERROR_REPLY = "Error processing your message. Please try again."

MessageHandler = Callable[[IncomingMessage], Awaitable[None]]


class Channel(Protocol):
    """What the daemon needs from a chat transport."""

    def on_message(self, handler: MessageHandler) -> None: ...

    async def send(self, chat_id: str, text: str) -> None: ...

    async def send_file(self, chat_id: str, path: str) -> None: ...

    async def connect(self) -> None:
        """Receive messages until the channel closes."""
        ...

    async def disconnect(self) -> None: ...


class ConsoleChannel:
    """Terminal channel for local use: one chat, stdin in, rich output out."""

    def __init__(
        self,
        chat_id: str = "console",
        console: Optional[Console] = None,
        input_fn: Callable[[str], str] = input,
    ) -> None:
        self._chat_id = chat_id
        self._console = console or Console()
        self._input = input_fn
        self._handler: Optional[MessageHandler] = None
        self._closed = False

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    async def send(self, chat_id: str, text: str) -> None:
        self._console.print("[bold cyan]arisa ›[/bold cyan]", end=" ")
        self._console.print(text, markup=False, highlight=False)

    async def send_file(self, chat_id: str, path: str) -> None:
        self._console.print(f"[dim]📎 {path}[/dim]")

    async def connect(self) -> None:
        while not self._closed:
            try:
                line = await asyncio.to_thread(self._input, "you › ")
            except EOFError:
                break
            if not line.strip() or self._handler is None:
                continue
            await self._handler(IncomingMessage(chat_id=self._chat_id, sender="console", text=line))

    async def disconnect(self) -> None:
        self._closed = True


def create_push_app(
    channel: Channel,
    status_provider: Optional[Callable[[], Awaitable[dict[str, Any]]]] = None,
) -> FastAPI:
    """HTTP server the core pushes unsolicited messages through."""
    app = FastAPI(title="Arisa Daemon", version=__version__)

    @app.post("/send")
    async def send(body: SendRequest) -> Any:
        if not body.chat_id or not body.text:
            return JSONResponse({"error": "Missing chatId or text"}, status_code=400)
        try:
            for chunk in chunk_message(body.text):
                await channel.send(body.chat_id, chunk)
            for path in body.files:
                await channel.send_file(body.chat_id, path)
        except Exception as exc:
            logger.error("push_send_failed", chat_id=body.chat_id, error=str(exc))
            return JSONResponse({"error": "Send failed"}, status_code=500)
        return {"ok": True}

    @app.get("/status")
    async def status() -> dict[str, Any]:
        if status_provider is None:
            return {"status": "ok"}
        return await status_provider()

    return app


class Daemon:
    """Routes messages between a channel and the supervised core."""

    def __init__(
        self,
        channel: Channel,
        supervisor: ProcessSupervisor,
        pipeline: DeliveryPipeline,
        *,
        settings: Optional[Settings] = None,
        autofix: Optional[RemediationOrchestrator] = None,
        pid_file: Optional[PidFile] = None,
        clock: Optional[Clock] = None,
        kill: KillFn = os.kill,
    ) -> None:
        self._settings = settings or get_settings()
        self._pid_file = pid_file or PidFile("daemon", self._settings.data_dir)
        self._clock = clock or SystemClock()
        self._kill = kill
        self._channel = channel
        self._supervisor = supervisor
        self._pipeline = pipeline
        self._autofix = autofix
        self._autofix_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        supervisor.set_exit_handler(self.on_core_exit)
        channel.on_message(self.handle_message)

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def pipeline(self) -> DeliveryPipeline:
        return self._pipeline

    # ── Messages ─────────────────────────────────────────────────────

    async def handle_message(self, msg: IncomingMessage) -> None:
        try:
            result = await self._pipeline.send(
                msg, on_status=lambda text: self._channel.send(msg.chat_id, text),
            )
            if not result.ok:
                logger.error("message_not_delivered", sender=msg.sender, state=result.state, error=result.error)
                await self._channel.send(msg.chat_id, ERROR_REPLY)
                return

            for chunk in split_response(result.response.text):
                await self._channel.send(msg.chat_id, chunk)
            for path in result.response.files:
                await self._channel.send_file(msg.chat_id, path)
        except Exception as exc:
            logger.error("message_handling_failed", sender=msg.sender, error=str(exc))
            try:
                await self._channel.send(msg.chat_id, ERROR_REPLY)
            except Exception as send_exc:
                logger.error("error_reply_failed", chat_id=msg.chat_id, error=str(send_exc))

    # ── Crash remediation ────────────────────────────────────────────

    def on_core_exit(self, exit_code: int, last_error: Optional[str]) -> None:
        """Start an auto-fix in the background for crashes with a captured error."""
        if exit_code == 0 or not last_error:
            return
        if self._autofix is None or not self._settings.autofix_enabled:
            return
        if self._autofix_task is not None and not self._autofix_task.done():
            logger.info("autofix_already_running")
            return
        self._autofix_task = asyncio.create_task(self._run_autofix(last_error))

    async def _run_autofix(self, diagnostic: str) -> None:
        try:
            await self._autofix.trigger(diagnostic)
        except Exception as exc:
            logger.error("autofix_task_failed", error=str(exc))

    # ── Lifecycle ────────────────────────────────────────────────────

    async def status(self) -> dict[str, Any]:
        return {
            "version": __version__,
            "core": self._supervisor.status(),
            "core_healthy": await self._pipeline.is_healthy(),
            "delivery_policy": str(self._pipeline.policy),
            "queue_depth": self._pipeline.queue_depth,
            "autofix": self._autofix.status() if self._autofix else None,
        }

    def request_stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Start the core, the push server and the channel; return on stop or channel close."""
        logger.info("daemon_starting", policy=str(self._pipeline.policy))
        await claim_process(
            self._pid_file, grace=self._settings.stale_process_grace, kill=self._kill, clock=self._clock,
        )
        try:
            sock = await bind_with_retry(
                self._settings.daemon_host,
                self._settings.daemon_port,
                attempts=self._settings.port_bind_attempts,
                delay=self._settings.port_bind_delay,
                clock=self._clock,
            )
        except OSError as exc:
            logger.error("push_port_unavailable", port=self._settings.daemon_port, error=str(exc))
            release_process(self._pid_file)
            raise

        await self._supervisor.start()
        server = uvicorn.Server(uvicorn.Config(
            create_push_app(self._channel, self.status),
            host=self._settings.daemon_host,
            port=self._settings.daemon_port,
            log_level=self._settings.arisa_log_level.lower(),
        ))
        server_task = asyncio.create_task(server.serve(sockets=[sock]))
        channel_task = asyncio.create_task(self._channel.connect())
        stop_task = asyncio.create_task(self._stop.wait())
        logger.info("daemon_started", push_port=self._settings.daemon_port)

        try:
            await asyncio.wait({channel_task, stop_task, server_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            server.should_exit = True
            await self.shutdown()
            for task in (channel_task, stop_task):
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await server_task
            sock.close()
            logger.info("daemon_stopped")

    async def shutdown(self) -> None:
        logger.info("daemon_shutting_down")
        await self._channel.disconnect()
        await self._supervisor.stop()
        await self._pipeline.aclose()
        if self._autofix_task is not None and not self._autofix_task.done():
            self._autofix_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._autofix_task
        release_process(self._pid_file)


def build_daemon(
    channel: Channel,
    settings: Optional[Settings] = None,
    *,
    policy: Optional[DeliveryPolicy] = None,
    autofix_enabled: Optional[bool] = None,
) -> Daemon:
    """Composition root: construct every collaborator once and wire them together."""
    settings = settings or get_settings()
    clock = SystemClock()
    audit = AuditLog(settings.audit_log_path)

    supervisor = ProcessSupervisor(
        settings=settings, clock=clock, audit=audit, pid_file=PidFile("core", settings.data_dir),
    )
    pipeline = DeliveryPipeline(
        settings=settings,
        policy=policy,
        clock=clock,
        fallback=FallbackResponder(settings=settings),
        diagnostics=supervisor,
    )

    sink = None
    if settings.notify_chat_id:
        chat_id = settings.notify_chat_id

        async def sink(text: str) -> None:
            await channel.send(chat_id, text)

    enabled = settings.autofix_enabled if autofix_enabled is None else autofix_enabled
    autofix = None
    if enabled:
        autofix = RemediationOrchestrator(
            SupervisorNotifier(sink), settings=settings, clock=clock, audit=audit,
        )

    return Daemon(
        channel, supervisor, pipeline, settings=settings, autofix=autofix,
        pid_file=PidFile("daemon", settings.data_dir), clock=clock,
    )
