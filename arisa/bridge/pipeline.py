"""Delivery Pipeline — forwards inbound messages to the core over local RPC.

Each message gets a direct attempt and, after a fixed delay, exactly one
retry. What happens after the second failure depends on the deployment's
policy:

- ``queue``: the message joins an in-memory FIFO queue drained by a single
  periodic task that only ever tries the head. Entries older than the retry
  window are rejected at the next tick.

Under the queue policy every message takes a sequence number when it is
submitted. The queue is kept sorted by it, and neither the drain task nor a
direct retry delivers a message while an older one is still waiting out its
retry delay, so the core sees messages in submission order.
- ``fallback``: the message is answered right away by running an agent CLI
  directly from the daemon, with the last core error as context.

``send`` never raises; every outcome is reported as a :class:`DeliveryResult`.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from arisa.bridge.fallback import FALLBACK_APOLOGY, FallbackResponder
from arisa.bridge.health import HealthProbe
from arisa.config import Settings, get_settings
from arisa.logging_config import get_logger
from arisa.models import CoreResponse, IncomingMessage, MessageEnvelope
from arisa.runtime import Clock, SystemClock

logger = get_logger(__name__)

RETRY_NOTICE = "Core is restarting, retrying in a few seconds..."

# Shortest request a queued head gets, however little of its window is left.
DRAIN_TIMEOUT_FLOOR = 1.0

StatusCallback = Callable[[str], Union[Awaitable[None], None]]


class DeliveryPolicy(StrEnum):
    """Escalation after the retry also failed. One per deployment."""

    QUEUE = "queue"
    FALLBACK = "fallback"


class DeliveryState(StrEnum):
    PRIMARY = "primary"
    RETRY_PENDING = "retry_pending"
    QUEUED = "queued"
    FALLBACK_INVOKED = "fallback_invoked"
    EXPIRED = "expired"
    DELIVERED = "delivered"


class DeliveryFailed(Exception):
    """The core did not answer with a 2xx JSON reply (unreachable, timeout, bad status)."""


class DeliveryExpired(Exception):
    """A queued message outlived the retry window."""


class PipelineClosed(Exception):
    """The pipeline shut down before the message could be delivered."""


@dataclass
class DeliveryResult:
    state: DeliveryState
    response: Optional[CoreResponse] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.response is not None

    @property
    def text(self) -> str:
        return self.response.text if self.response is not None else (self.error or "")


@dataclass
class QueuedMessage:
    """A message waiting for the core, with the handle that settles its caller."""

    message: IncomingMessage
    enqueued_at: float
    ttl: float
    completion: asyncio.Future
    seq: int = 0
    state: DeliveryState = DeliveryState.QUEUED

    def expired(self, now: float) -> bool:
        return now - self.enqueued_at > self.ttl


class DeliveryPipeline:
    """Owns the RPC client, the retry queue and its drain task."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        policy: Optional[Union[DeliveryPolicy, str]] = None,
        clock: Optional[Clock] = None,
        client: Optional[httpx.AsyncClient] = None,
        health: Optional[HealthProbe] = None,
        fallback: Optional[FallbackResponder] = None,
        diagnostics: Any = None,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._base_url = settings.core_url.rstrip("/")
        self._policy = DeliveryPolicy(policy or settings.delivery_policy)
        self._clock = clock or SystemClock()
        self._client = client
        self._owns_client = client is None
        self._health = health or HealthProbe(settings=settings)
        self._fallback = fallback
        self._diagnostics = diagnostics  # anything exposing ``last_error``

        self._request_timeout = settings.request_timeout
        self._retry_delay = settings.retry_delay
        self._retry_interval = settings.queue_retry_interval
        self._max_age = settings.queue_max_age

        self._queue: deque[QueuedMessage] = deque()
        self._sequence = itertools.count()
        self._retrying: set[int] = set()  # seqs waiting out the retry delay
        self._drain_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def policy(self) -> DeliveryPolicy:
        return self._policy

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def is_healthy(self) -> bool:
        return await self._health.is_healthy()

    # ── Public API ───────────────────────────────────────────────────

    async def send(self, message: IncomingMessage, on_status: Optional[StatusCallback] = None) -> DeliveryResult:
        """Deliver ``message`` to the core; resolves once delivered, expired, or answered by fallback."""
        try:
            return await self._send(message, on_status)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("delivery_unexpected_error", sender=message.sender, error=str(exc))
            if self._policy is DeliveryPolicy.FALLBACK:
                return DeliveryResult(DeliveryState.FALLBACK_INVOKED, CoreResponse(text=FALLBACK_APOLOGY))
            return DeliveryResult(DeliveryState.EXPIRED, error=f"delivery failed: {exc}")

    async def aclose(self) -> None:
        """Stop the drain task, reject whatever is still queued, close the client."""
        self._closed = True
        task = self._drain_task
        self._drain_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        while self._queue:
            entry = self._queue.popleft()
            entry.state = DeliveryState.EXPIRED
            if not entry.completion.done():
                entry.completion.set_exception(PipelineClosed("delivery pipeline closed"))

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Delivery ─────────────────────────────────────────────────────

    async def _send(self, message: IncomingMessage, on_status: Optional[StatusCallback]) -> DeliveryResult:
        if self._closed:
            return DeliveryResult(DeliveryState.EXPIRED, error="delivery pipeline closed")

        seq = next(self._sequence)
        if self._policy is DeliveryPolicy.QUEUE and (self._queue or self._retrying):
            # Older messages are still waiting; keep submission order.
            logger.info(
                "message_joins_queue", sender=message.sender, depth=len(self._queue),
                retrying=len(self._retrying),
            )
            return await self._enqueue(message, seq)

        logger.debug("delivery_attempt", sender=message.sender, state=DeliveryState.PRIMARY)
        try:
            response = await self._deliver_with_retry(message, on_status, seq)
            return DeliveryResult(DeliveryState.DELIVERED, response)
        except DeliveryFailed as exc:
            logger.warning("core_unreachable", sender=message.sender, error=str(exc))
        finally:
            self._retrying.discard(seq)

        if self._policy is DeliveryPolicy.FALLBACK:
            return await self._invoke_fallback(message)
        return await self._enqueue(message, seq)

    async def _deliver_with_retry(
        self, message: IncomingMessage, on_status: Optional[StatusCallback], seq: int,
    ) -> CoreResponse:
        async def _sleep(seconds: float) -> None:
            self._retrying.add(seq)
            await self._emit_status(on_status, RETRY_NOTICE)
            await self._clock.sleep(seconds)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self._retry_delay),
            retry=retry_if_exception_type(DeliveryFailed),
            sleep=_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    if self._policy is DeliveryPolicy.QUEUE and self._has_older(seq):
                        raise DeliveryFailed("older messages are queued, skipping direct retry")
                    logger.info("delivery_retry", sender=message.sender, state=DeliveryState.RETRY_PENDING)
                return await self._post(message)
        raise DeliveryFailed("retries exhausted")

    async def _post(self, message: IncomingMessage, timeout: Optional[float] = None) -> CoreResponse:
        client = self._get_client()
        try:
            resp = await client.post(
                f"{self._base_url}/message",
                json=MessageEnvelope(message=message).to_wire(),
                timeout=timeout if timeout is not None else self._request_timeout,
            )
        except httpx.HTTPError as exc:
            raise DeliveryFailed(f"core unreachable: {exc!r}") from exc

        if not resp.is_success:
            raise DeliveryFailed(f"core returned {resp.status_code}")
        try:
            return CoreResponse.model_validate(resp.json())
        except ValueError as exc:
            raise DeliveryFailed(f"invalid core response: {exc}") from exc

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._request_timeout)
        return self._client

    async def _emit_status(self, on_status: Optional[StatusCallback], text: str) -> None:
        if on_status is None:
            return
        try:
            result = on_status(text)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("delivery_status_callback_failed", error=str(exc))

    # ── Fallback policy ──────────────────────────────────────────────

    async def _invoke_fallback(self, message: IncomingMessage) -> DeliveryResult:
        if self._fallback is None:
            self._fallback = FallbackResponder(settings=self._settings)
        core_error = getattr(self._diagnostics, "last_error", None) if self._diagnostics else None
        try:
            text = await self._fallback.respond(message.text, core_error)
        except Exception as exc:
            logger.error("fallback_error", sender=message.sender, error=str(exc))
            text = FALLBACK_APOLOGY
        return DeliveryResult(DeliveryState.FALLBACK_INVOKED, CoreResponse(text=text))

    # ── Queue policy ─────────────────────────────────────────────────

    def _has_older(self, seq: int) -> bool:
        """True while a message submitted before ``seq`` is retrying or queued."""
        return any(other < seq for other in self._retrying) or any(e.seq < seq for e in self._queue)

    async def _enqueue(self, message: IncomingMessage, seq: int) -> DeliveryResult:
        entry = QueuedMessage(
            message=message,
            enqueued_at=self._clock.now(),
            ttl=self._max_age,
            completion=asyncio.get_running_loop().create_future(),
            seq=seq,
        )
        index = len(self._queue)
        while index > 0 and self._queue[index - 1].seq > seq:
            index -= 1
        self._queue.insert(index, entry)
        logger.warning(
            "message_queued", sender=message.sender, depth=len(self._queue), position=index,
            state=entry.state,
        )
        self._ensure_draining()

        try:
            response = await entry.completion
        except (DeliveryExpired, PipelineClosed) as exc:
            return DeliveryResult(DeliveryState.EXPIRED, error=str(exc))
        return DeliveryResult(DeliveryState.DELIVERED, response)

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_loop())

    async def _drain_loop(self) -> None:
        try:
            while self._queue:
                await self._clock.sleep(self._retry_interval)
                try:
                    await self._drain_once()
                except Exception as exc:
                    logger.error("delivery_drain_failed", error=str(exc))
        finally:
            if self._drain_task is asyncio.current_task():
                self._drain_task = None

    async def _drain_once(self) -> None:
        """One tick: expire stale heads, then try to deliver the head once."""
        now = self._clock.now()
        while self._queue and (self._queue[0].completion.done() or self._queue[0].expired(now)):
            entry = self._queue.popleft()
            if entry.completion.done():
                continue  # caller went away
            logger.error(
                "queued_message_expired",
                sender=entry.message.sender,
                age=round(now - entry.enqueued_at, 1),
            )
            entry.state = DeliveryState.EXPIRED
            entry.completion.set_exception(
                DeliveryExpired(f"Core unavailable after {entry.ttl:.0f}s timeout")
            )

        if not self._queue:
            return

        head = self._queue[0]
        if self._has_older(head.seq):
            logger.debug("drain_waits_for_retry", queued=len(self._queue))
            return

        # A hung core must not hold the head past its window.
        remaining = head.enqueued_at + head.ttl - now
        timeout = min(self._request_timeout, max(remaining, DRAIN_TIMEOUT_FLOOR))
        try:
            response = await self._post(head.message, timeout=timeout)
        except DeliveryFailed as exc:
            logger.debug("core_still_unreachable", queued=len(self._queue), error=str(exc))
            return

        with contextlib.suppress(ValueError):
            self._queue.remove(head)
        head.state = DeliveryState.DELIVERED
        if not head.completion.done():
            head.completion.set_result(response)
        logger.info("queued_message_delivered", sender=head.message.sender, remaining=len(self._queue))
