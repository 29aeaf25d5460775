"""Liveness probe against the core's ``/health`` endpoint."""

from __future__ import annotations

from typing import Optional

import httpx

from arisa.config import Settings, get_settings
from arisa.logging_config import get_logger

logger = get_logger(__name__)


class HealthProbe:
    """Single unretried GET; any error or non-2xx answer means unhealthy.

    Purely observational: nothing in the delivery path waits on it.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = settings or get_settings()
        self._base_url = (base_url or settings.core_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.health_timeout
        self._transport = transport

    async def is_healthy(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(f"{self._base_url}/health")
                return resp.is_success
        except Exception as exc:
            logger.debug("core_health_check_failed", error=str(exc))
            return False
