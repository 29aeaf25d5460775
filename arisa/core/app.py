"""HTTP surface of the core worker, called by the daemon's delivery pipeline."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException

from arisa import __version__
from arisa.core.processor import CoreProcessor
from arisa.logging_config import get_logger
from arisa.models import CoreResponse, MessageEnvelope

logger = get_logger(__name__)


def create_core_app(processor: Optional[CoreProcessor] = None) -> FastAPI:
    """Build the core app around ``processor``."""
    processor = processor or CoreProcessor()
    app = FastAPI(title="Arisa Core", version=__version__)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.post("/message")
    async def message(envelope: MessageEnvelope) -> dict[str, Any]:
        msg = envelope.message
        logger.info("core_message_received", sender=msg.sender, chat_id=msg.chat_id)
        try:
            response: CoreResponse = await processor.process(msg)
        except Exception as exc:
            logger.error("core_message_failed", sender=msg.sender, error=str(exc))
            raise HTTPException(status_code=500, detail="Processing failed") from exc
        return response.to_wire()

    return app
