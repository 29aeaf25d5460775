"""Entry point of the core worker process (``python -m arisa.core``)."""

from __future__ import annotations

import uvicorn

from arisa.config import get_settings
from arisa.core.app import create_core_app
from arisa.logging_config import get_logger, setup_logging


def main() -> None:
    setup_logging("core")
    settings = get_settings()
    get_logger(__name__).info("core_starting", host=settings.core_host, port=settings.core_port)
    uvicorn.run(
        create_core_app(),
        host=settings.core_host,
        port=settings.core_port,
        log_level=settings.arisa_log_level.lower(),
    )


if __name__ == "__main__":
    main()
