"""Structured logging configuration using structlog.

Both processes log through structlog. The daemon writes to stderr so the
console channel owns stdout; the core writes to stdout because its stderr
is captured by the supervisor as crash diagnostics.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

import structlog

from arisa.config import get_settings

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def setup_logging(component: str = "daemon", stream: Optional[TextIO] = None) -> None:
    """Configure structured logging for one process (``daemon`` or ``core``)."""
    settings = get_settings()
    log_level = getattr(logging, settings.arisa_log_level.upper(), logging.INFO)
    if stream is None:
        stream = sys.stdout if component == "core" else sys.stderr

    renderer = (
        structlog.processors.JSONRenderer() if settings.arisa_env == "production"
        else structlog.dev.ConsoleRenderer(colors=stream.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(component=component)

    logging.basicConfig(format="%(message)s", stream=stream, level=log_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structured logger."""
    return structlog.get_logger(name)
