"""Structured logging setup.

Every module logs through ``get_logger(__name__)`` with snake_case event
names and keyword context::

    logger.info("server_ready", port=8000, elapsed=1.2)

Logs are written to stderr so that stdout stays free for command output.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure structlog processors and output.

    Args:
        level: Log level name (default: from settings)
        fmt: "console" for human-readable output, "json" for one JSON object per line
    """
    if level is None or fmt is None:
        from zotero_chat.config import get_settings

        settings = get_settings()
        level = level or settings.log_level
        fmt = fmt or settings.log_format

    renderer: structlog.typing.Processor
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    """Return a logger for the calling module."""
    return structlog.get_logger(name)
