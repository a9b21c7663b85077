"""Structured logging singleton for dynpkg.

The level is read from ``LOG_LEVEL`` at import so the logger works before
settings are loaded; ``set_level`` applies the configured level afterwards.
``LOG_FORMAT=json`` switches to one JSON object per line for log shippers
that run alongside the generation workers.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _renderer(fmt: str) -> structlog.typing.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
    fmt = os.environ.get("LOG_FORMAT", "console").lower()

    # structlog's filter_by_level consults the stdlib root logger
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=fmt == "json"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
    else:
        processors += [structlog.dev.set_exc_info, structlog.processors.StackInfoRenderer()]
    processors.append(_renderer(fmt))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("dynpkg")


logger = _setup_logging()


def set_level(level_name: str) -> None:
    """Apply a level from settings; unknown names leave the current level alone."""
    level = logging.getLevelName(level_name.upper())
    if isinstance(level, int):
        logging.getLogger().setLevel(level)
