"""structlog setup for fieldnote.

Everything is written to stderr: stdout carries answers and, in --json
mode, exactly one JSON document.
"""

from __future__ import annotations

import logging
import sys

import structlog

# Libraries that log every HTTP request / polling tick at INFO.
_CHATTY_LOGGERS = ("httpx", "openai", "aiogram.event", "aiogram.dispatcher")


def _parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(*, json_output: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog (and the stdlib loggers of third-party clients).

    Args:
        json_output: JSON lines when True, coloured console lines otherwise.
        log_level: Minimum level; unknown names fall back to INFO.
    """
    level = _parse_level(log_level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        stream=sys.stderr, level=level, format="%(levelname)s %(name)s %(message)s"
    )
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
