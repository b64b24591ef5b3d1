"""Structured logging configuration for procpipe.

The library only obtains loggers; applications decide how records are
rendered by calling ``configure_logging`` once at startup.

- Console output by default, JSON when ``PROCPIPE_LOG_FORMAT=json``
- Level taken from ``PROCPIPE_LOG_LEVEL`` (default WARNING)

Usage:
    from procpipe.logging import configure_logging, get_logger

    configure_logging()
    log = get_logger(__name__).bind(pid=4242)
    log.debug("reader_started", stream="stdout")
"""

from __future__ import annotations

import logging
import os
import sys

import structlog
from structlog.types import Processor

__all__ = [
    "configure_logging",
    "get_logger",
]

LOG_FORMAT_ENV_VAR = "PROCPIPE_LOG_FORMAT"
LOG_LEVEL_ENV_VAR = "PROCPIPE_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"


def _get_log_level() -> int:
    level_name = os.environ.get(LOG_LEVEL_ENV_VAR, DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.WARNING)


def _is_json_output() -> bool:
    return os.environ.get(LOG_FORMAT_ENV_VAR, "").lower() == "json"


def _get_shared_processors() -> list[Processor]:
    """Processors applied to both structlog and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _get_renderer(use_json: bool) -> Processor:
    if use_json:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(
    *,
    force_json: bool = False,
    level: int | None = None,
) -> None:
    """Configure structlog and route stdlib logging through it.

    Subsequent calls reconfigure logging and replace the root handler.

    Args:
        force_json: Force JSON output regardless of environment variable.
        level: Override log level. If None, reads PROCPIPE_LOG_LEVEL.
    """
    use_json = force_json or _is_json_output()
    log_level = level if level is not None else _get_log_level()

    structlog.configure(
        processors=[
            *_get_shared_processors(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _get_renderer(use_json),
            ],
            foreign_pre_chain=_get_shared_processors(),
        )
    )
    root_logger.addHandler(handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name, normally the calling module's ``__name__``.

    Returns:
        A bound structlog logger supporting ``bind(**context)``.
    """
    log: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return log
