"""Structured logging for the host.

Reads ``LOG_LEVEL`` and ``LOG_FORMAT`` from os.environ at import time so
that configuration errors raised while loading Settings can already be
logged. :func:`configure_logging` re-applies the values from Settings once
they are available.

``LOG_FORMAT=json`` renders one JSON object per line for log shippers;
anything else uses the console renderer.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog


def _renderer(fmt: str) -> Any:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(level_name: str, fmt: str = "console") -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)

    # structlog's filter_by_level consults the stdlib root logger
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    logging.getLogger().setLevel(level)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
    else:
        processors.append(structlog.dev.set_exc_info)
    processors.append(_renderer(fmt))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Off so configure_logging() can switch renderers after import
        cache_logger_on_first_use=False,
    )


configure_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("LOG_FORMAT", "console"))
logger: structlog.stdlib.BoundLogger = structlog.get_logger()


def plugin_logger(plugin_id: str, **context: Any) -> structlog.stdlib.BoundLogger:
    """Logger with ``plugin_id`` (and any extra context) bound to every event."""
    return logger.bind(plugin_id=plugin_id, **context)


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
