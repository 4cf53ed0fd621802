"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys

import structlog

from src.core.config import LoggingConfig, get_settings

# Third-party loggers that are noisy at INFO.
_QUIET_LOGGERS = ("aiohttp.access", "websockets.client", "websockets.server")


def setup_logging(
    level: str | None = None,
    fmt: str | None = None,
    config: LoggingConfig | None = None,
) -> None:
    """Configure structlog with JSON or console renderer.

    Args:
        level: Log level override (e.g. "DEBUG"). Uses config if None.
        fmt: Renderer format override ("json" or "console"). Uses config if None.
        config: Explicit logging section; falls back to the cached settings.
    """
    cfg = config or get_settings().logging
    log_level = getattr(logging, (level or cfg.level).upper(), logging.INFO)
    log_format = fmt or cfg.format

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
