"""Structured logging for LLM Shield.

Every module logs through :func:`get_logger` with event-style keys. The
console renders colored output in development and JSON elsewhere; with
``LOG_TO_FILE`` set, a rotating file receives the same events as JSON.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TextIO

import structlog

from llm_shield.config import Settings, get_settings

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]
    )


def _file_handler(settings: Settings) -> RotatingFileHandler:
    Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=settings.log_file_path,
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    return handler


def setup_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """Configure structlog on top of the standard library root logger.

    Args:
        level: Overrides ``LOG_LEVEL`` when given.
        stream: Console stream; defaults to stdout.
    """
    settings = get_settings()
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    console = logging.StreamHandler(stream or sys.stdout)
    console.setFormatter(
        _formatter(
            structlog.dev.ConsoleRenderer(colors=True)
            if settings.is_development
            else structlog.processors.JSONRenderer()
        )
    )
    handlers: list[logging.Handler] = [console]

    file_error: OSError | None = None
    if settings.log_to_file:
        try:
            handlers.append(_file_handler(settings))
        except OSError as e:
            file_error = e

    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if file_error is not None:
        get_logger(__name__).warning(
            "file_logging_disabled", path=settings.log_file_path, error=str(file_error)
        )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
