"""Structured logging configuration.

Worker tasks bind the job being processed (execution, node, attempt) into
structlog context variables, so every log line emitted while a node runs is
tagged with it.
"""

import sys
import structlog
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator
from core.config import Settings

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = (
    "apscheduler",
    "apscheduler.scheduler",
    "apscheduler.executors",
    "aiosqlite",
    "sqlalchemy.engine",
)


def _handlers(settings: Settings, level: int) -> list:
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def configure_logging(settings: Settings) -> None:
    """Configure structured logging based on settings."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(level=level, handlers=_handlers(settings, level), format="%(message)s", force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))
        processors.insert(0, structlog.stdlib.add_logger_name)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(0, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def job_log_context(**kwargs) -> Iterator[None]:
    """Tag every log line inside the block with the given job fields."""
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    """Log how long an operation took, in seconds."""
    logger.info(
        "Operation completed",
        operation=operation,
        execution_time_seconds=round(end_time - start_time, 4),
        **kwargs
    )
