"""Structured logging configuration.

structlog renders on top of the stdlib root logger. Run-scoped keys (run_id,
workflow_id, mode) are carried in contextvars, so every line logged while a
run is in flight, including from node handler tasks, is tagged with them.
"""

import sys
import logging
from pathlib import Path

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars

from core.config import Settings

_RUN_CONTEXT_KEYS = ("run_id", "workflow_id", "mode")

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = (
    "apscheduler",
    "apscheduler.scheduler",
    "apscheduler.executors",
    "aiosqlite",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "httpcore",
    "uvicorn.access",
    "watchfiles",
)


def configure_logging(settings: Settings) -> None:
    """Configure stdlib handlers and the structlog pipeline from settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setLevel(level)
    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors = [
        merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(1, structlog.stdlib.add_logger_name)
        processors.insert(1, structlog.processors.TimeStamper(fmt="iso", utc=True))
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(1, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
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


def bind_run_context(run_id: str, workflow_id: str, mode: str) -> None:
    """Tag subsequent log lines in this task (and tasks it spawns) with the run."""
    bind_contextvars(run_id=run_id, workflow_id=workflow_id, mode=mode)


def clear_run_context() -> None:
    unbind_contextvars(*_RUN_CONTEXT_KEYS)


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    """Log how long an operation took, in milliseconds."""
    logger.info(
        "Operation timed",
        operation=operation,
        duration_ms=int((end_time - start_time) * 1000),
        **kwargs
    )
