import logging
import sys
from typing import Any

import structlog

from .settings import settings


def _renderer_chain() -> list[Any]:
    # ConsoleRenderer formats tracebacks itself; JSON needs them pre-rendered
    if settings.debug:
        return [structlog.dev.ConsoleRenderer()]
    return [
        structlog.processors.dict_tracebacks,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging() -> None:
    """Configure structured logging with structlog."""

    level = getattr(logging, settings.log_level)

    # Standard library logging (uvicorn, sqlalchemy)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.db_echo else logging.WARNING
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.CallsiteParameterAdder(
                parameters=(
                    [structlog.processors.CallsiteParameter.FUNC_NAME]
                    if settings.debug
                    else []
                )
            ),
            *_renderer_chain(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def job_log_context(job_id: str, job_type: str, **context: Any):
    """Bind job fields for the duration of a ``with`` block.

    The drain loop task starts from an empty context, so only these fields
    and the worker id appear on job log lines.
    """
    return structlog.contextvars.bound_contextvars(
        job_id=job_id, job_type=job_type, **context
    )
