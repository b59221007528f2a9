import logging
import sys
from typing import Any

import structlog

from .settings import settings


def setup_logging(level: str | None = None, debug: bool | None = None) -> None:
    """Configure structured logging with structlog.

    The API process uses the server settings; the queue worker passes its own
    level and debug flag.
    """
    level_name = level or settings.log_level
    pretty = settings.debug if debug is None else debug
    numeric_level = getattr(logging, level_name.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            (
                structlog.processors.CallsiteParameterAdder(
                    parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
                )
                if pretty
                else structlog.processors.CallsiteParameterAdder(parameters=[])
            ),
            (
                structlog.dev.ConsoleRenderer()
                if pretty
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
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


def bind_worker_context(worker_id: str, **context: Any) -> None:
    """Attach the worker identity to every log line of the worker process."""
    structlog.contextvars.bind_contextvars(worker_id=worker_id, **context)
