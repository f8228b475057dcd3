"""Structured logging for hwmgr.

Log lines are events (``node_allocated``, ``nodepool_admitted``) with
key/value context. Reconcile passes bind ``pool_id`` and HTTP requests
bind their request and correlation ids, so every line written while one
of them is being handled carries those keys.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

# Libraries that log every statement or request at INFO
_CHATTY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "uvicorn.access")


def _processors(json_format: bool, add_timestamp: bool) -> list[Any]:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )
    return processors


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    add_timestamp: bool = True,
) -> None:
    """Route structlog events through the standard library.

    Args:
        json_format: Emit one JSON object per line; otherwise render for a console.
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        add_timestamp: Prefix each event with a UTC ISO timestamp.

    Library loggers in ``_CHATTY_LOGGERS`` stay at WARNING unless ``level``
    is DEBUG.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(
            numeric_level if numeric_level <= logging.DEBUG else logging.WARNING
        )

    structlog.configure(
        processors=_processors(json_format, add_timestamp),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def pool_context(pool_id: str, **kwargs: Any) -> Iterator[None]:
    """Bind a node pool identifier to every event emitted inside the block."""
    with structlog.contextvars.bound_contextvars(pool_id=pool_id, **kwargs):
        yield


@contextmanager
def request_context(request_id: str, correlation_id: str, **kwargs: Any) -> Iterator[None]:
    """Bind HTTP request identifiers for the duration of one request.

    Anything bound by an earlier request on the same task is dropped first.
    """
    structlog.contextvars.clear_contextvars()
    try:
        with structlog.contextvars.bound_contextvars(
            request_id=request_id,
            correlation_id=correlation_id,
            **kwargs,
        ):
            yield
    finally:
        structlog.contextvars.clear_contextvars()
