"""Structured logging for the API and the background aggregation runs.

Every log line goes through structlog and the stdlib root handler, so
uvicorn and SQLAlchemy output share the same format. Request handlers bind a
request id; aggregation runs bind a run id and mode. Both are contextvars, so
a run started from a request carries that request's id too.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

if TYPE_CHECKING:
    from structlog.types import Processor

from recruit_stats.config import get_settings

# Libraries that log too much at INFO for an unattended service
_QUIET_LOGGERS = ("uvicorn.access", "asyncio")


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Route structlog and stdlib logging to stdout.

    Args:
        level: Root log level. Defaults to ``LOG_LEVEL``.
        json_output: Render JSON lines. Defaults to on outside development.
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    if json_output is None:
        json_output = settings.environment != "development"

    processors = _shared_processors()
    renderer: Processor
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.stdlib.get_logger(name)


def bind_request_context(**kwargs: Any) -> None:
    """Bind context variables for the current request."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def bind_run_context(mode: str) -> str:
    """Tag subsequent log lines in this task with a fresh run id and ``mode``.

    Call from inside the task that executes the run; the binding is dropped
    with the task's context when it finishes.
    """
    run_id = uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(run_id=run_id, run_mode=mode)
    return run_id
