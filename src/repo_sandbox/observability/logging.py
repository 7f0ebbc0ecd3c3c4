"""Structured logging configuration for repo-sandbox.

Configures structlog for JSON-formatted logging correlated by pipeline ID.
Modules keep using stdlib ``logging.getLogger(__name__)``; records are
rendered through structlog's ``ProcessorFormatter``.

Usage::

    from repo_sandbox.observability.logging import configure_logging, get_logger

    configure_logging()  # Call once at process startup
    logger = get_logger()
    logger.info("pipeline_started", sandbox_id="sb-1")
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

import structlog

# Pipeline currently being driven in this task.
pipeline_id_ctx: ContextVar[str | None] = ContextVar("pipeline_id", default=None)

_configured = False


def _add_pipeline_id(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Inject the current pipeline_id from context into every log entry."""
    pid = pipeline_id_ctx.get()
    if pid is not None:
        event_dict["pipeline_id"] = pid
    return event_dict


@contextmanager
def bound_pipeline(pipeline_id: str) -> Iterator[None]:
    """Tag log entries emitted inside the block with *pipeline_id*."""
    token = pipeline_id_ctx.set(pipeline_id)
    try:
        yield
    finally:
        pipeline_id_ctx.reset(token)


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
            Defaults to LOG_LEVEL env var or INFO.
        json_output: If True, emit JSON lines. If False, emit
            human-readable console output. Defaults to LOG_FORMAT
            env var == "json".
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        _add_pipeline_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
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

    # Records from stdlib loggers get the same pipeline tagging.
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given name."""
    return structlog.get_logger(name)
