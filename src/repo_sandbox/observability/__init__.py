"""Observability infrastructure for repo-sandbox.

Quick start::

    from repo_sandbox.observability import configure_logging, get_logger

    configure_logging()
    logger = get_logger()
"""

from .logging import bound_pipeline, configure_logging, get_logger, pipeline_id_ctx
from .metrics import metrics_text

__all__ = [
    "bound_pipeline",
    "configure_logging",
    "get_logger",
    "metrics_text",
    "pipeline_id_ctx",
]
