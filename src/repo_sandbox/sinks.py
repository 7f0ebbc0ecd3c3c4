"""Execution sink that reports terminal outcomes as structured log events."""

from __future__ import annotations

from typing import Any

from .observability.logging import get_logger

logger = get_logger(__name__)


class LoggingExecutionSink:
    """Satisfies the ``ExecutionSink`` protocol from ``protocols.py``.

    The full state document stays in the state store; only identifiers and
    the outcome are logged.
    """

    async def emit(
        self, pipeline_id: str, channel: str, payload_type: str, payload: dict[str, Any],
    ) -> None:
        logger.info(
            "pipeline_done",
            pipeline_id=pipeline_id,
            channel=channel,
            payload_type=payload_type,
            sandbox_id=payload.get("sandboxId"),
            directory=payload.get("directory"),
        )

    async def fail(self, pipeline_id: str, reason: str, message: str) -> None:
        logger.error(
            "pipeline_failed",
            pipeline_id=pipeline_id,
            reason=reason,
            message=message,
        )
