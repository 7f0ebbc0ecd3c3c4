"""Error types raised by the provisioning pipeline.

Validation errors are raised synchronously, before any remote call, and are
never retried. The remaining types signal a broken host contract (unknown
action, unreadable or missing state) rather than a remote failure; remote
failures are recorded on the pipeline state instead of raised.
"""

from __future__ import annotations


class RequestValidationError(ValueError):
    """Raised when a provisioning request is malformed."""


class PipelineStateError(RuntimeError):
    """Raised when persisted pipeline state is missing or unusable."""

    def __init__(self, pipeline_id: str, message: str) -> None:
        self.pipeline_id = pipeline_id
        super().__init__(f'pipeline {pipeline_id!r}: {message}')


class UnknownActionError(LookupError):
    """Raised when the scheduler re-invokes an action the driver lacks."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f'unknown action: {action}')
