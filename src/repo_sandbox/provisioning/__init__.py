"""Repository sandbox pipeline: request validation, state, and stage driver."""

from .driver import (
    OUTPUT_CHANNEL,
    PAYLOAD_TYPE,
    POLL_ACTION,
    CleanupPolicy,
    RepositorySandboxDriver,
)
from .errors import PipelineStateError, RequestValidationError, UnknownActionError
from .models import PipelineState, ProvisioningRequest, Stage
from .repository import resolve_directory_name, target_directory
from .state_machine import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    InvalidStateTransition,
)
from .validation import parse_request, validate_request

__all__ = [
    'CleanupPolicy',
    'DEFAULT_POLL_INTERVAL_SECONDS',
    'DEFAULT_TIMEOUT_SECONDS',
    'InvalidStateTransition',
    'OUTPUT_CHANNEL',
    'PAYLOAD_TYPE',
    'POLL_ACTION',
    'PipelineState',
    'PipelineStateError',
    'ProvisioningRequest',
    'RepositorySandboxDriver',
    'RequestValidationError',
    'Stage',
    'UnknownActionError',
    'parse_request',
    'resolve_directory_name',
    'target_directory',
    'validate_request',
]
