"""Repository sandbox state machine and timeout handling contract.

Canonical flow:
  preparingSandbox -> bootstrapping -> done
  preparingSandbox -> done               (no bootstrap requested)

Failure is terminal and recorded on the state, not as a stage:
  any non-terminal stage --(fail)--> failure record set, stage frozen

Every helper returns a new ``PipelineState``; nothing is mutated in place.
Terminal states reject every further transition.
"""

from __future__ import annotations

from datetime import datetime
from types import MappingProxyType

from .models import (
    BootstrapRecord,
    CloneRecord,
    FailureRecord,
    PipelineState,
    SandboxSecret,
    Stage,
)

FAILURE_REASON = 'error'

DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_POLL_INTERVAL_SECONDS = 5

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        Stage.PREPARING_SANDBOX: frozenset({Stage.BOOTSTRAPPING, Stage.DONE}),
        Stage.BOOTSTRAPPING: frozenset({Stage.DONE}),
        Stage.DONE: frozenset(),
    }
)


class InvalidStateTransition(ValueError):
    """Raised for transitions that would break pipeline invariants."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state!r} -> {to_state!r}'
        )


def create_initial_state(
    *,
    pipeline_id: str,
    sandbox_id: str,
    repository: str,
    directory: str,
    now: datetime,
    secrets: list[SandboxSecret] | None = None,
    bootstrap: BootstrapRecord | None = None,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
) -> PipelineState:
    """State persisted right after the sandbox creation call succeeds."""
    _require_aware_datetime(now)
    if timeout_seconds < 1:
        raise ValueError('timeout_seconds must be >= 1')
    return PipelineState(
        pipeline_id=pipeline_id,
        stage=Stage.PREPARING_SANDBOX,
        sandbox_id=sandbox_id,
        started_at=now,
        timeout_seconds=timeout_seconds,
        repository=repository.strip(),
        directory=directory,
        secrets=list(secrets or []),
        bootstrap=bootstrap,
    )


def deadline_exceeded(state: PipelineState, *, now: datetime) -> bool:
    """True once more than ``timeout_seconds`` passed since ``started_at``."""
    _require_aware_datetime(now)
    elapsed = (now - state.started_at).total_seconds()
    return elapsed > state.timeout_seconds


def timeout_message(state: PipelineState) -> str:
    return (
        f'sandbox creation failed on stage {state.stage.value} '
        f'after {state.timeout_seconds}s'
    )


def advance_to(
    state: PipelineState,
    stage: Stage,
) -> PipelineState:
    """Move forward to *stage*; regressions and terminal moves are rejected."""
    _require_active(state, stage.value)
    if stage not in ALLOWED_TRANSITIONS[state.stage]:
        raise InvalidStateTransition(state.stage.value, stage.value)
    if stage is Stage.BOOTSTRAPPING and (
        state.bootstrap is None or not state.bootstrap.command_id
    ):
        raise InvalidStateTransition(state.stage.value, stage.value)
    return state.model_copy(update={'stage': stage})


def record_clone(
    state: PipelineState,
    *,
    started_at: datetime,
    finished_at: datetime,
    error: str | None = None,
) -> PipelineState:
    """Attach the clone outcome. Allowed once, while preparing the sandbox."""
    _require_active(state, 'clone')
    if state.stage is not Stage.PREPARING_SANDBOX or state.clone is not None:
        raise InvalidStateTransition(state.stage.value, 'clone')
    clone = CloneRecord(started_at=started_at, finished_at=finished_at, error=error)
    return state.model_copy(update={'clone': clone})


def record_bootstrap_path(state: PipelineState, path: str) -> PipelineState:
    """Point the bootstrap descriptor at the script that will actually run."""
    _require_active(state, 'bootstrap')
    if state.bootstrap is None or state.bootstrap.command_id:
        raise InvalidStateTransition(state.stage.value, 'bootstrap')
    bootstrap = state.bootstrap.model_copy(update={'path': path})
    return state.model_copy(update={'bootstrap': bootstrap})


def record_bootstrap_command(
    state: PipelineState,
    *,
    session_id: str,
    command_id: str,
    now: datetime,
) -> PipelineState:
    """Record the issued bootstrap command. ``command_id`` is set once."""
    _require_active(state, 'bootstrap')
    if state.bootstrap is None or state.bootstrap.command_id:
        raise InvalidStateTransition(state.stage.value, 'bootstrap')
    bootstrap = state.bootstrap.model_copy(
        update={
            'session_id': session_id,
            'command_id': command_id,
            'started_at': now,
        }
    )
    return state.model_copy(update={'bootstrap': bootstrap})


def record_bootstrap_result(
    state: PipelineState,
    *,
    exit_code: int,
    result: str,
    now: datetime,
) -> PipelineState:
    _require_active(state, 'bootstrap')
    if state.stage is not Stage.BOOTSTRAPPING or state.bootstrap is None:
        raise InvalidStateTransition(state.stage.value, 'bootstrap')
    bootstrap = state.bootstrap.model_copy(
        update={'exit_code': exit_code, 'result': result, 'finished_at': now}
    )
    return state.model_copy(update={'bootstrap': bootstrap})


def mark_failed(
    state: PipelineState,
    *,
    message: str,
    now: datetime,
    reason: str = FAILURE_REASON,
) -> PipelineState:
    """Freeze *state* with a failure record; the stage is left as reached."""
    _require_aware_datetime(now)
    _require_active(state, 'failed')
    failure = FailureRecord(reason=reason, message=message, failed_at=now)
    return state.model_copy(update={'failure': failure})


def _require_active(state: PipelineState, to_state: str) -> None:
    if state.is_failed:
        raise InvalidStateTransition('failed', to_state)
    if state.is_done:
        raise InvalidStateTransition(Stage.DONE.value, to_state)


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('now must be timezone-aware')
