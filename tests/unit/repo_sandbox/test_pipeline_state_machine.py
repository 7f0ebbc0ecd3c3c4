"""Repository sandbox state-machine tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from repo_sandbox.provisioning.models import BootstrapRecord, PipelineState, Stage
from repo_sandbox.provisioning.state_machine import (
    ALLOWED_TRANSITIONS,
    DEFAULT_TIMEOUT_SECONDS,
    InvalidStateTransition,
    advance_to,
    create_initial_state,
    deadline_exceeded,
    mark_failed,
    record_bootstrap_command,
    record_bootstrap_path,
    record_bootstrap_result,
    record_clone,
    timeout_message,
)


def _t(seconds: int) -> datetime:
    return datetime(2026, 2, 13, 12, 0, 0, tzinfo=UTC) + timedelta(seconds=seconds)


def _state(*, bootstrap: BootstrapRecord | None = None, timeout: int = 300) -> PipelineState:
    return create_initial_state(
        pipeline_id='pl_1',
        sandbox_id='sb_1',
        repository='  https://github.com/acme/widget.git ',
        directory='/home/daytona/widget',
        now=_t(0),
        bootstrap=bootstrap,
        timeout_seconds=timeout,
    )


def _bootstrapping() -> PipelineState:
    state = _state(bootstrap=BootstrapRecord(source='file', path='scripts/setup.sh'))
    state = record_clone(state, started_at=_t(1), finished_at=_t(2))
    state = record_bootstrap_command(state, session_id='s1', command_id='c1', now=_t(3))
    return advance_to(state, Stage.BOOTSTRAPPING)


class TestCreateInitialState:
    def test_defaults(self):
        state = _state()
        assert state.stage is Stage.PREPARING_SANDBOX
        assert state.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
        assert state.repository == 'https://github.com/acme/widget.git'
        assert state.clone is None
        assert state.failure is None
        assert not state.is_terminal

    def test_rejects_naive_now(self):
        with pytest.raises(ValueError, match='timezone-aware'):
            create_initial_state(
                pipeline_id='pl_1',
                sandbox_id='sb_1',
                repository='https://github.com/acme/widget.git',
                directory='/home/daytona/widget',
                now=datetime(2026, 2, 13, 12, 0, 0),
            )

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError, match='timeout_seconds must be >= 1'):
            _state(timeout=0)


class TestTransitions:
    def test_preparing_to_done_without_bootstrap(self):
        state = record_clone(_state(), started_at=_t(1), finished_at=_t(2))
        done = advance_to(state, Stage.DONE)
        assert done.is_done
        assert done.is_terminal

    def test_bootstrapping_requires_command(self):
        state = _state(bootstrap=BootstrapRecord(source='file', path='setup.sh'))
        with pytest.raises(InvalidStateTransition):
            advance_to(state, Stage.BOOTSTRAPPING)

    def test_full_sequence(self):
        state = _bootstrapping()
        assert state.stage is Stage.BOOTSTRAPPING
        state = record_bootstrap_result(state, exit_code=0, result='ok', now=_t(4))
        state = advance_to(state, Stage.DONE)
        assert state.bootstrap.exit_code == 0
        assert state.bootstrap.finished_at == _t(4)

    def test_rejects_regression(self):
        with pytest.raises(InvalidStateTransition):
            advance_to(_bootstrapping(), Stage.PREPARING_SANDBOX)

    def test_done_is_final(self):
        done = advance_to(_state(), Stage.DONE)
        with pytest.raises(InvalidStateTransition):
            advance_to(done, Stage.DONE)
        with pytest.raises(InvalidStateTransition):
            mark_failed(done, message='late', now=_t(5))

    def test_allowed_transitions_is_read_only(self):
        with pytest.raises(TypeError):
            ALLOWED_TRANSITIONS[Stage.DONE] = frozenset({Stage.BOOTSTRAPPING})  # type: ignore[index]


class TestRecords:
    def test_clone_recorded_once(self):
        state = record_clone(_state(), started_at=_t(1), finished_at=_t(2))
        with pytest.raises(InvalidStateTransition):
            record_clone(state, started_at=_t(3), finished_at=_t(4))

    def test_clone_only_while_preparing(self):
        with pytest.raises(InvalidStateTransition):
            record_clone(_bootstrapping(), started_at=_t(5), finished_at=_t(6))

    def test_command_id_set_once(self):
        state = _bootstrapping()
        with pytest.raises(InvalidStateTransition):
            record_bootstrap_command(state, session_id='s2', command_id='c2', now=_t(5))

    def test_bootstrap_path_rewrite(self):
        state = _state(bootstrap=BootstrapRecord(source='inline', script='echo hi'))
        state = record_bootstrap_path(state, '/home/daytona/.repo-sandbox/bootstrap.sh')
        assert state.bootstrap.path == '/home/daytona/.repo-sandbox/bootstrap.sh'
        assert state.bootstrap.script == 'echo hi'

    def test_result_requires_bootstrapping_stage(self):
        state = _state(bootstrap=BootstrapRecord(source='file', path='setup.sh'))
        with pytest.raises(InvalidStateTransition):
            record_bootstrap_result(state, exit_code=0, result='', now=_t(1))

    def test_helpers_do_not_mutate(self):
        state = _state()
        record_clone(state, started_at=_t(1), finished_at=_t(2))
        assert state.clone is None


class TestFailure:
    def test_mark_failed_keeps_stage(self):
        failed = mark_failed(_bootstrapping(), message='boom', now=_t(9))
        assert failed.stage is Stage.BOOTSTRAPPING
        assert failed.is_failed
        assert failed.failure.reason == 'error'
        assert failed.failure.message == 'boom'

    def test_failed_state_rejects_everything(self):
        failed = mark_failed(_state(), message='boom', now=_t(9))
        with pytest.raises(InvalidStateTransition):
            advance_to(failed, Stage.DONE)
        with pytest.raises(InvalidStateTransition):
            mark_failed(failed, message='again', now=_t(10))


class TestDeadline:
    def test_not_exceeded_at_boundary(self):
        assert not deadline_exceeded(_state(timeout=60), now=_t(60))

    def test_exceeded_past_boundary(self):
        assert deadline_exceeded(_state(timeout=60), now=_t(61))

    def test_measured_from_start_regardless_of_stage(self):
        state = _bootstrapping()
        assert deadline_exceeded(state, now=_t(301))

    def test_message_names_stage_and_timeout(self):
        assert timeout_message(_bootstrapping()) == (
            'sandbox creation failed on stage bootstrapping after 300s'
        )


class TestSerialization:
    def test_round_trip_uses_camel_case(self):
        state = _bootstrapping()
        data = state.to_json()
        assert b'"pipelineId":"pl_1"' in data
        assert b'"cmdId":"c1"' in data
        assert b'"from":"file"' in data
        assert b'"stage":"bootstrapping"' in data
        assert PipelineState.from_json(data) == state

    def test_payload_omits_absent_bootstrap(self):
        state = advance_to(
            record_clone(_state(), started_at=_t(1), finished_at=_t(2)), Stage.DONE,
        )
        payload = state.to_payload()
        assert 'bootstrap' not in payload
        assert payload['stage'] == 'done'
        assert payload['sandboxId'] == 'sb_1'
