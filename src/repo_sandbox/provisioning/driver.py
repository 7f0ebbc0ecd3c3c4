"""Repository sandbox stage driver: resumable provisioning without blocking.

Orchestrates the flow for one pipeline:
  start -> preparingSandbox --(started)--> clone -> [bootstrap] -> done

No invocation waits on the remote side. ``start`` creates the sandbox and
schedules a ``poll``; every ``poll``:
  1. Loads the persisted state (missing state is a host contract breach).
  2. Returns immediately for terminal states, without remote calls or writes.
  3. Fails the pipeline once the global deadline has passed.
  4. Performs the stage's remote calls via the injected client.
  5. Persists the new state, then schedules the next poll or finalizes.

Transient probe errors only reschedule. Fatal action errors are recorded as
a failure on the state and reported to the sink exactly once.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from ..observability.logging import bound_pipeline
from ..observability.metrics import (
    PIPELINES_FINISHED_TOTAL,
    PIPELINES_STARTED_TOTAL,
    POLLS_TOTAL,
)
from ..protocols import (
    ExecutionSink,
    SandboxClient,
    Scheduler,
    SecretResolver,
    StateStore,
)
from ..providers.models import CreateSandboxRequest, shorten
from .commands import (
    INLINE_BOOTSTRAP_PATH,
    SANDBOX_BASE_DIR,
    bootstrap_command,
    normalize_script,
    wrap_with_secret_env,
)
from .errors import PipelineStateError, UnknownActionError
from .models import (
    BOOTSTRAP_FROM_INLINE,
    BootstrapRecord,
    PipelineState,
    ProvisioningRequest,
    Stage,
)
from .repository import target_directory
from .secrets import (
    SecretInjectionError,
    clone_repository_request,
    ensure_folder_exists,
    inject_sandbox_secrets,
)
from .state_machine import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    FAILURE_REASON,
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
from .validation import bootstrap_record_from_request, validate_request

logger = logging.getLogger(__name__)

POLL_ACTION = 'poll'
ACTIONS = (POLL_ACTION,)

OUTPUT_CHANNEL = 'default'
PAYLOAD_TYPE = 'repository.sandbox'

SANDBOX_STATE_STARTED = 'started'
SANDBOX_STATE_ERROR = 'error'


class CleanupPolicy(str, Enum):
    """What happens to a created sandbox when its pipeline fails."""

    KEEP = 'keep'
    DELETE = 'delete'


class _StepFailed(Exception):
    """Fatal action error; the message is what the sink receives.

    ``state`` carries records made before the failure, if any.
    """

    def __init__(self, message: str, state: PipelineState | None = None) -> None:
        self.state = state
        super().__init__(message)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_session_id() -> str:
    return str(uuid.uuid4())


class RepositorySandboxDriver:
    """Drives repository sandbox pipelines through their stages.

    All collaborators are injected; the driver keeps no state of its own
    between invocations.
    """

    def __init__(
        self,
        *,
        client: SandboxClient,
        secrets: SecretResolver,
        store: StateStore,
        scheduler: Scheduler,
        sink: ExecutionSink,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        cleanup_policy: CleanupPolicy = CleanupPolicy.KEEP,
        clock: Callable[[], datetime] = _now,
        session_id_factory: Callable[[], str] = _new_session_id,
    ) -> None:
        self._client = client
        self._secrets = secrets
        self._store = store
        self._scheduler = scheduler
        self._sink = sink
        self._poll_interval = poll_interval_seconds
        self._timeout = timeout_seconds
        self._cleanup_policy = cleanup_policy
        self._clock = clock
        self._session_id_factory = session_id_factory

    # ── Entry points ────────────────────────────────────────────────

    async def start(
        self,
        request: ProvisioningRequest,
        *,
        pipeline_id: str | None = None,
    ) -> PipelineState:
        """Validate *request*, create the sandbox, and schedule the first poll.

        Raises:
            RequestValidationError: Before any remote call.
            Exception: Whatever the client raises if sandbox creation fails;
                nothing is persisted in that case.
        """
        validate_request(request)
        bootstrap = bootstrap_record_from_request(request)
        directory = target_directory(request.repository)
        pipeline_id = pipeline_id or str(uuid.uuid4())

        with bound_pipeline(pipeline_id):
            sandbox = await self._client.create_sandbox(
                CreateSandboxRequest(
                    snapshot=request.snapshot or None,
                    target=request.target or None,
                    auto_stop_interval=request.auto_stop_interval or None,
                    env=request.env_map(),
                )
            )
            logger.info(
                'Created sandbox %s',
                sandbox.id,
                extra={'sandbox_id': sandbox.id, 'directory': directory},
            )

            state = create_initial_state(
                pipeline_id=pipeline_id,
                sandbox_id=sandbox.id,
                repository=request.repository,
                directory=directory,
                now=self._clock(),
                secrets=request.secrets,
                bootstrap=bootstrap,
                timeout_seconds=self._timeout,
            )
            await self._save(state)
            PIPELINES_STARTED_TOTAL.inc()
            await self._schedule_poll(pipeline_id)
            return state

    async def handle_action(self, pipeline_id: str, name: str) -> PipelineState:
        """Dispatch a scheduler re-invocation by action name."""
        if name == POLL_ACTION:
            return await self.poll(pipeline_id)
        raise UnknownActionError(name)

    async def load(self, pipeline_id: str) -> PipelineState | None:
        data = await self._store.load(pipeline_id)
        if data is None:
            return None
        try:
            return PipelineState.from_json(data)
        except ValueError as exc:
            raise PipelineStateError(
                pipeline_id, f'failed to decode state: {exc}'
            ) from exc

    async def poll(self, pipeline_id: str) -> PipelineState:
        """Advance the pipeline by at most one stage."""
        with bound_pipeline(pipeline_id):
            state = await self.load(pipeline_id)
            if state is None:
                raise PipelineStateError(pipeline_id, 'no persisted state')

            if state.is_terminal:
                POLLS_TOTAL.labels(stage=state.stage.value, result='terminal').inc()
                return state

            if deadline_exceeded(state, now=self._clock()):
                message = timeout_message(state)
                logger.error(message, extra={'sandbox_id': state.sandbox_id})
                POLLS_TOTAL.labels(stage=state.stage.value, result='timeout').inc()
                return await self._fail(state, message)

            try:
                if state.stage is Stage.PREPARING_SANDBOX:
                    return await self._poll_preparing(state)
                if state.stage is Stage.BOOTSTRAPPING:
                    return await self._poll_bootstrapping(state)
            except _StepFailed as exc:
                logger.error(str(exc), extra={'sandbox_id': state.sandbox_id})
                POLLS_TOTAL.labels(stage=state.stage.value, result='failed').inc()
                failed = exc.state if exc.state is not None else state
                return await self._fail(failed, str(exc))

            raise PipelineStateError(
                pipeline_id, f'unknown stage: {state.stage.value}'
            )

    # ── Stage: preparingSandbox ─────────────────────────────────────

    async def _poll_preparing(self, state: PipelineState) -> PipelineState:
        try:
            sandbox = await self._client.get_sandbox(state.sandbox_id)
        except Exception as exc:
            logger.warning(
                'Failed to get sandbox %s: %s',
                state.sandbox_id,
                exc,
                extra={'sandbox_id': state.sandbox_id},
            )
            return await self._reschedule(state, 'probe_error')

        if sandbox.state == SANDBOX_STATE_ERROR:
            raise _StepFailed(f'sandbox {state.sandbox_id} failed to start')

        if sandbox.state != SANDBOX_STATE_STARTED:
            return await self._reschedule(state, 'waiting')

        try:
            await inject_sandbox_secrets(
                self._client, self._secrets, state.sandbox_id, state.secrets,
            )
        except SecretInjectionError as exc:
            raise _StepFailed(f'failed to inject sandbox secrets: {exc}') from exc

        return await self._clone(state)

    async def _clone(self, state: PipelineState) -> PipelineState:
        try:
            request = await clone_repository_request(self._secrets, state)
        except SecretInjectionError as exc:
            raise _StepFailed(str(exc)) from exc

        started_at = self._clock()
        try:
            await self._client.clone_repository(state.sandbox_id, request)
        except Exception as exc:
            state = record_clone(
                state, started_at=started_at, finished_at=self._clock(), error=str(exc),
            )
            raise _StepFailed(f'repository clone failed: {exc}', state) from exc

        state = record_clone(state, started_at=started_at, finished_at=self._clock())
        logger.info(
            'Cloned %s into %s',
            state.repository,
            state.directory,
            extra={'sandbox_id': state.sandbox_id},
        )

        if state.bootstrap is None:
            return await self._finish(state)

        return await self._start_bootstrap(state)

    async def _start_bootstrap(self, state: PipelineState) -> PipelineState:
        if self._require_bootstrap(state).source == BOOTSTRAP_FROM_INLINE:
            state = await self._upload_inline_script(state)

        session_id = self._session_id_factory()
        try:
            await self._client.create_session(state.sandbox_id, session_id)
        except Exception as exc:
            raise _StepFailed(f'failed to create session: {exc}', state) from exc

        command = wrap_with_secret_env(
            bootstrap_command(state.directory, self._require_bootstrap(state).path or '')
        )
        try:
            response = await self._client.execute_session_command(
                state.sandbox_id, session_id, command,
            )
        except Exception as exc:
            raise _StepFailed(f'failed to execute bootstrap script: {exc}', state) from exc

        state = record_bootstrap_command(
            state, session_id=session_id, command_id=response.cmd_id, now=self._clock(),
        )
        state = advance_to(state, Stage.BOOTSTRAPPING)
        logger.info(
            'Started bootstrap command %s in session %s',
            response.cmd_id,
            session_id,
            extra={'sandbox_id': state.sandbox_id},
        )
        return await self._reschedule(state, 'bootstrap_started', persist=True)

    async def _upload_inline_script(self, state: PipelineState) -> PipelineState:
        script = self._require_bootstrap(state).script
        if not script:
            raise _StepFailed(
                'bootstrap.script is required when bootstrap.from is inline', state,
            )

        try:
            await ensure_folder_exists(self._client, state.sandbox_id, SANDBOX_BASE_DIR)
        except SecretInjectionError as exc:
            raise _StepFailed(str(exc), state) from exc

        try:
            await self._client.upload_file(
                state.sandbox_id,
                INLINE_BOOTSTRAP_PATH,
                normalize_script(script).encode(),
            )
        except Exception as exc:
            raise _StepFailed(
                f'failed to upload inline bootstrap script: {exc}', state,
            ) from exc

        return record_bootstrap_path(state, INLINE_BOOTSTRAP_PATH)

    # ── Stage: bootstrapping ────────────────────────────────────────

    async def _poll_bootstrapping(self, state: PipelineState) -> PipelineState:
        bootstrap = state.bootstrap
        if bootstrap is None or not bootstrap.command_id:
            raise PipelineStateError(
                state.pipeline_id, 'bootstrapping without a bootstrap command',
            )

        try:
            session = await self._client.get_session(
                state.sandbox_id, bootstrap.session_id,
            )
        except Exception as exc:
            logger.warning(
                'Failed to get session %s: %s',
                bootstrap.session_id,
                exc,
                extra={'sandbox_id': state.sandbox_id},
            )
            return await self._reschedule(state, 'probe_error')

        command = session.find_command(bootstrap.command_id)
        if command is None or command.exit_code is None:
            return await self._reschedule(state, 'waiting')

        result = ''
        try:
            result = await self._client.get_session_command_logs(
                state.sandbox_id, bootstrap.session_id, bootstrap.command_id,
            )
        except Exception as exc:
            logger.warning(
                'Failed to get command logs for %s: %s',
                bootstrap.command_id,
                exc,
                extra={'sandbox_id': state.sandbox_id},
            )

        state = record_bootstrap_result(
            state, exit_code=command.exit_code, result=result, now=self._clock(),
        )

        if command.exit_code != 0:
            raise _StepFailed(
                f'bootstrap script failed with exit code {command.exit_code}: '
                f'{shorten(result)}',
                state,
            )

        return await self._finish(state)

    # ── Finalization ────────────────────────────────────────────────

    async def _finish(self, state: PipelineState) -> PipelineState:
        state = advance_to(state, Stage.DONE)
        await self._save(state)
        await self._sink.emit(
            state.pipeline_id, OUTPUT_CHANNEL, PAYLOAD_TYPE, state.to_payload(),
        )
        PIPELINES_FINISHED_TOTAL.labels(outcome='done', stage=state.stage.value).inc()
        POLLS_TOTAL.labels(stage=state.stage.value, result='done').inc()
        logger.info(
            'Repository sandbox %s is ready',
            state.sandbox_id,
            extra={'sandbox_id': state.sandbox_id},
        )
        return state

    async def _fail(self, state: PipelineState, message: str) -> PipelineState:
        state = mark_failed(state, message=message, now=self._clock())
        await self._save(state)
        await self._sink.fail(state.pipeline_id, FAILURE_REASON, message)
        PIPELINES_FINISHED_TOTAL.labels(outcome='failed', stage=state.stage.value).inc()
        await self._compensate(state)
        return state

    async def _compensate(self, state: PipelineState) -> None:
        if self._cleanup_policy is not CleanupPolicy.DELETE:
            return
        try:
            await self._client.delete_sandbox(state.sandbox_id, force=True)
        except Exception as exc:
            logger.warning(
                'Failed to delete sandbox %s after failure: %s',
                state.sandbox_id,
                exc,
                extra={'sandbox_id': state.sandbox_id},
            )

    async def _reschedule(
        self,
        state: PipelineState,
        result: str,
        *,
        persist: bool = False,
    ) -> PipelineState:
        if persist:
            await self._save(state)
        POLLS_TOTAL.labels(stage=state.stage.value, result=result).inc()
        await self._schedule_poll(state.pipeline_id)
        return state

    async def _schedule_poll(self, pipeline_id: str) -> None:
        await self._scheduler.schedule(pipeline_id, POLL_ACTION, self._poll_interval)

    async def _save(self, state: PipelineState) -> None:
        await self._store.save(state.pipeline_id, state.to_json())

    @staticmethod
    def _require_bootstrap(state: PipelineState) -> BootstrapRecord:
        if state.bootstrap is None:
            raise PipelineStateError(state.pipeline_id, 'no bootstrap record')
        return state.bootstrap
