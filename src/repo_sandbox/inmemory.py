"""In-memory collaborator implementations for local development and tests.

These satisfy the protocol interfaces but keep everything in dicts and lists
(no persistence across restarts). ``InMemorySandboxClient`` is scriptable:
probe responses and failures are queued up front and every call is recorded.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable

from .providers.models import (
    CloneRepositoryRequest,
    CreateSandboxRequest,
    ExecuteCommandResponse,
    Sandbox,
    Session,
    SessionCommand,
    SessionExecuteResponse,
)

Scripted = Any  # a value, or an Exception instance to raise


def _next(queue: list[Scripted]) -> Any:
    """Pop the next scripted value; the last one repeats forever."""
    value = queue.pop(0) if len(queue) > 1 else queue[0]
    if isinstance(value, Exception):
        raise value
    return value


class InMemorySandboxClient:
    """Test sandbox client that tracks calls.

    Args:
        sandbox_states: Successive ``get_sandbox`` states. Exception
            instances are raised instead of returned.
        exit_codes: Successive exit codes reported for the pending session
            command by ``get_session``. ``None`` means still running.
        logs: Text returned by ``get_session_command_logs``.
        failures: Method name -> exception raised on every call.
    """

    def __init__(
        self,
        *,
        sandbox_states: Iterable[Scripted] = ("started",),
        exit_codes: Iterable[Scripted] = (0,),
        logs: str = "",
        execute_exit_code: int = 0,
        failures: dict[str, Exception] | None = None,
    ) -> None:
        self._sandbox_states = list(sandbox_states)
        self._exit_codes = list(exit_codes)
        self._logs = logs
        self._execute_exit_code = execute_exit_code
        self.failures = dict(failures or {})

        self.calls: list[tuple[str, Any]] = []
        self.sandboxes: dict[str, CreateSandboxRequest] = {}
        self.deleted: list[str] = []
        self.folders: set[str] = set()
        self.files: dict[str, bytes] = {}
        self.clones: list[CloneRepositoryRequest] = []
        self.commands: list[str] = []
        self.sessions: dict[str, list[SessionCommand]] = {}

    def calls_to(self, method: str) -> list[Any]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, args: Any) -> None:
        self.calls.append((method, args))
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    async def create_sandbox(self, request: CreateSandboxRequest) -> Sandbox:
        self._record("create_sandbox", request)
        sandbox_id = f"sb_{uuid.uuid4().hex[:8]}"
        self.sandboxes[sandbox_id] = request
        return Sandbox(id=sandbox_id, state="creating")

    async def get_sandbox(self, sandbox_id: str) -> Sandbox:
        self._record("get_sandbox", sandbox_id)
        return Sandbox(id=sandbox_id, state=_next(self._sandbox_states))

    async def delete_sandbox(self, sandbox_id: str, *, force: bool = False) -> None:
        self._record("delete_sandbox", (sandbox_id, force))
        self.deleted.append(sandbox_id)

    async def create_folder(self, sandbox_id: str, path: str, mode: str = "755") -> None:
        self._record("create_folder", path)
        self.folders.add(path)

    async def upload_file(self, sandbox_id: str, path: str, content: bytes) -> None:
        self._record("upload_file", path)
        self.files[path] = content

    async def clone_repository(
        self, sandbox_id: str, request: CloneRepositoryRequest,
    ) -> None:
        self._record("clone_repository", request)
        self.clones.append(request)

    async def execute_command(self, sandbox_id: str, command: str) -> ExecuteCommandResponse:
        self._record("execute_command", command)
        return ExecuteCommandResponse(exit_code=self._execute_exit_code, result="")

    async def create_session(self, sandbox_id: str, session_id: str) -> None:
        self._record("create_session", session_id)
        self.sessions[session_id] = []

    async def execute_session_command(
        self, sandbox_id: str, session_id: str, command: str,
    ) -> SessionExecuteResponse:
        self._record("execute_session_command", command)
        self.commands.append(command)
        cmd_id = f"cmd_{len(self.commands)}"
        self.sessions.setdefault(session_id, []).append(
            SessionCommand(id=cmd_id, command=command)
        )
        return SessionExecuteResponse(cmd_id=cmd_id)

    async def get_session(self, sandbox_id: str, session_id: str) -> Session:
        self._record("get_session", session_id)
        exit_code = _next(self._exit_codes)
        commands = [
            command.model_copy(update={"exit_code": exit_code})
            for command in self.sessions.get(session_id, [])
        ]
        return Session(session_id=session_id, commands=commands)

    async def get_session_command_logs(
        self, sandbox_id: str, session_id: str, command_id: str,
    ) -> str:
        self._record("get_session_command_logs", command_id)
        return self._logs


class InMemorySecretResolver:
    def __init__(self, values: dict[tuple[str, str], bytes | str] | None = None) -> None:
        self._values: dict[tuple[str, str], bytes] = {
            ref: value.encode() if isinstance(value, str) else value
            for ref, value in (values or {}).items()
        }

    async def resolve(self, secret: str, key: str) -> bytes:
        try:
            return self._values[(secret, key)]
        except KeyError:
            raise KeyError(f"secret {secret}/{key} not found") from None


class InMemoryStateStore:
    def __init__(self) -> None:
        self._documents: dict[str, bytes] = {}
        self.writes: list[str] = []

    async def load(self, pipeline_id: str) -> bytes | None:
        return self._documents.get(pipeline_id)

    async def save(self, pipeline_id: str, data: bytes) -> None:
        self.writes.append(pipeline_id)
        self._documents[pipeline_id] = data


class InMemoryScheduler:
    """Records scheduled actions; the caller decides when to run them."""

    def __init__(self) -> None:
        self.scheduled: list[tuple[str, str, float]] = []

    async def schedule(self, pipeline_id: str, action: str, delay_seconds: float) -> None:
        self.scheduled.append((pipeline_id, action, delay_seconds))


class InMemoryExecutionSink:
    def __init__(self) -> None:
        self.emitted: list[tuple[str, str, str, dict[str, Any]]] = []
        self.failures: list[tuple[str, str, str]] = []

    async def emit(
        self, pipeline_id: str, channel: str, payload_type: str, payload: dict[str, Any],
    ) -> None:
        self.emitted.append((pipeline_id, channel, payload_type, payload))

    async def fail(self, pipeline_id: str, reason: str, message: str) -> None:
        self.failures.append((pipeline_id, reason, message))
