"""Collaborator protocols for dependency injection.

The stage driver depends only on these contracts. Concrete implementations
(Daytona over HTTP, in-memory for tests and local runs, file-backed state)
are injected by the host.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .providers.models import (
    CloneRepositoryRequest,
    CreateSandboxRequest,
    ExecuteCommandResponse,
    Sandbox,
    Session,
    SessionExecuteResponse,
)


@runtime_checkable
class SandboxClient(Protocol):
    """Remote sandbox lifecycle, file, git, and process operations.

    Methods raise on failure; the driver decides which failures are
    transient and which are fatal.
    """

    async def create_sandbox(self, request: CreateSandboxRequest) -> Sandbox: ...
    async def get_sandbox(self, sandbox_id: str) -> Sandbox: ...
    async def delete_sandbox(self, sandbox_id: str, *, force: bool = False) -> None: ...
    async def create_folder(self, sandbox_id: str, path: str, mode: str = "755") -> None: ...
    async def upload_file(self, sandbox_id: str, path: str, content: bytes) -> None: ...
    async def clone_repository(self, sandbox_id: str, request: CloneRepositoryRequest) -> None: ...
    async def execute_command(self, sandbox_id: str, command: str) -> ExecuteCommandResponse: ...
    async def create_session(self, sandbox_id: str, session_id: str) -> None: ...
    async def execute_session_command(
        self, sandbox_id: str, session_id: str, command: str,
    ) -> SessionExecuteResponse: ...
    async def get_session(self, sandbox_id: str, session_id: str) -> Session: ...
    async def get_session_command_logs(
        self, sandbox_id: str, session_id: str, command_id: str,
    ) -> str: ...


@runtime_checkable
class SecretResolver(Protocol):
    """Resolve one key of a named secret to its raw value."""

    async def resolve(self, secret: str, key: str) -> bytes: ...


@runtime_checkable
class StateStore(Protocol):
    """Persist pipeline state documents byte-for-byte."""

    async def load(self, pipeline_id: str) -> bytes | None: ...
    async def save(self, pipeline_id: str, data: bytes) -> None: ...


@runtime_checkable
class Scheduler(Protocol):
    """Ask the host to invoke a pipeline action again after a delay."""

    async def schedule(self, pipeline_id: str, action: str, delay_seconds: float) -> None: ...


@runtime_checkable
class ExecutionSink(Protocol):
    """Receives the single terminal outcome of a pipeline."""

    async def emit(
        self, pipeline_id: str, channel: str, payload_type: str, payload: dict[str, Any],
    ) -> None: ...
    async def fail(self, pipeline_id: str, reason: str, message: str) -> None: ...
