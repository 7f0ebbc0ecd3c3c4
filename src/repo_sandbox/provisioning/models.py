"""Request and persisted-state documents for repository sandbox pipelines.

``ProvisioningRequest`` is the immutable caller input. ``PipelineState`` is
the only thing that survives between driver invocations; it is serialized
with camelCase keys and handed to the state store verbatim.

Failed is not a stage value: a pipeline has failed when ``failure`` is set.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

BOOTSTRAP_FROM_INLINE = 'inline'
BOOTSTRAP_FROM_FILE = 'file'

SECRET_TYPE_FILE = 'file'
SECRET_TYPE_ENV_VAR = 'env-var'


class Stage(str, Enum):
    """Persisted pipeline phase."""

    PREPARING_SANDBOX = 'preparingSandbox'
    BOOTSTRAPPING = 'bootstrapping'
    DONE = 'done'


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore', frozen=True)


# ── Request ──────────────────────────────────────────────────────────


class SecretKeyRef(_Document):
    """Reference to one key inside a named secret store entry."""

    secret: str = ''
    key: str = ''

    def is_set(self) -> bool:
        return bool(self.secret.strip()) and bool(self.key.strip())


class SandboxSecret(_Document):
    """A secret to inject into the sandbox, as a file or an env variable."""

    type: str = ''
    path: str = ''
    name: str = ''
    value: SecretKeyRef = Field(default_factory=SecretKeyRef)


class EnvVariable(_Document):
    name: str = ''
    value: str = ''


class BootstrapSpec(_Document):
    source: str = Field(default='', alias='from')
    script: str = ''
    path: str = ''


class ProvisioningRequest(_Document):
    """Caller input for one repository sandbox pipeline."""

    snapshot: str = ''
    target: str = ''
    auto_stop_interval: int = Field(default=0, alias='autoStopInterval')
    env: list[EnvVariable] = Field(default_factory=list)
    secrets: list[SandboxSecret] = Field(default_factory=list)
    repository: str = ''
    bootstrap: BootstrapSpec | None = None

    def env_map(self) -> dict[str, str] | None:
        if not self.env:
            return None
        return {item.name.strip(): item.value for item in self.env}


# ── Persisted state ──────────────────────────────────────────────────


class CloneRecord(_Document):
    started_at: datetime = Field(alias='startedAt')
    finished_at: datetime = Field(alias='finishedAt')
    error: str | None = None


class BootstrapRecord(_Document):
    """Bootstrap descriptor plus the outcome of running it.

    ``path`` is the effective script path: the declared repository path for
    ``file`` descriptors, the uploaded location for ``inline`` ones.
    """

    source: str = Field(alias='from')
    script: str | None = None
    path: str | None = None
    session_id: str = Field(default='', alias='sessionId')
    command_id: str = Field(default='', alias='cmdId')
    started_at: datetime | None = Field(default=None, alias='startedAt')
    finished_at: datetime | None = Field(default=None, alias='finishedAt')
    exit_code: int | None = Field(default=None, alias='exitCode')
    result: str = ''


class FailureRecord(_Document):
    reason: str
    message: str
    failed_at: datetime = Field(alias='failedAt')


class PipelineState(_Document):
    """Continuation context of one pipeline, owned by the stage driver."""

    pipeline_id: str = Field(alias='pipelineId')
    stage: Stage = Stage.PREPARING_SANDBOX
    sandbox_id: str = Field(alias='sandboxId')
    started_at: datetime = Field(alias='startedAt')
    timeout_seconds: int = Field(alias='timeout')
    repository: str
    directory: str
    secrets: list[SandboxSecret] = Field(default_factory=list)
    clone: CloneRecord | None = None
    bootstrap: BootstrapRecord | None = None
    failure: FailureRecord | None = None

    @property
    def is_done(self) -> bool:
        return self.stage is Stage.DONE

    @property
    def is_failed(self) -> bool:
        return self.failure is not None

    @property
    def is_terminal(self) -> bool:
        return self.is_done or self.is_failed

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode()

    @classmethod
    def from_json(cls, data: bytes | str) -> PipelineState:
        return cls.model_validate_json(data)

    def to_payload(self) -> dict:
        """JSON-ready mapping emitted as the pipeline output."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)
