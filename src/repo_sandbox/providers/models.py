"""Request and response bodies for the Daytona sandbox API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# Characters of command output kept in failure messages.
SHORT_RESULT_LENGTH = 200


def shorten(text: str, limit: int = SHORT_RESULT_LENGTH) -> str:
    """Strip *text* and cut it to *limit* characters, marking the cut."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class _APIModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateSandboxRequest(_APIModel):
    snapshot: str | None = None
    target: str | None = None
    auto_stop_interval: int | None = Field(default=None, alias="autoStopInterval")
    env: dict[str, str] | None = None

    def to_body(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Sandbox(_APIModel):
    id: str
    state: str = ""


class CloneRepositoryRequest(_APIModel):
    url: str
    path: str
    username: str | None = None
    password: str | None = None

    def to_body(self) -> dict:
        return self.model_dump(exclude_none=True)

    def __repr__(self) -> str:
        password = "<redacted>" if self.password else None
        return (
            f"CloneRepositoryRequest(url={self.url!r}, path={self.path!r}, "
            f"username={self.username!r}, password={password!r})"
        )


class ExecuteCommandResponse(_APIModel):
    exit_code: int = Field(alias="exitCode")
    result: str = ""

    def short_result(self, limit: int = SHORT_RESULT_LENGTH) -> str:
        return shorten(self.result, limit)


class SessionExecuteResponse(_APIModel):
    cmd_id: str = Field(alias="cmdId")


class SessionCommand(_APIModel):
    id: str
    command: str = ""
    exit_code: int | None = Field(default=None, alias="exitCode")


class Session(_APIModel):
    session_id: str = Field(default="", alias="sessionId")
    commands: list[SessionCommand] = Field(default_factory=list)

    def find_command(self, command_id: str) -> SessionCommand | None:
        for command in self.commands:
            if command.id == command_id:
                return command
        return None
