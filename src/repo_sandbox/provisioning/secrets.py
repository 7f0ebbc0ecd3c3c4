"""Secret injection into a started sandbox, and clone credential lookup.

File secrets are uploaded to their declared path. Env-var secrets are
rendered into one shell script that bootstrap commands source before
running. Every written file is made owner-readable only.

Security invariants:
  - Resolved values never appear in log lines or exception messages.
  - Every failure here is fatal for the pipeline: downstream steps assume
    the secrets are in place.
"""

from __future__ import annotations

import logging
import posixpath

from ..protocols import SandboxClient, SecretResolver
from ..providers.models import CloneRepositoryRequest
from .commands import SECRETS_ENV_FILE, chmod_private_command, secrets_env_script
from .models import SECRET_TYPE_ENV_VAR, SECRET_TYPE_FILE, PipelineState, SandboxSecret

logger = logging.getLogger(__name__)

CLONE_TOKEN_SECRET_NAME = 'GITHUB_TOKEN'
CLONE_TOKEN_USERNAME = 'x-access-token'


class SecretInjectionError(RuntimeError):
    """Raised when a secret cannot be resolved or written to the sandbox."""


async def resolve_secret(resolver: SecretResolver, secret: SandboxSecret) -> bytes:
    ref = secret.value
    try:
        return await resolver.resolve(ref.secret, ref.key)
    except Exception as exc:
        raise SecretInjectionError(
            f'failed to resolve secret {ref.secret}/{ref.key}: {exc}'
        ) from exc


def decode_secret(secret: SandboxSecret, value: bytes) -> str:
    """Decode a secret destined for the environment as strict UTF-8."""
    try:
        return value.decode('utf-8')
    except UnicodeDecodeError as exc:
        ref = secret.value
        raise SecretInjectionError(
            f'failed to decode secret {ref.secret}/{ref.key}: value is not valid UTF-8'
        ) from exc


async def ensure_folder_exists(
    client: SandboxClient,
    sandbox_id: str,
    directory: str,
) -> None:
    """Create *directory*, tolerating "already exists" responses."""
    try:
        await client.create_folder(sandbox_id, directory)
    except Exception as exc:
        if 'exist' in str(exc).lower():
            return
        raise SecretInjectionError(
            f'failed to create folder {directory}: {exc}'
        ) from exc


async def inject_sandbox_secrets(
    client: SandboxClient,
    resolver: SecretResolver,
    sandbox_id: str,
    secrets: list[SandboxSecret],
) -> None:
    """Resolve every binding and write it into the sandbox.

    Raises:
        SecretInjectionError: On the first resolution or write failure.
    """
    if not secrets:
        return

    env_bindings: list[tuple[str, str]] = []
    private_paths: list[str] = []

    for secret in secrets:
        value = await resolve_secret(resolver, secret)
        secret_type = secret.type.strip()

        if secret_type == SECRET_TYPE_FILE:
            file_path = secret.path.strip()
            parent = posixpath.dirname(file_path)
            if parent not in ('', '.', '/'):
                await ensure_folder_exists(client, sandbox_id, parent)
            try:
                await client.upload_file(sandbox_id, file_path, value)
            except Exception as exc:
                raise SecretInjectionError(
                    f'failed to upload secret file {file_path}: {exc}'
                ) from exc
            private_paths.append(file_path)

        elif secret_type == SECRET_TYPE_ENV_VAR:
            env_bindings.append((secret.name.strip(), decode_secret(secret, value)))

    if env_bindings:
        await ensure_folder_exists(
            client, sandbox_id, posixpath.dirname(SECRETS_ENV_FILE),
        )
        script = secrets_env_script(env_bindings)
        try:
            await client.upload_file(sandbox_id, SECRETS_ENV_FILE, script.encode())
        except Exception as exc:
            raise SecretInjectionError(
                f'failed to upload secrets env script: {exc}'
            ) from exc
        private_paths.append(SECRETS_ENV_FILE)

    await _restrict_permissions(client, sandbox_id, private_paths)

    logger.info(
        'Injected %d secret(s) into sandbox %s',
        len(secrets),
        sandbox_id,
        extra={'sandbox_id': sandbox_id, 'secret_count': len(secrets)},
    )


async def _restrict_permissions(
    client: SandboxClient,
    sandbox_id: str,
    paths: list[str],
) -> None:
    command = chmod_private_command(paths)
    if command is None:
        return

    try:
        response = await client.execute_command(sandbox_id, command)
    except Exception as exc:
        raise SecretInjectionError(
            f'failed to set secret file permissions: {exc}'
        ) from exc

    if response.exit_code != 0:
        raise SecretInjectionError(
            f'failed to set secret file permissions: {response.short_result()}'
        )


async def find_clone_token(
    resolver: SecretResolver,
    secrets: list[SandboxSecret],
) -> str:
    """Return the first non-empty ``GITHUB_TOKEN`` env-var secret value.

    An empty string means the clone is attempted without credentials.
    """
    for secret in secrets:
        if secret.type.strip() != SECRET_TYPE_ENV_VAR:
            continue
        if secret.name.strip() != CLONE_TOKEN_SECRET_NAME:
            continue
        if not secret.value.is_set():
            continue

        token = decode_secret(secret, await resolve_secret(resolver, secret))
        if token:
            return token

    return ''


async def clone_repository_request(
    resolver: SecretResolver,
    state: PipelineState,
) -> CloneRepositoryRequest:
    token = await find_clone_token(resolver, state.secrets)
    if not token:
        return CloneRepositoryRequest(url=state.repository, path=state.directory)
    return CloneRepositoryRequest(
        url=state.repository,
        path=state.directory,
        username=CLONE_TOKEN_USERNAME,
        password=token,
    )
