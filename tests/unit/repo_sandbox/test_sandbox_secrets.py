"""Secret injection into sandboxes and clone credential lookup."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from repo_sandbox.inmemory import InMemorySandboxClient, InMemorySecretResolver
from repo_sandbox.provisioning.commands import SANDBOX_BASE_DIR, SECRETS_ENV_FILE
from repo_sandbox.provisioning.models import SandboxSecret
from repo_sandbox.provisioning.secrets import (
    CLONE_TOKEN_USERNAME,
    SecretInjectionError,
    clone_repository_request,
    ensure_folder_exists,
    find_clone_token,
    inject_sandbox_secrets,
)
from repo_sandbox.provisioning.state_machine import create_initial_state


def _env_secret(name: str, secret: str = 'store', key: str = 'value') -> SandboxSecret:
    return SandboxSecret.model_validate(
        {'type': 'env-var', 'name': name, 'value': {'secret': secret, 'key': key}}
    )


def _file_secret(path: str, secret: str = 'store', key: str = 'file') -> SandboxSecret:
    return SandboxSecret.model_validate(
        {'type': 'file', 'path': path, 'value': {'secret': secret, 'key': key}}
    )


class TestInjectSandboxSecrets:
    @pytest.mark.asyncio
    async def test_no_secrets_makes_no_calls(self):
        client = InMemorySandboxClient()
        await inject_sandbox_secrets(client, InMemorySecretResolver(), 'sb_1', [])
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_env_vars_written_sorted_and_protected(self):
        client = InMemorySandboxClient()
        resolver = InMemorySecretResolver({
            ('store', 'b'): "it's secret",
            ('store', 'a'): 'plain',
        })
        secrets = [_env_secret('ZED', key='b'), _env_secret('ALPHA', key='a')]

        await inject_sandbox_secrets(client, resolver, 'sb_1', secrets)

        assert SANDBOX_BASE_DIR in client.folders
        script = client.files[SECRETS_ENV_FILE].decode()
        assert script.index('export ALPHA=plain') < script.index('export ZED=')
        assert "export ZED='it'\"'\"'s secret'" in script
        assert client.calls_to('execute_command') == [f'chmod 600 {SECRETS_ENV_FILE}']

    @pytest.mark.asyncio
    async def test_file_secrets_uploaded_to_declared_path(self):
        client = InMemorySandboxClient()
        resolver = InMemorySecretResolver({('store', 'file'): b'-----KEY-----'})

        await inject_sandbox_secrets(
            client, resolver, 'sb_1', [_file_secret('/home/daytona/.ssh/id_ed25519')],
        )

        assert client.files['/home/daytona/.ssh/id_ed25519'] == b'-----KEY-----'
        assert '/home/daytona/.ssh' in client.folders
        assert SECRETS_ENV_FILE not in client.files
        assert client.calls_to('execute_command') == [
            'chmod 600 /home/daytona/.ssh/id_ed25519'
        ]

    @pytest.mark.asyncio
    async def test_resolution_failure_is_fatal(self):
        client = InMemorySandboxClient()
        with pytest.raises(SecretInjectionError, match='failed to resolve secret store/value'):
            await inject_sandbox_secrets(
                client, InMemorySecretResolver(), 'sb_1', [_env_secret('TOKEN')],
            )
        assert client.calls_to('upload_file') == []

    @pytest.mark.asyncio
    async def test_chmod_non_zero_exit_is_fatal(self):
        client = InMemorySandboxClient(execute_exit_code=1)
        resolver = InMemorySecretResolver({('store', 'value'): 'x'})
        with pytest.raises(SecretInjectionError, match='permissions'):
            await inject_sandbox_secrets(client, resolver, 'sb_1', [_env_secret('TOKEN')])

    @pytest.mark.asyncio
    async def test_upload_failure_is_fatal(self):
        client = InMemorySandboxClient(failures={'upload_file': RuntimeError('disk full')})
        resolver = InMemorySecretResolver({('store', 'value'): 'x'})
        with pytest.raises(SecretInjectionError, match='disk full'):
            await inject_sandbox_secrets(client, resolver, 'sb_1', [_env_secret('TOKEN')])

    @pytest.mark.asyncio
    async def test_secret_values_not_in_error_messages(self):
        client = InMemorySandboxClient(failures={'upload_file': RuntimeError('denied')})
        resolver = InMemorySecretResolver({('store', 'value'): 'hunter2'})
        with pytest.raises(SecretInjectionError) as excinfo:
            await inject_sandbox_secrets(client, resolver, 'sb_1', [_env_secret('TOKEN')])
        assert 'hunter2' not in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_non_utf8_env_value_is_fatal(self):
        client = InMemorySandboxClient()
        resolver = InMemorySecretResolver({('store', 'value'): b'\xff'})
        with pytest.raises(SecretInjectionError, match='not valid UTF-8'):
            await inject_sandbox_secrets(client, resolver, 'sb_1', [_env_secret('API_KEY')])
        assert SECRETS_ENV_FILE not in client.files

    @pytest.mark.asyncio
    async def test_binary_file_secret_written_verbatim(self):
        client = InMemorySandboxClient()
        resolver = InMemorySecretResolver({('store', 'file'): b'\x00\xff\xfe'})

        await inject_sandbox_secrets(client, resolver, 'sb_1', [_file_secret('/tmp/blob')])

        assert client.files['/tmp/blob'] == b'\x00\xff\xfe'


class TestEnsureFolderExists:
    @pytest.mark.asyncio
    async def test_already_exists_is_tolerated(self):
        client = InMemorySandboxClient(
            failures={'create_folder': RuntimeError('folder already exists')}
        )
        await ensure_folder_exists(client, 'sb_1', '/home/daytona/.repo-sandbox')

    @pytest.mark.asyncio
    async def test_other_errors_raise(self):
        client = InMemorySandboxClient(
            failures={'create_folder': RuntimeError('permission denied')}
        )
        with pytest.raises(SecretInjectionError, match='permission denied'):
            await ensure_folder_exists(client, 'sb_1', '/root/x')


class TestCloneCredentials:
    @pytest.mark.asyncio
    async def test_first_non_empty_token_wins(self):
        resolver = InMemorySecretResolver({
            ('github', 'empty'): '',
            ('github', 'real'): 'ghp_123',
            ('github', 'later'): 'ghp_456',
        })
        secrets = [
            _env_secret('OTHER', 'github', 'later'),
            _env_secret('GITHUB_TOKEN', 'github', 'empty'),
            _env_secret('GITHUB_TOKEN', 'github', 'real'),
            _env_secret('GITHUB_TOKEN', 'github', 'later'),
        ]
        assert await find_clone_token(resolver, secrets) == 'ghp_123'

    @pytest.mark.asyncio
    async def test_file_secret_named_like_token_ignored(self):
        secret = SandboxSecret.model_validate({
            'type': 'file',
            'name': 'GITHUB_TOKEN',
            'path': '/tmp/t',
            'value': {'secret': 'github', 'key': 'token'},
        })
        resolver = InMemorySecretResolver({('github', 'token'): 'ghp_123'})
        assert await find_clone_token(resolver, [secret]) == ''

    @pytest.mark.asyncio
    async def test_non_utf8_token_raises_injection_error(self):
        resolver = InMemorySecretResolver({('github', 'token'): b'\xff\xfe'})
        with pytest.raises(SecretInjectionError, match='failed to decode secret github/token'):
            await find_clone_token(resolver, [_env_secret('GITHUB_TOKEN', 'github', 'token')])

    @pytest.mark.asyncio
    async def test_clone_request_with_token(self):
        state = create_initial_state(
            pipeline_id='pl_1',
            sandbox_id='sb_1',
            repository='https://github.com/acme/private.git',
            directory='/home/daytona/private',
            now=datetime(2026, 2, 13, tzinfo=UTC),
            secrets=[_env_secret('GITHUB_TOKEN', 'github', 'token')],
        )
        resolver = InMemorySecretResolver({('github', 'token'): 'ghp_123'})

        request = await clone_repository_request(resolver, state)

        assert request.url == 'https://github.com/acme/private.git'
        assert request.path == '/home/daytona/private'
        assert request.username == CLONE_TOKEN_USERNAME
        assert request.password == 'ghp_123'
        assert 'ghp_123' not in repr(request)

    @pytest.mark.asyncio
    async def test_public_clone_without_token(self):
        state = create_initial_state(
            pipeline_id='pl_1',
            sandbox_id='sb_1',
            repository='https://github.com/acme/widget.git',
            directory='/home/daytona/widget',
            now=datetime(2026, 2, 13, tzinfo=UTC),
        )
        request = await clone_repository_request(InMemorySecretResolver(), state)
        assert request.username is None
        assert request.password is None
        assert request.to_body() == {
            'url': 'https://github.com/acme/widget.git',
            'path': '/home/daytona/widget',
        }
