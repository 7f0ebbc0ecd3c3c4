"""Synchronous validation of provisioning requests.

Nothing here touches the network: a request that fails validation is
rejected before the sandbox is created.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from pydantic import ValidationError

from .errors import RequestValidationError
from .models import (
    BOOTSTRAP_FROM_FILE,
    BOOTSTRAP_FROM_INLINE,
    SECRET_TYPE_ENV_VAR,
    SECRET_TYPE_FILE,
    BootstrapRecord,
    ProvisioningRequest,
    SandboxSecret,
)

ENV_VARIABLE_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def parse_request(configuration: Mapping[str, Any]) -> ProvisioningRequest:
    """Decode and validate a raw configuration mapping."""
    try:
        request = ProvisioningRequest.model_validate(dict(configuration))
    except ValidationError as exc:
        raise RequestValidationError(
            f'failed to decode configuration: {exc}'
        ) from exc
    validate_request(request)
    return request


def validate_request(request: ProvisioningRequest) -> None:
    """Reject malformed requests.

    Raises:
        RequestValidationError: On the first problem found.
    """
    if request.snapshot and not request.snapshot.strip():
        raise RequestValidationError('snapshot must not be empty if provided')

    if request.auto_stop_interval < 0:
        raise RequestValidationError('autoStopInterval cannot be negative')

    if not request.repository.strip():
        raise RequestValidationError('repository is required')

    for env in request.env:
        name = env.name.strip()
        if not name:
            raise RequestValidationError('env variable name is required')
        if not ENV_VARIABLE_NAME_RE.match(name):
            raise RequestValidationError(f'invalid env variable name: {env.name}')

    validate_secrets(request.secrets)

    try:
        bootstrap_record_from_request(request)
    except RequestValidationError as exc:
        raise RequestValidationError(
            f'failed to validate bootstrap configuration: {exc}'
        ) from exc


def validate_secrets(secrets: list[SandboxSecret]) -> None:
    for i, secret in enumerate(secrets):
        secret_type = secret.type.strip()
        if not secret_type:
            raise RequestValidationError(f'secrets[{i}].type is required')

        if not secret.value.is_set():
            raise RequestValidationError(
                f'secrets[{i}].value.secret and secrets[{i}].value.key are required'
            )

        if secret_type == SECRET_TYPE_FILE:
            if not secret.path.strip():
                raise RequestValidationError(
                    f'secrets[{i}].path is required for file secrets'
                )
        elif secret_type == SECRET_TYPE_ENV_VAR:
            name = secret.name.strip()
            if not name:
                raise RequestValidationError(
                    f'secrets[{i}].name is required for env-var secrets'
                )
            if not ENV_VARIABLE_NAME_RE.match(name):
                raise RequestValidationError(
                    f'invalid env variable name: {secret.name}'
                )
        else:
            raise RequestValidationError(f'invalid secret type: {secret.type}')


def bootstrap_record_from_request(
    request: ProvisioningRequest,
) -> BootstrapRecord | None:
    """Build the initial bootstrap record, or None when none was requested."""
    descriptor = request.bootstrap
    if descriptor is None:
        return None

    if not descriptor.source:
        raise RequestValidationError('bootstrap.from is required')

    if descriptor.source == BOOTSTRAP_FROM_INLINE:
        if not descriptor.script.strip():
            raise RequestValidationError(
                'bootstrap.script is required when bootstrap.from is inline'
            )
        return BootstrapRecord(source=descriptor.source, script=descriptor.script)

    if descriptor.source == BOOTSTRAP_FROM_FILE:
        if not descriptor.path.strip():
            raise RequestValidationError(
                'bootstrap.path is required when bootstrap.from is file'
            )
        return BootstrapRecord(source=descriptor.source, path=descriptor.path)

    raise RequestValidationError(f'invalid bootstrap.from: {descriptor.source}')
