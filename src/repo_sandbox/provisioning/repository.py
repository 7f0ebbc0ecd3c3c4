"""Repository address parsing: which directory will a clone produce?

Git remotes come in two shapes we accept:

  - URI-style: ``https://host/owner/repo.git``, ``ssh://git@host/owner/repo``
  - SCP-style: ``git@host:owner/repo.git``

Anything else is rejected before the pipeline starts.
"""

from __future__ import annotations

import posixpath
from urllib.parse import urlparse

from .errors import RequestValidationError

SANDBOX_HOME_DIR = '/home/daytona'


def is_uri_style(repository: str) -> bool:
    return '://' in repository


def is_scp_style(repository: str) -> bool:
    return '@' in repository and ':' in repository and not is_uri_style(repository)


def resolve_directory_name(repository: str) -> str:
    """Return the directory name ``git clone <repository>`` would create.

    Raises:
        RequestValidationError: If the address is empty, of an unsupported
            shape, or resolves to an empty final segment.
    """
    repository = repository.strip()
    if not repository:
        raise RequestValidationError(
            f'failed to resolve repository directory from {repository!r}'
        )

    if is_uri_style(repository):
        try:
            parsed = urlparse(repository)
        except ValueError as exc:
            raise RequestValidationError(
                f'failed to parse repository URL: {exc}'
            ) from exc
        return _directory_from_path(parsed.path, repository)

    if is_scp_style(repository):
        _, _, remainder = repository.partition(':')
        return _directory_from_path(remainder, repository)

    raise RequestValidationError(
        f'repository must be URI or SCP format: {repository!r}'
    )


def target_directory(repository: str, home_dir: str = SANDBOX_HOME_DIR) -> str:
    """Absolute clone destination inside the sandbox."""
    return posixpath.join(home_dir, resolve_directory_name(repository))


def _directory_from_path(candidate: str, original: str) -> str:
    candidate = candidate.removesuffix('/')
    name = candidate.rsplit('/', 1)[-1]
    name = name.removesuffix('.git')
    if not name:
        raise RequestValidationError(
            f'failed to resolve repository directory from {original!r}'
        )
    return name
