"""Shell command construction for commands run inside the sandbox.

Every interpolated value goes through ``shlex.quote``; nothing user-supplied
is ever concatenated into a command unquoted.
"""

from __future__ import annotations

import posixpath
import shlex
from typing import Iterable

from .repository import SANDBOX_HOME_DIR

SANDBOX_BASE_DIR = posixpath.join(SANDBOX_HOME_DIR, '.repo-sandbox')
INLINE_BOOTSTRAP_PATH = posixpath.join(SANDBOX_BASE_DIR, 'bootstrap.sh')
SECRETS_ENV_FILE = posixpath.join(SANDBOX_BASE_DIR, 'secrets.env.sh')

_ENV_SCRIPT_HEADER = (
    '#!/bin/sh',
    '# Generated by repo-sandbox. Do not edit.',
)


def quote(value: str) -> str:
    """Return a shell-safe quoted form of *value*."""
    return shlex.quote(value)


def normalize_script(script: str) -> str:
    """Ensure the script ends with a newline."""
    return script if script.endswith('\n') else script + '\n'


def bootstrap_command(directory: str, script_path: str) -> str:
    """``cd <directory> && sh <script_path>``, both values quoted."""
    return f'cd {quote(directory)} && sh {quote(script_path)}'


def wrap_with_secret_env(command: str, env_file: str = SECRETS_ENV_FILE) -> str:
    """Source the generated secrets env script, if present, before *command*."""
    quoted = quote(env_file)
    return f'if [ -f {quoted} ]; then . {quoted}; fi && {command}'


def secrets_env_script(bindings: Iterable[tuple[str, str]]) -> str:
    """Render ``export NAME=value`` lines, sorted by name.

    Names are validated identifiers; values are arbitrary and quoted.
    """
    lines = list(_ENV_SCRIPT_HEADER)
    for name, value in sorted(bindings, key=lambda binding: binding[0]):
        lines.append(f'export {name}={quote(value)}')
    return '\n'.join(lines) + '\n'


def chmod_private_command(paths: Iterable[str]) -> str | None:
    """``chmod 600`` over the unique, non-blank *paths*, or None if empty."""
    unique = sorted({p.strip() for p in paths if p.strip()})
    if not unique:
        return None
    return 'chmod 600 ' + ' '.join(quote(p) for p in unique)
