"""Secret resolvers backed by the process environment.

A reference ``{secret: "github", key: "token"}`` resolves to the variable
``REPO_SANDBOX_SECRET_GITHUB_TOKEN``: both parts upper-cased, every
character outside ``[A-Z0-9]`` replaced by ``_``.
"""

from __future__ import annotations

import os
import re
from typing import Mapping

ENV_PREFIX = "REPO_SANDBOX_SECRET_"

_UNSAFE = re.compile(r"[^A-Z0-9]")


class SecretNotFoundError(KeyError):
    """Raised when no value is configured for a secret reference."""

    def __init__(self, secret: str, key: str) -> None:
        self.secret = secret
        self.key = key
        super().__init__(f"secret {secret}/{key} not found")

    def __str__(self) -> str:
        return self.args[0]


def env_var_name(secret: str, key: str, prefix: str = ENV_PREFIX) -> str:
    return prefix + _UNSAFE.sub("_", secret.upper()) + "_" + _UNSAFE.sub("_", key.upper())


class EnvironmentSecretResolver:
    """Satisfies the ``SecretResolver`` protocol from ``protocols.py``."""

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        *,
        prefix: str = ENV_PREFIX,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._prefix = prefix

    async def resolve(self, secret: str, key: str) -> bytes:
        name = env_var_name(secret, key, self._prefix)
        value = self._env.get(name)
        if value is None:
            raise SecretNotFoundError(secret, key)
        return value.encode("utf-8")
