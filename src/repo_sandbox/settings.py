"""Pipeline host configuration settings.

PipelineSettings is the single configuration object accepted by create_app().
It is a plain dataclass (not env-coupled) so tests can inject config without
touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .provisioning.driver import CleanupPolicy
from .provisioning.state_machine import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
)
from .providers.daytona_client import DEFAULT_BASE_URL

_TRUTHY = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Configuration for the repository sandbox host.

    All fields have sensible defaults for local development, where the
    in-memory sandbox client stands in for Daytona. Non-local environments
    must supply a real API key.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Daytona ────────────────────────────────────────────────────
    daytona_api_key: str = ""
    """Bearer API key for Daytona calls. Never log this."""

    daytona_base_url: str = DEFAULT_BASE_URL

    # ── Pipeline ───────────────────────────────────────────────────
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    pipeline_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS

    cleanup_on_failure: bool = False
    """Delete the sandbox when its pipeline fails."""

    state_dir: str = ""
    """Directory for persisted pipeline state. Empty keeps state in memory."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def cleanup_policy(self) -> CleanupPolicy:
        return CleanupPolicy.DELETE if self.cleanup_on_failure else CleanupPolicy.KEEP

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.poll_interval_seconds <= 0:
            errors.append("poll_interval_seconds must be > 0")
        if self.pipeline_timeout_seconds < 1:
            errors.append("pipeline_timeout_seconds must be >= 1")
        if not self.is_local:
            if not self.daytona_api_key:
                errors.append(f"{self.environment}: daytona_api_key is required")
            if not self.state_dir:
                errors.append(f"{self.environment}: state_dir is required")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> PipelineSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct PipelineSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            daytona_api_key=env.get("DAYTONA_API_KEY", ""),
            daytona_base_url=env.get("DAYTONA_BASE_URL", DEFAULT_BASE_URL),
            poll_interval_seconds=float(
                env.get("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS)
            ),
            pipeline_timeout_seconds=int(
                env.get("PIPELINE_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
            ),
            cleanup_on_failure=env.get("CLEANUP_ON_FAILURE", "").strip().lower() in _TRUTHY,
            state_dir=env.get("STATE_DIR", ""),
        )
