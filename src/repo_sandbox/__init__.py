"""Resumable, timeout-bounded provisioning of repository sandboxes."""

from .app import create_app
from .settings import PipelineSettings

__all__ = [
    "PipelineSettings",
    "create_app",
]
