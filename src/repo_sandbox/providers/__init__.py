"""Sandbox provider clients."""

from .daytona_client import (
    DaytonaAPIError,
    DaytonaClient,
    DaytonaNotFoundError,
    DaytonaTimeoutError,
)

__all__ = [
    "DaytonaAPIError",
    "DaytonaClient",
    "DaytonaNotFoundError",
    "DaytonaTimeoutError",
]
