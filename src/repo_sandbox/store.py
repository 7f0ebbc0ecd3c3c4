"""File-backed pipeline state store.

One JSON document per pipeline under a state directory. Writes go to a
temporary file first and are moved into place with ``os.replace`` so a
crash mid-write never leaves a truncated document behind.
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from pathlib import Path

_PIPELINE_ID_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$")


class FileStateStore:
    """Satisfies the ``StateStore`` protocol from ``protocols.py``."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, pipeline_id: str) -> Path:
        if not _PIPELINE_ID_RE.match(pipeline_id):
            raise ValueError(f"invalid pipeline id: {pipeline_id!r}")
        return self._directory / f"{pipeline_id}.json"

    async def load(self, pipeline_id: str) -> bytes | None:
        path = self.path_for(pipeline_id)
        return await asyncio.to_thread(self._read, path)

    async def save(self, pipeline_id: str, data: bytes) -> None:
        path = self.path_for(pipeline_id)
        await asyncio.to_thread(self._write, path, data)

    @staticmethod
    def _read(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, path: Path, data: bytes) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
