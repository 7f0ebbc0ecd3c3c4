"""Run the repository sandbox host: ``python -m repo_sandbox``."""

from __future__ import annotations

import os

import uvicorn

from .app import create_app
from .observability.logging import configure_logging
from .settings import PipelineSettings


def main() -> None:
    configure_logging()
    app = create_app(PipelineSettings.from_env())
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
