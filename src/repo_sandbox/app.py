"""Repository sandbox host: FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires the stage driver to its collaborators and exposes the
pipeline routes.

Usage:
    # Local development (in-memory sandbox client unless an API key is set)
    from repo_sandbox.app import create_app
    app = create_app()

    # Production
    settings = PipelineSettings.from_env()
    app = create_app(settings)

    # Testing (full DI control)
    app = create_app(settings, client=fake_client, scheduler=fake_scheduler)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI
from fastapi.responses import Response

from .inmemory import InMemorySandboxClient, InMemoryStateStore
from .observability.metrics import metrics_text
from .protocols import (
    ExecutionSink,
    SandboxClient,
    Scheduler,
    SecretResolver,
    StateStore,
)
from .providers.daytona_client import DaytonaClient
from .provisioning.driver import RepositorySandboxDriver
from .routes.sandboxes import create_repository_sandbox_router
from .scheduling import AsyncioScheduler
from .secret_resolvers import EnvironmentSecretResolver
from .settings import PipelineSettings
from .sinks import LoggingExecutionSink
from .store import FileStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for the injected collaborators.

    Stored on ``app.state.deps`` so route handlers and tests can reach them.
    """

    client: SandboxClient
    secrets: SecretResolver
    store: StateStore
    scheduler: Scheduler
    sink: ExecutionSink
    driver: RepositorySandboxDriver


def _default_client(settings: PipelineSettings) -> SandboxClient:
    if settings.daytona_api_key:
        return DaytonaClient(
            api_key=settings.daytona_api_key,
            base_url=settings.daytona_base_url,
        )
    return InMemorySandboxClient()


def _default_store(settings: PipelineSettings) -> StateStore:
    if settings.state_dir:
        return FileStateStore(settings.state_dir)
    return InMemoryStateStore()


def build_dependencies(
    settings: PipelineSettings,
    *,
    client: SandboxClient | None = None,
    secrets: SecretResolver | None = None,
    store: StateStore | None = None,
    scheduler: Scheduler | None = None,
    sink: ExecutionSink | None = None,
) -> AppDependencies:
    """Fill unset collaborators with defaults and build the driver."""
    client = client or _default_client(settings)
    secrets = secrets or EnvironmentSecretResolver()
    store = store or _default_store(settings)
    sink = sink or LoggingExecutionSink()
    if scheduler is None:
        scheduler = AsyncioScheduler()

    driver = RepositorySandboxDriver(
        client=client,
        secrets=secrets,
        store=store,
        scheduler=scheduler,
        sink=sink,
        poll_interval_seconds=settings.poll_interval_seconds,
        timeout_seconds=settings.pipeline_timeout_seconds,
        cleanup_policy=settings.cleanup_policy,
    )
    if isinstance(scheduler, AsyncioScheduler):
        scheduler.bind(driver.handle_action)

    return AppDependencies(
        client=client,
        secrets=secrets,
        store=store,
        scheduler=scheduler,
        sink=sink,
        driver=driver,
    )


def create_app(
    settings: PipelineSettings | None = None,
    *,
    client: SandboxClient | None = None,
    secrets: SecretResolver | None = None,
    store: StateStore | None = None,
    scheduler: Scheduler | None = None,
    sink: ExecutionSink | None = None,
) -> FastAPI:
    """Create a configured repository sandbox FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        client..sink: Collaborator overrides. When None, defaults are
            derived from settings.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = PipelineSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Pipeline settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    deps = build_dependencies(
        settings,
        client=client,
        secrets=secrets,
        store=store,
        scheduler=scheduler,
        sink=sink,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Repository sandbox host startup (environment=%s)", settings.environment)
        yield
        if isinstance(deps.scheduler, AsyncioScheduler):
            await deps.scheduler.aclose()
        logger.info("Repository sandbox host shutdown")

    app = FastAPI(
        title="Repository Sandbox",
        description="Resumable provisioning of repository sandboxes",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
        }

    @app.get("/metrics")
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_repository_sandbox_router(deps.driver))

    return app


# For uvicorn, use --factory flag:
#   uvicorn repo_sandbox.app:create_app --factory
