"""Repository sandbox pipeline API.

  POST /api/v1/repository-sandboxes                              → start a pipeline
  GET  /api/v1/repository-sandboxes/{pipeline_id}                → persisted state
  POST /api/v1/repository-sandboxes/{pipeline_id}/actions/{name} → re-invoke an action

The actions endpoint is the hook for an external scheduler: any process can
resume a pipeline from its persisted state.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from repo_sandbox.provisioning.driver import RepositorySandboxDriver
from repo_sandbox.provisioning.errors import (
    PipelineStateError,
    RequestValidationError,
    UnknownActionError,
)
from repo_sandbox.provisioning.state_machine import InvalidStateTransition
from repo_sandbox.provisioning.validation import parse_request

logger = logging.getLogger(__name__)


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={'error': error, 'detail': detail},
    )


def _not_found(pipeline_id: str) -> JSONResponse:
    return _error(
        404, 'pipeline_not_found', f'No pipeline found with id {pipeline_id!r}.',
    )


# ── Route factory ─────────────────────────────────────────────────────


def create_repository_sandbox_router(driver: RepositorySandboxDriver) -> APIRouter:
    """Create the repository sandbox pipeline router.

    Args:
        driver: Stage driver wired with the host's collaborators.

    Returns:
        FastAPI router with pipeline start, status, and action endpoints.
    """
    router = APIRouter(prefix='/api/v1/repository-sandboxes', tags=['repository-sandboxes'])

    @router.post('')
    async def start_pipeline(
        configuration: dict[str, Any] = Body(...),
        pipeline_id: str | None = None,
    ):
        """Validate the request, create the sandbox, and schedule polling."""
        try:
            request = parse_request(configuration)
        except RequestValidationError as exc:
            return _error(400, 'invalid_request', str(exc))

        try:
            state = await driver.start(request, pipeline_id=pipeline_id)
        except RequestValidationError as exc:
            return _error(400, 'invalid_request', str(exc))
        except Exception as exc:
            logger.warning('Sandbox creation failed: %s', exc)
            return _error(502, 'sandbox_creation_failed', f'failed to create sandbox: {exc}')

        return JSONResponse(status_code=202, content=state.to_payload())

    @router.get('/{pipeline_id}')
    async def get_pipeline(pipeline_id: str):
        try:
            state = await driver.load(pipeline_id)
        except PipelineStateError as exc:
            return _error(409, 'pipeline_state_error', str(exc))
        except ValueError as exc:
            return _error(400, 'invalid_pipeline_id', str(exc))
        if state is None:
            return _not_found(pipeline_id)
        return state.to_payload()

    @router.post('/{pipeline_id}/actions/{name}')
    async def run_action(pipeline_id: str, name: str):
        """Re-invoke a driver action; terminal pipelines are left untouched."""
        try:
            if await driver.load(pipeline_id) is None:
                return _not_found(pipeline_id)
            state = await driver.handle_action(pipeline_id, name)
        except UnknownActionError as exc:
            return _error(404, 'unknown_action', str(exc))
        except (PipelineStateError, InvalidStateTransition) as exc:
            return _error(409, 'pipeline_state_error', str(exc))
        except ValueError as exc:
            return _error(400, 'invalid_pipeline_id', str(exc))
        return state.to_payload()

    return router
