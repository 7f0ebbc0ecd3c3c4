"""Async HTTP client for the Daytona sandbox API.

Covers the sandbox lifecycle (create, get, delete, list) on the control API
and the per-sandbox toolbox (files, git, processes, sessions). Toolbox calls
go through the proxy URL advertised by ``GET /config``, fetched once per
client.

Auth uses a static bearer API key. Transient failures (timeouts, 429, 5xx)
are retried with exponential backoff and jitter, honouring ``Retry-After``.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import random
from typing import Any

import httpx

from .models import (
    CloneRepositoryRequest,
    CreateSandboxRequest,
    ExecuteCommandResponse,
    Sandbox,
    Session,
    SessionExecuteResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://app.daytona.io/api"

# Status codes eligible for automatic retry.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BASE_DELAY = 1.0  # seconds
_DEFAULT_MAX_DELAY = 30.0  # seconds


# ── Exception hierarchy ─────────────────────────────────────────


class DaytonaAPIError(Exception):
    """Base exception for Daytona API errors."""

    def __init__(
        self,
        status_code: int,
        message: str = "",
        *,
        response_body: str = "",
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Daytona API error {status_code}: {message}")


class DaytonaNotFoundError(DaytonaAPIError):
    """Sandbox, session, or command not found (404)."""

    def __init__(self, message: str = "Not found", **kwargs: Any) -> None:
        super().__init__(404, message, **kwargs)


class DaytonaTimeoutError(DaytonaAPIError):
    """Request to Daytona timed out."""

    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(0, message)


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Client ───────────────────────────────────────────────────────


class DaytonaClient:
    """Async HTTP client for the Daytona API.

    Satisfies the ``SandboxClient`` protocol from ``protocols.py``.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")

        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._toolbox_url: str | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"

        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message", payload.get("error", message))
        except (ValueError, KeyError):
            pass

        if resp.status_code == 404:
            raise DaytonaNotFoundError(message=message, response_body=body)

        raise DaytonaAPIError(
            status_code=resp.status_code,
            message=message,
            response_body=body,
        )

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential backoff retry for transient errors."""
        headers = self._auth_headers()

        last_exc: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=headers,
                    timeout=self._timeout,
                    **kwargs,
                )
            except httpx.TimeoutException as e:
                last_exc = DaytonaTimeoutError(str(e))
                if attempt < self._max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "Daytona request timeout (attempt %d/%d), retrying in %.1fs",
                        attempt + 1,
                        self._max_retries + 1,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise last_exc from e

            if resp.status_code not in _RETRYABLE_STATUS_CODES:
                return resp

            if attempt < self._max_retries:
                delay = self._retry_after_delay(resp, attempt)
                logger.warning(
                    "Daytona %s %s returned %d (attempt %d/%d), retrying in %.1fs",
                    method,
                    url,
                    resp.status_code,
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                )
                await asyncio.sleep(delay)
            else:
                return resp

        if last_exc:
            raise last_exc
        raise DaytonaAPIError(0, "exhausted retries with no response")

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _retry_after_delay(self, resp: httpx.Response, attempt: int) -> float:
        """Use Retry-After header if present, otherwise exponential backoff."""
        retry_after = resp.headers.get("retry-after")
        if retry_after:
            try:
                return max(float(retry_after), 0.1)
            except ValueError:
                pass
        return self._backoff_delay(attempt)

    async def _api(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        resp = await self._request_with_retry(method, f"{self._base_url}{path}", **kwargs)
        self._raise_for_status(resp)
        return resp

    async def _toolbox(
        self, method: str, sandbox_id: str, path: str, **kwargs: Any,
    ) -> httpx.Response:
        base = await self._toolbox_base_url()
        resp = await self._request_with_retry(
            method, f"{base}/{sandbox_id}{path}", **kwargs,
        )
        self._raise_for_status(resp)
        return resp

    async def _toolbox_base_url(self) -> str:
        if self._toolbox_url is None:
            resp = await self._api("GET", "/config")
            url = resp.json().get("proxyToolboxUrl")
            if not url:
                raise DaytonaAPIError(0, "config response has no proxyToolboxUrl")
            self._toolbox_url = url.rstrip("/")
        return self._toolbox_url

    # ── Sandbox lifecycle ────────────────────────────────────────

    async def verify(self) -> None:
        """Check the API key by listing sandboxes."""
        await self._api("GET", "/sandbox")

    async def create_sandbox(self, request: CreateSandboxRequest) -> Sandbox:
        resp = await self._api("POST", "/sandbox", json=request.to_body())
        sandbox = Sandbox.model_validate(resp.json())
        logger.info(
            "Sandbox created: id=%s",
            sandbox.id,
            extra={"sandbox_id": sandbox.id},
        )
        return sandbox

    async def get_sandbox(self, sandbox_id: str) -> Sandbox:
        """Get sandbox metadata.

        Raises DaytonaNotFoundError if the sandbox doesn't exist.
        """
        resp = await self._api("GET", f"/sandbox/{sandbox_id}")
        return Sandbox.model_validate(resp.json())

    async def delete_sandbox(self, sandbox_id: str, *, force: bool = False) -> None:
        await self._api(
            "DELETE",
            f"/sandbox/{sandbox_id}",
            params={"force": "true" if force else "false"},
        )
        logger.info(
            "Sandbox deleted: id=%s",
            sandbox_id,
            extra={"sandbox_id": sandbox_id},
        )

    async def list_sandboxes(self) -> list[Sandbox]:
        resp = await self._api("GET", "/sandbox")
        result = resp.json()
        if not isinstance(result, list):
            raise DaytonaAPIError(
                status_code=0,
                message=f"Expected list from /sandbox, got {type(result).__name__}",
            )
        return [Sandbox.model_validate(item) for item in result]

    # ── Toolbox: files and git ───────────────────────────────────

    async def create_folder(self, sandbox_id: str, path: str, mode: str = "755") -> None:
        await self._toolbox(
            "POST", sandbox_id, "/files/folder", params={"path": path, "mode": mode},
        )

    async def upload_file(self, sandbox_id: str, path: str, content: bytes) -> None:
        await self._toolbox(
            "POST",
            sandbox_id,
            "/files/upload",
            params={"path": path},
            files={"file": (posixpath.basename(path) or "file", content)},
        )

    async def clone_repository(
        self, sandbox_id: str, request: CloneRepositoryRequest,
    ) -> None:
        await self._toolbox("POST", sandbox_id, "/git/clone", json=request.to_body())

    # ── Toolbox: processes and sessions ──────────────────────────

    async def execute_command(self, sandbox_id: str, command: str) -> ExecuteCommandResponse:
        resp = await self._toolbox(
            "POST", sandbox_id, "/process/execute", json={"command": command},
        )
        return ExecuteCommandResponse.model_validate(resp.json())

    async def create_session(self, sandbox_id: str, session_id: str) -> None:
        await self._toolbox(
            "POST", sandbox_id, "/process/session", json={"sessionId": session_id},
        )

    async def execute_session_command(
        self, sandbox_id: str, session_id: str, command: str,
    ) -> SessionExecuteResponse:
        resp = await self._toolbox(
            "POST",
            sandbox_id,
            f"/process/session/{session_id}/exec",
            json={"command": command, "runAsync": True},
        )
        return SessionExecuteResponse.model_validate(resp.json())

    async def get_session(self, sandbox_id: str, session_id: str) -> Session:
        resp = await self._toolbox("GET", sandbox_id, f"/process/session/{session_id}")
        return Session.model_validate(resp.json())

    async def get_session_command_logs(
        self, sandbox_id: str, session_id: str, command_id: str,
    ) -> str:
        resp = await self._toolbox(
            "GET",
            sandbox_id,
            f"/process/session/{session_id}/command/{command_id}/logs",
        )
        return resp.text
