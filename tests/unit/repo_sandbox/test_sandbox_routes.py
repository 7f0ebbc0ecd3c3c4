"""Tests for the repository sandbox HTTP API and app factory.

Validates:
  1. POST starts a pipeline and returns 202 with the persisted state
  2. POST returns 400 on validation errors, before any remote call
  3. POST returns 502 when sandbox creation fails
  4. GET returns persisted state, 404 for unknown pipelines
  5. POST /actions/poll advances a pipeline; unknown actions are 404
  6. /health and /metrics respond
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from repo_sandbox.app import create_app
from repo_sandbox.inmemory import (
    InMemoryExecutionSink,
    InMemorySandboxClient,
    InMemoryScheduler,
    InMemorySecretResolver,
    InMemoryStateStore,
)
from repo_sandbox.provisioning.state_machine import InvalidStateTransition
from repo_sandbox.settings import PipelineSettings

BASE = '/api/v1/repository-sandboxes'
REPO = 'https://github.com/acme/widget.git'


# ── Test fixtures ─────────────────────────────────────────────────────


def _create_test_app(client: InMemorySandboxClient | None = None):
    sandbox_client = client or InMemorySandboxClient()
    scheduler = InMemoryScheduler()
    sink = InMemoryExecutionSink()
    app = create_app(
        PipelineSettings(),
        client=sandbox_client,
        secrets=InMemorySecretResolver(),
        store=InMemoryStateStore(),
        scheduler=scheduler,
        sink=sink,
    )
    return TestClient(app), sandbox_client, scheduler, sink


# ── Start ─────────────────────────────────────────────────────────────


def test_start_returns_202_with_state():
    http, sandbox_client, scheduler, _ = _create_test_app()

    resp = http.post(BASE, params={'pipeline_id': 'pl_1'}, json={'repository': REPO})

    assert resp.status_code == 202
    body = resp.json()
    assert body['pipelineId'] == 'pl_1'
    assert body['stage'] == 'preparingSandbox'
    assert body['directory'] == '/home/daytona/widget'
    assert scheduler.scheduled == [('pl_1', 'poll', 5)]
    assert len(sandbox_client.calls_to('create_sandbox')) == 1


def test_start_generates_pipeline_id():
    http, _, _, _ = _create_test_app()
    resp = http.post(BASE, json={'repository': REPO})
    assert resp.status_code == 202
    assert resp.json()['pipelineId']


@pytest.mark.parametrize(
    ('payload', 'message'),
    [
        ({}, 'repository is required'),
        ({'repository': 'widget'}, 'URI or SCP'),
        ({'repository': REPO, 'bootstrap': {'from': 'inline'}}, 'bootstrap.script is required'),
        ({'repository': REPO, 'autoStopInterval': 'soon'}, 'failed to decode configuration'),
    ],
)
def test_start_rejects_invalid_requests(payload, message):
    http, sandbox_client, _, _ = _create_test_app()

    resp = http.post(BASE, json=payload)

    assert resp.status_code == 400
    assert resp.json()['error'] == 'invalid_request'
    assert message in resp.json()['detail']
    assert sandbox_client.calls == []


def test_start_returns_502_when_creation_fails():
    http, _, _, _ = _create_test_app(
        InMemorySandboxClient(failures={'create_sandbox': RuntimeError('quota exceeded')})
    )

    resp = http.post(BASE, json={'repository': REPO})

    assert resp.status_code == 502
    assert resp.json()['error'] == 'sandbox_creation_failed'
    assert 'quota exceeded' in resp.json()['detail']


# ── Status and actions ────────────────────────────────────────────────


def test_get_unknown_pipeline_returns_404():
    http, _, _, _ = _create_test_app()
    resp = http.get(f'{BASE}/nope')
    assert resp.status_code == 404
    assert resp.json()['error'] == 'pipeline_not_found'


def test_poll_action_advances_pipeline():
    http, _, _, sink = _create_test_app()
    http.post(BASE, params={'pipeline_id': 'pl_1'}, json={'repository': REPO})

    resp = http.post(f'{BASE}/pl_1/actions/poll')

    assert resp.status_code == 200
    assert resp.json()['stage'] == 'done'
    assert http.get(f'{BASE}/pl_1').json()['stage'] == 'done'
    assert len(sink.emitted) == 1


def test_unknown_action_returns_404():
    http, _, _, _ = _create_test_app()
    http.post(BASE, params={'pipeline_id': 'pl_1'}, json={'repository': REPO})

    resp = http.post(f'{BASE}/pl_1/actions/resize')

    assert resp.status_code == 404
    assert resp.json()['error'] == 'unknown_action'


def test_action_on_unknown_pipeline_returns_404():
    http, _, _, _ = _create_test_app()
    resp = http.post(f'{BASE}/nope/actions/poll')
    assert resp.status_code == 404
    assert resp.json()['error'] == 'pipeline_not_found'


# ── App factory ───────────────────────────────────────────────────────


def test_health_and_metrics():
    http, _, _, _ = _create_test_app()

    assert http.get('/health').json() == {'status': 'ok', 'environment': 'local'}

    http.post(BASE, json={'repository': REPO})
    metrics = http.get('/metrics')
    assert metrics.status_code == 200
    assert 'repo_sandbox_pipelines_started_total' in metrics.text


def test_non_local_requires_api_key_and_state_dir():
    with pytest.raises(ValueError, match='daytona_api_key is required'):
        create_app(PipelineSettings(environment='production'))


def test_default_dependencies_for_local():
    app = create_app(PipelineSettings())
    deps = app.state.deps
    assert isinstance(deps.client, InMemorySandboxClient)
    assert isinstance(deps.store, InMemoryStateStore)


def test_invariant_breach_during_action_returns_409(monkeypatch):
    http, _, _, _ = _create_test_app()
    http.post(BASE, params={'pipeline_id': 'pl_1'}, json={'repository': REPO})

    async def _breach(pipeline_id, name):
        raise InvalidStateTransition('done', 'bootstrapping')

    monkeypatch.setattr(http.app.state.deps.driver, 'handle_action', _breach)

    resp = http.post(f'{BASE}/pl_1/actions/poll')

    assert resp.status_code == 409
    assert resp.json()['error'] == 'pipeline_state_error'
    assert 'invalid state transition' in resp.json()['detail']
