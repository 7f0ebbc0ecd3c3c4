"""Prometheus metrics for repository sandbox pipelines.

Usage::

    from repo_sandbox.observability.metrics import PIPELINES_FINISHED_TOTAL

    PIPELINES_FINISHED_TOTAL.labels(outcome="done", stage="done").inc()
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    generate_latest,
)

PIPELINES_STARTED_TOTAL = Counter(
    "repo_sandbox_pipelines_started_total",
    "Pipelines whose sandbox creation call succeeded.",
    registry=REGISTRY,
)

PIPELINES_FINISHED_TOTAL = Counter(
    "repo_sandbox_pipelines_finished_total",
    "Pipelines reaching a terminal state, by outcome and last stage.",
    labelnames=["outcome", "stage"],
    registry=REGISTRY,
)

POLLS_TOTAL = Counter(
    "repo_sandbox_polls_total",
    "Poll invocations by stage and result.",
    labelnames=["stage", "result"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
