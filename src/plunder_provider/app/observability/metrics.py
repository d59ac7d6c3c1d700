"""Prometheus metrics for the PlunderMachine reconciler.

Metric naming follows Prometheus conventions so dashboards can split
reconcile outcomes by state and backend failures by error code.

Usage::

    from plunder_provider.app.observability.metrics import RECONCILE_TOTAL

    RECONCILE_TOTAL.labels(state="ready", outcome="success").inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Reconcile metrics
# ---------------------------------------------------------------------------

RECONCILE_TOTAL = Counter(
    "plunder_reconcile_total",
    "Reconcile invocations by final state and outcome.",
    labelnames=["state", "outcome"],
    registry=REGISTRY,
)

RECONCILE_DURATION_SECONDS = Histogram(
    "plunder_reconcile_duration_seconds",
    "Wall-clock duration of a reconcile invocation.",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 1800.0),
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Provisioning metrics
# ---------------------------------------------------------------------------

COMPLETION_POLL_ATTEMPTS = Histogram(
    "plunder_completion_poll_attempts",
    "Task-log fetches needed before a verification task completed.",
    buckets=(1, 2, 3, 5, 10, 20, 50, 100, 360),
    registry=REGISTRY,
)

RECONCILE_ERRORS_TOTAL = Counter(
    "plunder_reconcile_errors_total",
    "Failed reconcile attempts by error code.",
    labelnames=["code"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
