"""Observability infrastructure for the controller.

Provides structured logging and Prometheus metrics.

Quick start::

    from plunder_provider.app.observability import configure_logging, metrics_text

    configure_logging()
"""

from .logging import configure_logging, reconcile_context, reconcile_target_ctx
from .metrics import metrics_text

__all__ = [
    "configure_logging",
    "metrics_text",
    "reconcile_context",
    "reconcile_target_ctx",
]
