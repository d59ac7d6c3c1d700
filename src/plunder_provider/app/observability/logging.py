"""Structured logging for the controller.

Modules log through stdlib ``logging.getLogger(__name__)`` with ``extra=``
fields. ``configure_logging`` routes those records through structlog's
ProcessorFormatter so every line is rendered the same way, JSON by default.

While a reconcile runs, ``reconcile_context`` tags every record with the
``plundermachine`` being reconciled, so interleaved reconciles of different
resources on one event loop stay separable in the log stream.

Usage::

    from plunder_provider.app.observability.logging import configure_logging

    configure_logging()  # Call once at startup
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import IO, Iterator

import structlog

# Identity ("namespace/name") of the PlunderMachine under reconcile.
reconcile_target_ctx: ContextVar[str | None] = ContextVar(
    "reconcile_target", default=None,
)

# Bootstrap payloads carry cloud-init secrets and never reach the log.
_REDACTED_KEYS = frozenset({"bootstrap_data", "user_data"})
_REDACTED = "[redacted]"

_NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}

_configured = False


@contextmanager
def reconcile_context(target: str) -> Iterator[None]:
    """Tag log records emitted inside the block with ``target``."""
    token = reconcile_target_ctx.set(target)
    try:
        yield
    finally:
        reconcile_target_ctx.reset(token)


def _add_reconcile_target(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    target = reconcile_target_ctx.get()
    if target is not None:
        event_dict.setdefault("plundermachine", target)
    return event_dict


def _redact_bootstrap_data(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    for key in _REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = _REDACTED
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        _add_reconcile_target,
        _redact_bootstrap_data,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
    stream: IO[str] | None = None,
    force: bool = False,
) -> None:
    """Install the structlog formatter on the root logger.

    Args:
        level: Log level name. Defaults to LOG_LEVEL env var or INFO.
        json_output: JSON lines when True, console rendering when False.
            Defaults to LOG_FORMAT env var (``json`` unless set otherwise).
        stream: Destination stream, stdout by default.
        force: Reconfigure even if logging was already configured.
    """
    global _configured
    if _configured and not force:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    shared = _shared_processors()
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)
