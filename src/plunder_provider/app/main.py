"""Controller FastAPI application factory.

The create_app() factory builds the ASGI app that hosts the reconciler. It
wires request-ID middleware, the health and metrics endpoints, and a
reconcile trigger the delivery layer (or an operator) can POST to, and
injects store/backend implementations via dependency injection.

Usage:
    # Local development (in-memory store and backend)
    from plunder_provider.app import create_app, ControllerSettings
    app = create_app(ControllerSettings())

    # Non-local (real Plunder backend, store injected)
    settings = ControllerSettings.from_env()
    app = create_app(settings, store=cluster_store)

    # Testing (full DI control)
    app = create_app(settings, store=store, client=backend)
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import (
    BACKEND_REJECTED_CODE,
    BACKEND_UNAVAILABLE_CODE,
    ENDPOINT_DISCOVERY_FAILED_CODE,
    NO_CAPACITY_CODE,
    PATCH_FAILED_CODE,
    PROVISIONING_TIMEOUT_CODE,
)
from .observability.metrics import metrics_text
from .protocols import ProvisioningClient, ResourceStore
from .provisioning.reconciler import (
    STATE_UNCLUSTERED,
    STATE_UNOWNED,
    MachineReconciler,
    ReconcileResult,
)
from .providers.plunder_client import PlunderClient
from .resources.models import ObjectRef
from .settings import ControllerSettings

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    NO_CAPACITY_CODE: 503,
    BACKEND_UNAVAILABLE_CODE: 502,
    ENDPOINT_DISCOVERY_FAILED_CODE: 502,
    BACKEND_REJECTED_CODE: 502,
    PROVISIONING_TIMEOUT_CODE: 504,
    PATCH_FAILED_CODE: 500,
}


@dataclass(frozen=True)
class AppDependencies:
    """Container for the injected store/backend instances.

    Stored on ``app.state.deps`` so route handlers can access them.
    """

    store: ResourceStore
    client: ProvisioningClient
    reconciler: MachineReconciler


# ── Middleware ──────────────────────────────────────────────────────


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generate or propagate X-Request-ID on every request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ── Result rendering ────────────────────────────────────────────────


def result_payload(result: ReconcileResult) -> dict:
    """JSON body describing a reconcile outcome."""
    resource = result.resource
    return {
        "state": result.state,
        "requeue_after": result.requeue_after,
        "error": (
            {"code": result.error.code, "message": result.error.message}
            if result.error is not None
            else None
        ),
        "provider_id": resource.provider_id if resource else None,
        "ready": resource.ready if resource else False,
        "finalizers": list(resource.finalizers) if resource else [],
        "mutations": sorted(result.mutations),
    }


def result_status(result: ReconcileResult) -> int:
    if result.error is not None:
        return _ERROR_STATUS.get(result.error.code, 500)
    if result.state in (STATE_UNOWNED, STATE_UNCLUSTERED):
        return 202
    return 200


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: ControllerSettings | None = None,
    *,
    store: ResourceStore | None = None,
    client: ProvisioningClient | None = None,
) -> FastAPI:
    """Create a configured controller FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        store: Resource store override. Local mode falls back to
            InMemoryResourceStore; non-local mode requires one.
        client: Provisioning backend override. Defaults to a PlunderClient
            for ``settings.plunder_url``, or the in-memory backend when
            running locally without a URL.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Raises:
        ValueError: If settings validation fails or a non-local
            environment has no store provided.
    """
    if settings is None:
        settings = ControllerSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Controller settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if store is None:
        if not settings.is_local:
            raise ValueError(
                f"Non-local environment ({settings.environment}) requires "
                "a resource store to be explicitly provided"
            )
        from .inmemory import InMemoryResourceStore

        store = InMemoryResourceStore()

    owned_client: PlunderClient | None = None
    if client is None:
        if settings.plunder_url:
            owned_client = PlunderClient(
                base_url=settings.plunder_url,
                timeout_seconds=settings.plunder_timeout_seconds,
                verify_tls=settings.plunder_verify_tls,
            )
            client = owned_client
        else:
            from .inmemory import InMemoryPlunderBackend

            client = InMemoryPlunderBackend()

    deps = AppDependencies(
        store=store,
        client=client,
        reconciler=MachineReconciler(store=store, client=client, settings=settings),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Controller startup (environment=%s)", settings.environment)
        yield
        if owned_client is not None:
            await owned_client.aclose()
        logger.info("Controller shutdown")

    app = FastAPI(
        title="Plunder Machine Controller",
        description="Reconciles PlunderMachine resources against a Plunder server",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings

    app.add_middleware(RequestIDMiddleware)

    # ── Routes ──────────────────────────────────────────────────

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

    @app.post("/api/v1/plundermachines/{namespace}/{name}/reconcile")
    async def reconcile(namespace: str, name: str, request: Request):
        result = await deps.reconciler.reconcile(ObjectRef(namespace, name))
        payload = result_payload(result)
        payload["request_id"] = request.state.request_id
        return JSONResponse(status_code=result_status(result), content=payload)

    return app


# For uvicorn, use --factory flag:
#   uvicorn plunder_provider.app.main:create_app --factory
# This avoids executing create_app() at import time.
