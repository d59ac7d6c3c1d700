"""Reconcile error taxonomy.

Every failure the engine reports is a ``ReconcileError`` carrying a stable
``code`` so operators can tell "backend said no" apart from "backend never
finished". All kinds are retryable: the engine never terminates the process,
it reports the failure and relies on the delivery layer to re-invoke it.

These errors are kept dependency-free so they can cross module boundaries
without leaking ``httpx.Response`` objects.
"""

from __future__ import annotations

BACKEND_UNAVAILABLE_CODE = "backend_unavailable"
ENDPOINT_DISCOVERY_FAILED_CODE = "endpoint_discovery_failed"
NO_CAPACITY_CODE = "no_capacity"
BACKEND_REJECTED_CODE = "backend_rejected"
PROVISIONING_TIMEOUT_CODE = "provisioning_timeout"
PATCH_FAILED_CODE = "patch_failed"


class ReconcileError(Exception):
    """Base class for failures surfaced by a reconcile attempt."""

    code = "reconcile_error"
    retryable = True

    def __init__(self, message: str = "") -> None:
        self.message = message or self.code
        super().__init__(self.message)


class ResourceNotFound(LookupError):
    """A resource lookup found nothing under the requested identity."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class BackendUnavailableError(ReconcileError):
    """The provisioning backend could not be reached or returned 5xx."""

    code = BACKEND_UNAVAILABLE_CODE

    def __init__(self, message: str = "", *, status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(message or "provisioning backend unavailable")


class EndpointDiscoveryError(ReconcileError):
    """The backend does not advertise the requested capability."""

    code = ENDPOINT_DISCOVERY_FAILED_CODE

    def __init__(self, capability: str, method: str, message: str = "") -> None:
        self.capability = capability
        self.method = method
        super().__init__(
            message or f"no {method} endpoint advertised for {capability!r}"
        )


class NoCapacityError(ReconcileError):
    """No fresh lease was available to provision from."""

    code = NO_CAPACITY_CODE

    def __init__(self, message: str = "") -> None:
        super().__init__(message or "no free hardware for provisioning")


class BackendRejectedError(ReconcileError):
    """The backend answered with an explicit error or friendly error."""

    code = BACKEND_REJECTED_CODE

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        friendly_error: str = "",
    ) -> None:
        self.operation = operation
        self.friendly_error = friendly_error
        prefix = f"{operation}: " if operation else ""
        super().__init__(f"{prefix}{message}")


class ProvisioningTimeoutError(ReconcileError):
    """The verification task never reached a terminal state in time."""

    code = PROVISIONING_TIMEOUT_CODE

    def __init__(self, *, attempts: int, elapsed_seconds: float) -> None:
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f"verification did not complete after {attempts} polls "
            f"({elapsed_seconds:.0f}s)"
        )


class PatchError(ReconcileError):
    """Persisting the pending mutations back to the store failed."""

    code = PATCH_FAILED_CODE
