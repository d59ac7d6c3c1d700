"""Store and backend protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations
(InMemory for local dev and tests, a cluster-backed store in production)
must satisfy. The reconciler and app factory accept any implementation that
matches them.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .providers.plunder_client import Endpoint, PlunderResponse
from .resources.models import (
    Cluster,
    Machine,
    ObjectRef,
    PlunderCluster,
    PlunderMachine,
)


@runtime_checkable
class ResourceStore(Protocol):
    """Resource reads plus the single patch write the reconciler performs.

    Getters raise ``ResourceNotFound`` when nothing exists under ``ref``.
    """

    async def get_plunder_machine(self, ref: ObjectRef) -> PlunderMachine: ...
    async def get_machine(self, ref: ObjectRef) -> Machine: ...
    async def get_cluster(self, ref: ObjectRef) -> Cluster: ...
    async def get_plunder_cluster(self, ref: ObjectRef) -> PlunderCluster: ...
    async def patch_plunder_machine(
        self, ref: ObjectRef, mutations: dict[str, Any],
    ) -> None: ...


@runtime_checkable
class ProvisioningClient(Protocol):
    """Named-endpoint request/response exchange with the provisioning backend.

    ``get``/``post`` return a ``PlunderResponse`` envelope; transport
    failures raise ``BackendUnavailableError`` and unknown capabilities
    raise ``EndpointDiscoveryError``.
    """

    async def discover_endpoint(self, capability: str, method: str) -> Endpoint: ...
    async def get(self, path: str) -> PlunderResponse: ...
    async def post(self, path: str, body: Any) -> PlunderResponse: ...
