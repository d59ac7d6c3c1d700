"""In-memory store and backend implementations for local development.

Used when ENVIRONMENT=local and by tests. They satisfy the ResourceStore and
ProvisioningClient protocols but keep everything in dicts (no persistence across restarts).
"""

from __future__ import annotations

import copy
from typing import Any

from .errors import EndpointDiscoveryError, ResourceNotFound
from .providers.plunder_client import (
    CAPABILITY_DEPLOYMENT,
    CAPABILITY_DHCP,
    CAPABILITY_TASK_LOG,
    CAPABILITY_TASK_SUBMIT,
    Endpoint,
    PlunderResponse,
    backend_function,
)
from .resources.models import (
    Cluster,
    Machine,
    ObjectRef,
    PlunderCluster,
    PlunderMachine,
)


class InMemoryResourceStore:
    """Dict-backed ResourceStore.

    Reads hand out copies so callers can only change stored state through
    ``patch_plunder_machine``. A PlunderMachine whose deletion was requested
    is dropped once a patch leaves it without finalizers, the way the
    cluster store garbage-collects it.
    """

    def __init__(self) -> None:
        self._plunder_machines: dict[ObjectRef, PlunderMachine] = {}
        self._machines: dict[ObjectRef, Machine] = {}
        self._clusters: dict[ObjectRef, Cluster] = {}
        self._plunder_clusters: dict[ObjectRef, PlunderCluster] = {}
        self.patches: list[tuple[ObjectRef, dict[str, Any]]] = []
        self.fail_patch: Exception | None = None

    # ── Seeding ──────────────────────────────────────────────────

    def add_plunder_machine(self, obj: PlunderMachine) -> PlunderMachine:
        self._plunder_machines[obj.ref] = copy.deepcopy(obj)
        return obj

    def add_machine(self, obj: Machine) -> Machine:
        self._machines[ObjectRef(obj.namespace, obj.name)] = obj
        return obj

    def add_cluster(self, obj: Cluster) -> Cluster:
        self._clusters[ObjectRef(obj.namespace, obj.name)] = obj
        return obj

    def add_plunder_cluster(self, obj: PlunderCluster) -> PlunderCluster:
        self._plunder_clusters[ObjectRef(obj.namespace, obj.name)] = obj
        return obj

    def stored_plunder_machine(self, ref: ObjectRef) -> PlunderMachine | None:
        return self._plunder_machines.get(ref)

    # ── ResourceStore ────────────────────────────────────────────

    async def get_plunder_machine(self, ref: ObjectRef) -> PlunderMachine:
        obj = self._plunder_machines.get(ref)
        if obj is None:
            raise ResourceNotFound('PlunderMachine', ref.namespace, ref.name)
        return copy.deepcopy(obj)

    async def get_machine(self, ref: ObjectRef) -> Machine:
        obj = self._machines.get(ref)
        if obj is None:
            raise ResourceNotFound('Machine', ref.namespace, ref.name)
        return obj

    async def get_cluster(self, ref: ObjectRef) -> Cluster:
        obj = self._clusters.get(ref)
        if obj is None:
            raise ResourceNotFound('Cluster', ref.namespace, ref.name)
        return obj

    async def get_plunder_cluster(self, ref: ObjectRef) -> PlunderCluster:
        obj = self._plunder_clusters.get(ref)
        if obj is None:
            raise ResourceNotFound('PlunderCluster', ref.namespace, ref.name)
        return obj

    async def patch_plunder_machine(
        self, ref: ObjectRef, mutations: dict[str, Any],
    ) -> None:
        if self.fail_patch is not None:
            raise self.fail_patch
        obj = self._plunder_machines.get(ref)
        if obj is None:
            raise ResourceNotFound('PlunderMachine', ref.namespace, ref.name)
        self.patches.append((ref, dict(mutations)))
        for key, value in mutations.items():
            setattr(obj, key, copy.deepcopy(value))
        if obj.deletion_requested and not obj.finalizers:
            del self._plunder_machines[ref]


_DEFAULT_ENDPOINT_PATHS = {
    (CAPABILITY_DHCP, 'GET'): '/dhcp',
    (CAPABILITY_DEPLOYMENT, 'POST'): '/deployment',
    (CAPABILITY_TASK_SUBMIT, 'POST'): '/parlay',
    (CAPABILITY_TASK_LOG, 'GET'): '/parlay/logs',
}


class InMemoryPlunderBackend:
    """Scripted ProvisioningClient that records every call.

    ``task_log_states`` is consumed one entry per log fetch; an entry is
    either a task state string or a full ``PlunderResponse``. Once the
    script runs out the last entry repeats.
    """

    def __init__(
        self,
        *,
        leases: list[dict[str, Any]] | None = None,
        task_log_states: list[str | PlunderResponse] | None = None,
        dhcp_response: PlunderResponse | None = None,
        deployment_response: PlunderResponse | None = None,
        task_submit_response: PlunderResponse | None = None,
        missing_capabilities: frozenset[str] = frozenset(),
    ) -> None:
        self.leases = list(leases or [])
        self.task_log_states = list(task_log_states or ['Completed'])
        self.dhcp_response = dhcp_response
        self.deployment_response = deployment_response
        self.task_submit_response = task_submit_response
        self.missing_capabilities = missing_capabilities
        self.calls: list[tuple[str, str]] = []
        self.deployments: list[dict[str, Any]] = []
        self.tasks: list[dict[str, Any]] = []
        self._log_index = 0

    @property
    def backend_calls(self) -> list[tuple[str, str]]:
        """Calls other than endpoint discovery."""
        return [c for c in self.calls if c[0] != 'DISCOVER']

    @property
    def log_fetches(self) -> int:
        log_path = _DEFAULT_ENDPOINT_PATHS[(CAPABILITY_TASK_LOG, 'GET')]
        return sum(
            1 for method, path in self.calls
            if method == 'GET' and path.startswith(log_path + '/')
        )

    async def discover_endpoint(self, capability: str, method: str) -> Endpoint:
        self.calls.append(('DISCOVER', capability))
        path = _DEFAULT_ENDPOINT_PATHS.get((capability, method.upper()))
        if path is None or capability in self.missing_capabilities:
            raise EndpointDiscoveryError(capability, method.upper())
        return Endpoint(
            name=backend_function(capability),
            path=path,
            method=method.upper(),
        )

    async def get(self, path: str) -> PlunderResponse:
        self.calls.append(('GET', path))
        if path.endswith('/unleased'):
            if self.dhcp_response is not None:
                return self.dhcp_response
            return PlunderResponse(success=True, payload=list(self.leases))
        return self._next_task_log()

    async def post(self, path: str, body: Any) -> PlunderResponse:
        self.calls.append(('POST', path))
        if path == _DEFAULT_ENDPOINT_PATHS[(CAPABILITY_DEPLOYMENT, 'POST')]:
            self.deployments.append(body)
            return self.deployment_response or PlunderResponse(success=True)
        self.tasks.append(body)
        return self.task_submit_response or PlunderResponse(success=True)

    def _next_task_log(self) -> PlunderResponse:
        index = min(self._log_index, len(self.task_log_states) - 1)
        self._log_index += 1
        entry = self.task_log_states[index]
        if isinstance(entry, PlunderResponse):
            return entry
        return PlunderResponse(success=True, payload={'state': entry})
