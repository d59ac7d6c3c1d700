"""Resource records observed and mutated by the PlunderMachine reconciler.

These mirror the subset of Cluster API objects the controller reads
(Machine, Cluster) and the two infrastructure kinds it owns
(PlunderMachine, PlunderCluster). Only ``PlunderMachine`` is ever mutated,
and only through the pending patch in ``resources.patch``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

CAPI_GROUP = 'cluster.x-k8s.io'
CLUSTER_NAME_LABEL = 'cluster.x-k8s.io/cluster-name'
CONTROL_PLANE_LABEL = 'cluster.x-k8s.io/control-plane'
MACHINE_FINALIZER = 'plundermachine.infrastructure.cluster.x-k8s.io'
PROVIDER_ID_SCHEME = 'plunder://'

ROLE_CONTROL_PLANE = 'control-plane'
ROLE_WORKER = 'worker'


@dataclass(frozen=True, slots=True)
class ObjectRef:
    """Namespace-qualified resource identity."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f'{self.namespace}/{self.name}'


@dataclass(frozen=True, slots=True)
class OwnerReference:
    kind: str
    name: str
    api_version: str = f'{CAPI_GROUP}/v1alpha2'

    @property
    def group(self) -> str:
        return self.api_version.split('/', 1)[0] if '/' in self.api_version else ''


@dataclass(frozen=True, slots=True)
class ObjectReference:
    """Typed pointer from a Cluster to its infrastructure object."""

    kind: str
    name: str
    namespace: str = ''


@dataclass(slots=True)
class PlunderMachine:
    """Desired machine state driven toward provisioned/ready."""

    namespace: str
    name: str
    owner_references: list[OwnerReference] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    provider_id: str | None = None
    ready: bool = False
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: datetime | None = None

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.namespace, self.name)

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None

    def snapshot(self) -> dict[str, Any]:
        """Mutable fields as plain values, used to diff pending patches."""
        return {
            'provider_id': self.provider_id,
            'ready': self.ready,
            'finalizers': list(self.finalizers),
        }


@dataclass(frozen=True, slots=True)
class Machine:
    namespace: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    owner_references: tuple[OwnerReference, ...] = ()
    bootstrap_data: str | None = None

    @property
    def role(self) -> str:
        if CONTROL_PLANE_LABEL in self.labels:
            return ROLE_CONTROL_PLANE
        return ROLE_WORKER


@dataclass(frozen=True, slots=True)
class Cluster:
    namespace: str
    name: str
    infrastructure_ref: ObjectReference | None = None


@dataclass(frozen=True, slots=True)
class PlunderCluster:
    namespace: str
    name: str


def provider_id_for(mac: str) -> str:
    """Build the externally visible provider ID for provisioned hardware."""
    return f'{PROVIDER_ID_SCHEME}{mac}'
