"""Owner-chain resolution: PlunderMachine -> Machine -> Cluster -> PlunderCluster.

Provisioning can only start once every hop exists:
  - the Machine controller has set itself as owner of the PlunderMachine
  - the Machine carries the cluster-name label and that Cluster exists
  - the Cluster's infrastructure ref names a PlunderCluster in the
    PlunderMachine's namespace

A missing hop is not an error. It yields ``Unready`` so the reconciler can
return quietly and wait for the next invocation. Store failures other than
``ResourceNotFound`` propagate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from ..errors import ResourceNotFound
from ..protocols import ResourceStore
from .models import (
    CAPI_GROUP,
    CLUSTER_NAME_LABEL,
    Cluster,
    Machine,
    ObjectRef,
    OwnerReference,
    PlunderCluster,
    PlunderMachine,
)

UNOWNED = 'unowned'
UNCLUSTERED = 'unclustered'


@dataclass(frozen=True, slots=True)
class OwnerChain:
    machine: Machine
    cluster: Cluster
    plunder_cluster: PlunderCluster


@dataclass(frozen=True, slots=True)
class Unready:
    """The owner chain cannot be resolved yet."""

    state: str
    reason: str


def owner_machine_name(owner_references: Iterable[OwnerReference]) -> str | None:
    """Name of the first Cluster API Machine among ``owner_references``."""
    for ref in owner_references:
        if ref.kind == 'Machine' and ref.group == CAPI_GROUP:
            return ref.name
    return None


def cluster_name_from_labels(labels: Mapping[str, str]) -> str | None:
    return labels.get(CLUSTER_NAME_LABEL) or None


async def resolve_owner_chain(
    store: ResourceStore,
    plunder_machine: PlunderMachine,
) -> OwnerChain | Unready:
    namespace = plunder_machine.namespace

    machine_name = owner_machine_name(plunder_machine.owner_references)
    if machine_name is None:
        return Unready(UNOWNED, 'Machine Controller has not yet set OwnerRef')
    try:
        machine = await store.get_machine(ObjectRef(namespace, machine_name))
    except ResourceNotFound:
        return Unready(UNOWNED, f'owner Machine {machine_name!r} does not exist')

    cluster_name = cluster_name_from_labels(machine.labels)
    if cluster_name is None:
        return Unready(UNCLUSTERED, 'Machine is missing cluster label')
    try:
        cluster = await store.get_cluster(ObjectRef(machine.namespace, cluster_name))
    except ResourceNotFound:
        return Unready(UNCLUSTERED, f'Cluster {cluster_name!r} does not exist')

    if cluster.infrastructure_ref is None:
        return Unready(UNCLUSTERED, f'Cluster {cluster_name!r} has no infrastructure ref')
    try:
        plunder_cluster = await store.get_plunder_cluster(
            ObjectRef(namespace, cluster.infrastructure_ref.name),
        )
    except ResourceNotFound:
        return Unready(UNCLUSTERED, 'The Plunder Cluster is not available yet')

    return OwnerChain(
        machine=machine,
        cluster=cluster,
        plunder_cluster=plunder_cluster,
    )
