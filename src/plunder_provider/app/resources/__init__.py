"""Resource records read and patched by the reconciler.

Owner-chain resolution and pending patches live in ``resources.owner_chain``
and ``resources.patch``; they depend on the store protocol and are imported
from their modules directly.
"""

from .models import (
    MACHINE_FINALIZER,
    Cluster,
    Machine,
    ObjectRef,
    ObjectReference,
    OwnerReference,
    PlunderCluster,
    PlunderMachine,
    provider_id_for,
)

__all__ = [
    'MACHINE_FINALIZER',
    'Cluster',
    'Machine',
    'ObjectRef',
    'ObjectReference',
    'OwnerReference',
    'PlunderCluster',
    'PlunderMachine',
    'provider_id_for',
]
