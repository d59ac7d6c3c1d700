"""Pytest configuration for plunder_provider tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from plunder_provider.app.inmemory import InMemoryPlunderBackend, InMemoryResourceStore
from plunder_provider.app.resources.models import (
    CLUSTER_NAME_LABEL,
    CONTROL_PLANE_LABEL,
    Cluster,
    Machine,
    ObjectReference,
    OwnerReference,
    PlunderCluster,
    PlunderMachine,
)


@pytest.fixture
def store():
    """In-memory store seeded with a fully resolvable owner chain."""
    store = InMemoryResourceStore()
    store.add_machine(
        Machine(
            namespace='default',
            name='machine-0',
            labels={CLUSTER_NAME_LABEL: 'cluster-a'},
        )
    )
    store.add_machine(
        Machine(
            namespace='default',
            name='cp-0',
            labels={CLUSTER_NAME_LABEL: 'cluster-a', CONTROL_PLANE_LABEL: ''},
            bootstrap_data='I2Nsb3VkLWNvbmZpZw==',
        )
    )
    store.add_cluster(
        Cluster(
            namespace='default',
            name='cluster-a',
            infrastructure_ref=ObjectReference(kind='PlunderCluster', name='plunder-a'),
        )
    )
    store.add_plunder_cluster(PlunderCluster(namespace='default', name='plunder-a'))
    return store


@pytest.fixture
def plunder_machine():
    return PlunderMachine(
        namespace='default',
        name='pm-0',
        owner_references=[OwnerReference(kind='Machine', name='machine-0')],
    )


@pytest.fixture
def backend():
    return InMemoryPlunderBackend()
